"""
Stripe integration

Only two touch points: a PaymentIntent carrying the order id in its metadata,
and the webhook that reports the charge back.
"""
import logging
import os
from typing import Any, Dict, Tuple

import stripe

from orders import get_order_by_id, update_order_to_paid
from schemas import PaymentResult

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")

if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY


class PaymentConfigError(Exception):
    pass


def create_payment_intent(order: Dict[str, Any]) -> Dict[str, Any]:
    if not STRIPE_SECRET_KEY:
        raise PaymentConfigError("Stripe not configured")
    intent = stripe.PaymentIntent.create(
        amount=int(round(order["total_price"] * 100)),
        currency=STRIPE_CURRENCY,
        metadata={"orderId": order["id"]},
    )
    return {"id": intent.id, "client_secret": intent.client_secret}


def construct_event(payload: bytes, signature: str):
    if not STRIPE_WEBHOOK_SECRET:
        raise PaymentConfigError("STRIPE_WEBHOOK_SECRET is not configured")
    return stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)


async def handle_event(event) -> Tuple[int, Dict[str, Any]]:
    if event["type"] != "charge.succeeded":
        return 200, {"received": True}

    charge = event["data"]["object"]
    try:
        order_id = charge["metadata"]["orderId"]
    except KeyError:
        logger.warning("Stripe event %s has no orderId in charge metadata", event["id"])
        return 400, {"message": "Missing orderId"}

    order = await get_order_by_id(order_id)
    if order is None:
        logger.warning("Stripe event %s references unknown order %s", event["id"], order_id)
        return 404, {"message": "Order not found"}
    if order.get("is_paid"):
        return 200, {"message": "Order already paid"}

    result = await update_order_to_paid(order_id, PaymentResult(
        id=event["id"],
        status="COMPLETED",
        email_address=(charge.get("billing_details") or {}).get("email"),
        price_paid=f"{charge['amount'] / 100:.2f}",
    ))
    if not result.success:
        order = await get_order_by_id(order_id)
        if not order or not order.get("is_paid"):
            # a non-2xx answer makes Stripe deliver the event again
            logger.error("Stripe payment for order %s not recorded: %s", order_id, result.message)
            return 500, {"message": "Webhook handler failed"}
        logger.error("Stripe payment for order %s needs reconciliation: %s", order_id, result.message)
    return 200, {"message": "Order payment processed successfully", "detail": result.message}
