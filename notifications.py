"""
Customer notifications

Mail is not sent from the request path: receipts and review reminders are
queued in the `notification` collection for the mail worker. Queueing is
fire-and-forget; a failure is logged and never reaches the caller.
"""
import logging
from typing import Any, Dict, Optional

from bson import ObjectId

from database import collection, create_document
from schemas import Notification

logger = logging.getLogger(__name__)


def _customer_email(order: Dict[str, Any]) -> Optional[str]:
    user_id = order.get("user_id")
    if not user_id or not ObjectId.is_valid(user_id):
        return None
    user = collection("user").find_one({"_id": ObjectId(user_id)}, {"email": 1})
    return user.get("email") if user else None


def _queue(kind: str, order: Dict[str, Any]) -> Optional[str]:
    order_id = str(order.get("_id"))
    try:
        email = _customer_email(order)
        if not email:
            logger.info("No email on file for order %s, skipping %s", order_id, kind)
            return None
        return create_document("notification", Notification(kind=kind, to=email, order_id=order_id))
    except Exception:
        logger.exception("Failed to queue %s for order %s", kind, order_id)
        return None


def send_purchase_receipt(order: Dict[str, Any]) -> Optional[str]:
    return _queue("purchase_receipt", order)


def send_ask_review_order_items(order: Dict[str, Any]) -> Optional[str]:
    return _queue("review_reminder", order)
