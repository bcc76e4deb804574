"""
Order assembly, payment and stock deduction

createOrder runs a fixed sequence: rate limit, stock reservation, coupon
validation, price recomputation, persistence, reservation release, coupon
redemption. Nothing before persistence is left behind when a step fails;
the two steps after it are best effort and land in the outbox on failure.

Persisted stock only moves when payment is confirmed (update_order_to_paid).
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo import ReturnDocument

import database
import outbox
from coupons import increment_coupon_usage, validate_coupon
from database import collection, create_document, transactions_supported, utcnow
from inventory_reservation import create_reservation, get_effective_stock, release_reservation, \
    release_user_reservations
from notifications import send_ask_review_order_items, send_purchase_receipt
from pricing import calc_delivery_date_and_price, calc_items_price, expected_delivery_date, round2
from rate_limit import RATE_LIMIT_PRESETS, check_rate_limit
from schemas import ActionResult, Cart, CartItem, Order, OrderItem, PaymentResult, Setting
from site_settings import get_setting

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = {"name": 1, "slug": 1, "category": 1, "price": 1, "images": 1, "count_in_stock": 1,
                  "is_published": 1}


class CheckoutError(Exception):
    pass


class OrderNotFoundError(CheckoutError):
    def __init__(self, message: str = "Order not found"):
        super().__init__(message)


class OrderAlreadyPaidError(CheckoutError):
    def __init__(self, message: str = "Order is already paid"):
        super().__init__(message)


class OrderNotPaidError(CheckoutError):
    def __init__(self, message: str = "Order is not paid"):
        super().__init__(message)


class StockDeductionError(CheckoutError):
    def __init__(self, message: str, product_ids: Sequence[str] = ()):
        super().__init__(message)
        self.product_ids = list(product_ids)


def _object_id(value: str) -> Optional[ObjectId]:
    return ObjectId(value) if value and ObjectId.is_valid(value) else None


def _fetch_products(items: Sequence[CartItem]) -> Dict[str, Dict[str, Any]]:
    # one round trip for the whole cart
    ids = {oid for oid in (_object_id(item.product_id) for item in items) if oid is not None}
    if not ids:
        return {}
    cursor = collection("product").find({"_id": {"$in": list(ids)}}, PRODUCT_FIELDS)
    return {str(p["_id"]): p for p in cursor}


def _resolve_payment_method(requested: Optional[str], setting: Setting) -> Optional[str]:
    names = [m.name for m in setting.available_payment_methods]
    if not requested:
        return setting.default_payment_method
    return requested if requested in names else None


def validate_and_reserve_stock(items: Sequence[CartItem], user_id: str) \
        -> Tuple[ActionResult, Dict[str, Dict[str, Any]]]:
    """Reserve every cart line or none of them."""
    # a resubmitted checkout replaces the holds of the previous attempt
    release_user_reservations(user_id)
    products = _fetch_products(items)

    made: List[str] = []
    shortages: List[str] = []
    for item in items:
        product = products.get(item.product_id)
        if product is None or not product.get("is_published", True):
            for key in made:
                release_reservation(key)
            return ActionResult(success=False, message=f'Product "{item.name}" is no longer available'), products

        stock = int(product.get("count_in_stock", 0))
        key = create_reservation(item.product_id, item.quantity, user_id, stock)
        if key is None:
            left = get_effective_stock(item.product_id, stock)
            shortages.append(f"{product.get('name', item.name)} (only {left} left)")
        else:
            made.append(key)

    if shortages:
        for key in made:
            release_reservation(key)
        logger.info("Stock rejected for user %s: %s", user_id, ", ".join(shortages))
        return ActionResult(success=False, message=f"Not enough stock: {', '.join(shortages)}"), products

    return ActionResult(success=True), products


def build_order_items(items: Sequence[CartItem], products: Dict[str, Dict[str, Any]]) -> List[OrderItem]:
    """Snapshot cart lines, trusting the client only for identity and quantity."""
    order_items = []
    for item in items:
        product = products[item.product_id]
        images = product.get("images") or []
        order_items.append(OrderItem(
            product_id=item.product_id,
            client_id=item.client_id,
            name=product.get("name", item.name),
            slug=product.get("slug", item.slug),
            category=product.get("category", ""),
            price=float(product.get("price", 0)),
            quantity=item.quantity,
            image=images[0] if images else item.image,
            count_in_stock=int(product.get("count_in_stock", 0)),
            size=item.size,
            color=item.color,
        ))
    return order_items


async def create_order(cart: Cart, user_id: Optional[str], coupon_code: Optional[str] = None) -> ActionResult:
    if not user_id:
        return ActionResult(success=False, message="User not authenticated")

    limit = check_rate_limit(f"order:{user_id}", RATE_LIMIT_PRESETS["order"])
    if not limit.success:
        logger.warning("Order rate limit hit by user %s", user_id)
        return ActionResult(
            success=False,
            message=f"You have placed too many orders. Please try again in {limit.reset_in} seconds.",
            data={"reason": "rate_limited", "retry_after": limit.reset_in},
        )

    order_id = None
    try:
        setting = get_setting()
        payment_method = _resolve_payment_method(cart.payment_method, setting)
        if payment_method is None:
            return ActionResult(success=False, message=f"Unsupported payment method: {cart.payment_method}")

        stock, products = validate_and_reserve_stock(cart.items, user_id)
        if not stock.success:
            return stock

        order_items = build_order_items(cart.items, products)

        discount = 0.0
        applied_code = None
        coupon_message = None
        if coupon_code:
            categories = sorted({item.category for item in order_items})
            coupon = await validate_coupon(coupon_code, calc_items_price(order_items), categories, user_id)
            if coupon.success and coupon.data:
                discount = coupon.data.discount_amount
                applied_code = coupon.data.code
            else:
                coupon_message = coupon.message
                logger.info("Coupon %r not applied for user %s: %s", coupon_code, user_id, coupon.reason)

        price = calc_delivery_date_and_price(
            order_items,
            cart.shipping_address,
            cart.delivery_date_index,
            setting.available_delivery_dates,
        )
        option = (setting.available_delivery_dates[price.delivery_date_index]
                  if price.delivery_date_index is not None else None)
        order = Order(
            user_id=user_id,
            items=order_items,
            shipping_address=cart.shipping_address,
            expected_delivery_date=expected_delivery_date(option, utcnow()),
            payment_method=payment_method,
            items_price=price.items_price,
            shipping_price=price.shipping_price,
            tax_price=price.tax_price,
            discount_amount=discount,
            coupon_code=applied_code,
            total_price=round2(max(0.0, price.total_price - discount)),
        )
        order_id = create_document("order", order)
    except Exception:
        logger.exception("Order creation failed for user %s", user_id)
        if order_id is None:
            release_user_reservations(user_id)
        return ActionResult(success=False, message="Could not place your order, please try again")

    logger.info("Order %s placed by user %s, total %.2f", order_id, user_id, order.total_price)
    await _after_commit(order_id, user_id, applied_code)

    return ActionResult(
        success=True,
        message="Order placed successfully",
        data={
            "order_id": order_id,
            "total_price": order.total_price,
            "discount_amount": order.discount_amount,
            "coupon_message": coupon_message,
        },
    )


async def _after_commit(order_id: str, user_id: str, coupon_code: Optional[str]) -> None:
    try:
        release_user_reservations(user_id)
    except Exception as e:
        outbox.enqueue("release_reservations", {"user_id": user_id, "order_id": order_id}, e)

    if not coupon_code:
        return
    payload = {"code": coupon_code, "user_id": user_id, "order_id": order_id}
    try:
        if not await increment_coupon_usage(coupon_code, user_id):
            _coupon_refused(payload)
    except Exception as e:
        outbox.enqueue("coupon_usage", payload, e)


def _coupon_refused(payload: Dict[str, Any]) -> None:
    # the order keeps its discount; a cap was taken by a concurrent order after validation
    outbox.enqueue("coupon_refused", payload, status="review")


def _start_session():
    return database.db.client.start_session()


def _deduct_in_transaction(order: Dict[str, Any]) -> None:
    """Check every item, then apply all decrements, in one transaction.

    `with_transaction` retries transient errors and write conflicts itself and
    aborts on anything else, so a raised StockDeductionError leaves no writes.
    """
    products = collection("product")
    items = order["items"]

    def deduct(session):
        for item in items:
            product = products.find_one({"_id": ObjectId(item["product_id"])}, {"name": 1, "count_in_stock": 1},
                                        session=session)
            if product is None:
                raise StockDeductionError(f"Product not found: {item['name']}", [item["product_id"]])
            if product.get("count_in_stock", 0) < item["quantity"]:
                raise StockDeductionError(f"Not enough stock for {product['name']}", [item["product_id"]])
        for item in items:
            products.update_one(
                {"_id": ObjectId(item["product_id"])},
                {"$inc": {"count_in_stock": -item["quantity"], "num_sales": item["quantity"]}},
                session=session,
            )

    with _start_session() as session:
        session.with_transaction(deduct)


def _deduct_guarded(order: Dict[str, Any]) -> None:
    """Per-item conditional decrement, undoing applied items when one fails."""
    products = collection("product")
    applied: List[Dict[str, Any]] = []
    failure: Optional[StockDeductionError] = None
    try:
        for item in order["items"]:
            result = products.update_one(
                {"_id": ObjectId(item["product_id"]), "count_in_stock": {"$gte": item["quantity"]}},
                {"$inc": {"count_in_stock": -item["quantity"], "num_sales": item["quantity"]}},
            )
            if result.modified_count != 1:
                failure = StockDeductionError(f"Not enough stock for {item['name']}", [item["product_id"]])
                break
            applied.append(item)
    except Exception as e:
        failure = StockDeductionError(f"Stock update interrupted: {e}", [i["product_id"] for i in order["items"]])

    if failure is None:
        return

    for item in applied:
        try:
            products.update_one(
                {"_id": ObjectId(item["product_id"])},
                {"$inc": {"count_in_stock": item["quantity"], "num_sales": -item["quantity"]}},
            )
        except Exception:
            logger.exception("Could not restore stock of product %s for order %s, manual fix needed",
                             item["product_id"], order["_id"])
    raise failure


async def update_product_stock(order_id: str) -> None:
    """Decrement stock and bump sales for every item of a paid order, all or nothing."""
    oid = _object_id(order_id)
    order = collection("order").find_one({"_id": oid}) if oid else None
    if order is None:
        raise OrderNotFoundError()

    try:
        if transactions_supported():
            _deduct_in_transaction(order)
        else:
            _deduct_guarded(order)
    except StockDeductionError:
        raise
    except Exception as e:
        product_ids = [item.get("product_id") for item in order.get("items", [])]
        raise StockDeductionError(f"Stock update failed: {e}", product_ids) from e
    logger.info("Stock deducted for order %s", order_id)


async def update_order_to_paid(order_id: str, payment_result: Optional[PaymentResult] = None) -> ActionResult:
    try:
        oid = _object_id(order_id)
        if oid is None:
            raise OrderNotFoundError()
        now = utcnow()
        changes: Dict[str, Any] = {"is_paid": True, "paid_at": now, "updated_at": now}
        if payment_result is not None:
            changes["payment_result"] = payment_result.model_dump()

        orders = collection("order")
        order = orders.find_one_and_update(
            {"_id": oid, "is_paid": False},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if order is None:
            if orders.find_one({"_id": oid}, {"_id": 1}) is None:
                raise OrderNotFoundError()
            raise OrderAlreadyPaidError()

        try:
            await update_product_stock(order_id)
        except StockDeductionError as e:
            logger.error("Stock deduction failed for paid order %s: %s", order_id, e)
            outbox.enqueue("stock_deduction", {"order_id": order_id}, e)
            return ActionResult(success=False, message=f"Order marked as paid, but stock was not updated: {e}")

        send_purchase_receipt(order)
        return ActionResult(success=True, message="Order paid successfully")
    except CheckoutError as e:
        return ActionResult(success=False, message=str(e))
    except Exception:
        logger.exception("Marking order %s as paid failed", order_id)
        return ActionResult(success=False, message="Could not update the order, please try again")


async def deliver_order(order_id: str) -> ActionResult:
    try:
        oid = _object_id(order_id)
        orders = collection("order")
        order = orders.find_one({"_id": oid}) if oid else None
        if order is None:
            raise OrderNotFoundError()
        if not order.get("is_paid"):
            raise OrderNotPaidError()
        now = utcnow()
        orders.update_one({"_id": oid}, {"$set": {"is_delivered": True, "delivered_at": now, "updated_at": now}})
        send_ask_review_order_items(order)
        return ActionResult(success=True, message="Order delivered successfully")
    except CheckoutError as e:
        return ActionResult(success=False, message=str(e))
    except Exception:
        logger.exception("Marking order %s as delivered failed", order_id)
        return ActionResult(success=False, message="Could not update the order, please try again")


def serialize_order(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif hasattr(v, "isoformat"):
            out[k] = v.isoformat()
        else:
            out[k] = v
    return out


async def get_order_by_id(order_id: str) -> Optional[Dict[str, Any]]:
    oid = _object_id(order_id)
    doc = collection("order").find_one({"_id": oid}) if oid else None
    return serialize_order(doc) if doc else None


async def get_my_orders(user_id: str, page: int = 1, limit: Optional[int] = None) -> Dict[str, Any]:
    limit = limit or get_setting().common.page_size
    orders = collection("order")
    total = orders.count_documents({"user_id": user_id})
    cursor = orders.find({"user_id": user_id}).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "items": [serialize_order(o) for o in cursor],
        "page": page,
        "total_pages": -(-total // limit),
    }


async def reconcile_outbox(limit: int = 50) -> Dict[str, int]:
    """Replay queued post-commit work."""
    done = failed = 0
    for entry in outbox.pending(limit):
        payload = entry.get("payload", {})
        try:
            if entry["kind"] == "coupon_usage":
                if not await increment_coupon_usage(payload["code"], payload.get("user_id")):
                    _coupon_refused(payload)
            elif entry["kind"] == "release_reservations":
                release_user_reservations(payload["user_id"])
            elif entry["kind"] == "stock_deduction":
                await update_product_stock(payload["order_id"])
            else:
                raise ValueError(f"Unknown outbox kind {entry['kind']}")
            outbox.mark_done(entry["_id"])
            done += 1
        except Exception as e:
            logger.warning("Outbox entry %s (%s) still failing: %s", entry["_id"], entry["kind"], e)
            outbox.mark_failed(entry["_id"], e)
            failed += 1
    return {"done": done, "failed": failed}
