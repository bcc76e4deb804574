"""
Coupon validation and redemption

Validation is read-only and may run any number of times during checkout.
Redemption (`increment_coupon_usage`) runs once per committed order.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from database import collection, create_document, utcnow
from pricing import round2
from schemas import ActionResult, Coupon

logger = logging.getLogger(__name__)

AVAILABLE_COUPONS_LIMIT = 5
MAX_REDEEM_ATTEMPTS = 5


class CouponContentionError(Exception):
    pass


class CouponDiscount(BaseModel):
    code: str
    discount_type: str
    discount_value: float
    discount_amount: float
    description: str = ""


class CouponValidation(BaseModel):
    success: bool
    message: str
    reason: Optional[str] = None
    data: Optional[CouponDiscount] = None


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _to_coupon(doc: Dict[str, Any]) -> Coupon:
    doc = {k: v for k, v in doc.items() if k not in ("_id", "created_at", "updated_at")}
    return Coupon(**doc)


def user_usage_count(coupon: Coupon, user_id: str) -> int:
    return sum(1 for usage in coupon.used_by if usage.user == user_id)


def matches_categories(coupon: Coupon, categories: Optional[Iterable[str]]) -> bool:
    # Unrestricted coupons, or callers that do not know the cart's categories, always match
    if not coupon.applicable_categories or categories is None:
        return True
    allowed = set(coupon.applicable_categories)
    return any(cat in allowed for cat in categories)


def calc_discount(coupon: Coupon, order_total: float) -> float:
    if coupon.discount_type == "percentage":
        amount = order_total * coupon.discount_value / 100
        if coupon.max_discount and amount > coupon.max_discount:
            amount = coupon.max_discount
    else:
        amount = coupon.discount_value
    return round2(max(0.0, min(amount, order_total)))


def _reject(reason: str, message: str) -> CouponValidation:
    return CouponValidation(success=False, message=message, reason=reason)


def check_coupon(coupon: Optional[Coupon], order_total: float, categories: Optional[Iterable[str]] = None,
                 user_id: Optional[str] = None, now: Optional[datetime] = None) -> CouponValidation:
    """Run the validation rules in order and stop at the first failure."""
    if coupon is None:
        return _reject("not_found", "Invalid coupon code")
    if not coupon.is_active:
        return _reject("inactive", "This coupon is no longer active")

    now = now or utcnow()
    if now < coupon.start_date:
        return _reject("not_started", "This coupon is not yet valid")
    if now > coupon.end_date:
        return _reject("expired", "This coupon has expired")
    if coupon.used_count >= coupon.usage_limit:
        return _reject("usage_exhausted", "This coupon has reached its usage limit")
    if user_id and user_usage_count(coupon, user_id) >= coupon.usage_per_user:
        return _reject("per_user_exhausted", "You have already used this coupon the maximum number of times")
    if order_total < coupon.min_order_value:
        return _reject("below_minimum", f"Minimum order value is {coupon.min_order_value}")
    if not matches_categories(coupon, categories):
        return _reject("category_mismatch", "This coupon is not applicable to items in your cart")

    return CouponValidation(
        success=True,
        message="Coupon applied successfully",
        data=CouponDiscount(
            code=coupon.code,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            discount_amount=calc_discount(coupon, order_total),
            description=coupon.description,
        ),
    )


def find_coupon(code: str) -> Optional[Coupon]:
    doc = collection("coupon").find_one({"code": normalize_code(code)})
    return _to_coupon(doc) if doc else None


async def validate_coupon(code: str, order_total: float, categories: Optional[List[str]] = None,
                          user_id: Optional[str] = None) -> CouponValidation:
    try:
        return check_coupon(find_coupon(code), order_total, categories, user_id)
    except Exception:
        logger.exception("Coupon validation failed for %r", code)
        return CouponValidation(success=False, message="Could not validate coupon, please try again")


async def increment_coupon_usage(code: str, user_id: Optional[str] = None) -> bool:
    """Record one redemption.

    The write is a compare-and-swap on `used_count`: it only lands if no other
    redemption happened since the caps were checked, so neither `usage_limit`
    nor `usage_per_user` can be passed by two orders racing. Returns False when
    the coupon is gone or a cap is already reached.
    """
    code = normalize_code(code)
    coupons = collection("coupon")
    for _ in range(MAX_REDEEM_ATTEMPTS):
        doc = coupons.find_one({"code": code}, {"usage_limit": 1, "used_count": 1, "usage_per_user": 1,
                                               "used_by": 1})
        if not doc:
            logger.warning("Cannot record usage of missing coupon %s", code)
            return False
        used = doc.get("used_count", 0)
        if used >= doc["usage_limit"]:
            logger.warning("Coupon %s reached its usage limit before usage could be recorded", code)
            return False
        if user_id:
            mine = sum(1 for usage in doc.get("used_by", []) if usage.get("user") == user_id)
            if mine >= doc.get("usage_per_user", 1):
                logger.warning("User %s reached the per-user limit of coupon %s", user_id, code)
                return False

        update: Dict[str, Any] = {"$inc": {"used_count": 1}, "$set": {"updated_at": utcnow()}}
        if user_id:
            update["$push"] = {"used_by": {"user": user_id, "used_at": utcnow()}}
        if coupons.update_one({"_id": doc["_id"], "used_count": used}, update).modified_count == 1:
            return True
    raise CouponContentionError(f"Coupon {code} is being redeemed too often, giving up")


async def get_available_coupons(order_total: float, categories: Optional[List[str]] = None,
                                user_id: Optional[str] = None) -> ActionResult:
    try:
        now = utcnow()
        cursor = collection("coupon").find({
            "is_active": True,
            "start_date": {"$lte": now},
            "end_date": {"$gte": now},
        }).sort("discount_value", -1)

        available = []
        for doc in cursor:
            coupon = _to_coupon(doc)
            if coupon.used_count >= coupon.usage_limit:
                continue
            if user_id and user_usage_count(coupon, user_id) >= coupon.usage_per_user:
                continue
            if not matches_categories(coupon, categories):
                continue
            is_applicable = order_total >= coupon.min_order_value
            available.append({
                "code": coupon.code,
                "description": coupon.description,
                "discount_type": coupon.discount_type,
                "discount_value": coupon.discount_value,
                "min_order_value": coupon.min_order_value,
                "max_discount": coupon.max_discount,
                "potential_discount": calc_discount(coupon, order_total) if is_applicable else 0,
                "is_applicable": is_applicable,
                "end_date": coupon.end_date.isoformat(),
            })
            if len(available) >= AVAILABLE_COUPONS_LIMIT:
                break
        return ActionResult(success=True, data=available)
    except Exception:
        logger.exception("Listing available coupons failed")
        return ActionResult(success=False, message="Could not load coupons", data=[])


# Admin

async def create_coupon(coupon: Coupon) -> ActionResult:
    if collection("coupon").find_one({"code": coupon.code}):
        return ActionResult(success=False, message="Coupon code already exists")
    coupon_id = create_document("coupon", coupon)
    logger.info("Coupon %s created", coupon.code)
    return ActionResult(success=True, message="Coupon created successfully", data={"id": coupon_id})


async def list_coupons(query: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if query:
        pattern = re.escape(query)
        filt["$or"] = [
            {"code": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    coupons = collection("coupon")
    total = coupons.count_documents(filt)
    cursor = coupons.find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    items = []
    for c in cursor:
        c["id"] = str(c.pop("_id"))
        items.append(c)
    return {"items": items, "page": page, "total": total, "total_pages": -(-total // limit)}
