from datetime import timedelta

import pytest

import coupons
from coupons import (CouponContentionError, calc_discount, check_coupon, get_available_coupons,
                     increment_coupon_usage, validate_coupon)
from database import utcnow
from schemas import Coupon, CouponUsage


def make(**overrides) -> Coupon:
    data = dict(code="deal", discount_type="percentage", discount_value=10, usage_limit=10,
                start_date=utcnow() - timedelta(days=1), end_date=utcnow() + timedelta(days=1))
    data.update(overrides)
    return Coupon(**data)


def test_code_is_normalized():
    assert make(code="  summer24 ").code == "SUMMER24"


@pytest.mark.parametrize("coupon, kwargs, reason", [
    (None, {}, "not_found"),
    (make(is_active=False), {}, "inactive"),
    (make(start_date=utcnow() + timedelta(hours=1)), {}, "not_started"),
    (make(end_date=utcnow() - timedelta(hours=1)), {}, "expired"),
    (make(usage_limit=2, used_count=2), {}, "usage_exhausted"),
    (make(used_by=[CouponUsage(user="u1")]), {"user_id": "u1"}, "per_user_exhausted"),
    (make(min_order_value=150), {}, "below_minimum"),
    (make(applicable_categories=["Shoes"]), {"categories": ["T-Shirts"]}, "category_mismatch"),
])
def test_rejection_reasons(coupon, kwargs, reason):
    result = check_coupon(coupon, 100, **kwargs)

    assert not result.success
    assert result.reason == reason
    assert result.data is None


def test_checks_run_in_order():
    coupon = make(is_active=False, usage_limit=1, used_count=1, min_order_value=1000)
    assert check_coupon(coupon, 10).reason == "inactive"


def test_per_user_limit_applies_regardless_of_global_room():
    coupon = make(usage_limit=100, used_count=2, usage_per_user=2,
                  used_by=[CouponUsage(user="u1"), CouponUsage(user="u1")])

    assert check_coupon(coupon, 100, user_id="u1").reason == "per_user_exhausted"
    assert check_coupon(coupon, 100, user_id="u2").success
    assert check_coupon(coupon, 100).success


def test_category_check_skipped_without_cart_categories():
    coupon = make(applicable_categories=["Shoes"])

    assert check_coupon(coupon, 100).success
    assert check_coupon(coupon, 100, categories=["Hats", "Shoes"]).success


def test_percentage_discount_capped_by_max_discount():
    result = check_coupon(make(discount_value=50, max_discount=20), 100)

    assert result.success
    assert result.data.discount_amount == 20
    assert result.data.code == "DEAL"


@pytest.mark.parametrize("coupon, total, expected", [
    (make(discount_type="fixed", discount_value=50), 30, 30),
    (make(discount_type="percentage", discount_value=150), 80, 80),
    (make(discount_type="percentage", discount_value=15), 33.34, 5.0),
    (make(discount_type="fixed", discount_value=10), 0, 0),
])
def test_discount_never_exceeds_total(coupon, total, expected):
    amount = calc_discount(coupon, total)

    assert amount == expected
    assert 0 <= amount <= total


async def test_validate_coupon_reads_store(mock_db, make_coupon):
    make_coupon("SAVE10", min_order_value=20)

    ok = await validate_coupon(" save10 ", 45, ["T-Shirts"], "u1")
    low = await validate_coupon("SAVE10", 19.99)
    missing = await validate_coupon("NOPE", 45)

    assert ok.success and ok.data.discount_amount == 10
    assert low.reason == "below_minimum"
    assert missing.reason == "not_found"


async def test_increment_records_user_and_count(mock_db, make_coupon):
    make_coupon("SAVE10")

    assert await increment_coupon_usage("save10", "u1")
    assert await increment_coupon_usage("SAVE10")

    doc = mock_db["coupon"].find_one({"code": "SAVE10"})
    assert doc["used_count"] == 2
    assert [u["user"] for u in doc["used_by"]] == ["u1"]


async def test_increment_stops_at_usage_limit(mock_db, make_coupon):
    make_coupon("ONCE", usage_limit=1)

    assert await increment_coupon_usage("ONCE", "u1")
    assert not await increment_coupon_usage("ONCE", "u2")
    assert not await increment_coupon_usage("MISSING", "u2")

    doc = mock_db["coupon"].find_one({"code": "ONCE"})
    assert doc["used_count"] == 1
    assert len(doc["used_by"]) == 1


async def test_increment_enforces_per_user_limit(mock_db, make_coupon):
    make_coupon("TWICE", usage_limit=10, usage_per_user=2)

    assert await increment_coupon_usage("TWICE", "u1")
    assert await increment_coupon_usage("TWICE", "u1")
    assert not await increment_coupon_usage("TWICE", "u1")
    assert await increment_coupon_usage("TWICE", "u2")

    doc = mock_db["coupon"].find_one({"code": "TWICE"})
    assert doc["used_count"] == 3
    assert [u["user"] for u in doc["used_by"]] == ["u1", "u1", "u2"]


async def test_increment_gives_up_when_count_keeps_moving(mock_db, make_coupon, monkeypatch):
    make_coupon("HOT", usage_limit=100)
    inner = mock_db["coupon"]

    class Busy:
        # every read is stale by the time the write lands
        def find_one(self, *args, **kwargs):
            doc = inner.find_one(*args, **kwargs)
            inner.update_one({"_id": doc["_id"]}, {"$inc": {"used_count": 1}})
            return doc

        def update_one(self, *args, **kwargs):
            return inner.update_one(*args, **kwargs)

    monkeypatch.setattr(coupons, "collection", lambda name: Busy())

    with pytest.raises(CouponContentionError):
        await increment_coupon_usage("HOT", "u1")
    assert inner.find_one({"code": "HOT"})["used_by"] == []


async def test_redeemed_coupon_rejected_for_same_user(mock_db, make_coupon):
    make_coupon("SAVE10", usage_per_user=1)
    await increment_coupon_usage("SAVE10", "u1")

    again = await validate_coupon("SAVE10", 50, user_id="u1")
    other = await validate_coupon("SAVE10", 50, user_id="u2")

    assert again.reason == "per_user_exhausted"
    assert other.success


async def test_available_coupons_sorted_filtered_and_annotated(mock_db, make_coupon):
    make_coupon("TEN", discount_value=10, min_order_value=50)
    make_coupon("PCT", discount_type="percentage", discount_value=25, max_discount=5)
    make_coupon("SHOES", discount_value=40, applicable_categories=["Shoes"])
    make_coupon("USED", discount_value=30, usage_per_user=1, used_by=[CouponUsage(user="u1")], used_count=1)
    make_coupon("GONE", discount_value=35, usage_limit=1, used_count=1)
    make_coupon("OFF", discount_value=90, is_active=False)
    make_coupon("LATER", discount_value=80, start_date=utcnow() + timedelta(days=1))

    result = await get_available_coupons(40, ["T-Shirts"], user_id="u1")

    assert result.success
    assert [c["code"] for c in result.data] == ["PCT", "TEN"]
    pct, ten = result.data
    assert pct["is_applicable"] and pct["potential_discount"] == 5
    assert not ten["is_applicable"] and ten["potential_discount"] == 0


async def test_available_coupons_capped_at_five(mock_db, make_coupon):
    for i in range(8):
        make_coupon(f"C{i}", discount_value=i + 1)

    result = await get_available_coupons(100)

    assert [c["code"] for c in result.data] == ["C7", "C6", "C5", "C4", "C3"]
