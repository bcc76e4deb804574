"""
Order pricing

`calc_delivery_date_and_price` is called on every cart mutation and again,
server-side, when an order is committed. It has no side effects.
"""
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence

from pydantic import BaseModel

from schemas import CartItem, DeliveryDateOption, ShippingAddress
from site_settings import get_setting

TAX_RATE = Decimal("0.15")


class PriceSummary(BaseModel):
    available_delivery_dates: List[DeliveryDateOption]
    delivery_date_index: Optional[int]
    items_price: float
    shipping_price: Optional[float] = None
    tax_price: Optional[float] = None
    total_price: float


def round2(value: float) -> float:
    """Round half up to cents, on the decimal representation of `value`."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def calc_items_price(items: Sequence[CartItem]) -> float:
    return round2(sum(Decimal(str(item.price)) * item.quantity for item in items))


def resolve_delivery_index(delivery_dates: Sequence[DeliveryDateOption], index: Optional[int]) -> Optional[int]:
    # No selection (or a stale one) falls back to the last configured option
    if not delivery_dates:
        return None
    if index is None or not 0 <= index < len(delivery_dates):
        return len(delivery_dates) - 1
    return index


def calc_delivery_date_and_price(items: Sequence[CartItem],
                                 shipping_address: Optional[ShippingAddress] = None,
                                 delivery_date_index: Optional[int] = None,
                                 delivery_dates: Optional[Sequence[DeliveryDateOption]] = None) -> PriceSummary:
    if delivery_dates is None:
        delivery_dates = get_setting().available_delivery_dates

    items_price = calc_items_price(items)
    index = resolve_delivery_index(delivery_dates, delivery_date_index)
    option = delivery_dates[index] if index is not None else None

    shipping_price = None
    tax_price = None
    if shipping_address is not None:
        if option is not None:
            free = option.free_shipping_min_price > 0 and items_price >= option.free_shipping_min_price
            shipping_price = 0.0 if free else round2(option.shipping_price)
        tax_price = round2(Decimal(str(items_price)) * TAX_RATE)

    total_price = round2(
        Decimal(str(items_price)) + Decimal(str(shipping_price or 0)) + Decimal(str(tax_price or 0))
    )
    return PriceSummary(
        available_delivery_dates=list(delivery_dates),
        delivery_date_index=index,
        items_price=items_price,
        shipping_price=shipping_price,
        tax_price=tax_price,
        total_price=total_price,
    )


def expected_delivery_date(option: Optional[DeliveryDateOption], now: datetime) -> Optional[datetime]:
    if option is None:
        return None
    return now + timedelta(days=option.days_to_deliver)
