"""
Database Schemas for the storefront checkout service

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class Coupon -> collection "coupon"

Embedded models (ShippingAddress, CartItem, CouponUsage, ...) live inside those documents.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from database import utcnow


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Embedded models

class ShippingAddress(BaseModel):
    full_name: str
    phone: str
    street: str
    city: str
    province: str
    postal_code: str
    country: str


class CartItem(BaseModel):
    """A cart line as the client holds it. Identity is (product_id, color, size)."""
    product_id: str
    client_id: str = ""
    name: str
    slug: str = ""
    category: str = ""
    price: float = Field(0, ge=0)
    quantity: int = Field(1, ge=1)
    image: Optional[str] = None
    count_in_stock: int = Field(0, ge=0)
    size: Optional[str] = None
    color: Optional[str] = None


class OrderItem(CartItem):
    """Snapshot of a cart line at commit time, priced from the product document."""


class DeliveryDateOption(BaseModel):
    name: str
    days_to_deliver: int = Field(..., ge=0)
    shipping_price: float = Field(..., ge=0)
    free_shipping_min_price: float = Field(0, ge=0)


class PaymentMethod(BaseModel):
    name: str
    commission: float = 0


class CommonSetting(BaseModel):
    page_size: int = 9
    free_shipping_min_price: float = 35


class CouponUsage(BaseModel):
    user: str
    used_at: datetime = Field(default_factory=utcnow)


class PaymentResult(BaseModel):
    id: str
    status: str
    email_address: Optional[str] = None
    price_paid: Optional[str] = None


# Collections

class User(BaseModel):
    name: str
    email: EmailStr
    hashed_password: str
    is_active: bool = True
    is_admin: bool = False


class Product(BaseModel):
    name: str
    slug: str
    category: str
    price: float = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    count_in_stock: int = Field(0, ge=0)
    num_sales: int = Field(0, ge=0)
    is_published: bool = True


class Setting(BaseModel):
    common: CommonSetting = Field(default_factory=CommonSetting)
    available_delivery_dates: List[DeliveryDateOption] = Field(default_factory=lambda: [
        DeliveryDateOption(name="Tomorrow", days_to_deliver=1, shipping_price=12.9, free_shipping_min_price=0),
        DeliveryDateOption(name="Next 3 Days", days_to_deliver=3, shipping_price=6.9, free_shipping_min_price=0),
        DeliveryDateOption(name="Next 5 Days", days_to_deliver=5, shipping_price=4.9, free_shipping_min_price=35),
    ])
    available_payment_methods: List[PaymentMethod] = Field(default_factory=lambda: [
        PaymentMethod(name="PayPal"),
        PaymentMethod(name="Stripe"),
        PaymentMethod(name="Cash On Delivery"),
        PaymentMethod(name="Bank Transfer"),
    ])
    default_payment_method: str = "PayPal"


class Coupon(BaseModel):
    code: str = Field(..., min_length=1)
    description: str = ""
    discount_type: Literal["percentage", "fixed"] = "percentage"
    discount_value: float = Field(..., ge=0)
    min_order_value: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: int = Field(100, ge=1)
    used_count: int = Field(0, ge=0)
    usage_per_user: int = Field(1, ge=1)
    used_by: List[CouponUsage] = Field(default_factory=list)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    applicable_categories: List[str] = Field(default_factory=list)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v: datetime) -> datetime:
        return _naive_utc(v)


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    shipping_address: Optional[ShippingAddress] = None
    expected_delivery_date: Optional[datetime] = None
    payment_method: str
    payment_result: Optional[PaymentResult] = None
    items_price: float = Field(..., ge=0)
    shipping_price: Optional[float] = Field(None, ge=0)
    tax_price: Optional[float] = Field(None, ge=0)
    discount_amount: float = Field(0, ge=0)
    coupon_code: Optional[str] = None
    total_price: float = Field(..., ge=0)
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None


class Outbox(BaseModel):
    kind: Literal["coupon_usage", "coupon_refused", "release_reservations", "stock_deduction"]
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["pending", "done", "review"] = "pending"
    attempts: int = 0
    last_error: Optional[str] = None


class Notification(BaseModel):
    kind: Literal["purchase_receipt", "review_reminder"]
    to: EmailStr
    order_id: str
    status: Literal["pending", "sent", "failed"] = "pending"


# Request / response models

class Cart(BaseModel):
    items: List[CartItem] = Field(..., min_length=1)
    shipping_address: Optional[ShippingAddress] = None
    delivery_date_index: Optional[int] = Field(None, ge=0)
    payment_method: Optional[str] = None


class ActionResult(BaseModel):
    success: bool
    message: str = ""
    data: Optional[Any] = None
