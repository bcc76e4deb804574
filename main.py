import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from bson import ObjectId
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

import database
import payments
from catalog import MAX_STOCK_LOOKUP, get_stock_info, validate_cart
from coupons import create_coupon, get_available_coupons, list_coupons, validate_coupon
from database import collection, utcnow
from orders import create_order, deliver_order, get_my_orders, get_order_by_id, reconcile_outbox, \
    update_order_to_paid
from pricing import PriceSummary, calc_delivery_date_and_price
from rate_limit import RATE_LIMIT_PRESETS, check_rate_limit, get_client_identifier
from schemas import ActionResult, Cart, CartItem, Coupon, Setting
from site_settings import save_setting

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logger = logging.getLogger(__name__)


def setup_logging():
    root = logging.getLogger()
    root.setLevel(LOG_LEVEL)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"))
        root.addHandler(handler)


setup_logging()

# App setup
app = FastAPI(title="Storefront Checkout API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security/JWT setup
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "is_admin": user.get("is_admin", False),
        "exp": now + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def _load_user(token: str) -> dict:
    uid = decode_token(token).get("sub")
    user = collection("user").find_one({"_id": ObjectId(uid)}) if uid and ObjectId.is_valid(uid) else None
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    return _load_user(credentials.credentials)


async def get_optional_user(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security)) -> Optional[dict]:
    if credentials is None:
        return None
    return _load_user(credentials.credentials)


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def throttle(identifier: str, preset: str):
    result = check_rate_limit(f"{preset}:{identifier}", RATE_LIMIT_PRESETS[preset])
    if not result.success:
        logger.warning("Rate limit %s hit by %s", preset, identifier)
        raise HTTPException(
            status_code=429,
            detail=f"Too many requests. Please try again in {result.reset_in} seconds.",
            headers={"Retry-After": str(result.reset_in)},
        )


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class CreateOrderRequest(BaseModel):
    cart: Cart
    coupon_code: Optional[str] = None


class CartItemsRequest(BaseModel):
    items: List[CartItem]


class StockRequest(BaseModel):
    product_ids: List[str] = Field(..., min_length=1)


class CouponValidateRequest(BaseModel):
    code: str
    order_total: float = Field(..., ge=0)
    categories: Optional[List[str]] = None


class AvailableCouponsRequest(BaseModel):
    order_total: float = Field(..., ge=0)
    categories: Optional[List[str]] = None


def user_payload(user: dict) -> dict:
    return {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email"),
            "is_admin": user.get("is_admin", False)}


# Health and helpers
@app.get("/")
def root():
    return {"message": "Storefront checkout API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "transactions": False,
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
            response["transactions"] = database.transactions_supported()
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register")
def register(payload: RegisterRequest, request: Request):
    throttle(get_client_identifier(request.headers), "auth")
    users = collection("user")
    if users.find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    doc = {
        "name": payload.name,
        "email": payload.email,
        "hashed_password": hash_password(payload.password),
        "is_active": True,
        "is_admin": False,
        "created_at": utcnow(),
        "updated_at": utcnow(),
    }
    inserted_id = users.insert_one(doc).inserted_id
    user = users.find_one({"_id": inserted_id})
    return {"token": create_token(user), "user": user_payload(user)}


@app.post("/auth/login")
def login(payload: LoginRequest, request: Request):
    throttle(get_client_identifier(request.headers), "auth")
    user = collection("user").find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user), "user": user_payload(user)}


@app.get("/me")
async def me(current_user: dict = Depends(get_current_user)):
    return user_payload(current_user)


# Cart
@app.post("/api/cart/price", response_model=PriceSummary)
def cart_price(cart: Cart):
    return calc_delivery_date_and_price(cart.items, cart.shipping_address, cart.delivery_date_index)


@app.post("/api/cart/validate")
def cart_validate(payload: CartItemsRequest):
    return {"success": True, "data": validate_cart(payload.items)}


@app.post("/api/products/stock")
def product_stock(payload: StockRequest):
    if len(payload.product_ids) > MAX_STOCK_LOOKUP:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_STOCK_LOOKUP} products per request")
    return {"data": get_stock_info(payload.product_ids)}


# Coupons
@app.post("/api/coupons/validate")
async def coupon_validate(payload: CouponValidateRequest, request: Request,
                          user: Optional[dict] = Depends(get_optional_user)):
    user_id = str(user["_id"]) if user else None
    throttle(user_id or get_client_identifier(request.headers), "api")
    return await validate_coupon(payload.code, payload.order_total, payload.categories, user_id)


@app.post("/api/coupons/available", response_model=ActionResult)
async def coupons_available(payload: AvailableCouponsRequest, user: Optional[dict] = Depends(get_optional_user)):
    user_id = str(user["_id"]) if user else None
    return await get_available_coupons(payload.order_total, payload.categories, user_id)


# Checkout & Orders
@app.post("/api/orders")
async def place_order(payload: CreateOrderRequest, user: dict = Depends(get_current_user)):
    result = await create_order(payload.cart, str(user["_id"]), payload.coupon_code)
    if not result.success and isinstance(result.data, dict) and result.data.get("reason") == "rate_limited":
        return JSONResponse(
            status_code=429,
            content=result.model_dump(),
            headers={"Retry-After": str(result.data["retry_after"])},
        )
    return result


@app.get("/api/orders/mine")
async def my_orders(page: int = 1, user: dict = Depends(get_current_user)):
    return await get_my_orders(str(user["_id"]), max(1, page))


async def _visible_order(order_id: str, user: dict) -> dict:
    order = await get_order_by_id(order_id)
    if not order or (order["user_id"] != str(user["_id"]) and not user.get("is_admin")):
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.get("/api/orders/{order_id}")
async def order_detail(order_id: str, user: dict = Depends(get_current_user)):
    return await _visible_order(order_id, user)


@app.post("/api/orders/{order_id}/stripe-intent")
async def order_stripe_intent(order_id: str, user: dict = Depends(get_current_user)):
    order = await _visible_order(order_id, user)
    if order.get("is_paid"):
        raise HTTPException(status_code=400, detail="Order is already paid")
    try:
        return payments.create_payment_intent(order)
    except payments.PaymentConfigError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        logger.exception("Stripe PaymentIntent creation failed for order %s", order_id)
        raise HTTPException(status_code=502, detail=str(e))


@app.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request):
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")
    try:
        event = payments.construct_event(await request.body(), signature)
    except payments.PaymentConfigError as e:
        logger.error("Stripe webhook rejected: %s", e)
        raise HTTPException(status_code=500, detail="Server configuration error")
    except (ValueError, payments.stripe.SignatureVerificationError):
        raise HTTPException(status_code=400, detail="Invalid signature")
    status, body = await payments.handle_event(event)
    return JSONResponse(status_code=status, content=body)


# Admin
@app.put("/api/admin/orders/{order_id}/pay", response_model=ActionResult)
async def admin_mark_paid(order_id: str, admin: dict = Depends(require_admin)):
    throttle(str(admin["_id"]), "admin")
    return await update_order_to_paid(order_id)


@app.put("/api/admin/orders/{order_id}/deliver", response_model=ActionResult)
async def admin_deliver(order_id: str, admin: dict = Depends(require_admin)):
    throttle(str(admin["_id"]), "admin")
    return await deliver_order(order_id)


@app.post("/api/admin/coupons", response_model=ActionResult)
async def admin_create_coupon(payload: Coupon, admin: dict = Depends(require_admin)):
    throttle(str(admin["_id"]), "admin")
    return await create_coupon(payload)


@app.get("/api/admin/coupons")
async def admin_list_coupons(q: Optional[str] = None, page: int = 1, admin: dict = Depends(require_admin)):
    return await list_coupons(q, max(1, page))


@app.put("/api/admin/settings")
async def admin_update_settings(update: Dict[str, Any] = Body(...), admin: dict = Depends(require_admin)):
    throttle(str(admin["_id"]), "admin")
    setting: Setting = save_setting(update)
    return setting.model_dump()


@app.post("/api/admin/outbox/reconcile")
async def admin_reconcile_outbox(admin: dict = Depends(require_admin)):
    return await reconcile_outbox()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
