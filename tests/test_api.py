import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
import payments


@pytest.fixture
def client(mock_db):
    return TestClient(main.app)


@pytest.fixture
def auth(make_user):
    def headers(email="ada@example.com", is_admin=False):
        user = make_user(email, is_admin=is_admin)
        return {"Authorization": f"Bearer {main.create_token(user)}"}, user
    return headers


def order_body(product_id, quantity=1, coupon_code=None):
    return {
        "cart": {"items": [{
            "product_id": product_id,
            "client_id": str(ObjectId()),
            "name": "Duck Tee",
            "price": 0,
            "quantity": quantity,
        }]},
        "coupon_code": coupon_code,
    }


def test_register_then_login(client):
    res = client.post("/auth/register", json={"name": "Ada", "email": "ada@example.com", "password": "s3cret!"})
    assert res.status_code == 200
    token = res.json()["token"]

    assert client.get("/me", headers={"Authorization": f"Bearer {token}"}).json()["email"] == "ada@example.com"
    assert client.post("/auth/register", json={"name": "Ada", "email": "ada@example.com",
                                               "password": "x"}).status_code == 400
    assert client.post("/auth/login", json={"email": "ada@example.com", "password": "nope"}).status_code == 401
    assert client.post("/auth/login", json={"email": "ada@example.com", "password": "s3cret!"}).status_code == 200


def test_place_order(client, auth, make_product, make_coupon):
    headers, user = auth()
    p1 = make_product(price=15, stock=10)
    make_coupon("SAVE10")

    res = client.post("/api/orders", json=order_body(p1, 3, "save10"), headers=headers)

    body = res.json()
    assert res.status_code == 200
    assert body["success"]
    assert body["data"]["total_price"] == 35

    detail = client.get(f"/api/orders/{body['data']['order_id']}", headers=headers).json()
    assert detail["discount_amount"] == 10
    assert detail["user_id"] == str(user["_id"])
    assert client.get("/api/orders/mine", headers=headers).json()["total_pages"] == 1


def test_orders_are_private(client, auth, make_product):
    owner, _ = auth()
    stranger, _ = auth("eve@example.com")
    order_id = client.post("/api/orders", json=order_body(make_product()), headers=owner).json()["data"]["order_id"]

    assert client.get(f"/api/orders/{order_id}", headers=stranger).status_code == 404


def test_order_requires_token(client, make_product):
    assert client.post("/api/orders", json=order_body(make_product())).status_code in (401, 403)


def test_fourth_order_in_a_minute_is_429(client, auth, make_product):
    headers, _ = auth()
    p1 = make_product(stock=100)
    for _ in range(3):
        assert client.post("/api/orders", json=order_body(p1), headers=headers).json()["success"]

    res = client.post("/api/orders", json=order_body(p1), headers=headers)

    assert res.status_code == 429
    assert res.json()["data"]["reason"] == "rate_limited"
    assert int(res.headers["Retry-After"]) > 0


def test_cart_price(client):
    res = client.post("/api/cart/price", json={
        "items": [{"product_id": str(ObjectId()), "client_id": "c1", "name": "Tee", "price": 20, "quantity": 2}],
        "shipping_address": {"full_name": "Ada", "phone": "1", "street": "1 Main", "city": "X",
                             "province": "Y", "postal_code": "1", "country": "US"},
    })

    body = res.json()
    assert body["items_price"] == 40
    assert body["delivery_date_index"] == 2
    assert body["shipping_price"] == 0
    assert body["tax_price"] == 6
    assert body["total_price"] == 46


def test_stock_lookup(client, make_product, reservations):
    p1 = make_product(stock=4)
    reservations.create(p1, 3, "someone", 4)

    data = client.post("/api/products/stock", json={"product_ids": [p1]}).json()["data"]

    assert data == [{"product_id": p1, "name": "Duck Tee", "actual_stock": 4, "effective_stock": 1,
                     "in_stock": True}]
    too_many = [str(ObjectId()) for _ in range(51)]
    assert client.post("/api/products/stock", json={"product_ids": too_many}).status_code == 400


def test_cart_validate(client, make_product):
    p1 = make_product(stock=1)
    hidden = make_product("Hidden", is_published=False)
    items = [
        {"product_id": p1, "client_id": "a", "name": "Duck Tee", "price": 15, "quantity": 2},
        {"product_id": hidden, "client_id": "b", "name": "Hidden", "price": 15, "quantity": 1},
    ]

    data = client.post("/api/cart/validate", json={"items": items}).json()["data"]

    assert data["has_invalid_items"]
    assert [i["reason"] for i in data["invalid_items"]] == ["insufficient_stock", "not_published"]


def test_coupon_validate_endpoint(client, make_coupon):
    make_coupon("SAVE10", min_order_value=50)

    ok = client.post("/api/coupons/validate", json={"code": " save10 ", "order_total": 80}).json()
    low = client.post("/api/coupons/validate", json={"code": "SAVE10", "order_total": 20}).json()

    assert ok["success"] and ok["data"]["discount_amount"] == 10
    assert not low["success"] and low["reason"] == "below_minimum"


def test_admin_routes_need_admin(client, auth):
    headers, _ = auth()
    assert client.get("/api/admin/coupons", headers=headers).status_code == 403
    assert client.put("/api/admin/orders/x/pay", headers=headers).status_code == 403


def test_admin_pays_and_delivers(client, auth, make_product, mock_db):
    customer, _ = auth()
    admin, _ = auth("root@example.com", is_admin=True)
    p1 = make_product(stock=2)
    order_id = client.post("/api/orders", json=order_body(p1, 2), headers=customer).json()["data"]["order_id"]

    assert client.put(f"/api/admin/orders/{order_id}/pay", headers=admin).json()["success"]
    assert mock_db["product"].find_one({"_id": ObjectId(p1)})["count_in_stock"] == 0
    assert client.put(f"/api/admin/orders/{order_id}/deliver", headers=admin).json()["success"]


def test_admin_settings_update_is_visible(client, auth):
    admin, _ = auth("root@example.com", is_admin=True)
    res = client.put("/api/admin/settings", headers=admin, json={
        "available_delivery_dates": [
            {"name": "Standard", "days_to_deliver": 4, "shipping_price": 5, "free_shipping_min_price": 0},
        ],
    })
    assert res.status_code == 200

    body = client.post("/api/cart/price", json={
        "items": [{"product_id": "p", "client_id": "c", "name": "Tee", "price": 100, "quantity": 1}],
        "shipping_address": {"full_name": "Ada", "phone": "1", "street": "1 Main", "city": "X",
                             "province": "Y", "postal_code": "1", "country": "US"},
    }).json()
    assert body["shipping_price"] == 5
    assert body["total_price"] == 120


class TestStripeWebhook:
    @pytest.fixture
    def signed(self, monkeypatch):
        monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", "whsec_test")

        def deliver(event):
            monkeypatch.setattr(payments.stripe.Webhook, "construct_event", lambda payload, sig, secret: event)
        return deliver

    @staticmethod
    def charge_event(order_id):
        return {
            "id": "evt_1",
            "type": "charge.succeeded",
            "data": {"object": {
                "amount": 3500,
                "metadata": {"orderId": order_id},
                "billing_details": {"email": "ada@example.com"},
            }},
        }

    def test_missing_signature(self, client):
        assert client.post("/api/webhooks/stripe", content=b"{}").status_code == 400

    def test_unconfigured_secret(self, client, monkeypatch):
        monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", None)
        res = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
        assert res.status_code == 500

    def test_other_events_acknowledged(self, client, signed):
        signed({"id": "evt_0", "type": "payment_intent.created", "data": {"object": {}}})
        res = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"})
        assert res.json() == {"received": True}

    def test_charge_marks_order_paid(self, client, signed, auth, make_product, mock_db):
        headers, _ = auth()
        p1 = make_product(stock=5)
        order_id = client.post("/api/orders", json=order_body(p1), headers=headers).json()["data"]["order_id"]
        signed(self.charge_event(order_id))

        res = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"})

        assert res.status_code == 200
        order = mock_db["order"].find_one({"_id": ObjectId(order_id)})
        assert order["is_paid"]
        assert order["payment_result"]["price_paid"] == "35.00"
        assert mock_db["product"].find_one({"_id": ObjectId(p1)})["count_in_stock"] == 4

        again = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"})
        assert again.json()["message"] == "Order already paid"

    def test_unknown_order(self, client, signed):
        signed(self.charge_event(str(ObjectId())))
        res = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"})
        assert res.status_code == 404

    def test_charge_without_billing_details(self, client, signed, auth, make_product, mock_db):
        headers, _ = auth()
        placed = client.post("/api/orders", json=order_body(make_product()), headers=headers).json()
        order_id = placed["data"]["order_id"]
        event = self.charge_event(order_id)
        del event["data"]["object"]["billing_details"]
        signed(event)

        res = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"})

        assert res.status_code == 200
        order = mock_db["order"].find_one({"_id": ObjectId(order_id)})
        assert order["is_paid"]
        assert order["payment_result"]["email_address"] is None
