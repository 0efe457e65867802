import hashlib
import hmac
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from cache import RateLimiter
from email_util import EmailError
from firebase_util import parse_order
from main import app, get_coupon_store, get_gateway, get_now, get_rate_limiter, get_webhook_processor
from mercadopago_util import PaymentGatewayError
from models import Coupon, PaymentInfo, PreferenceResponse
from payments import plan_transition
from settings import Settings, get_settings
from webhook import WebhookProcessor

WEBHOOK_SECRET = "test-webhook-secret"
ADMIN_KEY = "admin-key"
NOW = datetime(2025, 10, 25, 12, 0, tzinfo=timezone.utc)


def make_coupon(**overrides) -> Coupon:
    data = {
        "id": "c1",
        "code": "REGALO20",
        "discountValue": 20,
        "discountType": "percentage",
        "applicableProductIds": ["p1"],
        "validFrom": "2025-10-20T00:00:00Z",
        "validUntil": "2025-10-31T23:59:59Z",
        "active": True,
    }
    data.update(overrides)
    return Coupon.model_validate(data)


def signed_headers(data_id, request_id="req-123", ts="1700000000", secret=WEBHOOK_SECRET):
    message = f"id:{data_id};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return {"x-signature": f"ts={ts},v1={digest}", "x-request-id": request_id}


class FakeCouponStore:
    def __init__(self, coupons=()):
        self.coupons = {c.id: c for c in coupons}
        self.fail = False
        self._next_id = 100

    def find_by_code(self, code):
        if self.fail:
            raise ConnectionError("firestore unavailable")
        for coupon in self.coupons.values():
            if coupon.code == code:
                return coupon
        return None

    def list_active(self):
        if self.fail:
            raise ConnectionError("firestore unavailable")
        return [c for c in self.coupons.values() if c.active]

    def create(self, coupon):
        self._next_id += 1
        coupon_id = f"c{self._next_id}"
        self.coupons[coupon_id] = Coupon(**coupon.model_dump(), id=coupon_id)
        return coupon_id

    def update(self, coupon_id, coupon):
        if coupon_id not in self.coupons:
            return False
        self.coupons[coupon_id] = Coupon(**coupon.model_dump(), id=coupon_id)
        return True

    def delete(self, coupon_id):
        return self.coupons.pop(coupon_id, None) is not None


class FakeOrderStore:
    """Dict-backed order/product store running the same transition rules."""

    def __init__(self, orders=None, products=None):
        self.orders = orders or {}
        self.products = products or {}
        self.commits = []

    def commit_payment(self, order_id, payment):
        self.commits.append(order_id)
        order = parse_order(order_id, self.orders.get(order_id))
        if order is None:
            return None

        def read_stock(product_id):
            product = self.products.get(product_id)
            return None if product is None else product.get("stock", 0)

        transition = plan_transition(order, payment, read_stock)
        self.orders[order_id].update(transition.orderFields)
        for change in transition.stockChanges:
            self.products[change.productId]["stock"] = change.after
        return order, transition


class FakeGateway:
    def __init__(self, payments=None):
        self.payments = payments or {}
        self.preferences = []

    def get_payment(self, payment_id):
        if payment_id not in self.payments:
            raise PaymentGatewayError(f"payment {payment_id} not found")
        return PaymentInfo.model_validate({"id": payment_id, **self.payments[payment_id]})

    def create_preference(self, body, idempotency_key):
        self.preferences.append((body, idempotency_key))
        return PreferenceResponse(preferenceId="pref-1", initPoint="https://mp/init", sandboxInitPoint="https://mp/sandbox")


class FakeMailer:
    def __init__(self):
        self.sent = []
        self.fail = False
        self.error = EmailError("smtp down")

    def send_order_confirmation(self, order):
        if self.fail:
            raise self.error
        self.sent.append(order)
        return "msg-1"


@pytest.fixture
def settings():
    return Settings(
        app_env="test",
        admin_api_key=ADMIN_KEY,
        mercadopago_access_token="TEST-token",
        mercadopago_public_key="TEST-public",
        mercadopago_webhook_secret=WEBHOOK_SECRET,
        base_url="https://tienda.example.cl",
        resend_api_key="re_test",
        coupon_rate_limit=3,
        coupon_rate_window=60,
    )


@pytest.fixture
def coupon_store():
    return FakeCouponStore([make_coupon()])


@pytest.fixture
def order_store():
    return FakeOrderStore(
        orders={
            "order-1": {
                "status": "pending_payment",
                "customerName": "Ana Pérez",
                "customerEmail": "ana@example.cl",
                "items": [
                    {"productId": "p1", "quantity": 2, "unitPrice": 10000, "name": "Lámpara"},
                    {"productId": "p2", "quantity": 5, "unitPrice": 2000, "name": "Taza"},
                ],
            },
        },
        products={"p1": {"stock": 10}, "p2": {"stock": 3}},
    )


@pytest.fixture
def gateway():
    return FakeGateway({
        "pay-1": {"status": "approved", "status_detail": "accredited", "external_reference": "order-1",
                  "transaction_amount": 30000, "payment_method_id": "visa", "payment_type_id": "credit_card",
                  "date_approved": "2025-10-25T12:00:00Z", "date_created": "2025-10-25T11:59:00Z"},
        "pay-2": {"status": "approved", "external_reference": "undefined"},
        "pay-3": {"status": "rejected", "status_detail": "cc_rejected_other_reason", "external_reference": "order-1"},
        "pay-4": {"status": "approved", "external_reference": "missing-order"},
    })


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def processor(gateway, order_store, mailer):
    return WebhookProcessor(gateway=gateway, orders=order_store, mailer=mailer)


@pytest.fixture
def client(settings, coupon_store, gateway, processor):
    limiter = RateLimiter(limit=settings.coupon_rate_limit, window=settings.coupon_rate_window)
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_coupon_store] = lambda: coupon_store
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_webhook_processor] = lambda: (lambda: processor)
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_now] = lambda: NOW
    yield TestClient(app)
    app.dependency_overrides.clear()
