"""Pytest fixtures for the store backend tests."""

import hashlib
import hmac
import threading
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import CouponPolicy, Settings
from database import ensure_indexes
from gateway import PaymentGateway, verify_signature

SECRET = "rzp_test_secret"

ADDRESS = {
    "name": "Ash Ketchum",
    "street": "1 Route Road",
    "city": "Pallet Town",
    "state": "Kanto",
    "zipCode": "100001",
    "country": "India",
    "phone": "9876543210",
}


class FakeGateway(PaymentGateway):
    """In-memory payment provider that records what it was asked to do."""

    def __init__(self, secret=SECRET):
        self.secret = secret
        self.remote_orders = {}
        self.payments = {}
        self.links = {}
        self.refunds = []
        self.fetch_error = None
        self.refund_error = None
        self._seq = 0
        self._lock = threading.Lock()

    def _next(self, prefix):
        with self._lock:
            self._seq += 1
            return f"{prefix}_{self._seq:04d}"

    def create_remote_order(self, amount_minor, currency, receipt, notes=None):
        remote_id = self._next("order")
        self.remote_orders[remote_id] = {
            "id": remote_id,
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
            "status": "created",
        }
        return self.remote_orders[remote_id]

    def add_payment(self, remote_order_id=None, status="captured", amount=None):
        """Record a payment; the amount defaults to what the remote order asked for."""
        if amount is None and remote_order_id in self.remote_orders:
            amount = self.remote_orders[remote_order_id]["amount"]
        payment_id = self._next("pay")
        self.payments[payment_id] = {"id": payment_id, "order_id": remote_order_id, "status": status, "amount": amount}
        return payment_id

    def pay_link(self, link_id, status="captured", amount=None):
        link = self.links[link_id]
        amount = link["amount"] if amount is None else amount
        payment_id = self.add_payment(link["order_id"], status=status, amount=amount)
        link["payments"].append({"payment_id": payment_id, "amount": amount, "status": status})
        if status == "captured":
            link["status"] = "paid"
        return payment_id

    def fetch_payments_for_order(self, remote_order_id):
        if self.fetch_error is not None:
            raise self.fetch_error
        return [p for p in self.payments.values() if p["order_id"] == remote_order_id]

    def fetch_payment(self, payment_id):
        return self.payments[payment_id]

    def create_payment_link(self, amount_minor, currency, description, customer, callback_url, notes=None):
        link_id = self._next("plink")
        self.links[link_id] = {
            "id": link_id,
            "amount": amount_minor,
            "description": description,
            "customer": customer,
            "callback_url": callback_url,
            "short_url": f"https://rzp.io/i/{link_id}",
            "order_id": self._next("order"),
            "payments": [],
            "status": "created",
        }
        return self.links[link_id]

    def fetch_payment_link(self, payment_link_id):
        return self.links[payment_link_id]

    def refund(self, payment_id, amount_minor=None):
        if self.refund_error is not None:
            raise self.refund_error
        record = {"id": self._next("rfnd"), "payment_id": payment_id, "amount": amount_minor}
        self.refunds.append(record)
        return record

    def verify_signature(self, remote_order_id, remote_payment_id, supplied_signature):
        return verify_signature(remote_order_id, remote_payment_id, supplied_signature, self.secret)


class AtomicCollection:
    """mongomock collection whose calls run one at a time.

    MongoDB applies each single-document write atomically; mongomock does a
    find followed by an update, so threaded tests serialize calls here.
    """

    def __init__(self, collection, lock):
        self._collection = collection
        self._lock = lock

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def locked(*args, **kwargs):
            with self._lock:
                return attr(*args, **kwargs)

        return locked


class AtomicDatabase:
    def __init__(self, database):
        self._database = database
        self._lock = threading.RLock()

    def __getitem__(self, name):
        return AtomicCollection(self._database[name], self._lock)

    def __getattr__(self, name):
        return getattr(self._database, name)


def sign(remote_order_id, remote_payment_id, secret=SECRET):
    return hmac.new(secret.encode(), f"{remote_order_id}|{remote_payment_id}".encode(), hashlib.sha256).hexdigest()


@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    database = client["pokestash_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def atomic_db(db):
    """The same database, with each collection call applied atomically."""
    return AtomicDatabase(db)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def settings():
    return Settings(
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=SECRET,
        coupon_policy=CouponPolicy.SKIP,
        log_json=False,
    )


@pytest.fixture
def signer():
    return sign


@pytest.fixture
def address():
    return dict(ADDRESS)


@pytest.fixture
def now():
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def make_product(db):
    def _make(name="Pikachu Sticker", price=40, stock=10, **extra):
        doc = {
            "name": name,
            "description": f"{name} vinyl sticker",
            "price": price,
            "images": [f"/uploads/{name.lower().replace(' ', '-')}.png"],
            "stock": stock,
            "salesCount": 0,
            "status": "active",
            "seller": "seller-1",
        }
        doc.update(extra)
        return db["product"].insert_one(doc).inserted_id

    return _make


@pytest.fixture
def make_coupon(db, now):
    def _make(code="SAVE10", discount_type="percentage", discount_value=10, **extra):
        doc = {
            "code": code,
            "discountType": discount_type,
            "discountValue": discount_value,
            "minPurchaseAmount": 0,
            "maxDiscountAmount": None,
            "validFrom": now - timedelta(days=1),
            "validUntil": now + timedelta(days=30),
            "usageLimit": None,
            "usedCount": 0,
            "isActive": True,
            "applicableTo": "all",
        }
        doc.update(extra)
        return db["coupon"].insert_one(doc).inserted_id

    return _make


@pytest.fixture
def api_client(db, gateway, settings):
    """Test client wired to the in-memory database and fake gateway."""
    from database import get_db
    from main import app, get_gateway, get_settings

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user_id="user-1", role="customer"):
    return {"X-User-Id": user_id, "X-User-Role": role}


@pytest.fixture
def headers():
    return auth
