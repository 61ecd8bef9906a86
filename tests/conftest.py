"""Pytest fixtures for storefront tests."""

from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from esewa import EsewaGateway
from security import create_token
from settings import Settings, get_settings

CALLBACK_SIGNED_FIELDS = "transaction_code,status,total_amount,transaction_uuid,product_code,signed_field_names"

SHIPPING = {
    "name": "Sita Sharma",
    "email": "sita@example.com",
    "address": "Lazimpat 12",
    "city": "Kathmandu",
    "phone": "9800000000",
}


@pytest.fixture
def shipping():
    return dict(SHIPPING)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="test-jwt-secret",
        esewa_secret="test-esewa-secret",
        esewa_product_code="EPAYTEST",
        frontend_url="http://shop.test",
        api_url="http://api.test",
        delivery_charge=150,
    )


@pytest.fixture
def gateway(settings):
    return EsewaGateway(settings)


@pytest.fixture
def client(db, settings):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def _insert_user(db, name, email, role="user"):
    doc = {
        "name": name,
        "email": email,
        "hashed_password": "not-a-real-hash",
        "role": role,
        "is_blocked": False,
        "created_at": datetime.utcnow(),
    }
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def user(db):
    return _insert_user(db, "Sita", "sita@example.com")


@pytest.fixture
def other_user(db):
    return _insert_user(db, "Ram", "ram@example.com")


@pytest.fixture
def admin(db):
    return _insert_user(db, "Admin", "admin@example.com", role="admin")


@pytest.fixture
def auth(settings):
    """Build bearer headers for a user document."""

    def _auth(user_doc):
        return {"Authorization": f"Bearer {create_token(user_doc, settings)}"}

    return _auth


@pytest.fixture
def make_product(db):
    def _make(title="Denim Jacket", price=500.0, quantity=10, sold=0, color="Blue", collection="product"):
        doc = {
            "title": title,
            "slug": title.lower().replace(" ", "-"),
            "description": f"{title} description",
            "price": price,
            "category": "Clothing",
            "brand": "Monster",
            "color": color,
            "quantity": quantity,
            "sold": sold,
            "images": [],
            "ratings": [],
            "total_rating": 0,
        }
        if collection == "saleproduct":
            doc["sale_price"] = price * 0.8
        return str(db[collection].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def make_coupon(db):
    def _make(name="SAVE10", discount=10, days=7, user_id=None):
        doc = {
            "name": name,
            "discount": discount,
            "expiry": datetime.utcnow() + timedelta(days=days),
            "user_id": user_id,
        }
        return str(db["coupon"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def sign_callback(gateway):
    """Encode a gateway success callback the way eSewa does."""

    def _sign(transaction_uuid, total_amount, status="COMPLETE", transaction_code="000AE01",
              product_code="EPAYTEST", signed_field_names=CALLBACK_SIGNED_FIELDS):
        fields = {
            "transaction_code": transaction_code,
            "status": status,
            "total_amount": total_amount,
            "transaction_uuid": transaction_uuid,
            "product_code": product_code,
            "signed_field_names": signed_field_names,
        }
        names = signed_field_names.split(",")
        message = ",".join(f"{n}={fields[n]}" for n in names)
        fields["signature"] = gateway.sign(message)
        return fields

    return _sign
