"""Pytest fixtures for the storefront tests."""

import asyncio
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from shared.utils import settings
from shared.security_config import limiter
from app.main import app

PASSWORD = "Secret123"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    # mongomock has no multi-document transactions
    monkeypatch.setattr(settings, "MONGO_TRANSACTIONS", False)
    monkeypatch.setattr(limiter, "enabled", False)


@pytest.fixture
def mongo_client():
    return AsyncMongoMockClient()


@pytest.fixture
def db(mongo_client):
    return mongo_client["storefront_test"]


@pytest.fixture
def run():
    """Run a coroutine from synchronous test code."""
    return asyncio.run


@pytest.fixture
def api(mongo_client, db):
    """Test client bound to a fresh in-memory database (startup hooks are skipped)."""
    app.mongodb_client = mongo_client
    app.mongodb = db
    return TestClient(app)


def register(api, username, email=None):
    response = api.post("/auth/register", json={
        "username": username,
        "email": email or f"{username}@example.com",
        "password": PASSWORD,
        "full_name": username.title(),
    })
    assert response.status_code == 200, response.text
    return response.json()["data"]


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(api, db, run):
    session = register(api, "admin")
    run(db.users.update_one({"username": "admin"}, {"$set": {"role": "admin"}}))
    return auth(session["access_token"])


@pytest.fixture
def customer(api):
    return register(api, "alice")


@pytest.fixture
def customer_headers(customer):
    return auth(customer["access_token"])


@pytest.fixture
def catalog(api, admin_headers):
    """One category, one supplier, a stocked widget and a dropshipped gadget."""
    category = api.post("/categories", headers=admin_headers, json={
        "name": "Gear", "slug": "gear", "description": "Everyday gear",
    }).json()["data"]
    supplier = api.post("/suppliers", headers=admin_headers, json={
        "name": "Acme Supply", "contact_email": "orders@acme.example.com",
    }).json()["data"]
    widget = api.post("/products", headers=admin_headers, json={
        "name": "Widget",
        "description": "A sturdy widget",
        "price": "10.00",
        "category_id": category["id"],
        "inventory": 5,
    }).json()["data"]
    gadget = api.post("/products", headers=admin_headers, json={
        "name": "Gadget",
        "description": "Shipped straight from the supplier",
        "price": "25.50",
        "category_id": category["id"],
        "supplier_id": supplier["id"],
        "is_dropshipped": True,
    }).json()["data"]
    return {"category": category, "supplier": supplier, "widget": widget, "gadget": gadget}


@pytest.fixture
def make_coupon(api, admin_headers):
    def _make(code="SAVE10", **overrides):
        now = datetime.utcnow()
        payload = {
            "code": code,
            "discount_type": "percentage",
            "discount_value": "10",
            "starts_at": (now - timedelta(days=1)).isoformat(),
            "expires_at": (now + timedelta(days=1)).isoformat(),
        }
        payload.update(overrides)
        response = api.post("/coupons", headers=admin_headers, json=payload)
        assert response.status_code == 200, response.text
        return response.json()["data"]
    return _make


def shipping():
    return {
        "shipping_address": "1 Market Street",
        "shipping_city": "Springfield",
        "shipping_state": "IL",
        "shipping_zip": "62701",
    }
