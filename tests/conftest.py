"""Pytest fixtures for shop API tests."""

from datetime import datetime, timezone

import mongomock
from bson import ObjectId
import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def mongo_db(monkeypatch):
    """In-memory database patched in wherever the app looks for `db`."""
    import database
    import main

    mock_db = mongomock.MongoClient()["shop_test"]
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(main, "db", mock_db)
    return mock_db


@pytest.fixture
def invoice_dir(tmp_path, monkeypatch):
    import invoices

    directory = tmp_path / "invoices"
    monkeypatch.setattr(invoices, "INVOICE_DIR", str(directory))
    return directory


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture outgoing email instead of calling the mail provider."""
    import notifications

    sent = []

    def fake_send(to, subject, text, attachments=None):
        sent.append({"to": to, "subject": subject, "text": text, "attachments": attachments or []})
        return {"id": f"email-{len(sent)}"}

    monkeypatch.setattr(notifications, "send_email", fake_send)
    return sent


@pytest.fixture
def client(mongo_db, invoice_dir, sent_emails):
    from main import app

    return TestClient(app)


@pytest.fixture
def make_user(mongo_db):
    """Insert a user and return (user_id, auth headers)."""
    from auth import hash_password, issue_token

    def _make(email="alice@example.com", role="user", address=None, name="Alice"):
        if address is None:
            address = {"street": "1 Main St", "city": "Springfield", "postal_code": "12345"}
        user_id = str(mongo_db["user"].insert_one({
            "name": name,
            "email": email,
            "password_hash": hash_password("secret"),
            "role": role,
            "address": address,
        }).inserted_id)
        return user_id, {"Authorization": f"Bearer {issue_token(user_id)}"}

    return _make


@pytest.fixture
def make_product(mongo_db):
    def _make(name="Grinder", price=10.0, stock=5, cost=None, discount=0, discounted_price=None):
        return str(mongo_db["product"].insert_one({
            "name": name,
            "model": "M1",
            "serial_number": f"SN-{name}",
            "price": price,
            "cost": cost,
            "stock": stock,
            "discount": discount,
            "discounted_price": discounted_price,
            "distributor_info": "Distributor",
        }).inserted_id)

    return _make


@pytest.fixture
def make_order(mongo_db):
    """Insert an order directly, bypassing checkout."""

    def _make(user_id, product_id, quantity=2, price=10.0, status="delivered", created_at=None):
        created_at = created_at or datetime.now(timezone.utc)
        return str(mongo_db["order"].insert_one({
            "user_id": user_id,
            "items": [{"product_id": product_id, "name": "Grinder", "quantity": quantity,
                       "price_at_purchase": price, "cost_at_purchase": price / 2}],
            "total": price * quantity,
            "status": status,
            "shipping_address": {"street": "1 Main St", "city": "Springfield", "postal_code": "12345"},
            "cancelled_at": None,
            "created_at": created_at,
        }).inserted_id)

    return _make


@pytest.fixture
def stock_of(mongo_db):
    def _stock(product_id):
        return mongo_db["product"].find_one({"_id": ObjectId(product_id)})["stock"]

    return _stock
