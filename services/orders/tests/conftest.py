"""Pytest fixtures for the orders service tests."""

import asyncio
import os
from datetime import datetime, timedelta

# Settings are read at import time: point the service at an in-memory
# database and switch off external integrations before importing it
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["WEBHOOK_URLS"] = ""
os.environ["PAYMENT_SIMULATION_DELAY"] = "0"
os.environ["PRESCRIPTION_OCR_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from pharmashop import config, models
from pharmashop.clients import storage_client
from pharmashop.database import Base, SessionLocal, engine
from pharmashop.exceptions import UpstreamFailure
from pharmashop.main import app

SHIPPING = 2000
ADDRESS = {
    "fullName": "Jane Doe",
    "address": "12 Rue X",
    "city": "Douala",
    "country": "Cameroun",
}


def make_token(user_id, email="user@example.com", role="user", expires_in=timedelta(hours=1)):
    payload = {"sub": user_id, "email": email, "role": role, "exp": datetime.utcnow() + expires_in}
    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.ALGORITHM)


def auth_headers(user, role=None):
    token = make_token(user.id, email=user.email, role=role or user.role)
    return {"Authorization": f"Bearer {token}"}


def order_body(items, total, address=ADDRESS, **extra):
    body = {"items": items, "shippingAddress": address, "totalAmount": total}
    body.update(extra)
    return body


def running_on_event_loop():
    """True when called from inside a running asyncio event loop."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


@pytest.fixture(autouse=True)
def reset_database():
    """Recreate every table so each test starts empty."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


def _add(db, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture
def customer(db):
    return _add(db, models.User(name="Jane Doe", email="jane@example.com", role="user"))


@pytest.fixture
def other_customer(db):
    return _add(db, models.User(name="Paul Mbarga", email="paul@example.com", role="user"))


@pytest.fixture
def admin(db):
    return _add(db, models.User(name="Admin", email="admin@example.com", role="admin"))


@pytest.fixture
def paracetamol(db):
    return _add(db, models.Product(name="Paracetamol 500mg", price=1200, stock=10))


@pytest.fixture
def amoxicillin(db):
    return _add(db, models.Product(name="Amoxicillin 1g", price=3500, stock=5, prescription_required=True))


@pytest.fixture
def discontinued(db):
    return _add(db, models.Product(name="Old syrup", price=800, stock=50, is_active=False))


class FakeStorage:
    """Records uploads and deletions instead of calling the storage API."""

    def __init__(self):
        self.uploads = []
        self.deleted = []
        self.fail_upload = False

    async def upload_file(self, data, filename, content_type, folder=None):
        if self.fail_upload:
            raise UpstreamFailure("Failed to upload prescription", detail="storage down")
        self.uploads.append((filename, content_type, len(data)))
        return f"https://res.cloudinary.com/demo/image/upload/v1/pharmashop/prescriptions/{filename}"

    async def delete_file(self, url):
        self.deleted.append(url)
        return True


@pytest.fixture
def fake_storage(monkeypatch):
    storage = FakeStorage()
    monkeypatch.setattr(storage_client, "upload_file", storage.upload_file)
    monkeypatch.setattr(storage_client, "delete_file", storage.delete_file)
    return storage


@pytest.fixture
def place_order(client, customer, paracetamol):
    """Submit a valid order for two units of paracetamol as ``customer``."""
    def _place(user=None, quantity=2):
        user = user or customer
        body = order_body(
            [{"productId": paracetamol.id, "quantity": quantity, "price": 1200}],
            1200 * quantity + SHIPPING,
        )
        response = client.post("/orders", json=body, headers=auth_headers(user))
        assert response.status_code == 201, response.json()
        return response.json()["data"]
    return _place
