import hashlib
import hmac
import itertools
import os
from datetime import datetime, timezone
from decimal import Decimal

os.environ["DATABASE_URL"] = "sqlite:///./test_payhooks.db"
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["CARD_WEBHOOK_SECRET"] = "card-secret"
os.environ["AGGREGATOR_WEBHOOK_SECRET"] = "aggregator-secret"
os.environ["STATUS_CACHE_BACKEND"] = "memory"
os.environ["STATUS_TRANSITIONS"] = "log"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from payhooks.auth import verify_token
from payhooks.database import Base
from payhooks.main import app as fastapi_app
from payhooks.models import Order, Payment
from payhooks.reconciliation import ReconciliationEngine
from payhooks.status_cache import InMemoryStatusCache
from payhooks.stores import OrderStore, PaymentStore

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_payhooks.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

_order_seq = itertools.count(100000)


def sign(secret: str, raw: bytes, digestmod=hashlib.sha256) -> str:
    return hmac.new(secret.encode(), raw, digestmod).hexdigest()


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def orders():
    return OrderStore(TestingSessionLocal)


@pytest.fixture
def payments():
    return PaymentStore(TestingSessionLocal)


@pytest.fixture
def status_cache():
    return InMemoryStatusCache()


@pytest.fixture
def reconciler(orders, payments, status_cache):
    return ReconciliationEngine(payments, orders, status_cache)


@pytest.fixture
def make_payment():
    """Insert a Payment (and by default a linked Order) straight into the test DB."""

    def _make(api_ref, status="pending", with_order=True, payment_id=None, **fields):
        db = TestingSessionLocal()
        order_id = None
        if with_order:
            order_id = f"ord_{api_ref}"
            db.add(Order(
                id=order_id,
                order_number=f"Order-20250101-{next(_order_seq)}",
                user_id="user-1",
                status="pending",
                payment_status=status,
                total_amount=Decimal("2500.00"),
                created_at=datetime.now(timezone.utc),
            ))
        payment_id = payment_id or f"pay_{api_ref}"
        payment = Payment(
            id=payment_id,
            order_id=order_id,
            api_ref=api_ref,
            amount=Decimal("2500.00"),
            currency="KES",
            status=status,
            provider=fields.pop("provider", "card"),
            meta={},
            **fields,
        )
        db.add(payment)
        db.commit()
        db.close()
        return payment_id, order_id

    return _make


@pytest.fixture
def client(monkeypatch, status_cache):
    monkeypatch.setattr("payhooks.dependencies.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("payhooks.dependencies.memory_status_cache", status_cache)
    fastapi_app.dependency_overrides[verify_token] = lambda: {"user_id": "user-1"}
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
