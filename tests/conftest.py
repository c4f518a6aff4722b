"""Shared fixtures: in-memory database, signed webhook helper, seeded records."""

import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STALE_SWEEP_INTERVAL_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from confpay.common.config import settings
from confpay.common.db import Base
from confpay.common.state_machine import PaymentStatus
from confpay.services.reconciliation import main
from confpay.services.reconciliation.models import DiscountRecord, PaymentRecord, PricingConfig
from confpay.services.reconciliation.service import ReconciliationService


WEBHOOK_SECRET = "whsec_test_secret"
DISCOUNT_WEBHOOK_SECRET = "whsec_test_discount_secret"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def webhook_secrets(monkeypatch):
    optics = settings.verticals["optics"]
    monkeypatch.setattr(optics, "webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(optics, "discount_webhook_secret", DISCOUNT_WEBHOOK_SECRET)
    return optics


@pytest.fixture
def service(session_factory, webhook_secrets):
    return ReconciliationService(session_factory)


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.setattr(main, "service", service)
    return TestClient(main.app)


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_1") -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "api_version": "2024-06-20",
            "data": {"object": obj},
        }
    )


def checkout_session(session_id: str = "sess_1", **overrides) -> dict:
    obj = {
        "id": session_id,
        "object": "checkout.session",
        "payment_intent": "pi_1",
        "payment_status": "paid",
        "status": "complete",
        "customer_email": "attendee@example.org",
        "amount_total": 45000,
        "currency": "eur",
        "created": 1760000000,
        "expires_at": 1760086400,
        "metadata": {},
    }
    obj.update(overrides)
    return obj


def payment_intent(intent_id: str = "pi_1", **overrides) -> dict:
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "status": "succeeded",
        "amount": 45000,
        "currency": "eur",
        "created": 1760000000,
        "metadata": {},
    }
    obj.update(overrides)
    return obj


def add_payment(factory, session_id: str = "sess_1", **values) -> PaymentRecord:
    values.setdefault("vertical", "optics")
    values.setdefault("status", PaymentStatus.PENDING)
    values.setdefault("amount_total", Decimal("450.00"))
    values.setdefault("currency", "eur")
    with factory() as db:
        record = PaymentRecord(session_id=session_id, **values)
        db.add(record)
        db.commit()
        return record


def add_discount(factory, session_id: str = "sess_1", **values) -> DiscountRecord:
    values.setdefault("vertical", "optics")
    values.setdefault("status", PaymentStatus.PENDING)
    with factory() as db:
        record = DiscountRecord(session_id=session_id, **values)
        db.add(record)
        db.commit()
        return record


def add_pricing(factory, total: str = "450.00", vertical: str = "optics") -> PricingConfig:
    with factory() as db:
        pricing = PricingConfig(vertical=vertical, name="Speaker registration", total_price=Decimal(total), currency="eur")
        db.add(pricing)
        db.commit()
        return pricing


def ago(**kwargs) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**kwargs)
