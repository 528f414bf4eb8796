import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_hotel_payments.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import pytest
from sqlalchemy.orm import sessionmaker

from hotel_payments.config import GatewayConfig
from hotel_payments.database import Base, build_engine
from hotel_payments.models import Booking
from hotel_payments.webhooks import compute_signature

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_payments_ledger.db"
engine = build_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

WEBHOOK_SECRET = "whsec_test"
TIMESTAMP = "1718000000"

TEST_CONFIG = GatewayConfig(
    secret_key="sk_test_123",
    publishable_key="pk_test_123",
    api_url="https://api.sandbox.moyasar.com/v1/",
    webhook_secret=WEBHOOK_SECRET,
    environment="test",
)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def booking(db):
    b = Booking(id="B1", total_amount=500, paid_amount=0, balance=500)
    db.add(b)
    db.commit()
    return b


def webhook_body(event, payment_id="P1", amount=19900, metadata=None, **payment_fields):
    payment = {
        "id": payment_id,
        "amount": amount,
        "currency": "SAR",
        "status": "paid",
        "metadata": metadata or {},
        "created_at": "2024-06-01T10:00:00.000Z",
    }
    payment.update(payment_fields)
    return json.dumps({"event": event, "payment": payment}).encode()


def signed_headers(body, timestamp=TIMESTAMP, secret=WEBHOOK_SECRET, prefix=""):
    return {
        "X-Moyasar-Signature": prefix + compute_signature(body, timestamp, secret),
        "X-Moyasar-Timestamp": timestamp,
    }
