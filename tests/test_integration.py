import dataclasses
import json
import threading
from datetime import datetime
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import TEST_CONFIG, TestingSessionLocal, signed_headers, webhook_body
from hotel_payments import main
from hotel_payments.auth import verify_token
from hotel_payments.client import PaymentClient
from hotel_payments.errors import ApplierError
from hotel_payments.events import EventRouter
from hotel_payments.ledger import BookingPaymentApplier
from hotel_payments.main import create_app
from hotel_payments.models import Booking, BookingPayment, Profile, Subscription

NOW = datetime(2024, 3, 1, 8, 0, 0)


def gateway(request):
    """Stand-in for the Moyasar API."""
    if request.method == "POST" and request.url.path == "/v1/payments":
        body = json.loads(request.content)
        return httpx.Response(
            201,
            json={
                "id": "P1",
                "status": "initiated",
                "amount": body["amount"],
                "currency": body["currency"],
                "source": {"type": "url", "transaction_url": "https://checkout.example/P1"},
                "metadata": body["metadata"],
            },
        )
    if request.method == "POST" and request.url.path == "/v1/payments/P1/refund":
        return httpx.Response(200, json={"id": "P1", "status": "refunded", "amount": 19900, "refunded": 19900})
    return httpx.Response(404, json={"type": "api_error", "message": "Object not found"})


def make_client(app):
    app.state.clock = lambda: NOW
    app.state.payment_client = PaymentClient(TEST_CONFIG, transport=httpx.MockTransport(gateway))
    app.dependency_overrides[verify_token] = lambda: True
    return TestClient(app)


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr("hotel_payments.main.SessionLocal", TestingSessionLocal)
    app = create_app(TEST_CONFIG)
    with make_client(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def booking():
    db = TestingSessionLocal()
    db.add(Booking(id="B1", total_amount=500, paid_amount=0, balance=500))
    db.commit()
    db.close()


def deliver(client, event, path="/webhook", method="POST", headers=None, **kwargs):
    body = webhook_body(event, **kwargs)
    return client.request(method, path, content=body, headers=headers or signed_headers(body))


def booking_state():
    db = TestingSessionLocal()
    booking = db.get(Booking, "B1")
    entries = {p.gateway_payment_id: p.status for p in db.query(BookingPayment).all()}
    state = (booking.paid_amount, booking.balance, entries)
    db.close()
    return state


def test_full_booking_payment_lifecycle_integration(client, booking):
    """
    Test the full lifecycle:
    1. Create a hosted checkout (API -> gateway mocked)
    2. Webhook success, delivered twice (gateway -> API -> ledger)
    3. Refund (API -> gateway mocked), then the refund webhook
    """

    # --- 1. CHECKOUT ---
    response = client.post("/checkout", json={"amount": "199", "metadata": {"booking_id": "B1"}})

    assert response.status_code == 200
    assert response.json()["checkout_url"] == "https://checkout.example/P1"
    assert response.json()["amount"] == 19900

    # --- 2. WEBHOOK SUCCESS ---
    for _ in range(2):
        webhook_response = deliver(client, "payment.succeeded", metadata={"booking_id": "B1"})
        assert webhook_response.status_code == 200
        assert webhook_response.json() == {"processed": True}

    assert booking_state() == (Decimal("199"), Decimal("301"), {"P1": "completed"})

    # --- 3. REFUND ---
    refund_response = client.post("/payments/P1/refund")
    assert refund_response.status_code == 200
    assert refund_response.json()["payment"]["refunded_amount"] == 19900

    webhook_response = deliver(client, "payment.refunded", metadata={"booking_id": "B1"}, status="refunded")
    assert webhook_response.status_code == 200

    assert booking_state() == (Decimal("0"), Decimal("500"), {"P1": "refunded"})


def test_bad_signature_leaves_store_untouched(client, booking):
    body = webhook_body("payment.succeeded", metadata={"booking_id": "B1"})
    headers = signed_headers(body, secret="not-the-secret")

    response = client.post("/webhook", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid signature"
    assert booking_state() == (Decimal("0"), Decimal("500"), {})


def test_missing_headers_are_rejected(client, booking):
    body = webhook_body("payment.succeeded", metadata={"booking_id": "B1"})
    headers = signed_headers(body)

    no_signature = client.post("/webhook", content=body, headers={"X-Moyasar-Timestamp": headers["X-Moyasar-Timestamp"]})
    no_timestamp = client.post("/webhook", content=body, headers={"X-Moyasar-Signature": headers["X-Moyasar-Signature"]})

    assert no_signature.status_code == 400
    assert no_timestamp.status_code == 400
    assert booking_state()[2] == {}


def test_alternate_route_and_timestamp_header(client, booking):
    body = webhook_body("payment.succeeded", metadata={"booking_id": "B1"})
    signed = signed_headers(body, prefix="sha256=")
    headers = {"X-Moyasar-Signature": signed["X-Moyasar-Signature"], "X-Timestamp": signed["X-Moyasar-Timestamp"]}

    response = client.put("/payments/moyasar", content=body, headers=headers)

    assert response.status_code == 200
    assert booking_state()[2] == {"P1": "completed"}


def test_unknown_event_is_acknowledged(client, booking):
    response = deliver(client, "payment.voided", metadata={"booking_id": "B1"})

    assert response.status_code == 200
    assert booking_state()[2] == {}


def test_malformed_signed_payload_is_rejected(client):
    body = b'{"event": "payment.succeeded"}'
    response = client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"


def test_subscription_lifecycle_over_webhooks(client):
    response = deliver(client, "payment.succeeded", payment_id="S1", metadata={"user_id": "U1", "plan_id": "monthly"})
    assert response.status_code == 200

    db = TestingSessionLocal()
    subscription = db.query(Subscription).filter_by(user_id="U1").one()
    assert subscription.current_period_end == datetime(2024, 4, 1, 8, 0, 0)
    assert db.get(Profile, "U1").is_premium is True
    db.close()

    response = deliver(client, "payment.refunded", payment_id="S1", metadata={"user_id": "U1"})
    assert response.status_code == 200

    db = TestingSessionLocal()
    assert db.query(Subscription).filter_by(user_id="U1").one().status == "refunded"
    assert db.get(Profile, "U1").is_premium is False
    db.close()


def test_unknown_plan_is_a_bad_request(client):
    response = deliver(client, "payment.succeeded", payment_id="S1", metadata={"user_id": "U1", "plan_id": "weekly"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Unknown subscription plan"


def test_store_failure_asks_gateway_to_retry(client, booking, mocker):
    mocker.patch.object(BookingPaymentApplier, "record", side_effect=ApplierError("database is locked"))

    response = deliver(client, "payment.succeeded", metadata={"booking_id": "B1"})

    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to process webhook"


def test_webhook_without_configured_secret(monkeypatch):
    monkeypatch.setattr("hotel_payments.main.SessionLocal", TestingSessionLocal)
    app = create_app(dataclasses.replace(TEST_CONFIG, webhook_secret=None))

    with TestClient(app) as c:
        response = deliver(c, "payment.succeeded", metadata={"booking_id": "B1"})

    assert response.status_code == 500


def test_dispatch_runs_off_the_event_loop(client, booking, mocker):
    threads = {}
    real_run = main.run_in_threadpool
    real_dispatch = EventRouter.dispatch

    async def run(func, *args):
        threads["loop"] = threading.get_ident()
        return await real_run(func, *args)

    def dispatch(self, event):
        threads["dispatch"] = threading.get_ident()
        return real_dispatch(self, event)

    mocker.patch("hotel_payments.main.run_in_threadpool", new=run)
    mocker.patch.object(EventRouter, "dispatch", new=dispatch)

    response = deliver(client, "payment.succeeded", metadata={"booking_id": "B1"})

    assert response.status_code == 200
    assert threads["dispatch"] != threads["loop"]
    assert booking_state() == (Decimal("199"), Decimal("301"), {"P1": "completed"})
