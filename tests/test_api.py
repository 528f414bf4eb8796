import os
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from conftest import TEST_CONFIG, TestingSessionLocal
from hotel_payments.auth import verify_token
from hotel_payments.client import PaymentClient
from hotel_payments.errors import (
    AuthenticationError,
    ConfigurationError,
    GatewayError,
    GatewayTimeout,
    GatewayValidationError,
    NameResolutionError,
)
from hotel_payments.main import create_app
from hotel_payments.schemas import PaymentList, PaymentRecord


def payment_record(**fields):
    data = {"id": "pay_123", "amount": 19900, "currency": "SAR", "status": "initiated"}
    data.update(fields)
    return PaymentRecord.model_validate(data)


@pytest.fixture
def test_app():
    return create_app(TEST_CONFIG)


@pytest.fixture
def client(monkeypatch, test_app):
    monkeypatch.setattr("hotel_payments.main.SessionLocal", TestingSessionLocal)
    # Mock auth verification
    test_app.dependency_overrides[verify_token] = lambda: True
    with TestClient(test_app) as c:
        yield c
    test_app.dependency_overrides.clear()


def test_create_payment_success(client, mocker):
    create = mocker.patch.object(PaymentClient, "create_payment", return_value=payment_record())

    response = client.post(
        "/payments",
        json={
            "amount": "199.00",
            "source": {
                "type": "creditcard",
                "name": "Guest Name",
                "number": "4111111111111111",
                "cvc": "123",
                "month": 12,
                "year": 99,
            },
            "metadata": {"booking_id": "B1"},
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["payment"]["id"] == "pay_123"
    assert body["payment"]["amount"] == 19900

    intent = create.call_args.args[0]
    assert intent.amount == Decimal("199.00")
    assert intent.source.type == "creditcard"
    assert intent.metadata == {"booking_id": "B1"}


def test_create_payment_invalid_amount_never_reaches_gateway(client, mocker):
    request = mocker.patch("httpx.AsyncClient.request")

    response = client.post("/payments", json={"amount": "0.50", "source": {"type": "url"}})

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"].startswith("Invalid payment amount: 0.50")
    request.assert_not_called()


def test_create_payment_rejects_unknown_source_type(client):
    response = client.post("/payments", json={"amount": "10", "source": {"type": "cash"}})
    assert response.status_code == 422


def test_checkout_returns_hosted_page(client, mocker):
    record = payment_record(source={"type": "url", "transaction_url": "https://checkout.example/pay_123"})
    checkout = mocker.patch.object(PaymentClient, "create_checkout", return_value=record)

    response = client.post("/checkout", json={"amount": "199", "metadata": {"user_id": "U1", "plan_id": "monthly"}})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "checkout_url": "https://checkout.example/pay_123",
        "payment_id": "pay_123",
        "amount": 19900,
        "currency": "SAR",
        "status": "initiated",
    }
    assert checkout.call_args.kwargs["metadata"] == {"user_id": "U1", "plan_id": "monthly"}


def test_list_payments_passes_filters(client, mocker):
    listing = mocker.patch.object(
        PaymentClient, "list_payments", return_value=PaymentList(items=[payment_record()], has_more=False)
    )

    response = client.get("/payments", params={"from": "2024-01-01", "status": "paid", "page": 2})

    assert response.status_code == 200
    assert response.json()["items"][0]["id"] == "pay_123"
    listing.assert_called_once_with(
        from_="2024-01-01", to=None, status="paid", source_type=None, page=2, per_page=None
    )


def test_get_payment(client, mocker):
    mocker.patch.object(PaymentClient, "get_payment", return_value=payment_record(status="paid"))

    response = client.get("/payments/pay_123")

    assert response.status_code == 200
    assert response.json()["payment"]["status"] == "paid"


def test_capture_without_body_captures_full_amount(client, mocker):
    capture = mocker.patch.object(PaymentClient, "capture_payment", return_value=payment_record(status="captured"))

    response = client.post("/payments/pay_123/capture")

    assert response.status_code == 200
    capture.assert_called_once_with("pay_123", amount=None)


def test_refund_payment_success(client, mocker):
    refund = mocker.patch.object(
        PaymentClient, "refund_payment", return_value=payment_record(status="refunded", refunded=5000)
    )

    response = client.post("/payments/pay_123/refund", json={"amount": "50", "reason": "early checkout"})

    assert response.status_code == 200
    assert response.json()["payment"]["refunded_amount"] == 5000
    refund.assert_called_once_with("pay_123", amount=Decimal("50"), reason="early checkout")


@pytest.mark.parametrize(
    "error, status_code",
    [
        (GatewayTimeout("read timed out"), 504),
        (NameResolutionError("no such host"), 503),
        (AuthenticationError("Authentication failed: Invalid key", upstream_message="Invalid key"), 502),
        (GatewayValidationError("Validation error", status_code=400, upstream_message="id is invalid"), 400),
        (GatewayError("Moyasar payment retrieval failed", status_code=500), 502),
        (ConfigurationError("MOYASAR_SECRET_KEY environment variable is required"), 500),
    ],
)
def test_payment_errors_map_to_status_codes(client, mocker, error, status_code):
    mocker.patch.object(PaymentClient, "get_payment", side_effect=error)

    response = client.get("/payments/pay_123")

    assert response.status_code == status_code
    body = response.json()
    assert body["success"] is False
    assert body["error"] == error.user_message
    assert "Invalid key" not in body["error"]
    assert "id is invalid" not in body["error"]


def test_transport_errors_report_retryable(client, mocker):
    mocker.patch.object(PaymentClient, "get_payment", side_effect=GatewayTimeout("read timed out"))
    assert client.get("/payments/pay_123").json()["retryable"] is True

    mocker.patch.object(PaymentClient, "get_payment", side_effect=NameResolutionError("no such host"))
    assert client.get("/payments/pay_123").json()["retryable"] is False


def test_plans_are_public(test_app):
    with TestClient(test_app) as c:
        response = c.get("/plans")

    assert response.status_code == 200
    plans = {plan["id"]: plan for plan in response.json()["plans"]}
    assert plans["monthly"]["amount"] == "199"
    assert plans["yearly"]["amount"] == "1990"
    assert plans["yearly"]["period"] == "year"


def test_health_reports_sandbox(client):
    assert client.get("/health").json() == {"status": "ok", "sandbox": True}


def test_back_office_routes_require_bearer_token(test_app, mocker):
    mocker.patch.object(PaymentClient, "get_payment", return_value=payment_record())
    token = jwt.encode({"sub": "admin"}, os.environ["JWT_SECRET"], algorithm="HS256")

    with TestClient(test_app) as c:
        bad = c.get("/payments/pay_123", headers={"Authorization": "Bearer not-a-token"})
        basic = c.get("/payments/pay_123", headers={"Authorization": f"Basic {token}"})
        good = c.get("/payments/pay_123", headers={"Authorization": f"Bearer {token}"})

    assert bad.status_code == 401
    assert basic.status_code == 401
    assert good.status_code == 200
