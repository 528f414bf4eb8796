"""
Async client for the Moyasar payments REST API.

One PaymentClient is shared by the whole process. It holds no per-request
state, so any number of coroutines may create, capture or refund payments
concurrently. Each call is bounded by the configured connect timeout as an
overall deadline; cancelling the request on expiry also closes its
connection.

The client never retries. Transport failures are raised as TransportError
subclasses so the caller can look at ``retryable`` and decide.
"""
import asyncio
import socket
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterator, Optional

import httpx
import structlog

from hotel_payments.config import GatewayConfig
from hotel_payments.errors import (
    AuthenticationError,
    ConnectionRefused,
    ConnectionReset,
    GatewayError,
    GatewayTimeout,
    GatewayValidationError,
    NameResolutionError,
    NetworkError,
    TransportError,
    ValidationError,
)
from hotel_payments.schemas import (
    PaymentIntent,
    PaymentList,
    PaymentRecord,
    RedirectSource,
)
from hotel_payments.validators import validate_amount, validate_intent

logger = structlog.get_logger(__name__)

REQUEST_SOURCE = "hotel_reservation_app"


def to_minor_units(amount) -> int:
    """199.00 -> 19900, 199.5 -> 19950 (half-up, no banker's rounding)."""
    minor = Decimal(str(amount)) * 100
    return int(minor.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def classify_transport_error(exc: httpx.TransportError, action: str) -> TransportError:
    """Map an httpx failure onto the closed TransportError taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        return GatewayTimeout(f"Payment {action} request timed out: {exc!r}")

    for cause in _exception_chain(exc):
        if isinstance(cause, socket.gaierror):
            return NameResolutionError(
                f"Could not resolve the payment gateway host during {action}: {cause}"
            )
        if isinstance(cause, ConnectionRefusedError):
            return ConnectionRefused(f"Connection to the payment gateway was refused during {action}")
        if isinstance(cause, ConnectionResetError):
            return ConnectionReset(f"Connection to the payment gateway was reset during {action}")
        if isinstance(cause, TimeoutError):
            return GatewayTimeout(f"Connection to the payment gateway timed out during {action}")

    return NetworkError(f"Network error during payment {action}: {exc!r}")


def build_payment_payload(intent: PaymentIntent, config: GatewayConfig) -> Dict[str, Any]:
    source = intent.source
    if source.type == "creditcard":
        source_payload = {
            "type": source.type,
            "name": source.name,
            "number": "".join(source.number.split()),
            "cvc": source.cvc,
            "month": source.month,
            "year": source.year,
        }
    elif source.type == "stcpay":
        source_payload = {"type": source.type, "phone": source.phone}
    else:
        source_payload = {"type": source.type}

    payload = {
        "amount": to_minor_units(intent.amount),
        "currency": intent.currency,
        "source": source_payload,
        "description": intent.description,
        "metadata": {
            **intent.metadata,
            "request_source": REQUEST_SOURCE,
            "environment": config.environment,
        },
        "callback_url": intent.callback_url,
        "return_url": intent.return_url,
        "supported_networks": intent.supported_networks or list(config.supported_networks),
        "installments": intent.installments or config.default_installments,
    }
    return {key: value for key, value in payload.items() if value is not None}


class PaymentClient:
    def __init__(self, config: GatewayConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        config.validate()
        self.config = config
        timeouts = config.timeouts
        self._http = httpx.AsyncClient(
            base_url=config.api_url,
            timeout=httpx.Timeout(
                timeouts.read,
                connect=timeouts.connect,
                write=timeouts.write,
                pool=timeouts.connect,
            ),
            transport=transport,
        )

    async def __aenter__(self) -> "PaymentClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = self.config.auth_headers(include_content_type=json is not None)
        log = logger.bind(method=method, path=path, action=action, sandbox=self.config.is_sandbox)
        log.info("Calling payment gateway")

        try:
            response = await asyncio.wait_for(
                self._http.request(method, path, json=json, params=params, headers=headers),
                timeout=self.config.timeouts.connect,
            )
        except asyncio.TimeoutError as exc:
            log.error("Payment gateway did not answer in time", timeout=self.config.timeouts.connect)
            raise GatewayTimeout(f"Payment {action} request timed out") from exc
        except httpx.TransportError as exc:
            error = classify_transport_error(exc, action)
            log.error("Payment gateway transport failure", kind=error.kind.value, error=repr(exc))
            raise error from exc

        log.info("Payment gateway responded", status=response.status_code)
        if response.is_error:
            raise self._error_from_response(response, action)

        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError(
                f"Invalid response received from payment gateway during {action}",
                status_code=response.status_code,
                raw_body=response.text,
            ) from exc

    @staticmethod
    def _error_from_response(response: httpx.Response, action: str) -> GatewayError:
        text = response.text
        logger.error(
            "Payment gateway returned an error",
            action=action,
            status=response.status_code,
            body=text,
        )
        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            return GatewayError(
                f"Moyasar payment {action} failed: {text}",
                status_code=response.status_code,
                raw_body=text,
            )

        error_type = body.get("type")
        message = body.get("message")
        if error_type == "authentication_error":
            return AuthenticationError(
                f"Authentication failed: {message}. Please check your API keys.",
                upstream_message=message,
            )
        if error_type == "validation_error":
            return GatewayValidationError(
                f"Validation error: {message}. Please check your {action} parameters.",
                status_code=response.status_code,
                error_type=error_type,
                upstream_message=message,
            )
        return GatewayError(
            f"Moyasar payment {action} failed: {message or text}",
            status_code=response.status_code,
            error_type=error_type,
            upstream_message=message,
        )

    async def create_payment(self, intent: PaymentIntent, today: Optional[date] = None) -> PaymentRecord:
        validate_intent(intent, today=today)
        if intent.source.type not in self.config.enabled_methods:
            raise ValidationError(f"Payment method {intent.source.type} is not available")

        payload = build_payment_payload(intent, self.config)
        data = await self._request("POST", "payments", "creation", json=payload)
        payment = PaymentRecord.model_validate(data)
        logger.info("Payment created", payment_id=payment.id, status=payment.status)
        return payment

    async def create_checkout(
        self,
        amount,
        currency: Optional[str] = None,
        description: str = "Hotel Booking Payment",
        metadata: Optional[Dict[str, str]] = None,
        callback_url: Optional[str] = None,
    ) -> PaymentRecord:
        """Redirect checkout: the guest enters card details on the gateway's hosted page."""
        intent = PaymentIntent(
            amount=amount,
            currency=currency or self.config.currency,
            source=RedirectSource(),
            description=description,
            metadata=metadata or {},
            callback_url=callback_url or self.config.default_callback_url,
        )
        payment = await self.create_payment(intent)
        if not payment.id:
            raise GatewayError("Invalid response received from payment gateway")
        return payment

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        data = await self._request("GET", f"payments/{payment_id}", "retrieval")
        return PaymentRecord.model_validate(data)

    # the return page re-reads the payment instead of trusting query parameters
    verify_payment = get_payment

    async def list_payments(
        self,
        from_: Optional[str] = None,
        to: Optional[str] = None,
        status: Optional[str] = None,
        source_type: Optional[str] = None,
        page: Optional[int] = None,
        per_page: Optional[int] = None,
    ) -> PaymentList:
        filters = {
            "from": from_,
            "to": to,
            "status": status,
            "source_type": source_type,
            "page": page,
            "per_page": per_page,
        }
        params = {key: value for key, value in filters.items() if value is not None}
        data = await self._request("GET", "payments", "list", params=params)
        if isinstance(data, dict) and "payments" in data and "items" not in data:
            data = {"items": data["payments"], "has_more": bool((data.get("meta") or {}).get("next_page"))}
        return PaymentList.model_validate(data)

    async def capture_payment(self, payment_id: str, amount=None) -> PaymentRecord:
        body: Dict[str, Any] = {}
        if amount is not None:
            if not validate_amount(amount):
                raise ValidationError(f"Invalid capture amount: {amount}")
            body["amount"] = to_minor_units(amount)

        data = await self._request("POST", f"payments/{payment_id}/capture", "capture", json=body)
        return PaymentRecord.model_validate(data)

    async def refund_payment(self, payment_id: str, amount=None, reason: Optional[str] = None) -> PaymentRecord:
        body: Dict[str, Any] = {}
        if amount is not None:
            if not validate_amount(amount):
                raise ValidationError(f"Invalid refund amount: {amount}")
            body["amount"] = to_minor_units(amount)
        if reason:
            body["reason"] = reason

        data = await self._request("POST", f"payments/{payment_id}/refund", "refund", json=body)
        payment = PaymentRecord.model_validate(data)
        logger.info("Refund requested", payment_id=payment_id, refunded=payment.refunded_amount)
        return payment
