import hashlib
import hmac
import json
from typing import Optional, Union

import structlog

from hotel_payments.config import GatewayConfig
from hotel_payments.errors import AuthenticationError, ConfigurationError, ValidationError
from hotel_payments.schemas import EventType, PaymentRecord, WebhookEvent

logger = structlog.get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_signature(raw_body: Union[str, bytes], timestamp: str, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body followed by the timestamp."""
    message = _to_bytes(raw_body) + _to_bytes(timestamp)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: Union[str, bytes],
    signature: Optional[str],
    timestamp: Optional[str],
    secret: Optional[str],
) -> bool:
    if not secret:
        raise ConfigurationError("MOYASAR_WEBHOOK_SECRET is not configured")
    if not signature or timestamp is None:
        return False

    expected = compute_signature(raw_body, timestamp, secret)
    supplied = signature.strip()
    if supplied.startswith(SIGNATURE_PREFIX):
        supplied = supplied[len(SIGNATURE_PREFIX):]

    return hmac.compare_digest(expected.encode("ascii"), supplied.encode("utf-8"))


class WebhookVerifier:
    """Authenticates gateway callbacks before anything reads their content."""

    def __init__(self, config: GatewayConfig):
        self.config = config

    def verify(self, raw_body: bytes, signature: Optional[str], timestamp: Optional[str]) -> None:
        secret = self.config.require_webhook_secret()
        if not verify_signature(raw_body, signature, timestamp, secret):
            logger.error("Invalid webhook signature", received=signature, timestamp=timestamp)
            raise AuthenticationError("Invalid webhook signature")

    def parse(self, raw_body: bytes, signature: Optional[str], timestamp: Optional[str]) -> WebhookEvent:
        self.verify(raw_body, signature, timestamp)

        try:
            data = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc

        if not isinstance(data, dict) or not isinstance(data.get("payment"), dict):
            raise ValidationError("Webhook body has no payment object")

        try:
            payment = PaymentRecord.model_validate(data["payment"])
        except ValueError as exc:
            raise ValidationError(f"Webhook payment object is malformed: {exc}") from exc

        raw_type = data.get("event") or data.get("type")
        return WebhookEvent(
            event=EventType.parse(raw_type),
            raw_type=raw_type,
            payment=payment,
            signature=signature,
            timestamp=timestamp,
            raw_body=raw_body,
        )
