"""
Error taxonomy shared by the payment client, the webhook verifier and the appliers.

Every error carries two messages: the diagnostic ``message`` that goes to the
logs and a ``user_message`` that is safe to show to a guest or hotel operator.
"""
from enum import Enum
from typing import Optional


class PaymentError(Exception):
    default_user_message = "The payment could not be processed. Please try again later."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message


class ValidationError(PaymentError):
    """Malformed amount, card, expiry, CVC, phone number or plan id."""

    def __init__(self, message: str, user_message: Optional[str] = None):
        # validation reasons are written for end users already
        super().__init__(message, user_message or message)


class ConfigurationError(PaymentError):
    default_user_message = "Payments are temporarily unavailable."


class AuthenticationError(PaymentError):
    """Gateway rejected our credentials, or a webhook signature did not match."""

    default_user_message = "Payments are temporarily unavailable."

    def __init__(self, message: str, upstream_message: Optional[str] = None):
        super().__init__(message)
        self.upstream_message = upstream_message


class GatewayError(PaymentError):
    """Non-2xx answer from the gateway that is not an authentication failure."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
        upstream_message: Optional[str] = None,
        raw_body: Optional[str] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message, user_message)
        self.status_code = status_code
        self.error_type = error_type
        self.upstream_message = upstream_message
        self.raw_body = raw_body


class GatewayValidationError(GatewayError):
    default_user_message = "The payment details were rejected. Please check them and try again."


class TransportFailure(str, Enum):
    NAME_RESOLUTION = "name_resolution"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_RESET = "connection_reset"
    NETWORK = "network"
    TIMEOUT = "timeout"


class TransportError(PaymentError):
    """The request never produced an HTTP response."""

    kind = TransportFailure.NETWORK
    default_user_message = (
        "We could not reach the payment provider. Please check your connection and try again."
    )

    @property
    def retryable(self) -> bool:
        # a wrong host name will not fix itself between attempts
        return self.kind is not TransportFailure.NAME_RESOLUTION


class NameResolutionError(TransportError):
    kind = TransportFailure.NAME_RESOLUTION


class ConnectionRefused(TransportError):
    kind = TransportFailure.CONNECTION_REFUSED


class ConnectionReset(TransportError):
    kind = TransportFailure.CONNECTION_RESET


class NetworkError(TransportError):
    kind = TransportFailure.NETWORK


class GatewayTimeout(TransportError):
    kind = TransportFailure.TIMEOUT
    default_user_message = "The payment request timed out. Please try again later."


class ApplierError(PaymentError):
    """A ledger or subscription store write failed."""
