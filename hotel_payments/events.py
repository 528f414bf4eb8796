"""
Routing of verified gateway events to the booking ledger or the subscription store.

The payment metadata is decoded once into one of the variants below; which
variant it is, together with the event type, picks the handler. Every
EventType has an entry in the dispatch table, and ``EventType.UNKNOWN`` has an
explicit "log and ignore" handler.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Union

import structlog
from sqlalchemy.orm import Session

from hotel_payments.ledger import COMPLETED, FAILED, ApplyOutcome, ApplyResult, BookingPaymentApplier
from hotel_payments.models import utcnow
from hotel_payments.schemas import EventType, WebhookEvent
from hotel_payments.subscriptions import SubscriptionApplier

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BookingPaymentMetadata:
    booking_id: str


@dataclass(frozen=True)
class SubscriptionPaymentMetadata:
    user_id: str
    plan_id: str


@dataclass(frozen=True)
class SubscriptionRefundMetadata:
    """Only ``user_id`` is known: enough to revoke, not to activate."""

    user_id: str


@dataclass(frozen=True)
class UnrecognizedMetadata:
    pass


PaymentMetadata = Union[
    BookingPaymentMetadata,
    SubscriptionPaymentMetadata,
    SubscriptionRefundMetadata,
    UnrecognizedMetadata,
]


def _value(metadata: Mapping[str, Any], key: str) -> Optional[str]:
    value = metadata.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def decode_metadata(metadata: Optional[Mapping[str, Any]]) -> PaymentMetadata:
    metadata = metadata or {}
    booking_id = _value(metadata, "booking_id")
    user_id = _value(metadata, "user_id")
    plan_id = _value(metadata, "plan_id")

    if booking_id:
        return BookingPaymentMetadata(booking_id=booking_id)
    if user_id and plan_id:
        return SubscriptionPaymentMetadata(user_id=user_id, plan_id=plan_id)
    if user_id:
        return SubscriptionRefundMetadata(user_id=user_id)
    return UnrecognizedMetadata()


HANDLERS: Dict[EventType, str] = {
    EventType.PAYMENT_SUCCEEDED: "_on_succeeded",
    EventType.PAYMENT_FAILED: "_on_failed",
    EventType.PAYMENT_PROCESSING: "_log_only",
    EventType.PAYMENT_CAPTURED: "_on_captured",
    EventType.PAYMENT_REFUNDED: "_on_refunded",
    EventType.PAYMENT_PARTIALLY_REFUNDED: "_log_only",
    EventType.UNKNOWN: "_on_unknown",
}

_unhandled = set(EventType) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"No webhook handler for {sorted(event.value for event in _unhandled)}")


@dataclass(frozen=True)
class DispatchResult:
    event: EventType
    action: str
    outcome: ApplyOutcome
    aggregate_updated: Optional[bool] = None

    @classmethod
    def from_apply(cls, event: EventType, action: str, result: ApplyResult) -> "DispatchResult":
        return cls(event, action, result.outcome, result.aggregate_updated)


class EventRouter:
    def __init__(
        self,
        session: Session,
        bookings: Optional[BookingPaymentApplier] = None,
        subscriptions: Optional[SubscriptionApplier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.bookings = bookings or BookingPaymentApplier(session)
        self.subscriptions = subscriptions or SubscriptionApplier(session)
        self.clock = clock

    def dispatch(self, event: WebhookEvent) -> DispatchResult:
        metadata = decode_metadata(event.payment.metadata)
        logger.info(
            "Dispatching payment event",
            event_type=event.raw_type,
            payment_id=event.payment.id,
            metadata=type(metadata).__name__,
        )
        handler = getattr(self, HANDLERS[event.event])
        return handler(event, metadata)

    def _ignored(self, event: WebhookEvent, action: str) -> DispatchResult:
        return DispatchResult(event.event, action, ApplyOutcome.IGNORED)

    def _on_succeeded(self, event: WebhookEvent, metadata: PaymentMetadata) -> DispatchResult:
        payment = event.payment
        if isinstance(metadata, BookingPaymentMetadata):
            result = self.bookings.record(
                metadata.booking_id,
                payment,
                COMPLETED,
                notes=f"Payment via Moyasar for booking {metadata.booking_id}",
            )
            return DispatchResult.from_apply(event.event, "booking_payment_recorded", result)

        if isinstance(metadata, SubscriptionPaymentMetadata):
            result = self.subscriptions.activate(metadata.user_id, metadata.plan_id, payment, now=self.clock())
            return DispatchResult.from_apply(event.event, "subscription_activated", result)

        logger.info("Payment succeeded but no booking_id, user_id or plan_id in metadata", payment_id=payment.id)
        return self._ignored(event, "no_target")

    def _on_failed(self, event: WebhookEvent, metadata: PaymentMetadata) -> DispatchResult:
        payment = event.payment
        if not isinstance(metadata, BookingPaymentMetadata):
            logger.info("Payment failed", payment_id=payment.id, reason=payment.failure_reason)
            return self._ignored(event, "no_target")

        result = self.bookings.record(
            metadata.booking_id,
            payment,
            FAILED,
            notes=f"Payment failed: {payment.failure_reason or 'Unknown reason'}",
        )
        return DispatchResult.from_apply(event.event, "booking_payment_failed", result)

    def _on_captured(self, event: WebhookEvent, metadata: PaymentMetadata) -> DispatchResult:
        if not isinstance(metadata, BookingPaymentMetadata):
            logger.info("Payment captured", payment_id=event.payment.id)
            return self._ignored(event, "no_target")

        result = self.bookings.record(
            metadata.booking_id,
            event.payment,
            COMPLETED,
            notes=f"Payment captured via Moyasar for booking {metadata.booking_id}",
        )
        return DispatchResult.from_apply(event.event, "booking_payment_captured", result)

    def _on_refunded(self, event: WebhookEvent, metadata: PaymentMetadata) -> DispatchResult:
        payment = event.payment
        if isinstance(metadata, BookingPaymentMetadata):
            result = self.bookings.mark_refunded(metadata.booking_id, payment)
            return DispatchResult.from_apply(event.event, "booking_payment_refunded", result)

        if isinstance(metadata, (SubscriptionPaymentMetadata, SubscriptionRefundMetadata)):
            result = self.subscriptions.revoke(metadata.user_id, payment)
            return DispatchResult.from_apply(event.event, "subscription_revoked", result)

        logger.info("Payment refunded", payment_id=payment.id)
        return self._ignored(event, "no_target")

    def _log_only(self, event: WebhookEvent, metadata: PaymentMetadata) -> DispatchResult:
        logger.info("Payment event recorded in log only", event_type=event.event.value, payment_id=event.payment.id)
        return self._ignored(event, "logged")

    def _on_unknown(self, event: WebhookEvent, metadata: PaymentMetadata) -> DispatchResult:
        logger.warning("Unknown event type", event_type=event.raw_type, payment_id=event.payment.id)
        return self._ignored(event, "unknown_event")
