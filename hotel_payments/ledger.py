"""
Booking payment ledger.

One ledger row per gateway payment id; the unique constraint on
``booking_payments.gateway_payment_id`` is the only thing that serialises
concurrent or repeated webhook deliveries. Every method here can be called
again with the same payment and leaves the same state behind.

The booking's ``paid_amount``/``balance`` are a cache of the ledger. They are
recomputed inside a savepoint after each ledger write: if that step fails the
ledger write is still committed and the result says ``aggregate_updated=False``.
Reprocessing any event for the booking repairs the totals.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from hotel_payments.errors import ApplierError
from hotel_payments.models import Booking, BookingPayment, utcnow
from hotel_payments.schemas import PaymentRecord

logger = structlog.get_logger(__name__)

COMPLETED = "completed"
FAILED = "failed"
REFUNDED = "refunded"

PAYMENT_METHOD = "moyasar"


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ApplyResult:
    outcome: ApplyOutcome
    aggregate_updated: Optional[bool] = None


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class BookingPaymentApplier:
    def __init__(self, session: Session):
        self.session = session

    def _find(self, gateway_payment_id: str) -> Optional[BookingPayment]:
        return (
            self.session.query(BookingPayment)
            .filter_by(gateway_payment_id=gateway_payment_id)
            .first()
        )

    def _is_settled(self, entry: BookingPayment, status: str) -> bool:
        # a refund is final: late succeeded/captured/failed deliveries must not revive it
        return entry.status == status or entry.status == REFUNDED

    def record(self, booking_id: str, payment: PaymentRecord, status: str, notes: Optional[str] = None) -> ApplyResult:
        """Upsert the ledger row for ``payment`` with ``status``, then refresh the booking totals."""
        log = logger.bind(booking_id=booking_id, payment_id=payment.id, status=status)

        try:
            entry = self._find(payment.id)
            created = False
            if entry is None:
                entry, created = self._insert(booking_id, payment, status, notes)

            outcome = ApplyOutcome.APPLIED
            if created:
                log.info("Payment ledger entry created")
            elif self._is_settled(entry, status):
                log.info("Payment already recorded", current_status=entry.status)
                outcome = ApplyOutcome.ALREADY_APPLIED
            else:
                log.info("Payment ledger entry updated", previous_status=entry.status)
                entry.status = status
                entry.amount = payment.amount_major
                if notes is not None:
                    entry.notes = notes
                self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            log.error("Failed to record booking payment", error=str(exc))
            raise ApplierError(f"Failed to record booking payment {payment.id}: {exc}") from exc

        # duplicates refresh the totals too, which repairs a booking left stale earlier
        aggregate_updated = self.recompute_booking_totals(booking_id)
        self._commit(log)
        return ApplyResult(outcome, aggregate_updated=aggregate_updated)

    def _insert(self, booking_id: str, payment: PaymentRecord, status: str, notes: Optional[str]) -> Tuple[BookingPayment, bool]:
        """Insert a new row, or return the row a concurrent writer created first."""
        entry = BookingPayment(
            booking_id=booking_id,
            amount=payment.amount_major,
            currency=payment.currency,
            method=PAYMENT_METHOD,
            status=status,
            gateway_payment_id=payment.id,
            reference=payment.id,
            notes=notes or f"Payment via Moyasar for booking {booking_id}",
            created_at=_naive_utc(payment.created_at) or utcnow(),
        )
        try:
            with self.session.begin_nested():
                self.session.add(entry)
        except IntegrityError:
            logger.info("Concurrent delivery recorded the payment first", payment_id=payment.id)
            existing = self._find(payment.id)
            if existing is None:
                raise
            return existing, False
        return entry, True

    def mark_refunded(self, booking_id: str, payment: PaymentRecord) -> ApplyResult:
        return self.record(booking_id, payment, REFUNDED)

    def recompute_booking_totals(self, booking_id: str) -> bool:
        """paid_amount = sum of completed entries; balance = total - paid."""
        try:
            with self.session.begin_nested():
                booking = self.session.get(Booking, booking_id)
                if booking is None:
                    logger.warning("Booking not found while updating paid amount", booking_id=booking_id)
                    return False

                paid = (
                    self.session.query(func.coalesce(func.sum(BookingPayment.amount), 0))
                    .filter(BookingPayment.booking_id == booking_id, BookingPayment.status == COMPLETED)
                    .scalar()
                )
                paid = Decimal(str(paid))
                booking.paid_amount = paid
                booking.balance = Decimal(str(booking.total_amount or 0)) - paid
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to update booking paid amount; ledger write kept",
                booking_id=booking_id,
                error=str(exc),
            )
            return False

        logger.info("Booking totals updated", booking_id=booking_id, paid_amount=str(paid))
        return True

    def _commit(self, log) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            log.error("Failed to commit booking payment", error=str(exc))
            raise ApplierError(f"Failed to commit booking payment: {exc}") from exc
