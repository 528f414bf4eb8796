from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from hotel_payments.database import Base


def utcnow() -> datetime:
    """Naive UTC, the form every DateTime column here stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Booking(Base):
    """Only the columns the payment ledger reads or maintains."""

    __tablename__ = "bookings"

    id = Column(String, primary_key=True)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class BookingPayment(Base):
    __tablename__ = "booking_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)      # major units
    currency = Column(String(3))
    method = Column(String, nullable=False, default="moyasar")
    status = Column(String, nullable=False)              # completed | failed | refunded
    gateway_payment_id = Column(String, unique=True, nullable=False)
    reference = Column(String)
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, unique=True, nullable=False)
    plan = Column(String)                                # null for a refund recorded before its payment
    status = Column(String, nullable=False)              # active | refunded
    current_period_start = Column(DateTime)
    current_period_end = Column(DateTime)
    gateway_payment_id = Column(String, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True)                # user id
    is_premium = Column(Boolean, nullable=False, default=False)
    premium_expires_at = Column(DateTime, nullable=True)
