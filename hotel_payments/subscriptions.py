import calendar
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from hotel_payments.errors import ApplierError, ValidationError
from hotel_payments.ledger import ApplyOutcome, ApplyResult
from hotel_payments.models import Profile, Subscription
from hotel_payments.schemas import PaymentRecord

logger = structlog.get_logger(__name__)

ACTIVE = "active"
REFUNDED = "refunded"

PLAN_FEATURES = (
    "Unlimited rooms and units",
    "Real-time booking calendar",
    "Advanced analytics & reports",
    "Smart lock integration",
    "Guest communication tools",
    "Invoice generation & payments",
    "Channel management",
    "Task management for staff",
    "Priority support",
)


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic; Jan 31 + 1 month is the last day of February."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    description: str
    amount: Decimal   # major units
    period: str       # month | year
    features: Tuple[str, ...] = PLAN_FEATURES

    def period_end(self, start: datetime) -> datetime:
        return add_months(start, 12 if self.period == "year" else 1)


PLANS: Dict[str, Plan] = {
    "monthly": Plan(
        id="monthly",
        name="Monthly Plan",
        description="Perfect for getting started",
        amount=Decimal("199"),
        period="month",
    ),
    "yearly": Plan(
        id="yearly",
        name="Yearly Plan",
        description="Save 16% compared to monthly",
        amount=Decimal("1990"),
        period="year",
    ),
}


def get_plan(plan_id: str) -> Plan:
    try:
        return PLANS[plan_id]
    except KeyError:
        raise ValidationError(f"Invalid plan_id: {plan_id}", user_message="Unknown subscription plan") from None


class SubscriptionApplier:
    """Upserts the one subscription row per user and mirrors it on the profile's premium flag."""

    def __init__(self, session: Session):
        self.session = session

    def _find(self, user_id: str) -> Optional[Subscription]:
        return self.session.query(Subscription).filter_by(user_id=user_id).first()

    def _profile(self, user_id: str) -> Profile:
        profile = self.session.get(Profile, user_id)
        if profile is None:
            profile = Profile(id=user_id, is_premium=False)
            self.session.add(profile)
        return profile

    def activate(self, user_id: str, plan_id: str, payment: PaymentRecord, now: datetime) -> ApplyResult:
        plan = get_plan(plan_id)
        log = logger.bind(user_id=user_id, plan_id=plan_id, payment_id=payment.id)

        try:
            subscription = self._find(user_id)
            # a payment already refunded stays refunded, whichever event came first
            if subscription is not None and subscription.gateway_payment_id == payment.id:
                log.info("Subscription payment already applied", current_status=subscription.status)
                return ApplyResult(ApplyOutcome.ALREADY_APPLIED)

            period_end = plan.period_end(now)
            if subscription is None:
                subscription = Subscription(user_id=user_id)
                try:
                    with self.session.begin_nested():
                        self._fill(subscription, plan, payment, now, period_end)
                        self.session.add(subscription)
                except IntegrityError:
                    # another delivery created the row first; user_id is unique so update it instead
                    subscription = self._find(user_id)
                    if subscription is None:
                        raise
                    if subscription.gateway_payment_id == payment.id:
                        log.info("Subscription payment already applied")
                        return ApplyResult(ApplyOutcome.ALREADY_APPLIED)
                    self._fill(subscription, plan, payment, now, period_end)
            else:
                self._fill(subscription, plan, payment, now, period_end)

            profile = self._profile(user_id)
            profile.is_premium = True
            profile.premium_expires_at = period_end
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            log.error("Failed to record subscription", error=str(exc))
            raise ApplierError(f"Failed to record subscription for user {user_id}: {exc}") from exc

        log.info("Premium status updated", expires_at=period_end.isoformat())
        return ApplyResult(ApplyOutcome.APPLIED)

    @staticmethod
    def _fill(subscription: Subscription, plan: Plan, payment: PaymentRecord, now: datetime, period_end: datetime) -> None:
        subscription.plan = plan.id
        subscription.status = ACTIVE
        subscription.current_period_start = now
        subscription.current_period_end = period_end
        subscription.gateway_payment_id = payment.id

    def revoke(self, user_id: str, payment: PaymentRecord) -> ApplyResult:
        log = logger.bind(user_id=user_id, payment_id=payment.id)

        try:
            subscription = self._find(user_id)
            created = False
            if subscription is None:
                # keep the refund so a late success for the same payment cannot grant premium
                log.warning("Refund arrived before its subscription payment; recording it")
                subscription, created = self._insert_refunded(user_id, payment)

            if not created:
                if subscription.gateway_payment_id != payment.id:
                    # the subscription has been renewed with a newer payment since
                    log.warning(
                        "Refund does not match the current subscription payment",
                        current_payment_id=subscription.gateway_payment_id,
                    )
                    return ApplyResult(ApplyOutcome.ALREADY_APPLIED)
                if subscription.status == REFUNDED:
                    log.info("Subscription refund already applied")
                    return ApplyResult(ApplyOutcome.ALREADY_APPLIED)
                subscription.status = REFUNDED

            profile = self._profile(user_id)
            profile.is_premium = False
            profile.premium_expires_at = None
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            log.error("Failed to update subscription after refund", error=str(exc))
            raise ApplierError(f"Failed to revoke subscription for user {user_id}: {exc}") from exc

        log.info("Premium status removed after refund")
        return ApplyResult(ApplyOutcome.APPLIED)

    def _insert_refunded(self, user_id: str, payment: PaymentRecord) -> Tuple[Subscription, bool]:
        """Insert a refunded row for ``payment``, or return the row a concurrent writer created first."""
        subscription = Subscription(user_id=user_id, plan=None, status=REFUNDED, gateway_payment_id=payment.id)
        try:
            with self.session.begin_nested():
                self.session.add(subscription)
        except IntegrityError:
            existing = self._find(user_id)
            if existing is None:
                raise
            return existing, False
        return subscription, True
