"""
Pure checks run before any payment is sent to the gateway.

The ``validate_*`` predicates never raise: anything that cannot be parsed is
simply invalid. ``validate_intent`` turns the first failing check into a
ValidationError whose message can be shown to the guest as-is.
"""
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

from hotel_payments.errors import ValidationError

MIN_AMOUNT = Decimal("1")
MAX_AMOUNT = Decimal("100000")

_CARD_NUMBER = re.compile(r"^[0-9]{16}$")
_CVC = re.compile(r"^[0-9]{3,4}$")
_WALLET_PHONE = re.compile(r"^9665[0-9]{8}$")


def _to_decimal(value) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    return number if number.is_finite() else None


def _to_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def validate_amount(amount) -> bool:
    number = _to_decimal(amount)
    return number is not None and MIN_AMOUNT <= number <= MAX_AMOUNT


def validate_card_number(number) -> bool:
    if not isinstance(number, str):
        return False
    return bool(_CARD_NUMBER.match(re.sub(r"\s", "", number)))


def validate_expiry(month, year, today: Optional[date] = None) -> bool:
    exp_month = _to_int(month)
    exp_year = _to_int(year)
    if exp_month is None or exp_year is None:
        return False
    if not 1 <= exp_month <= 12:
        return False

    today = today or date.today()
    exp_year = exp_year % 100
    current_year = today.year % 100

    if exp_year < current_year:
        return False
    if exp_year == current_year and exp_month < today.month:
        return False
    return True


def validate_cvc(cvc) -> bool:
    return isinstance(cvc, str) and bool(_CVC.match(cvc))


def validate_wallet_phone(phone) -> bool:
    return isinstance(phone, str) and bool(_WALLET_PHONE.match(phone))


def validate_intent(intent, today: Optional[date] = None) -> None:
    """Raise ValidationError for the first problem found in a PaymentIntent."""
    if not validate_amount(intent.amount):
        raise ValidationError(
            f"Invalid payment amount: {intent.amount}. "
            f"Amount must be between {MIN_AMOUNT} and {MAX_AMOUNT:,} {intent.currency}"
        )

    source = intent.source
    if source.type == "creditcard":
        if not validate_card_number(source.number):
            raise ValidationError("Invalid card number")
        if not validate_expiry(source.month, source.year, today=today):
            raise ValidationError("Invalid card expiry date")
        if not validate_cvc(source.cvc):
            raise ValidationError("Invalid CVC")
    elif source.type == "stcpay":
        if not validate_wallet_phone(source.phone):
            raise ValidationError("Invalid STC Pay phone number. Expected format: 9665XXXXXXXX")
