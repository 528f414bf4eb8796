from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CreditCardSource(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["creditcard"] = "creditcard"
    name: str = Field(validation_alias=AliasChoices("name", "holder_name"))
    number: str
    cvc: str
    month: int
    year: int


class WalletPhoneSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["stcpay"] = "stcpay"
    phone: str


class RedirectSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["url"] = "url"


PaymentSource = Annotated[
    Union[CreditCardSource, WalletPhoneSource, RedirectSource],
    Field(discriminator="type"),
]


class PaymentIntent(BaseModel):
    """One purchase attempt, amount in major units."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: str = "SAR"
    source: PaymentSource = Field(default_factory=RedirectSource)
    description: Optional[str] = "Hotel Booking Payment"
    metadata: Dict[str, str] = Field(default_factory=dict)
    callback_url: Optional[str] = None
    return_url: Optional[str] = None
    supported_networks: Optional[List[str]] = None
    installments: Optional[int] = None


class SourceEcho(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    company: Optional[str] = None
    name: Optional[str] = None
    number: Optional[str] = None
    phone: Optional[str] = None
    message: Optional[str] = None
    transaction_url: Optional[str] = None


class PaymentRecord(BaseModel):
    """Payment as reported by the gateway; amounts in minor units."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    amount: int = 0
    currency: Optional[str] = None
    # kept as a plain string: the gateway also reports statuses like "paid" or "authorized"
    status: Optional[str] = None
    fee: int = 0
    refunded_amount: int = Field(default=0, validation_alias=AliasChoices("refunded_amount", "refunded"))
    source: Optional[SourceEcho] = None
    created_at: Optional[datetime] = None
    url: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def amount_major(self) -> Decimal:
        return Decimal(self.amount) / 100

    @property
    def checkout_url(self) -> Optional[str]:
        if self.source and self.source.transaction_url:
            return self.source.transaction_url
        return self.url


class PaymentList(BaseModel):
    items: List[PaymentRecord] = Field(default_factory=list)
    has_more: bool = False


class EventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_PROCESSING = "payment.processing"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_PARTIALLY_REFUNDED = "payment.partially_refunded"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "EventType":
        try:
            event_type = cls(value)
        except ValueError:
            return cls.UNKNOWN
        return event_type


class WebhookEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: EventType
    raw_type: Optional[str] = None
    payment: PaymentRecord
    signature: str
    timestamp: str
    raw_body: bytes = Field(repr=False)


# API request/response bodies

class CheckoutRequest(BaseModel):
    amount: Decimal
    currency: Optional[str] = None
    description: str = "Hotel Booking Payment"
    metadata: Dict[str, str] = Field(default_factory=dict)
    callback_url: Optional[str] = None


class CaptureRequest(BaseModel):
    amount: Optional[Decimal] = None


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
