"""Request/response and internal exchange schemas for the reconciliation service."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from confpay.common.state_machine import PaymentStatus
from confpay.services.reconciliation.models import RecordKind


CHECKOUT_SESSION = "checkout.session"
PAYMENT_INTENT = "payment_intent"

DISCOUNT_SOURCE = "discount-api"
DISCOUNT_PAYMENT_TYPE = "discount-registration"


class VerifiedEvent(BaseModel):
    """A webhook body whose signature has been checked."""

    event_id: str
    event_type: str
    payload: str
    vertical: str
    received_kind: RecordKind = RecordKind.PAYMENT


class ExtractedFields(BaseModel):
    """Provider object fields that drive location and reconciliation.

    Produced by either webhook decoder and by the real-time provider lookups.
    Amounts stay in the provider's minor units until applied to a record.
    """

    object_type: str | None = None
    session_id: str | None = None
    payment_intent_id: str | None = None
    customer_email: str | None = None
    payment_status: str | None = None
    status: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    created: datetime | None = None
    expires_at: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    discount_marked: bool = False
    decoded_by: str = "unknown"

    @property
    def correlatable(self) -> bool:
        return bool(self.session_id or self.payment_intent_id)

    def kind_hint(self) -> RecordKind | None:
        if self.discount_marked:
            return RecordKind.DISCOUNT
        if self.metadata.get("source") == DISCOUNT_SOURCE or self.metadata.get("paymentType") == DISCOUNT_PAYMENT_TYPE:
            return RecordKind.DISCOUNT
        return None


class WebhookAck(BaseModel):
    """Body returned to the provider for every verified webhook."""

    model_config = ConfigDict(populate_by_name=True)

    message: str | None = None
    status: str | None = None
    payment_status: str | None = Field(default=None, serialization_alias="paymentStatus")
    sync: str | None = None
    error: str | None = None

    def body(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class CheckoutRequest(BaseModel):
    """Registration checkout initiated by the public site."""

    customer_email: str = Field(min_length=3)
    product_name: str | None = None
    description: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None


class DiscountSessionRequest(BaseModel):
    """Ad-hoc discounted charge requested by an organiser."""

    customer_email: str = Field(min_length=3)
    unit_amount: Decimal = Field(gt=0)
    currency: str = Field(default="eur", min_length=3, max_length=3)
    product_name: str = Field(min_length=1)
    description: str | None = None
    name: str | None = None
    phone: str | None = None
    institute_or_university: str | None = None
    country: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None


class PayPalOrderRequest(BaseModel):
    """PayPal order for a registration; the amount comes from the pricing config when one is given."""

    customer_email: str = Field(min_length=3)
    amount: Decimal | None = Field(default=None, gt=0)
    currency: str = Field(default="eur", min_length=3, max_length=3)
    pricing_config_id: int | None = None
    description: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None


class CheckoutResponse(BaseModel):
    session_id: str
    payment_intent_id: str | None = None
    url: str | None = None
    status: PaymentStatus
    payment_status: str | None = None


class RecordResponse(BaseModel):
    """Stored state of one payment or discount record."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    vertical: str
    session_id: str
    payment_intent_id: str | None = None
    customer_email: str | None = None
    amount_total: Decimal | None = None
    currency: str | None = None
    status: PaymentStatus
    payment_status: str | None = None
    provider_created_at: datetime | None = None
    provider_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SyncReport(BaseModel):
    vertical: str
    session_id: str
    outcome: str
    message: str
    winner: RecordKind | None = None
    before: dict[str, dict | None] = Field(default_factory=dict)


class SweepReport(BaseModel):
    vertical: str
    sessions_checked: int
    outcomes: dict[str, int]


class AmountMismatch(BaseModel):
    record_id: int
    session_id: str
    pricing_config_id: int
    amount_total: Decimal | None
    pricing_total: Decimal
    pricing_total_snapshot: Decimal | None
    status: PaymentStatus
