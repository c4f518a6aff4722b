"""Reconciliation service database models.

Payment and discount records live in separate tables with no foreign key
between them; the provider session id is the only thing they share. Every
vertical writes to the same tables, scoped by the `vertical` column.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from confpay.common.db import Base
from confpay.common.state_machine import PaymentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordKind(str, Enum):
    PAYMENT = "payment"
    DISCOUNT = "discount"

    @property
    def sibling(self) -> "RecordKind":
        return RecordKind.DISCOUNT if self is RecordKind.PAYMENT else RecordKind.PAYMENT


class PricingConfig(Base):
    """Precomputed registration price a payment record may reference."""

    __tablename__ = "pricing_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vertical: Mapped[str] = mapped_column(String(32), index=True)
    name: Mapped[str] = mapped_column(String)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="eur")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ProviderRecordMixin:
    """Columns shared by payment and discount records."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vertical: Mapped[str] = mapped_column(String(32), index=True)
    session_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    amount_total: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus, native_enum=False, length=16), default=PaymentStatus.PENDING, index=True
    )
    payment_status: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def summary(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "payment_intent_id": self.payment_intent_id,
            "status": self.status.value if self.status else None,
            "payment_status": self.payment_status,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class PaymentRecord(ProviderRecordMixin, Base):
    """One checkout attempt for a priced registration."""

    __tablename__ = "payment_records"

    kind = RecordKind.PAYMENT

    pricing_config_id: Mapped[int | None] = mapped_column(
        ForeignKey("pricing_configs.id"), nullable=True, index=True
    )
    pricing_total_snapshot: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)


class DiscountRecord(ProviderRecordMixin, Base):
    """Ad-hoc or promotional charge not tied to a pricing configuration."""

    __tablename__ = "discount_records"

    kind = RecordKind.DISCOUNT

    name: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    institute_or_university: Mapped[str | None] = mapped_column(String, nullable=True)
    country: Mapped[str | None] = mapped_column(String, nullable=True)


RECORD_MODELS: dict[RecordKind, type[ProviderRecordMixin]] = {
    RecordKind.PAYMENT: PaymentRecord,
    RecordKind.DISCOUNT: DiscountRecord,
}


class StatusTimeline(Base):
    """Immutable audit trail of every applied status change."""

    __tablename__ = "status_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    record_kind: Mapped[str] = mapped_column(String(16))
    record_id: Mapped[int] = mapped_column(Integer, index=True)
    vertical: Mapped[str] = mapped_column(String(32))
    session_id: Mapped[str] = mapped_column(String, index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProcessedEvent(Base):
    """Deduplication table for applied provider webhook events."""

    __tablename__ = "processed_events"
    __table_args__ = (UniqueConstraint("event_id", "vertical", name="uq_processed_event_vertical"),)

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    vertical: Mapped[str] = mapped_column(String(32), primary_key=True)
    event_type: Mapped[str] = mapped_column(String)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
