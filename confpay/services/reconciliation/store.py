"""Record store shared by every vertical and record kind.

All writes to existing records go through `guarded_update`, a compare-and-set
on the record's `version` in the same spirit as the payment state machine's
optimistic concurrency: a stale writer fails instead of overwriting.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.orm.attributes import set_committed_value

from confpay.common.state_machine import PaymentStatus
from confpay.services.reconciliation.errors import ConcurrentUpdateError
from confpay.services.reconciliation.models import (
    RECORD_MODELS,
    PaymentRecord,
    PricingConfig,
    ProviderRecordMixin,
    RecordKind,
    StatusTimeline,
    utcnow,
)


# Currencies the provider already expresses in major units.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)


def to_major_units(amount_minor: int | None, currency: str | None) -> Decimal | None:
    if amount_minor is None:
        return None
    if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount_minor)
    return (Decimal(amount_minor) / Decimal(100)).quantize(Decimal("0.01"))


def to_minor_units(amount: Decimal, currency: str | None) -> int:
    if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount)
    return int((amount * 100).quantize(Decimal("1")))


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def model_for(kind: RecordKind) -> type[ProviderRecordMixin]:
    return RECORD_MODELS[kind]


def find_by_session_id(db, kind: RecordKind, vertical: str, session_id: str) -> ProviderRecordMixin | None:
    model = model_for(kind)
    return db.execute(
        select(model).where(model.vertical == vertical, model.session_id == session_id)
    ).scalar_one_or_none()


def find_by_payment_intent_id(db, kind: RecordKind, vertical: str, intent_id: str) -> ProviderRecordMixin | None:
    model = model_for(kind)
    return (
        db.execute(
            select(model)
            .where(model.vertical == vertical, model.payment_intent_id == intent_id)
            .order_by(model.updated_at.desc())
        )
        .scalars()
        .first()
    )


def scan_kind(db, kind: RecordKind, vertical: str) -> list[ProviderRecordMixin]:
    """Re-read every record of one kind, bypassing the session identity map."""

    model = model_for(kind)
    return list(
        db.execute(
            select(model)
            .where(model.vertical == vertical)
            .order_by(model.id)
            .execution_options(populate_existing=True)
        ).scalars()
    )


def add_record(db, record: ProviderRecordMixin) -> ProviderRecordMixin:
    db.add(record)
    db.flush()
    return record


def guarded_update(db, record: ProviderRecordMixin, changes: dict, touch: bool = True) -> None:
    """Write `changes` only if nobody else updated the record since it was read.

    `touch=False` leaves `updated_at` alone, for back-fills that must not
    change the record's recency.
    """

    if not changes:
        return
    model = type(record)
    values = dict(changes)
    if touch:
        values["updated_at"] = utcnow()
    current_version = record.version
    values["version"] = current_version + 1
    result = db.execute(
        update(model)
        .where(model.id == record.id, model.version == current_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentUpdateError(
            f"concurrent update on {record.__tablename__} id={record.id} (expected version {current_version})"
        )
    for key, value in values.items():
        set_committed_value(record, key, value)


def record_timeline(
    db,
    record: ProviderRecordMixin,
    from_state: PaymentStatus | None,
    to_state: PaymentStatus,
    reason: str,
    event_id: str | None,
) -> None:
    db.add(
        StatusTimeline(
            record_kind=record.kind.value,
            record_id=record.id,
            vertical=record.vertical,
            session_id=record.session_id,
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
            reason=reason,
            event_id=event_id,
        )
    )


def find_stale_pending(db, kind: RecordKind, vertical: str, now: datetime) -> list[ProviderRecordMixin]:
    model = model_for(kind)
    return list(
        db.execute(
            select(model).where(
                model.vertical == vertical,
                model.status == PaymentStatus.PENDING,
                model.provider_expires_at.is_not(None),
                model.provider_expires_at < now,
            )
        ).scalars()
    )


def session_ids(db, vertical: str) -> list[str]:
    """Distinct session ids present in either table for one vertical."""

    ids: set[str] = set()
    for model in RECORD_MODELS.values():
        ids.update(db.execute(select(model.session_id).where(model.vertical == vertical)).scalars())
    return sorted(ids)


def amount_mismatches(db, vertical: str) -> list[tuple[PaymentRecord, PricingConfig]]:
    rows = db.execute(
        select(PaymentRecord, PricingConfig)
        .join(PricingConfig, PaymentRecord.pricing_config_id == PricingConfig.id)
        .where(
            PaymentRecord.vertical == vertical,
            PaymentRecord.amount_total.is_not(None),
            PaymentRecord.amount_total != PricingConfig.total_price,
        )
        .order_by(PaymentRecord.id)
    ).all()
    return [(row[0], row[1]) for row in rows]


def status_statistics(db, kind: RecordKind, vertical: str) -> dict:
    model = model_for(kind)
    counts = {status.value: 0 for status in PaymentStatus}
    for status, count in db.execute(
        select(model.status, func.count(model.id)).where(model.vertical == vertical).group_by(model.status)
    ).all():
        counts[status.value] = int(count)
    completed_amount = db.execute(
        select(func.coalesce(func.sum(model.amount_total), 0)).where(
            model.vertical == vertical, model.status == PaymentStatus.COMPLETED
        )
    ).scalar_one()
    return {
        "total": sum(counts.values()),
        "by_status": counts,
        "completed_amount": str(Decimal(str(completed_amount)).quantize(Decimal("0.01"))),
    }


def find_records(
    db,
    kind: RecordKind,
    vertical: str,
    customer_email: str | None = None,
    status: PaymentStatus | None = None,
    limit: int = 50,
) -> list[ProviderRecordMixin]:
    """Most recently created records first, optionally filtered by email and status."""

    model = model_for(kind)
    query = select(model).where(model.vertical == vertical)
    if customer_email:
        query = query.where(func.lower(model.customer_email) == customer_email.strip().lower())
    if status is not None:
        query = query.where(model.status == status)
    query = query.order_by(model.created_at.desc(), model.id.desc()).limit(limit)
    return list(db.execute(query).scalars())
