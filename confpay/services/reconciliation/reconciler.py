"""Status reconciliation for payment and discount records.

Webhook-driven changes are validated against the transition table; real-time
refresh results are provider truth and bypass it. Both paths write through
`apply_changes`, which skips no-op writes and records every status change in
the timeline.
"""

from confpay.common.config import settings
from confpay.common.logging import logger
from confpay.common.metrics import status_transitions_total
from confpay.common.state_machine import (
    PaymentStatus,
    is_reversal,
    map_provider_status,
    map_session_status,
    validate_transition,
)
from confpay.services.reconciliation.errors import ConcurrentUpdateError
from confpay.services.reconciliation.models import ProviderRecordMixin
from confpay.services.reconciliation.schemas import PAYMENT_INTENT, ExtractedFields
from confpay.services.reconciliation.store import as_utc, guarded_update, record_timeline, to_major_units


CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
INTENT_SUCCEEDED = "payment_intent.succeeded"
INTENT_FAILED = "payment_intent.payment_failed"

# event type -> (target status, raw payment status when the event carries none)
EVENT_TARGETS: dict[str, tuple[PaymentStatus, str]] = {
    CHECKOUT_COMPLETED: (PaymentStatus.COMPLETED, "paid"),
    CHECKOUT_EXPIRED: (PaymentStatus.EXPIRED, "unpaid"),
    INTENT_SUCCEEDED: (PaymentStatus.COMPLETED, "paid"),
    INTENT_FAILED: (PaymentStatus.FAILED, "failed"),
}

# Payment intents carry no payment_status of their own.
_INTENT_PAYMENT_STATUS = {PaymentStatus.COMPLETED: "paid", PaymentStatus.FAILED: "failed"}

UNCHANGED = "unchanged"
APPLIED = "applied"


def is_handled(event_type: str) -> bool:
    return event_type in EVENT_TARGETS


def _differs(current, new) -> bool:
    if hasattr(current, "tzinfo") or hasattr(new, "tzinfo"):
        return as_utc(current) != as_utc(new)
    return current != new


def _backfill(record: ProviderRecordMixin, changes: dict, field: str, value) -> None:
    if value is not None and getattr(record, field) is None:
        changes[field] = value


def webhook_changes(record: ProviderRecordMixin, event_type: str, fields: ExtractedFields) -> dict:
    """Field changes a webhook event implies for `record`.

    Status and raw payment status follow the event type. Identifiers and
    customer data are only filled where the record has none.
    """

    target, default_payment_status = EVENT_TARGETS[event_type]
    payment_status = default_payment_status
    if event_type.startswith("checkout.session.") and fields.payment_status:
        payment_status = fields.payment_status

    changes = {}
    if record.status != target:
        changes["status"] = target
    if record.payment_status != payment_status:
        changes["payment_status"] = payment_status

    _backfill(record, changes, "payment_intent_id", fields.payment_intent_id)
    _backfill(record, changes, "customer_email", fields.customer_email)
    _backfill(record, changes, "currency", fields.currency.lower() if fields.currency else None)
    _backfill(record, changes, "provider_created_at", fields.created)
    _backfill(record, changes, "provider_expires_at", fields.expires_at)

    amount = to_major_units(fields.amount_minor, fields.currency or record.currency)
    if amount is not None:
        if record.amount_total is None:
            changes["amount_total"] = amount
        elif record.amount_total != amount:
            logger.warning(
                "provider_amount_differs kind=%s record_id=%s stored=%s provider=%s event_type=%s",
                record.kind.value,
                record.id,
                record.amount_total,
                amount,
                event_type,
            )
    return changes


def refresh_changes(record: ProviderRecordMixin, fields: ExtractedFields) -> dict:
    """Field changes from a real-time provider lookup; provider data wins."""

    if fields.object_type == PAYMENT_INTENT:
        status = map_provider_status(fields.status)
        payment_status = _INTENT_PAYMENT_STATUS.get(status, "unpaid")
    else:
        status = map_session_status(fields.status)
        payment_status = fields.payment_status or "unpaid"
    latest = {
        "status": status,
        "payment_status": payment_status,
        "customer_email": fields.customer_email,
        "amount_total": to_major_units(fields.amount_minor, fields.currency),
        "currency": fields.currency.lower() if fields.currency else None,
        "payment_intent_id": fields.payment_intent_id,
        "provider_created_at": fields.created,
        "provider_expires_at": fields.expires_at,
    }
    changes = {}
    for field, value in latest.items():
        if value is not None and _differs(getattr(record, field), value):
            changes[field] = value
    return changes


def apply_changes(
    db,
    record: ProviderRecordMixin,
    changes: dict,
    reason: str,
    event_id: str | None = None,
    enforce_transitions: bool = True,
) -> str:
    """Persist `changes` on `record` and return `applied` or `unchanged`.

    Raises `InvalidTransitionError` when `enforce_transitions` is set and the
    status change is not allowed, and `ConcurrentUpdateError` when the record
    changed since it was read.
    """

    if not changes:
        logger.info(
            "record_unchanged kind=%s record_id=%s status=%s reason=%s",
            record.kind.value,
            record.id,
            record.status.value,
            reason,
        )
        return UNCHANGED

    from_status = record.status
    new_status = changes.get("status")
    if new_status is not None and enforce_transitions:
        validate_transition(from_status, new_status)
        if is_reversal(from_status, new_status):
            logger.warning(
                "status_reversal kind=%s record_id=%s session_id=%s from=%s to=%s event_id=%s",
                record.kind.value,
                record.id,
                record.session_id,
                from_status.value,
                new_status.value,
                event_id,
            )

    guarded_update(db, record, changes)
    if new_status is not None and new_status != from_status:
        record_timeline(db, record, from_status, new_status, reason, event_id)
        status_transitions_total.labels(
            service=settings.service_name,
            kind=record.kind.value,
            from_status=from_status.value,
            to_status=new_status.value,
        ).inc()
    logger.info(
        "record_updated kind=%s record_id=%s session_id=%s fields=%s reason=%s",
        record.kind.value,
        record.id,
        record.session_id,
        ",".join(sorted(changes)),
        reason,
    )
    return APPLIED


def reconcile(
    db,
    record: ProviderRecordMixin,
    compute,
    reason: str,
    event_id: str | None = None,
    enforce_transitions: bool = True,
) -> str:
    """Compute and apply changes, re-reading and retrying once on a version conflict."""

    try:
        return apply_changes(db, record, compute(record), reason, event_id, enforce_transitions)
    except ConcurrentUpdateError:
        logger.warning(
            "concurrent_update_retry kind=%s record_id=%s reason=%s",
            record.kind.value,
            record.id,
            reason,
        )
        db.refresh(record)
        return apply_changes(db, record, compute(record), reason, event_id, enforce_transitions)
