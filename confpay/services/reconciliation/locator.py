"""Resolve an extracted provider object to at most one stored record."""

from confpay.common.config import settings
from confpay.common.logging import logger
from confpay.common.metrics import correlation_miss_total
from confpay.services.reconciliation.models import ProviderRecordMixin, RecordKind
from confpay.services.reconciliation.schemas import CHECKOUT_SESSION, ExtractedFields
from confpay.services.reconciliation.store import find_by_payment_intent_id, find_by_session_id, scan_kind


PAYPAL_PREFIX = "PAYPAL_"


def is_alternate_rail(identifier: str | None) -> bool:
    return bool(identifier) and identifier.startswith(PAYPAL_PREFIX)


def _locate_in_kind(
    db, kind: RecordKind, vertical: str, fields: ExtractedFields
) -> tuple[ProviderRecordMixin, str] | None:
    session_keyed = fields.object_type == CHECKOUT_SESSION
    if session_keyed and fields.session_id:
        record = find_by_session_id(db, kind, vertical, fields.session_id)
        if record is not None:
            return record, "session_id"

    intent_id = fields.payment_intent_id
    if intent_id:
        record = find_by_payment_intent_id(db, kind, vertical, intent_id)
        if record is not None:
            return record, "payment_intent_id"
        # Index miss: compare against a fresh read of every record of the kind.
        for candidate in scan_kind(db, kind, vertical):
            if candidate.payment_intent_id == intent_id:
                return candidate, "scan"

    if not session_keyed and fields.session_id:
        record = find_by_session_id(db, kind, vertical, fields.session_id)
        if record is not None:
            return record, "session_id"
    return None


def _log_candidates(db, vertical: str, kinds: tuple[RecordKind, ...]) -> None:
    limit = settings.locator_diagnostic_limit
    for kind in kinds:
        candidates = scan_kind(db, kind, vertical)
        logger.warning(
            "locator_candidates vertical=%s kind=%s count=%s shown=%s",
            vertical,
            kind.value,
            len(candidates),
            min(len(candidates), limit),
        )
        for candidate in candidates[:limit]:
            logger.info(
                "locator_candidate kind=%s id=%s session_id=%s payment_intent_id=%s status=%s",
                kind.value,
                candidate.id,
                candidate.session_id,
                candidate.payment_intent_id,
                candidate.status.value,
            )


def locate(
    db,
    vertical: str,
    fields: ExtractedFields,
    preferred: RecordKind = RecordKind.PAYMENT,
    event_type: str = "unknown",
) -> tuple[ProviderRecordMixin, str] | None:
    """Session id, then payment-intent id, then a full scan; preferred kind first.

    Returns None when nothing matches in either kind. The miss is logged with the
    candidate records but is not an error.
    """

    kinds = (preferred, preferred.sibling)
    for kind in kinds:
        located = _locate_in_kind(db, kind, vertical, fields)
        if located is not None:
            record, matched_by = located
            if kind is not preferred:
                logger.info(
                    "locator_sibling_match vertical=%s preferred=%s matched=%s",
                    vertical,
                    preferred.value,
                    kind.value,
                )
            logger.info(
                "record_located vertical=%s kind=%s record_id=%s matched_by=%s",
                vertical,
                kind.value,
                record.id,
                matched_by,
            )
            return located

    correlation_miss_total.labels(service=settings.service_name, vertical=vertical, event_type=event_type).inc()
    logger.warning(
        "record_not_found vertical=%s event_type=%s session_id=%s payment_intent_id=%s",
        vertical,
        event_type,
        fields.session_id,
        fields.payment_intent_id,
    )
    _log_candidates(db, vertical, kinds)
    return None
