"""Cross-record sync between the payment and discount record of one session.

The two records are created independently and share nothing but the provider
session id. After any change keyed by that id they are converged: the most
recently updated record wins and the other takes its state.
"""

from typing import Any

from pydantic import BaseModel, Field

from confpay.common.config import settings
from confpay.common.logging import logger
from confpay.common.metrics import status_transitions_total, sync_outcomes_total
from confpay.services.reconciliation.models import ProviderRecordMixin, RecordKind
from confpay.services.reconciliation.schemas import SyncReport
from confpay.services.reconciliation.store import as_utc, find_by_session_id, guarded_update, record_timeline


NOTHING_TO_SYNC = "nothing_to_sync"
ONLY_PAYMENT = "only_payment"
ONLY_DISCOUNT = "only_discount"
IN_SYNC = "in_sync"
SYNCED = "synced"

SYNC_FIELDS = (
    "status",
    "payment_status",
    "customer_email",
    "amount_total",
    "currency",
    "payment_intent_id",
    "provider_created_at",
    "provider_expires_at",
)


class ConvergencePlan(BaseModel):
    outcome: str
    winner: RecordKind | None = None
    loser_changes: dict[str, Any] = Field(default_factory=dict)
    winner_backfill: dict[str, Any] = Field(default_factory=dict)


def _same(left, right) -> bool:
    if hasattr(left, "tzinfo") or hasattr(right, "tzinfo"):
        return as_utc(left) == as_utc(right)
    return left == right


def _discount_is_newer(payment: ProviderRecordMixin, discount: ProviderRecordMixin) -> bool:
    payment_at = as_utc(payment.updated_at)
    discount_at = as_utc(discount.updated_at)
    if payment_at is None or discount_at is None:
        return False
    return discount_at > payment_at


def converge(payment: ProviderRecordMixin | None, discount: ProviderRecordMixin | None) -> ConvergencePlan:
    """Decide how the pair of records for one session reaches a common state.

    The more recently updated record wins, the payment record on a tie. The
    loser takes every non-null field of the winner; null fields on the winner
    are filled from the loser. Applying the plan once leaves both records
    equal on `SYNC_FIELDS`.
    """

    if payment is None and discount is None:
        return ConvergencePlan(outcome=NOTHING_TO_SYNC)
    if discount is None:
        return ConvergencePlan(outcome=ONLY_PAYMENT, winner=RecordKind.PAYMENT)
    if payment is None:
        return ConvergencePlan(outcome=ONLY_DISCOUNT, winner=RecordKind.DISCOUNT)

    if _discount_is_newer(payment, discount):
        winner, loser, winner_kind = discount, payment, RecordKind.DISCOUNT
    else:
        winner, loser, winner_kind = payment, discount, RecordKind.PAYMENT

    loser_changes = {}
    winner_backfill = {}
    for field in SYNC_FIELDS:
        winner_value = getattr(winner, field)
        loser_value = getattr(loser, field)
        if winner_value is None:
            if loser_value is not None:
                winner_backfill[field] = loser_value
        elif not _same(winner_value, loser_value):
            loser_changes[field] = winner_value

    if not loser_changes and not winner_backfill:
        return ConvergencePlan(outcome=IN_SYNC, winner=winner_kind)
    return ConvergencePlan(
        outcome=SYNCED,
        winner=winner_kind,
        loser_changes=loser_changes,
        winner_backfill=winner_backfill,
    )


_MESSAGES = {
    NOTHING_TO_SYNC: "No payment or discount record exists for this session",
    ONLY_PAYMENT: "Only payment record exists, nothing to sync",
    ONLY_DISCOUNT: "Only discount record exists, nothing to sync",
    IN_SYNC: "Payment and discount records already in sync",
}


class CrossRecordSync:
    """Applies `converge` plans inside the caller's database session."""

    def __init__(self, service_name: str = settings.service_name) -> None:
        self.service_name = service_name

    def sync(self, db, vertical: str, session_id: str, event_id: str | None = None) -> SyncReport:
        payment = find_by_session_id(db, RecordKind.PAYMENT, vertical, session_id)
        discount = find_by_session_id(db, RecordKind.DISCOUNT, vertical, session_id)
        before = {
            RecordKind.PAYMENT.value: payment.summary() if payment else None,
            RecordKind.DISCOUNT.value: discount.summary() if discount else None,
        }
        plan = converge(payment, discount)
        if plan.outcome == SYNCED:
            self._apply(db, plan, payment, discount, event_id)
            loser = plan.winner.sibling
            message = f"Synced {loser.value} record from {plan.winner.value} record"
        else:
            message = _MESSAGES[plan.outcome]

        sync_outcomes_total.labels(service=self.service_name, vertical=vertical, outcome=plan.outcome).inc()
        logger.info(
            "cross_record_sync vertical=%s session_id=%s outcome=%s winner=%s",
            vertical,
            session_id,
            plan.outcome,
            plan.winner.value if plan.winner else None,
        )
        return SyncReport(
            vertical=vertical,
            session_id=session_id,
            outcome=plan.outcome,
            message=message,
            winner=plan.winner,
            before=before,
        )

    def _apply(self, db, plan: ConvergencePlan, payment, discount, event_id: str | None) -> None:
        if plan.winner is RecordKind.PAYMENT:
            winner, loser = payment, discount
        else:
            winner, loser = discount, payment
        logger.warning(
            "records_diverged session_id=%s winner=%s payment=%s discount=%s",
            winner.session_id,
            plan.winner.value,
            payment.summary(),
            discount.summary(),
        )

        if plan.winner_backfill:
            guarded_update(db, winner, plan.winner_backfill, touch=False)

        if plan.loser_changes:
            from_status = loser.status
            guarded_update(db, loser, plan.loser_changes)
            new_status = plan.loser_changes.get("status")
            if new_status is not None and new_status != from_status:
                record_timeline(db, loser, from_status, new_status, "cross_record_sync", event_id)
                status_transitions_total.labels(
                    service=self.service_name,
                    kind=loser.kind.value,
                    from_status=from_status.value,
                    to_status=new_status.value,
                ).inc()
