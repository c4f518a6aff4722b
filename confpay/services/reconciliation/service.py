"""Reconciliation service logic.

Webhooks are verified, decoded, located and reconciled inside one database
transaction per event; provider event ids are deduplicated per vertical and a
cross-record sync follows every applied change. Real-time refresh, checkout
creation and maintenance sweeps share the same store and reconciler.
"""

import asyncio
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from confpay.common.config import CommonSettings, VerticalSettings, settings
from confpay.common.logging import event_id_ctx, logger, session_id_ctx, vertical_ctx
from confpay.common.metrics import duplicate_events_skipped_total, webhook_events_total
from confpay.common.state_machine import InvalidTransitionError, PaymentStatus
from confpay.common.tracing import tracer
from confpay.services.reconciliation.decoder import DEFAULT_DECODERS, decode_event
from confpay.services.reconciliation.errors import (
    ConcurrentUpdateError,
    InvalidRequestError,
    PricingConfigNotFoundError,
    RecordNotFoundError,
    UnknownVerticalError,
)
from confpay.services.reconciliation.locator import is_alternate_rail, locate
from confpay.services.reconciliation.models import (
    DiscountRecord,
    PaymentRecord,
    PricingConfig,
    ProcessedEvent,
    ProviderRecordMixin,
    RecordKind,
    utcnow,
)
from confpay.services.reconciliation.provider import PayPalClient, StripeProvider, paypal_session_id
from confpay.services.reconciliation.reconciler import (
    APPLIED,
    UNCHANGED,
    is_handled,
    reconcile,
    refresh_changes,
    webhook_changes,
)
from confpay.services.reconciliation.schemas import (
    DISCOUNT_PAYMENT_TYPE,
    DISCOUNT_SOURCE,
    AmountMismatch,
    CheckoutRequest,
    CheckoutResponse,
    DiscountSessionRequest,
    ExtractedFields,
    PayPalOrderRequest,
    SweepReport,
    SyncReport,
    VerifiedEvent,
    WebhookAck,
)
from confpay.services.reconciliation.store import (
    add_record,
    amount_mismatches,
    find_by_session_id,
    find_records,
    find_stale_pending,
    record_timeline,
    session_ids,
    status_statistics,
    to_major_units,
    to_minor_units,
)
from confpay.services.reconciliation.sync import CrossRecordSync
from confpay.services.reconciliation.verifier import SignatureVerifier


REJECTED = "rejected"


def _expire_if_pending(record: ProviderRecordMixin) -> dict:
    if record.status == PaymentStatus.PENDING:
        return {"status": PaymentStatus.EXPIRED}
    return {}


def _capture_changes(record: ProviderRecordMixin, fields: ExtractedFields) -> dict:
    if fields.status == "complete":
        return refresh_changes(record, fields)
    changes = {}
    if record.status != PaymentStatus.FAILED:
        changes["status"] = PaymentStatus.FAILED
    if record.payment_status != "failed":
        changes["payment_status"] = "failed"
    return changes


class ReconciliationService:
    """Owns webhook intake and record convergence for every configured vertical."""

    def __init__(self, session_factory, config: CommonSettings = settings) -> None:
        self.session_factory = session_factory
        self.config = config
        self.service_name = config.service_name
        self.verifier = SignatureVerifier(config)
        self.decoders = DEFAULT_DECODERS
        self.stripe = StripeProvider(config)
        self.paypal = PayPalClient(config)
        self.syncer = CrossRecordSync(self.service_name)

    def _vertical(self, vertical: str) -> VerticalSettings:
        vertical_settings = self.config.vertical(vertical)
        if vertical_settings is None:
            raise UnknownVerticalError(vertical)
        return vertical_settings

    def _count(self, vertical: str, event_type: str, outcome: str) -> None:
        webhook_events_total.labels(
            service=self.service_name,
            vertical=vertical,
            event_type=event_type,
            outcome=outcome,
        ).inc()

    # webhooks

    def handle_webhook(
        self,
        vertical: str,
        payload: bytes,
        signature: str | None,
        kind: RecordKind = RecordKind.PAYMENT,
    ) -> WebhookAck:
        """Verify and process one webhook delivery.

        Signature and payload errors propagate so the endpoint can answer 400.
        Anything that goes wrong after verification is logged and acknowledged.
        """

        self._vertical(vertical)
        vertical_ctx.set(vertical)
        event = self.verifier.verify(vertical, payload, signature, kind)
        event_id_ctx.set(event.event_id)
        logger.info(
            "webhook_received vertical=%s kind=%s event_id=%s event_type=%s",
            vertical,
            kind.value,
            event.event_id,
            event.event_type,
        )
        try:
            with tracer.start_as_current_span("webhook.process") as span:
                span.set_attribute("confpay.vertical", vertical)
                span.set_attribute("confpay.event_type", event.event_type)
                return self.process_event(event)
        except Exception as exc:
            logger.exception(
                "webhook_processing_failed vertical=%s event_id=%s error=%s",
                vertical,
                event.event_id,
                type(exc).__name__,
            )
            self._count(vertical, event.event_type, "error")
            return WebhookAck(error="Error processing webhook event")

    def process_event(self, event: VerifiedEvent) -> WebhookAck:
        vertical = event.vertical
        if not is_handled(event.event_type):
            logger.info("unhandled_event_type vertical=%s event_type=%s", vertical, event.event_type)
            self._count(vertical, event.event_type, "ignored")
            return WebhookAck(message=f"Unhandled event type: {event.event_type}")

        fields = decode_event(event, self.decoders)
        if fields is None:
            self._count(vertical, event.event_type, "uncorrelatable")
            return WebhookAck(error="Could not correlate event: no session or payment intent id")
        session_id_ctx.set(fields.session_id or "")
        preferred = fields.kind_hint() or event.received_kind

        with self.session_factory() as db:
            if self._already_processed(db, event):
                return self._duplicate_ack(event)

            located = locate(db, vertical, fields, preferred, event.event_type)
            if located is None:
                self._count(vertical, event.event_type, "not_found")
                return WebhookAck(error=f"No matching {preferred.value} record for {event.event_type}")
            record, _ = located
            session_id_ctx.set(record.session_id)

            try:
                outcome = reconcile(
                    db,
                    record,
                    lambda current: webhook_changes(current, event.event_type, fields),
                    reason=event.event_type,
                    event_id=event.event_id,
                )
            except InvalidTransitionError as exc:
                logger.warning(
                    "transition_rejected kind=%s record_id=%s event_id=%s detail=%s",
                    record.kind.value,
                    record.id,
                    event.event_id,
                    exc,
                )
                outcome = REJECTED
            else:
                db.add(ProcessedEvent(event_id=event.event_id, vertical=vertical, event_type=event.event_type))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return self._duplicate_ack(event)
            label = record.kind.value.title()
            session_id = record.session_id
            status = record.status.value
            payment_status = record.payment_status

        sync_outcome = None
        if outcome == APPLIED:
            report = self._sync_quietly(vertical, session_id, event.event_id)
            sync_outcome = report.outcome if report else None
        self._count(vertical, event.event_type, outcome)

        messages = {
            APPLIED: f"{label} record updated",
            UNCHANGED: f"{label} record already up to date",
            REJECTED: f"Transition from {status} ignored",
        }
        return WebhookAck(
            message=messages[outcome],
            status=status,
            payment_status=payment_status,
            sync=sync_outcome,
        )

    def _already_processed(self, db, event: VerifiedEvent) -> bool:
        return db.get(ProcessedEvent, (event.event_id, event.vertical)) is not None

    def _duplicate_ack(self, event: VerifiedEvent) -> WebhookAck:
        logger.info("duplicate event skipped vertical=%s event_id=%s", event.vertical, event.event_id)
        duplicate_events_skipped_total.labels(service=self.service_name, vertical=event.vertical).inc()
        self._count(event.vertical, event.event_type, "duplicate")
        return WebhookAck(message="Duplicate event ignored")

    # cross-record sync

    def _run_sync(self, vertical: str, session_id: str, event_id: str | None = None) -> SyncReport:
        """Sync one session, re-reading and retrying once on a version conflict."""

        for attempt in (1, 2):
            with self.session_factory() as db:
                try:
                    report = self.syncer.sync(db, vertical, session_id, event_id)
                    db.commit()
                    return report
                except ConcurrentUpdateError:
                    db.rollback()
                    if attempt == 2:
                        raise
                    logger.warning("sync_conflict_retry vertical=%s session_id=%s", vertical, session_id)

    def _sync_quietly(self, vertical: str, session_id: str, event_id: str | None) -> SyncReport | None:
        try:
            return self._run_sync(vertical, session_id, event_id)
        except ConcurrentUpdateError:
            logger.warning("sync_deferred vertical=%s session_id=%s reason=conflict", vertical, session_id)
            return None

    def sync_session(self, vertical: str, session_id: str) -> SyncReport:
        self._vertical(vertical)
        return self._run_sync(vertical, session_id)

    def sync_all_verticals(self, session_id: str) -> list[SyncReport]:
        """Sync one session id in every configured vertical."""

        return [self._run_sync(vertical, session_id) for vertical in self.config.verticals]

    def sweep(self, vertical: str) -> SweepReport:
        """Sync every session id known to one vertical."""

        self._vertical(vertical)
        with self.session_factory() as db:
            ids = session_ids(db, vertical)
        outcomes: dict[str, int] = {}
        for session_id in ids:
            try:
                outcome = self._run_sync(vertical, session_id).outcome
            except ConcurrentUpdateError:
                outcome = "conflict"
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
        logger.info("sync_sweep_done vertical=%s sessions=%s outcomes=%s", vertical, len(ids), outcomes)
        return SweepReport(vertical=vertical, sessions_checked=len(ids), outcomes=outcomes)

    # real-time refresh

    def _provider_update(
        self,
        vertical: str,
        kind: RecordKind,
        session_id: str,
        fetch,
        compute,
        reason: str,
        enforce_transitions: bool = False,
    ) -> ProviderRecordMixin:
        """Load a record, ask the provider via `fetch`, apply `compute` and sync the session.

        The record must exist before any provider call is made.
        """

        self._vertical(vertical)
        with self.session_factory() as db:
            record = find_by_session_id(db, kind, vertical, session_id)
            if record is None:
                raise RecordNotFoundError(f"{kind.value} record not found for session {session_id}")
            fields = fetch(record)
            outcome = reconcile(
                db,
                record,
                lambda current: compute(current, fields),
                reason=reason,
                enforce_transitions=enforce_transitions,
            )
            db.commit()
        if outcome == APPLIED:
            self._sync_quietly(vertical, record.session_id, None)
        return self.get_record(vertical, record.kind, record.session_id)

    def refresh_session(self, vertical: str, kind: RecordKind, session_id: str) -> ProviderRecordMixin:
        """Pull the session from its provider and overwrite the stored record."""

        def fetch(_record):
            if is_alternate_rail(session_id):
                return self.paypal.retrieve_order(session_id)
            return self.stripe.retrieve_session(session_id)

        return self._provider_update(vertical, kind, session_id, fetch, refresh_changes, "realtime_refresh")

    def expire_session(self, vertical: str, kind: RecordKind, session_id: str) -> ProviderRecordMixin:
        """Expire a checkout session at the provider and mark the record EXPIRED.

        PayPal orders cannot be voided before approval and lapse on their own,
        so those records are only expired locally.
        """

        if is_alternate_rail(session_id):
            return self._provider_update(
                vertical,
                kind,
                session_id,
                lambda _record: None,
                lambda current, _fields: _expire_if_pending(current),
                "expired_by_request",
                enforce_transitions=True,
            )
        return self._provider_update(
            vertical,
            kind,
            session_id,
            lambda _record: self.stripe.expire_session(session_id),
            refresh_changes,
            "expired_by_request",
        )

    def refresh_payment_intent(self, vertical: str, kind: RecordKind, intent_id: str) -> ProviderRecordMixin:
        """Pull a payment intent and apply it to whichever record carries its id."""

        self._vertical(vertical)
        fields = self.stripe.retrieve_payment_intent(intent_id)
        with self.session_factory() as db:
            located = locate(db, vertical, fields, kind, "payment_intent.refresh")
            if located is None:
                raise RecordNotFoundError(f"no record found for payment intent {intent_id}")
            record, _ = located
            outcome = reconcile(
                db,
                record,
                lambda current: refresh_changes(current, fields),
                reason="realtime_refresh",
                enforce_transitions=False,
            )
            db.commit()
        if outcome == APPLIED:
            self._sync_quietly(vertical, record.session_id, None)
        return self.get_record(vertical, record.kind, record.session_id)

    def get_record(self, vertical: str, kind: RecordKind, session_id: str) -> ProviderRecordMixin:
        self._vertical(vertical)
        with self.session_factory() as db:
            record = find_by_session_id(db, kind, vertical, session_id)
            if record is None:
                raise RecordNotFoundError(f"{kind.value} record not found for session {session_id}")
            return record

    # checkout initiation

    def create_checkout_session(
        self, vertical: str, req: CheckoutRequest, pricing_config_id: int
    ) -> CheckoutResponse:
        """Open a provider checkout for a pricing configuration and store it as PENDING."""

        vertical_settings = self._vertical(vertical)
        with self.session_factory() as db:
            pricing = db.get(PricingConfig, pricing_config_id)
            if pricing is None or pricing.vertical != vertical:
                raise PricingConfigNotFoundError(f"pricing config {pricing_config_id} not found for {vertical}")
            currency = (pricing.currency or vertical_settings.currency).lower()
            fields, url = self.stripe.create_checkout_session(
                amount_minor=to_minor_units(pricing.total_price, currency),
                currency=currency,
                product_name=req.product_name or vertical_settings.product_label,
                description=req.description or pricing.name,
                customer_email=req.customer_email,
                success_url=req.success_url or vertical_settings.success_url,
                cancel_url=req.cancel_url or vertical_settings.cancel_url,
                metadata={"vertical": vertical, "pricingConfigId": str(pricing.id)},
            )
            record = add_record(
                db,
                PaymentRecord(
                    vertical=vertical,
                    session_id=fields.session_id,
                    payment_intent_id=fields.payment_intent_id,
                    customer_email=req.customer_email,
                    amount_total=pricing.total_price,
                    currency=currency,
                    status=PaymentStatus.PENDING,
                    payment_status=fields.payment_status or "unpaid",
                    provider_created_at=fields.created,
                    provider_expires_at=fields.expires_at,
                    pricing_config_id=pricing.id,
                    pricing_total_snapshot=pricing.total_price,
                ),
            )
            record_timeline(db, record, None, PaymentStatus.PENDING, "checkout_created", None)
            db.commit()
        logger.info(
            "checkout_created vertical=%s session_id=%s pricing_config_id=%s",
            vertical,
            record.session_id,
            pricing_config_id,
        )
        return CheckoutResponse(
            session_id=record.session_id,
            payment_intent_id=record.payment_intent_id,
            url=url,
            status=record.status,
            payment_status=record.payment_status,
        )

    def create_discount_session(self, vertical: str, req: DiscountSessionRequest) -> CheckoutResponse:
        """Open a provider checkout for an ad-hoc amount and store a PENDING discount record."""

        vertical_settings = self._vertical(vertical)
        currency = req.currency.lower()
        fields, url = self.stripe.create_checkout_session(
            amount_minor=to_minor_units(req.unit_amount, currency),
            currency=currency,
            product_name=req.product_name,
            description=req.description,
            customer_email=req.customer_email,
            success_url=req.success_url or vertical_settings.success_url,
            cancel_url=req.cancel_url or vertical_settings.cancel_url,
            metadata={
                "vertical": vertical,
                "source": DISCOUNT_SOURCE,
                "paymentType": DISCOUNT_PAYMENT_TYPE,
            },
        )
        with self.session_factory() as db:
            record = add_record(
                db,
                DiscountRecord(
                    vertical=vertical,
                    session_id=fields.session_id,
                    payment_intent_id=fields.payment_intent_id,
                    customer_email=req.customer_email,
                    amount_total=req.unit_amount,
                    currency=currency,
                    status=PaymentStatus.PENDING,
                    payment_status=fields.payment_status or "unpaid",
                    provider_created_at=fields.created,
                    provider_expires_at=fields.expires_at,
                    name=req.name,
                    phone=req.phone,
                    institute_or_university=req.institute_or_university,
                    country=req.country,
                ),
            )
            record_timeline(db, record, None, PaymentStatus.PENDING, "discount_session_created", None)
            db.commit()
        logger.info("discount_session_created vertical=%s session_id=%s", vertical, record.session_id)
        return CheckoutResponse(
            session_id=record.session_id,
            payment_intent_id=record.payment_intent_id,
            url=url,
            status=record.status,
            payment_status=record.payment_status,
        )

    # paypal orders

    def create_paypal_order(self, vertical: str, req: PayPalOrderRequest) -> CheckoutResponse:
        """Create a PayPal order and store it as a PENDING payment record keyed `PAYPAL_<order id>`."""

        vertical_settings = self._vertical(vertical)
        with self.session_factory() as db:
            pricing = None
            amount = req.amount
            if req.pricing_config_id is not None:
                pricing = db.get(PricingConfig, req.pricing_config_id)
                if pricing is None or pricing.vertical != vertical:
                    raise PricingConfigNotFoundError(
                        f"pricing config {req.pricing_config_id} not found for {vertical}"
                    )
                if amount is not None and amount != pricing.total_price:
                    raise InvalidRequestError(
                        f"amount {amount} does not match pricing config amount {pricing.total_price}"
                    )
                amount = pricing.total_price
            if amount is None:
                raise InvalidRequestError("amount or pricing_config_id is required")
            currency = req.currency.lower()
            fields, url = self.paypal.create_order(
                amount=amount,
                currency=currency,
                customer_email=req.customer_email,
                description=req.description or vertical_settings.product_label,
                reference_id=f"{vertical.upper()}_{req.pricing_config_id or 'CUSTOM'}",
                return_url=req.success_url or vertical_settings.success_url,
                cancel_url=req.cancel_url or vertical_settings.cancel_url,
            )
            record = add_record(
                db,
                PaymentRecord(
                    vertical=vertical,
                    session_id=fields.session_id,
                    customer_email=req.customer_email,
                    amount_total=amount,
                    currency=currency,
                    status=PaymentStatus.PENDING,
                    payment_status="unpaid",
                    provider_created_at=utcnow(),
                    pricing_config_id=pricing.id if pricing else None,
                    pricing_total_snapshot=pricing.total_price if pricing else None,
                ),
            )
            record_timeline(db, record, None, PaymentStatus.PENDING, "paypal_order_created", None)
            db.commit()
        logger.info("paypal_order_created vertical=%s session_id=%s amount=%s", vertical, record.session_id, amount)
        return CheckoutResponse(
            session_id=record.session_id,
            url=url,
            status=record.status,
            payment_status=record.payment_status,
        )

    def capture_paypal_order(self, vertical: str, order_id: str) -> ProviderRecordMixin:
        """Capture an approved PayPal order; a capture that does not complete marks the record FAILED."""

        def fetch(record):
            fields = self.paypal.capture_order(record.session_id)
            captured = to_major_units(fields.amount_minor, fields.currency)
            if captured is not None and record.amount_total is not None and captured != record.amount_total:
                logger.warning(
                    "paypal_capture_amount_mismatch session_id=%s expected=%s captured=%s",
                    record.session_id,
                    record.amount_total,
                    captured,
                )
            return fields

        return self._provider_update(
            vertical,
            RecordKind.PAYMENT,
            paypal_session_id(order_id),
            fetch,
            _capture_changes,
            "paypal_capture",
        )

    # record queries

    def list_records(
        self,
        vertical: str,
        kind: RecordKind,
        customer_email: str | None = None,
        status: PaymentStatus | None = None,
        limit: int = 50,
    ) -> list[ProviderRecordMixin]:
        self._vertical(vertical)
        with self.session_factory() as db:
            return find_records(db, kind, vertical, customer_email=customer_email, status=status, limit=limit)

    # maintenance

    def expire_stale(self, vertical: str | None = None, now: datetime | None = None) -> dict[str, dict[str, int]]:
        """Move PENDING records whose provider expiry has passed to EXPIRED."""

        verticals = [vertical] if vertical else list(self.config.verticals)
        for name in verticals:
            self._vertical(name)
        now = now or datetime.now(timezone.utc)
        expired: dict[str, dict[str, int]] = {}
        for name in verticals:
            expired[name] = {}
            for kind in RecordKind:
                count = 0
                with self.session_factory() as db:
                    for record in find_stale_pending(db, kind, name, now):
                        try:
                            outcome = reconcile(
                                db,
                                record,
                                _expire_if_pending,
                                reason="expired_by_sweep",
                            )
                        except ConcurrentUpdateError:
                            logger.warning("stale_expiry_conflict kind=%s record_id=%s", kind.value, record.id)
                            continue
                        if outcome == APPLIED:
                            count += 1
                    db.commit()
                expired[name][kind.value] = count
        total = sum(sum(kinds.values()) for kinds in expired.values())
        if total:
            logger.info("stale_records_expired total=%s detail=%s", total, expired)
        return expired

    async def stale_sweeper(self) -> None:
        """Periodically expire stale PENDING records."""

        interval = self.config.stale_sweep_interval_seconds
        while True:
            try:
                await asyncio.to_thread(self.expire_stale)
            except Exception as exc:
                logger.exception("stale sweep failed: %s", exc)
            await asyncio.sleep(interval)

    def amount_mismatches(self, vertical: str) -> list[AmountMismatch]:
        self._vertical(vertical)
        with self.session_factory() as db:
            rows = amount_mismatches(db, vertical)
        return [
            AmountMismatch(
                record_id=record.id,
                session_id=record.session_id,
                pricing_config_id=pricing.id,
                amount_total=record.amount_total,
                pricing_total=pricing.total_price,
                pricing_total_snapshot=record.pricing_total_snapshot,
                status=record.status,
            )
            for record, pricing in rows
        ]

    def statistics(self) -> dict[str, dict[str, dict]]:
        """Per vertical and record kind: counts by status and completed amount."""

        with self.session_factory() as db:
            return {
                vertical: {kind.value: status_statistics(db, kind, vertical) for kind in RecordKind}
                for vertical in self.config.verticals
            }
