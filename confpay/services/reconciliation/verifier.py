"""Webhook signature verification against per-vertical endpoint secrets."""

import stripe

from confpay.common.config import CommonSettings
from confpay.common.logging import logger
from confpay.common.metrics import webhook_signature_failures_total
from confpay.services.reconciliation.errors import UnknownVerticalError, WebhookAuthError, WebhookPayloadError
from confpay.services.reconciliation.models import RecordKind
from confpay.services.reconciliation.schemas import VerifiedEvent


WEBHOOK_SECRET_PREFIX = "whsec_"


class SignatureVerifier:
    """Checks `Stripe-Signature` headers and returns the verified event."""

    def __init__(self, config: CommonSettings) -> None:
        self.config = config

    def secret_for(self, vertical: str, kind: RecordKind) -> str:
        vertical_settings = self.config.vertical(vertical)
        if vertical_settings is None:
            raise UnknownVerticalError(vertical)
        if kind is RecordKind.DISCOUNT:
            return vertical_settings.discount_webhook_secret
        return vertical_settings.webhook_secret

    def _reject(self, vertical: str, reason: str) -> WebhookAuthError:
        webhook_signature_failures_total.labels(
            service=self.config.service_name,
            vertical=vertical,
            reason=reason,
        ).inc()
        return WebhookAuthError(reason)

    def verify(
        self,
        vertical: str,
        payload: bytes | str,
        signature: str | None,
        kind: RecordKind = RecordKind.PAYMENT,
    ) -> VerifiedEvent:
        """Recompute the provider signature over `payload` and compare.

        Raises `WebhookAuthError` for any signature problem and
        `WebhookPayloadError` when the signed body is not an event.
        """

        secret = self.secret_for(vertical, kind)
        if not signature or not signature.strip():
            logger.warning("webhook_rejected vertical=%s kind=%s reason=missing_signature", vertical, kind.value)
            raise self._reject(vertical, "missing_signature")
        if not secret:
            logger.error("webhook_rejected vertical=%s kind=%s reason=secret_not_configured", vertical, kind.value)
            raise self._reject(vertical, "secret_not_configured")
        if not secret.startswith(WEBHOOK_SECRET_PREFIX):
            logger.error("webhook_rejected vertical=%s kind=%s reason=malformed_secret", vertical, kind.value)
            raise self._reject(vertical, "malformed_secret")

        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            event = stripe.Webhook.construct_event(text, signature, secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning(
                "webhook_rejected vertical=%s kind=%s reason=bad_signature payload_length=%s",
                vertical,
                kind.value,
                len(text),
            )
            raise self._reject(vertical, "bad_signature") from exc
        except ValueError as exc:
            logger.warning("webhook_rejected vertical=%s kind=%s reason=invalid_payload", vertical, kind.value)
            webhook_signature_failures_total.labels(
                service=self.config.service_name,
                vertical=vertical,
                reason="invalid_payload",
            ).inc()
            raise WebhookPayloadError("invalid payload") from exc

        event_id = getattr(event, "id", None)
        event_type = getattr(event, "type", None)
        if not event_id or not event_type:
            raise WebhookPayloadError("event id or type missing")
        return VerifiedEvent(
            event_id=event_id,
            event_type=event_type,
            payload=text,
            vertical=vertical,
            received_kind=kind,
        )
