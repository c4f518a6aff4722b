"""Record status lifecycle and provider status vocabulary.

Webhook-driven changes are checked against `ALLOWED_TRANSITIONS`. A COMPLETED
record may still be overwritten by a later contradictory event (a reversal);
the other terminal states are final for webhook traffic.
"""

from enum import Enum

from confpay.common.logging import logger


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED}
)

ALLOWED_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.EXPIRED,
    },
    PaymentStatus.COMPLETED: {PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.EXPIRED: set(),
}

_PROVIDER_STATUS_SYNONYMS: dict[str, PaymentStatus] = {
    "paid": PaymentStatus.COMPLETED,
    "complete": PaymentStatus.COMPLETED,
    "completed": PaymentStatus.COMPLETED,
    "success": PaymentStatus.COMPLETED,
    "succeeded": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "fail": PaymentStatus.FAILED,
    "error": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
    "cancel": PaymentStatus.CANCELLED,
    "expired": PaymentStatus.EXPIRED,
    "expire": PaymentStatus.EXPIRED,
    "pending": PaymentStatus.PENDING,
    "processing": PaymentStatus.PENDING,
    "incomplete": PaymentStatus.PENDING,
    "open": PaymentStatus.PENDING,
    "unpaid": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
}

# Checkout session lifecycle as reported by the real-time session lookup.
_SESSION_STATUS: dict[str, PaymentStatus] = {
    "complete": PaymentStatus.COMPLETED,
    "expired": PaymentStatus.EXPIRED,
    "open": PaymentStatus.PENDING,
}


class InvalidTransitionError(ValueError):
    """Raised when a webhook-driven change is not allowed from the current status."""


def map_provider_status(raw: str | None) -> PaymentStatus:
    """Map provider status vocabulary to the internal enum. Never raises."""

    if raw is None:
        return PaymentStatus.PENDING
    status = _PROVIDER_STATUS_SYNONYMS.get(str(raw).strip().lower())
    if status is None:
        logger.warning("unknown_provider_status raw=%s defaulting_to=%s", raw, PaymentStatus.PENDING.value)
        return PaymentStatus.PENDING
    return status


def map_session_status(raw: str | None) -> PaymentStatus:
    """Map a checkout session's own status, falling back to the general vocabulary."""

    if raw is not None and str(raw).strip().lower() in _SESSION_STATUS:
        return _SESSION_STATUS[str(raw).strip().lower()]
    return map_provider_status(raw)


def is_reversal(current: PaymentStatus, new: PaymentStatus) -> bool:
    """A COMPLETED record moving to another terminal status."""

    return current == PaymentStatus.COMPLETED and new in TERMINAL_STATUSES and new != current


def validate_transition(current: PaymentStatus, new: PaymentStatus) -> None:
    """Raise when a transition is not allowed by the state machine.

    Re-applying the current status is always accepted.
    """

    if current == new:
        return
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Invalid transition: {current.value} -> {new.value}")
