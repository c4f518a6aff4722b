"""Reconciliation error taxonomy.

Only the webhook authentication/payload errors surface to the provider as
non-2xx; everything else after verification is acknowledged.
"""

from confpay.common.state_machine import InvalidTransitionError


class WebhookAuthError(Exception):
    """Missing, malformed or mismatching webhook signature."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class WebhookPayloadError(Exception):
    """Verified body could not be read as a provider event."""


class UnknownVerticalError(LookupError):
    pass


class RecordNotFoundError(LookupError):
    pass


class PricingConfigNotFoundError(LookupError):
    pass


class InvalidRequestError(ValueError):
    """Request is well-formed but inconsistent with stored configuration."""


class ProviderError(RuntimeError):
    """Outbound call to a payment provider failed."""


class ConcurrentUpdateError(RuntimeError):
    """Guarded record update lost a race with another writer."""


__all__ = [
    "ConcurrentUpdateError",
    "InvalidRequestError",
    "InvalidTransitionError",
    "PricingConfigNotFoundError",
    "ProviderError",
    "RecordNotFoundError",
    "UnknownVerticalError",
    "WebhookAuthError",
    "WebhookPayloadError",
]
