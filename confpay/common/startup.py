"""Startup-time helpers for safe config logging."""

import os

from confpay.common.config import settings
from confpay.common.logging import logger


_SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "VERTICALS")


def _safe_env(name: str) -> str:
    """Return env value with simple redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(marker in name for marker in _SECRET_MARKERS):
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys plus which verticals have webhook secrets."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    config["verticals"] = {
        name: {
            "webhook_secret": bool(vertical.webhook_secret),
            "discount_webhook_secret": bool(vertical.discount_webhook_secret),
        }
        for name, vertical in settings.verticals.items()
    }
    logger.info("startup_config=%s", config)
