"""Central environment-driven settings shared by every confpay process.

Each process loads this once at startup. Per-vertical behavior (webhook
secrets, checkout currency, redirect URLs) comes from the `verticals` table
rather than from code; see `.env.example`.
"""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_VERTICALS = ("optics", "nursing", "renewable", "polymers")


class VerticalSettings(BaseModel):
    """Provider wiring for one branded conference vertical."""

    webhook_secret: str = ""
    discount_webhook_secret: str = ""
    currency: str = "eur"
    success_url: str = "http://localhost:3000/payment/success"
    cancel_url: str = "http://localhost:3000/payment/cancel"
    product_label: str = "Conference registration"


def _default_verticals() -> dict[str, VerticalSettings]:
    return {name: VerticalSettings(product_label=f"{name.title()} conference registration") for name in DEFAULT_VERTICALS}


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "reconciliation"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./confpay.db"
    stripe_secret_key: str = ""
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    provider_timeout_seconds: float = 10.0
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    otel_enabled: bool = True
    stale_sweep_interval_seconds: int = 300
    locator_diagnostic_limit: int = 200
    verticals: dict[str, VerticalSettings] = Field(default_factory=_default_verticals)
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def vertical(self, name: str) -> VerticalSettings | None:
        return self.verticals.get(name)


settings = CommonSettings()
