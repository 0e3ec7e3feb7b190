import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str
    webhook_signing_secret: str
    identity_jwt_secret: str
    provider_name: str
    provider_url: str
    provider_api_key: str
    provider_timeout_seconds: float
    public_base_url: str
    email_api_url: str
    email_api_key: str
    email_from: str
    integration_webhook_url: Optional[str]
    alert_webhook_url: Optional[str]
    pending_order_ttl_minutes: int
    outbox_batch_size: int
    outbox_max_attempts: int
    outbox_initial_delay_seconds: int
    outbox_poll_seconds: float
    outbox_lease_seconds: int
    sweep_interval_seconds: int
    checkout_rate_limit_per_minute: int
    log_level: str


def load_settings() -> Settings:
    return Settings(
        database_url=os.environ.get("DATABASE_URL", "sqlite:///./boxoffice.db"),
        redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
        webhook_signing_secret=os.environ.get("WEBHOOK_SIGNING_SECRET", "dev_webhook_secret_change_me"),
        identity_jwt_secret=os.environ.get("IDENTITY_JWT_SECRET", "dev_identity_secret_change_me"),
        provider_name=os.environ.get("PAYMENT_PROVIDER_NAME", "mollie"),
        provider_url=os.environ.get("PAYMENT_PROVIDER_URL", "https://api.mollie.com/v2"),
        provider_api_key=os.environ.get("PAYMENT_PROVIDER_API_KEY", ""),
        provider_timeout_seconds=float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "10")),
        public_base_url=os.environ.get("PUBLIC_BASE_URL", "http://127.0.0.1:8000"),
        email_api_url=os.environ.get("EMAIL_API_URL", "https://api.resend.com/emails"),
        email_api_key=os.environ.get("EMAIL_API_KEY", ""),
        email_from=os.environ.get("EMAIL_FROM", "tickets@example.com"),
        integration_webhook_url=os.environ.get("INTEGRATION_WEBHOOK_URL") or None,
        alert_webhook_url=os.environ.get("ALERT_WEBHOOK_URL") or None,
        pending_order_ttl_minutes=int(os.environ.get("PENDING_ORDER_TTL_MINUTES", "60")),
        outbox_batch_size=int(os.environ.get("OUTBOX_BATCH_SIZE", "100")),
        outbox_max_attempts=int(os.environ.get("OUTBOX_MAX_ATTEMPTS", "5")),
        outbox_initial_delay_seconds=int(os.environ.get("OUTBOX_INITIAL_DELAY_SECONDS", "60")),
        outbox_poll_seconds=float(os.environ.get("OUTBOX_POLL_SECONDS", "5")),
        outbox_lease_seconds=int(os.environ.get("OUTBOX_LEASE_SECONDS", "300")),
        sweep_interval_seconds=int(os.environ.get("SWEEP_INTERVAL_SECONDS", "300")),
        checkout_rate_limit_per_minute=int(os.environ.get("CHECKOUT_RATE_LIMIT_PER_MINUTE", "30")),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# -------------------------
# Checkout policy
# -------------------------
class CheckoutPolicy(BaseModel):
    """Per-event checkout behaviour.

    Resolved from three layers, lowest precedence first: the defaults below,
    the organization's ``checkout`` settings, the event's ``checkout`` settings.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    currency: str = Field(default="EUR", min_length=3, max_length=3)
    max_tickets_per_order: int = Field(default=10, ge=1, le=500)
    send_confirmation_email: bool = True
    sender_name: str = "Box Office"
    reply_to: Optional[str] = None


class PolicyError(ValueError):
    pass


def _checkout_section(blob: Optional[dict[str, Any]]) -> dict[str, Any]:
    if not blob:
        return {}
    section = blob.get("checkout") or {}
    if not isinstance(section, dict):
        raise PolicyError("checkout settings must be an object")
    return {k: v for k, v in section.items() if v is not None}


def resolve_checkout_policy(
    org_settings: Optional[dict[str, Any]],
    event_settings: Optional[dict[str, Any]],
) -> CheckoutPolicy:
    merged: dict[str, Any] = {}
    merged.update(_checkout_section(org_settings))
    merged.update(_checkout_section(event_settings))
    try:
        return CheckoutPolicy(**merged)
    except ValidationError as e:
        raise PolicyError(str(e)) from e
