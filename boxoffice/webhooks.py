"""Payment provider notifications.

The notification body is only a hint: after the signature check the resource
is fetched from the provider and that answer is what gets applied. The
PaymentEvent insert is the idempotency boundary and shares its transaction
with the state change, so a failed settlement leaves no ledger row behind and
the provider's redelivery gets a clean retry.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import audit
from .config import Settings
from .errors import NotFoundError, ProviderUnavailable
from .models import PAYMENT_OPEN, Order, Payment, PaymentEvent
from .provider import PaymentProvider, ProviderPayment, ProviderRefund
from .security import verify_webhook_signature
from .settlement import (
    SettlementContext,
    SettlementOutcome,
    apply_payment_status,
    apply_refund_status,
    refund_foreign_payment,
)

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
REJECTED = "rejected"
UNAVAILABLE = "unavailable"
FAILED = "failed"


@dataclass
class WebhookResult:
    outcome: str
    status_code: int
    event_key: Optional[str] = None
    order_id: Optional[str] = None
    reason: str = ""
    settlement: Optional[SettlementOutcome] = None


def payment_event_key(resource_id: str, status: str, refund: bool = False) -> str:
    if refund:
        return f"refund:{resource_id}:{status}"
    return f"{resource_id}:{status}"


def context_for(settings: Settings, key: Optional[str]) -> SettlementContext:
    return SettlementContext(
        public_base_url=settings.public_base_url.rstrip("/"),
        integration_url=settings.integration_webhook_url,
        max_attempts=settings.outbox_max_attempts,
        payment_event_key=key,
    )


def record_payment_event(
    db: Session,
    provider: str,
    key: str,
    resource_id: str,
    event_type: str,
    order_id: Optional[str],
    payload: dict,
) -> bool:
    """Claim the idempotency key. False means this notification was already handled."""
    db.add(PaymentEvent(
        provider=provider,
        provider_event_id=key,
        provider_payment_id=resource_id,
        event_type=event_type,
        order_id=order_id,
        payload=payload,
    ))
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        return False
    return True


def _resolve_order_id(db: Session, provider_payment_id: str, metadata: dict) -> Optional[str]:
    order_id = metadata.get("order_id")
    if order_id:
        return order_id
    return db.execute(
        select(Payment.order_id).where(Payment.provider_payment_id == provider_payment_id)
    ).scalar_one_or_none()


def _ensure_payment_row(db: Session, provider: str, order: Order, remote: ProviderPayment) -> None:
    # The provider session exists but our Payment row was never written.
    if order.payment is not None:
        return
    db.add(Payment(
        order_id=order.id,
        provider=provider,
        provider_payment_id=remote.id,
        amount=remote.amount,
        currency=remote.currency,
        status=PAYMENT_OPEN,
        checkout_url=remote.checkout_url,
        raw=remote.raw,
    ))
    db.flush()
    db.refresh(order)
    logger.warning("payment row reconstructed order_id=%s payment=%s", order.id, remote.id)


def process_payment(db: Session, settings: Settings, remote: ProviderPayment) -> WebhookResult:
    """Apply an authoritative provider payment in one transaction."""
    key = payment_event_key(remote.id, remote.status)
    order_id = _resolve_order_id(db, remote.id, remote.metadata)
    if not order_id:
        logger.warning("payment without order association payment=%s status=%s", remote.id, remote.status)
        return WebhookResult(IGNORED, 200, key, reason="NO_ORDER")

    order = db.get(Order, order_id)
    if order is None:
        logger.warning("payment for unknown order payment=%s order_id=%s", remote.id, order_id)
        return WebhookResult(IGNORED, 200, key, order_id, reason="ORDER_NOT_FOUND")

    if not record_payment_event(db, settings.provider_name, key, remote.id, f"payment.{remote.status}", order_id, remote.raw):
        logger.info("payment event already processed key=%s order_id=%s", key, order_id)
        return WebhookResult(DUPLICATE, 200, key, order_id)

    try:
        _ensure_payment_row(db, settings.provider_name, order, remote)
        if order.payment.provider_payment_id != remote.id:
            logger.warning(
                "payment is not the order's payment order_id=%s payment=%s stored=%s status=%s",
                order_id, remote.id, order.payment.provider_payment_id, remote.status,
            )
            refund = {
                "provider": settings.provider_name,
                "provider_payment_id": remote.id,
                "amount": remote.amount,
                "currency": remote.currency,
            }
            outcome = refund_foreign_payment(db, order_id, remote.status, refund, context_for(settings, key))
        else:
            outcome = apply_payment_status(db, order_id, remote.status, context_for(settings, key))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("settlement failed order_id=%s payment_event_key=%s", order_id, key)
        audit.record_detached(
            "settlement", "ERROR", getattr(e, "code", type(e).__name__),
            order_id=order_id, payment_event_key=key, error=str(e)[:500],
        )
        return WebhookResult(FAILED, 500, key, order_id, reason=type(e).__name__)

    logger.info(
        "payment event processed key=%s order_id=%s action=%s order_status=%s",
        key, order_id, outcome.action, outcome.order_status,
    )
    return WebhookResult(PROCESSED, 200, key, order_id, settlement=outcome)


def process_refund(db: Session, settings: Settings, remote: ProviderRefund) -> WebhookResult:
    key = payment_event_key(remote.id, remote.status, refund=True)
    order_id = _resolve_order_id(db, remote.payment_id, {})
    if not order_id:
        logger.warning("refund for unknown payment refund=%s payment=%s", remote.id, remote.payment_id)
        return WebhookResult(IGNORED, 200, key, reason="PAYMENT_NOT_FOUND")

    if not record_payment_event(db, settings.provider_name, key, remote.id, f"refund.{remote.status}", order_id, remote.raw):
        logger.info("refund event already processed key=%s order_id=%s", key, order_id)
        return WebhookResult(DUPLICATE, 200, key, order_id)

    try:
        outcome = apply_refund_status(db, order_id, remote.status, remote.amount, context_for(settings, key))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("refund handling failed order_id=%s payment_event_key=%s", order_id, key)
        audit.record_detached(
            "refund", "ERROR", getattr(e, "code", type(e).__name__),
            order_id=order_id, payment_event_key=key, error=str(e)[:500],
        )
        return WebhookResult(FAILED, 500, key, order_id, reason=type(e).__name__)

    logger.info("refund event processed key=%s order_id=%s action=%s", key, order_id, outcome.action)
    return WebhookResult(PROCESSED, 200, key, order_id, settlement=outcome)


async def ingest_resource(db: Session, provider: PaymentProvider, settings: Settings, resource_id: str) -> WebhookResult:
    """Fetch the resource's current state from the provider and apply it."""
    refund = resource_id.startswith("re_")
    try:
        remote = await (provider.get_refund(resource_id) if refund else provider.get_payment(resource_id))
    except ProviderUnavailable as e:
        logger.error("provider fetch failed resource=%s error=%s", resource_id, e.message)
        return WebhookResult(UNAVAILABLE, 502, reason=e.code)

    if remote is None:
        # Unknown ids get a 200 so nothing leaks about what exists.
        logger.warning("resource unknown at provider resource=%s", resource_id)
        return WebhookResult(IGNORED, 200, reason="UNKNOWN_RESOURCE")

    if refund:
        return process_refund(db, settings, remote)
    return process_payment(db, settings, remote)


async def ingest_notification(
    db: Session,
    provider: PaymentProvider,
    settings: Settings,
    resource_id: Optional[str],
    body: bytes,
    signature: Optional[str],
) -> WebhookResult:
    try:
        claims = verify_webhook_signature(signature, body, settings.webhook_signing_secret)
    except ValueError as e:
        logger.warning("webhook rejected reason=%s resource=%s", e, resource_id)
        audit.record_detached("webhook", "REJECTED", str(e), resource_id=resource_id)
        return WebhookResult(REJECTED, 401, reason=str(e))

    if not resource_id:
        logger.warning("webhook without resource id")
        return WebhookResult(IGNORED, 200, reason="MISSING_ID")
    if claims["id"] != resource_id:
        logger.warning("webhook signature for another resource signed=%s body=%s", claims["id"], resource_id)
        audit.record_detached("webhook", "REJECTED", "ID_MISMATCH", resource_id=resource_id, signed_id=claims["id"])
        return WebhookResult(REJECTED, 401, reason="ID_MISMATCH")

    return await ingest_resource(db, provider, settings, resource_id)


def find_order_for_payment(db: Session, provider_payment_id: str) -> Order:
    payment = db.execute(
        select(Payment).where(Payment.provider_payment_id == provider_payment_id)
    ).scalar_one_or_none()
    if payment is None:
        raise NotFoundError("PAYMENT_NOT_FOUND", f"payment {provider_payment_id} not found")
    return payment.order
