"""Transactional outbox: enqueue side effects with the state change, deliver later.

Rows are written by the settlement and issuance code in the same transaction
as the change they describe. ``dispatch_once`` claims due rows, hands them to
a ``Deliverer`` and records the result; delivery may repeat after a crash, so
every channel carries the row's idempotency key to its consumer.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from . import db as dbmod
from .config import Settings
from .errors import ProviderUnavailable
from .models import (
    OUTBOX_DELIVERED,
    OUTBOX_FAILED,
    OUTBOX_PENDING,
    OUTBOX_PROCESSING,
    OutboxEvent,
    utcnow,
)
from .provider import PaymentProvider

logger = logging.getLogger(__name__)

ORDER_CONFIRMATION = "order.confirmation"
REFUND_CONFIRMATION = "refund.confirmation"
INTEGRATION_ORDER_SETTLED = "integration.order_settled"
PAYMENT_REFUND = "payment.refund"
OPERATOR_ALERT = "operator.alert"

SIGNAL_STREAM = "outbox_signals"
DONE_KEY_TTL_SECONDS = 7 * 24 * 3600


class DeliveryError(Exception):
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


def enqueue(
    db: Session,
    event_type: str,
    idempotency_key: str,
    payload: dict[str, Any],
    aggregate_id: Optional[str] = None,
    max_attempts: int = 5,
) -> bool:
    """Insert an outbox row in the caller's transaction.

    Returns False when a row with the same idempotency key already exists.
    """
    written = dbmod.insert_ignore(
        db,
        OutboxEvent,
        {
            "event_type": event_type,
            "aggregate_id": aggregate_id,
            "idempotency_key": idempotency_key,
            "payload": payload,
            "status": OUTBOX_PENDING,
            "attempts": 0,
            "max_attempts": max_attempts,
        },
    )
    if written:
        logger.info("outbox enqueued type=%s key=%s order_id=%s", event_type, idempotency_key, aggregate_id)
    return bool(written)


async def signal(redis, order_id: str) -> None:
    """Wake the worker; the database row is the source of truth."""
    try:
        await redis.xadd(SIGNAL_STREAM, {"order_id": order_id}, maxlen=10000, approximate=True)
    except Exception:
        logger.warning("outbox signal failed order_id=%s; worker will poll", order_id, exc_info=True)


def backoff_delay(attempts: int, initial_seconds: int) -> timedelta:
    return timedelta(seconds=initial_seconds * (2 ** max(attempts - 1, 0)))


def scrub_payload(payload: dict[str, Any]) -> dict[str, Any]:
    # Ticket secrets are only kept until the confirmation has been handed off.
    if "tickets" not in payload:
        return payload
    out = dict(payload)
    out["tickets"] = [{k: v for k, v in t.items() if k != "secret"} for t in payload["tickets"]]
    return out


# -------------------------
# Delivery channels
# -------------------------
def _format_money(amount: int, currency: str) -> str:
    return f"{currency} {amount // 100}.{amount % 100:02d}"


def render_email(event_type: str, payload: dict) -> tuple[str, str]:
    if event_type == ORDER_CONFIRMATION:
        lines = [
            f"Thank you for your order {payload['order_id']} for {payload.get('event_name', 'the event')}.",
            f"Total paid: {_format_money(payload.get('total_amount', 0), payload.get('currency', 'EUR'))}",
            "",
            "Your tickets:",
        ]
        for t in payload.get("tickets", []):
            code = f" / code {t['secret']}" if t.get("secret") else ""
            lines.append(f"  {t.get('ticket_type_name', 'Ticket')} #{t['sequence_no']}: {t['ticket_id']}{code}")
        if payload.get("lookup_url"):
            lines += ["", f"View your order: {payload['lookup_url']}"]
        return f"Your tickets for {payload.get('event_name', 'the event')}", "\n".join(lines)

    if event_type == REFUND_CONFIRMATION:
        return (
            f"Refund for order {payload['order_id']}",
            f"We refunded {_format_money(payload.get('amount', 0), payload.get('currency', 'EUR'))} "
            f"for order {payload['order_id']}. Tickets on this order are no longer valid.",
        )

    raise DeliveryError(f"no email template for {event_type}", retryable=False)


@dataclass
class Deliverer:
    settings: Settings
    provider: PaymentProvider
    redis: Any
    transport: Optional[httpx.AsyncBaseTransport] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.provider_timeout_seconds, transport=self.transport)

    async def already_delivered(self, key: str) -> bool:
        return bool(await self.redis.exists(f"outbox:done:{key}"))

    async def mark_done(self, key: str) -> None:
        await self.redis.set(f"outbox:done:{key}", "1", ex=DONE_KEY_TTL_SECONDS)

    async def deliver(self, event_type: str, key: str, payload: dict) -> None:
        if await self.already_delivered(key):
            logger.info("outbox consumer already saw key=%s; skipping send", key)
            return

        if event_type in (ORDER_CONFIRMATION, REFUND_CONFIRMATION):
            await self._send_email(event_type, key, payload)
        elif event_type == INTEGRATION_ORDER_SETTLED:
            await self._post_integration(key, payload)
        elif event_type == PAYMENT_REFUND:
            await self._refund(key, payload)
        elif event_type == OPERATOR_ALERT:
            await self._alert(key, payload)
        else:
            raise DeliveryError(f"unknown outbox event type {event_type}", retryable=False)

        await self.mark_done(key)

    async def _post(self, url: str, key: str, json: dict, headers: Optional[dict] = None) -> None:
        hdrs = {"Idempotency-Key": key}
        hdrs.update(headers or {})
        try:
            async with self._client() as client:
                r = await client.post(url, json=json, headers=hdrs)
        except httpx.HTTPError as e:
            raise DeliveryError(f"{type(e).__name__}: {e}") from e
        if r.status_code >= 500 or r.status_code == 429:
            raise DeliveryError(f"{url} answered {r.status_code}")
        if r.status_code >= 400:
            raise DeliveryError(f"{url} rejected with {r.status_code}: {r.text[:200]}", retryable=False)

    async def _send_email(self, event_type: str, key: str, payload: dict) -> None:
        subject, text = render_email(event_type, payload)
        sender = payload.get("sender_name") or "Box Office"
        body = {
            "from": f"{sender} <{self.settings.email_from}>",
            "to": [payload["email"]],
            "subject": subject,
            "text": text,
        }
        if payload.get("reply_to"):
            body["reply_to"] = payload["reply_to"]
        await self._post(
            self.settings.email_api_url,
            key,
            body,
            headers={"Authorization": f"Bearer {self.settings.email_api_key}"},
        )

    async def _post_integration(self, key: str, payload: dict) -> None:
        url = payload.get("url") or self.settings.integration_webhook_url
        if not url:
            raise DeliveryError("no integration URL configured", retryable=False)
        await self._post(url, key, {"event_type": INTEGRATION_ORDER_SETTLED, "idempotency_key": key, "payload": payload})

    async def _refund(self, key: str, payload: dict) -> None:
        try:
            refund = await self.provider.create_refund(
                payment_id=payload["provider_payment_id"],
                amount=payload["amount"],
                currency=payload["currency"],
                description=f"Refund order {payload['order_id']} ({payload.get('reason', 'refund')})",
                idempotency_key=key,
            )
        except ProviderUnavailable as e:
            raise DeliveryError(e.message) from e
        logger.info("refund initiated order_id=%s refund_id=%s status=%s", payload["order_id"], refund.id, refund.status)

    async def _alert(self, key: str, payload: dict) -> None:
        logger.critical(
            "OPERATOR ALERT reason=%s order_id=%s payment_event_key=%s detail=%s",
            payload.get("reason"), payload.get("order_id"), payload.get("payment_event_key"), payload,
        )
        if self.settings.alert_webhook_url:
            await self._post(self.settings.alert_webhook_url, key, {"text": f"[boxoffice] {payload.get('reason')}", "alert": payload})


# -------------------------
# Dispatch
# -------------------------
@dataclass
class DispatchResult:
    claimed: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


def claim_due(settings: Settings, now: Optional[datetime] = None) -> list[dict]:
    now = now or utcnow()
    lease_cutoff = now - timedelta(seconds=settings.outbox_lease_seconds)
    db = dbmod.SessionLocal()
    try:
        rows = db.execute(
            select(OutboxEvent)
            .where(
                or_(
                    and_(
                        OutboxEvent.status == OUTBOX_PENDING,
                        or_(OutboxEvent.next_attempt_at.is_(None), OutboxEvent.next_attempt_at <= now),
                    ),
                    and_(OutboxEvent.status == OUTBOX_PROCESSING, OutboxEvent.locked_at < lease_cutoff),
                )
            )
            .order_by(OutboxEvent.id)
            .limit(settings.outbox_batch_size)
            .with_for_update(skip_locked=True)
        ).scalars().all()

        claimed = []
        for row in rows:
            row.status = OUTBOX_PROCESSING
            row.locked_at = now
            claimed.append({
                "id": row.id,
                "event_type": row.event_type,
                "idempotency_key": row.idempotency_key,
                "aggregate_id": row.aggregate_id,
                "payload": dict(row.payload or {}),
                "attempts": row.attempts,
                "max_attempts": row.max_attempts,
            })
        db.commit()
        return claimed
    finally:
        db.close()


def mark_delivered(event_id: int) -> None:
    db = dbmod.SessionLocal()
    try:
        row = db.get(OutboxEvent, event_id)
        row.status = OUTBOX_DELIVERED
        row.attempts += 1
        row.delivered_at = utcnow()
        row.locked_at = None
        row.last_error = None
        row.payload = scrub_payload(row.payload or {})
        db.commit()
    finally:
        db.close()


def mark_attempt_failed(settings: Settings, item: dict, error: DeliveryError) -> str:
    db = dbmod.SessionLocal()
    try:
        row = db.get(OutboxEvent, item["id"])
        row.attempts += 1
        row.last_error = str(error)[:1000]
        row.locked_at = None
        if error.retryable and row.attempts < row.max_attempts:
            row.status = OUTBOX_PENDING
            row.next_attempt_at = utcnow() + backoff_delay(row.attempts, settings.outbox_initial_delay_seconds)
            logger.warning(
                "outbox delivery failed, retry scheduled key=%s order_id=%s attempt=%s next=%s error=%s",
                row.idempotency_key, row.aggregate_id, row.attempts, row.next_attempt_at, error,
            )
        else:
            row.status = OUTBOX_FAILED
            row.next_attempt_at = None
            row.payload = scrub_payload(row.payload or {})
            logger.error(
                "outbox delivery permanently failed key=%s order_id=%s attempts=%s error=%s",
                row.idempotency_key, row.aggregate_id, row.attempts, error,
            )
            if row.event_type == PAYMENT_REFUND:
                # Refund initiation failure needs a human.
                enqueue(
                    db,
                    OPERATOR_ALERT,
                    f"{row.idempotency_key}:failed",
                    {
                        "reason": "REFUND_INITIATION_FAILED",
                        "order_id": row.aggregate_id,
                        "payment_event_key": (row.payload or {}).get("payment_event_key"),
                        "error": row.last_error,
                        "refund": row.payload,
                    },
                    aggregate_id=row.aggregate_id,
                    max_attempts=settings.outbox_max_attempts,
                )
        status = row.status
        db.commit()
        return status
    finally:
        db.close()


async def dispatch_once(settings: Settings, deliverer: Deliverer) -> DispatchResult:
    result = DispatchResult()
    for item in claim_due(settings):
        result.claimed += 1
        try:
            await deliverer.deliver(item["event_type"], item["idempotency_key"], item["payload"])
        except Exception as e:
            if not isinstance(e, DeliveryError):
                logger.exception("outbox delivery crashed key=%s", item["idempotency_key"])
                e = DeliveryError(f"{type(e).__name__}: {e}")
            status = mark_attempt_failed(settings, item, e)
            result.errors.append(f"{item['idempotency_key']}: {e}")
            if status == OUTBOX_FAILED:
                result.failed += 1
            else:
                result.retried += 1
            continue
        mark_delivered(item["id"])
        result.delivered += 1
    if result.claimed:
        logger.info(
            "outbox batch claimed=%s delivered=%s retried=%s failed=%s",
            result.claimed, result.delivered, result.retried, result.failed,
        )
    return result
