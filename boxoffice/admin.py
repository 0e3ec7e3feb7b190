from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select

from . import outbox
from .authz import Authorizer, Caller, require_manage
from .config import Settings
from .db import SessionLocal
from .deps import current_caller, get_authorizer, get_provider, get_redis, get_settings
from .errors import ConflictError, NotFoundError
from .models import OUTBOX_FAILED, OUTBOX_PENDING, AuditLog, Event, Order, OutboxEvent, utcnow
from .orders import order_summary
from .provider import PaymentProvider
from .settlement import sweep_stale_orders
from .webhooks import PROCESSED, context_for, find_order_for_payment, ingest_resource

router = APIRouter(prefix="/admin", tags=["admin"])


# -------------------------
# Helpers
# -------------------------
def _order_for_manager(db, order_id: str, authorizer: Authorizer, caller: Caller) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        # Same answer for missing and foreign orders once the caller is known.
        require_manage(authorizer, caller, None)
        raise NotFoundError("ORDER_NOT_FOUND", f"order {order_id} not found")
    require_manage(authorizer, caller, db.get(Event, order.event_id))
    return order


def _audit_row(log: AuditLog) -> dict:
    return {
        "id": log.id,
        "created_at": str(log.created_at),
        "order_id": log.order_id,
        "payment_event_key": log.payment_event_key,
        "action": log.action,
        "status": log.status,
        "reason_code": log.reason_code,
        "detail": log.detail,
    }


def _outbox_row(row: OutboxEvent) -> dict:
    return {
        "id": row.id,
        "event_type": row.event_type,
        "order_id": row.aggregate_id,
        "idempotency_key": row.idempotency_key,
        "status": row.status,
        "attempts": row.attempts,
        "max_attempts": row.max_attempts,
        "next_attempt_at": str(row.next_attempt_at) if row.next_attempt_at else None,
        "last_error": row.last_error,
        "created_at": str(row.created_at),
        "delivered_at": str(row.delivered_at) if row.delivered_at else None,
        "payload": outbox.scrub_payload(row.payload or {}),
    }


# -------------------------
# Orders
# -------------------------
@router.get("/orders/{order_id}")
def get_order(
    order_id: str,
    authorizer: Authorizer = Depends(get_authorizer),
    caller: Caller = Depends(current_caller),
):
    db = SessionLocal()
    try:
        order = _order_for_manager(db, order_id, authorizer, caller)
        out = order_summary(db, order, include_internal=True)
        logs = db.execute(
            select(AuditLog).where(AuditLog.order_id == order.id).order_by(AuditLog.id)
        ).scalars().all()
        out["audit"] = [_audit_row(l) for l in logs]
        return out
    finally:
        db.close()


# -------------------------
# Logs
# -------------------------
@router.get("/audit")
def get_audit(
    limit: int = 80,
    order_id: Optional[str] = None,
    event_id: Optional[str] = None,
    authorizer: Authorizer = Depends(get_authorizer),
    caller: Caller = Depends(current_caller),
):
    db = SessionLocal()
    try:
        q = select(AuditLog)
        if order_id:
            _order_for_manager(db, order_id, authorizer, caller)
            q = q.where(AuditLog.order_id == order_id)
        elif event_id:
            require_manage(authorizer, caller, db.get(Event, event_id))
            q = q.join(Order, Order.id == AuditLog.order_id).where(Order.event_id == event_id)
        else:
            # Unscoped rows (e.g. rejected webhooks) are platform-wide.
            require_manage(authorizer, caller, None)
        rows = db.execute(q.order_by(AuditLog.id.desc()).limit(min(limit, 500))).scalars().all()
        return [_audit_row(l) for l in rows]
    finally:
        db.close()


# -------------------------
# Outbox
# -------------------------
@router.get("/outbox")
def list_outbox(
    status: Optional[str] = None,
    order_id: Optional[str] = None,
    limit: int = 100,
    authorizer: Authorizer = Depends(get_authorizer),
    caller: Caller = Depends(current_caller),
):
    db = SessionLocal()
    try:
        q = select(OutboxEvent)
        if order_id:
            _order_for_manager(db, order_id, authorizer, caller)
            q = q.where(OutboxEvent.aggregate_id == order_id)
        else:
            require_manage(authorizer, caller, None)
        if status:
            q = q.where(OutboxEvent.status == status)
        rows = db.execute(q.order_by(OutboxEvent.id.desc()).limit(min(limit, 500))).scalars().all()
        return [_outbox_row(r) for r in rows]
    finally:
        db.close()


@router.post("/outbox/{event_id}/retry")
async def retry_outbox(
    event_id: int,
    redis=Depends(get_redis),
    authorizer: Authorizer = Depends(get_authorizer),
    caller: Caller = Depends(current_caller),
):
    db = SessionLocal()
    try:
        row = db.get(OutboxEvent, event_id)
        if row is None:
            require_manage(authorizer, caller, None)
            raise NotFoundError("OUTBOX_EVENT_NOT_FOUND", f"outbox event {event_id} not found")
        if row.aggregate_id:
            _order_for_manager(db, row.aggregate_id, authorizer, caller)
        else:
            require_manage(authorizer, caller, None)
        if row.status != OUTBOX_FAILED:
            raise ConflictError("OUTBOX_NOT_FAILED", f"outbox event is {row.status}")

        row.status = OUTBOX_PENDING
        row.attempts = 0
        row.next_attempt_at = None
        row.locked_at = None
        db.commit()
        out = _outbox_row(row)
    finally:
        db.close()

    await outbox.signal(redis, out["order_id"] or "")
    return out


# -------------------------
# Maintenance
# -------------------------
@router.post("/sweep")
def sweep(
    older_than_minutes: Optional[int] = None,
    settings: Settings = Depends(get_settings),
    authorizer: Authorizer = Depends(get_authorizer),
    caller: Caller = Depends(current_caller),
):
    require_manage(authorizer, caller, None)
    minutes = older_than_minutes if older_than_minutes is not None else settings.pending_order_ttl_minutes
    db = SessionLocal()
    try:
        cancelled = sweep_stale_orders(db, utcnow() - timedelta(minutes=minutes), context_for(settings, None))
        return {"ok": True, "cancelled": cancelled}
    finally:
        db.close()


@router.post("/payments/{provider_payment_id}/replay")
async def replay_payment(
    provider_payment_id: str,
    settings: Settings = Depends(get_settings),
    redis=Depends(get_redis),
    provider: PaymentProvider = Depends(get_provider),
    authorizer: Authorizer = Depends(get_authorizer),
    caller: Caller = Depends(current_caller),
):
    """Re-run a missed or failed notification from the provider's current status."""
    db = SessionLocal()
    try:
        try:
            order = find_order_for_payment(db, provider_payment_id)
        except NotFoundError:
            require_manage(authorizer, caller, None)
            raise
        require_manage(authorizer, caller, db.get(Event, order.event_id))
        db.commit()
        result = await ingest_resource(db, provider, settings, provider_payment_id)
    finally:
        db.close()

    if result.outcome == PROCESSED and result.settlement and result.settlement.action != "noop":
        await outbox.signal(redis, result.order_id)
    return {
        "ok": result.status_code == 200,
        "outcome": result.outcome,
        "reason": result.reason or None,
        "order_id": result.order_id,
        "payment_event_key": result.event_key,
        "action": result.settlement.action if result.settlement else None,
        "order_status": result.settlement.order_status if result.settlement else None,
    }
