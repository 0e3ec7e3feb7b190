"""Order and payment state transitions.

One function per transition. Each runs inside the caller's transaction and
locks the order row first, so concurrent notifications for the same order are
applied one after the other and every decision is made on the locked state.

    Order:   pending -> settled | cancelled | overbooked,  settled -> refunded
    Payment: open -> paid | failed | cancelled,            paid -> refunded
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import audit
from .config import CheckoutPolicy, resolve_checkout_policy
from .errors import NotFoundError
from .issuance import IssuanceResult, issue_tickets, trigger_fail_safe
from .models import (
    ORDER_CANCELLED,
    ORDER_PENDING,
    ORDER_REFUNDED,
    ORDER_SETTLED,
    PAYMENT_CANCELLED,
    PAYMENT_FAILED,
    PAYMENT_OPEN,
    PAYMENT_PAID,
    PAYMENT_REFUNDED,
    TICKET_VOIDED,
    ACTIVE_TICKET_STATUSES,
    Event,
    Order,
    Payment,
    TicketInstance,
)
from .outbox import INTEGRATION_ORDER_SETTLED, ORDER_CONFIRMATION, REFUND_CONFIRMATION, enqueue

logger = logging.getLogger(__name__)

# Provider status -> payment status. Anything missing here moves nothing.
PROVIDER_STATUS_MAP = {
    "paid": PAYMENT_PAID,
    "failed": PAYMENT_FAILED,
    "canceled": PAYMENT_CANCELLED,
    "cancelled": PAYMENT_CANCELLED,
    "expired": PAYMENT_CANCELLED,
}


@dataclass
class SettlementOutcome:
    order_id: str
    action: str  # settled | cancelled | overbooked | refunded | noop
    order_status: str
    payment_status: Optional[str] = None
    reason: str = ""
    issuance: Optional[IssuanceResult] = None
    outbox_written: list[str] = field(default_factory=list)

    @property
    def tickets(self) -> list[dict]:
        if not self.issuance:
            return []
        return [t.to_dict() for t in self.issuance.tickets]


@dataclass
class SettlementContext:
    """What the transitions need besides the database session."""

    public_base_url: str = ""
    integration_url: Optional[str] = None
    max_attempts: int = 5
    payment_event_key: Optional[str] = None


def lock_order(db: Session, order_id: str) -> Order:
    order = db.execute(
        select(Order).where(Order.id == order_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise NotFoundError("ORDER_NOT_FOUND", f"order {order_id} not found")
    return order


def _policy(db: Session, order: Order) -> tuple[Event, CheckoutPolicy]:
    event = db.get(Event, order.event_id)
    return event, resolve_checkout_policy(event.organization.settings, event.settings)


def _noop(order: Order, payment: Optional[Payment], reason: str, ctx: SettlementContext) -> SettlementOutcome:
    logger.info(
        "settlement no-op order_id=%s status=%s reason=%s payment_event_key=%s",
        order.id, order.status, reason, ctx.payment_event_key,
    )
    return SettlementOutcome(order.id, "noop", order.status, payment.status if payment else None, reason)


# -------------------------
# Transitions
# -------------------------
def settle_order(db: Session, order: Order, payment: Optional[Payment], ctx: SettlementContext) -> SettlementOutcome:
    """pending -> settled, issuing tickets in the same transaction.

    ``order`` must already be locked. An exception raised here must roll the
    whole transaction back; the order then stays pending and the next
    notification retries.
    """
    if order.status != ORDER_PENDING:
        return _noop(order, payment, f"ORDER_{order.status.upper()}", ctx)

    if payment is not None:
        payment.status = PAYMENT_PAID

    result = issue_tickets(db, order, ctx.payment_event_key, ctx.max_attempts)
    if result.overbooked:
        return SettlementOutcome(
            order.id, "overbooked", order.status,
            payment.status if payment else None, "CAPACITY_EXCEEDED", result,
        )

    order.status = ORDER_SETTLED

    event, policy = _policy(db, order)
    written = _enqueue_settled(db, order, event, policy, result, ctx)
    audit.record(
        db, "settlement", "ACCEPTED", "SETTLED",
        order_id=order.id, payment_event_key=ctx.payment_event_key,
        tickets_issued=len(result.tickets),
    )
    logger.info(
        "order settled order_id=%s tickets=%s payment_event_key=%s",
        order.id, len(result.tickets), ctx.payment_event_key,
    )
    return SettlementOutcome(
        order.id, "settled", order.status, payment.status if payment else None,
        "", result, written,
    )


def settle_free_order(db: Session, order: Order, ctx: SettlementContext) -> SettlementOutcome:
    order = lock_order(db, order.id)
    if order.total_amount != 0:
        raise ValueError("settle_free_order called for a paid order")
    return settle_order(db, order, None, ctx)


def cancel_order(db: Session, order: Order, payment: Optional[Payment], payment_status: str, ctx: SettlementContext) -> SettlementOutcome:
    """pending -> cancelled after the provider reports failed, canceled or expired."""
    if order.status == ORDER_SETTLED:
        return _noop(order, payment, "ORDER_SETTLED", ctx)

    if payment is not None and payment.status == PAYMENT_OPEN:
        payment.status = payment_status
    if order.status != ORDER_PENDING:
        return _noop(order, payment, f"ORDER_{order.status.upper()}", ctx)

    order.status = ORDER_CANCELLED
    audit.record(
        db, "settlement", "CANCELLED", payment_status.upper(),
        order_id=order.id, payment_event_key=ctx.payment_event_key,
    )
    logger.info("order cancelled order_id=%s payment_status=%s payment_event_key=%s", order.id, payment_status, ctx.payment_event_key)
    return SettlementOutcome(order.id, "cancelled", order.status, payment.status if payment else None, payment_status)


def mark_payment_failed(db: Session, order: Order, payment: Optional[Payment], ctx: SettlementContext) -> SettlementOutcome:
    """open -> failed; the pending order is cancelled with it."""
    return cancel_order(db, order, payment, PAYMENT_FAILED, ctx)


def accept_late_payment(db: Session, order: Order, payment: Payment, ctx: SettlementContext) -> SettlementOutcome:
    """Money arrived for an order that can no longer be settled: refund it."""
    payment.status = PAYMENT_PAID
    trigger_fail_safe(db, order, "ORDER_NOT_PENDING", ctx.payment_event_key, ctx.max_attempts)
    return SettlementOutcome(order.id, "refund_requested", order.status, payment.status, "ORDER_NOT_PENDING")


def refund_foreign_payment(db: Session, order_id: str, provider_status: str, refund: dict, ctx: SettlementContext) -> SettlementOutcome:
    """A provider payment for this order that is not its Payment row.

    The stored Payment and the order are left as they are. Money captured on
    the stray payment is handed back whatever state the order is in.
    """
    order = lock_order(db, order_id)
    if PROVIDER_STATUS_MAP.get(provider_status) != PAYMENT_PAID:
        return _noop(order, order.payment, "FOREIGN_PAYMENT", ctx)
    trigger_fail_safe(db, order, "FOREIGN_PAYMENT", ctx.payment_event_key, ctx.max_attempts, refund=refund)
    return SettlementOutcome(
        order.id, "refund_requested", order.status,
        order.payment.status if order.payment else None, "FOREIGN_PAYMENT",
    )


def record_refund(db: Session, order: Order, payment: Payment, amount: int, ctx: SettlementContext) -> SettlementOutcome:
    """paid -> refunded: void the order's tickets and confirm to the buyer."""
    if payment.status == PAYMENT_REFUNDED:
        return _noop(order, payment, "PAYMENT_REFUNDED", ctx)

    payment.status = PAYMENT_REFUNDED
    voided = db.execute(
        update(TicketInstance)
        .where(TicketInstance.order_id == order.id, TicketInstance.status.in_(ACTIVE_TICKET_STATUSES))
        .values(status=TICKET_VOIDED)
        .execution_options(synchronize_session=False)
    ).rowcount
    if order.status == ORDER_SETTLED:
        order.status = ORDER_REFUNDED

    event, policy = _policy(db, order)
    written = []
    if enqueue(
        db,
        REFUND_CONFIRMATION,
        f"order:{order.id}:refund-confirmation",
        {
            "order_id": order.id,
            "email": order.email,
            "amount": amount or payment.amount,
            "currency": payment.currency,
            "sender_name": policy.sender_name,
            "reply_to": policy.reply_to,
        },
        aggregate_id=order.id,
        max_attempts=ctx.max_attempts,
    ):
        written.append(REFUND_CONFIRMATION)

    audit.record(
        db, "refund", "ACCEPTED", "REFUNDED",
        order_id=order.id, payment_event_key=ctx.payment_event_key, tickets_voided=voided,
    )
    logger.info("refund recorded order_id=%s tickets_voided=%s payment_event_key=%s", order.id, voided, ctx.payment_event_key)
    return SettlementOutcome(order.id, "refunded", order.status, payment.status, "", None, written)


def apply_payment_status(db: Session, order_id: str, provider_status: str, ctx: SettlementContext) -> SettlementOutcome:
    """Route an authoritative provider payment status to its transition."""
    order = lock_order(db, order_id)
    payment = order.payment
    target = PROVIDER_STATUS_MAP.get(provider_status)

    if target is None:
        return _noop(order, payment, f"STATUS_{provider_status.upper()}", ctx)

    if target == PAYMENT_PAID:
        if order.status == ORDER_PENDING:
            return settle_order(db, order, payment, ctx)
        if payment is not None and payment.status not in (PAYMENT_PAID, PAYMENT_REFUNDED):
            return accept_late_payment(db, order, payment, ctx)
        return _noop(order, payment, f"ORDER_{order.status.upper()}", ctx)

    if target == PAYMENT_FAILED:
        return mark_payment_failed(db, order, payment, ctx)
    return cancel_order(db, order, payment, target, ctx)


def apply_refund_status(db: Session, order_id: str, refund_status: str, amount: int, ctx: SettlementContext) -> SettlementOutcome:
    order = lock_order(db, order_id)
    payment = order.payment
    if payment is None or refund_status != "refunded":
        return _noop(order, payment, f"REFUND_{refund_status.upper()}", ctx)
    return record_refund(db, order, payment, amount, ctx)


# -------------------------
# Settlement side effects
# -------------------------
def _enqueue_settled(
    db: Session,
    order: Order,
    event: Event,
    policy: CheckoutPolicy,
    result: IssuanceResult,
    ctx: SettlementContext,
) -> list[str]:
    written = []

    if policy.send_confirmation_email:
        if enqueue(
            db,
            ORDER_CONFIRMATION,
            f"order:{order.id}:confirmation",
            {
                "order_id": order.id,
                "email": order.email,
                "event_id": order.event_id,
                "event_name": event.name,
                "total_amount": order.total_amount,
                "currency": order.currency,
                "sender_name": policy.sender_name,
                "reply_to": policy.reply_to,
                "lookup_url": f"{ctx.public_base_url}/orders/lookup/{order.public_token}" if ctx.public_base_url else None,
                "tickets": [t.to_dict() for t in result.tickets],
            },
            aggregate_id=order.id,
            max_attempts=ctx.max_attempts,
        ):
            written.append(ORDER_CONFIRMATION)

    if ctx.integration_url:
        if enqueue(
            db,
            INTEGRATION_ORDER_SETTLED,
            f"order:{order.id}:integration",
            {
                "url": ctx.integration_url,
                "order_id": order.id,
                "org_id": order.org_id,
                "event_id": order.event_id,
                "email": order.email,
                "total_amount": order.total_amount,
                "currency": order.currency,
                "items": [
                    {"ticket_type_id": i.ticket_type_id, "quantity": i.quantity, "unit_price": i.unit_price}
                    for i in order.items
                ],
                "ticket_ids": [t.ticket_id for t in result.tickets],
            },
            aggregate_id=order.id,
            max_attempts=ctx.max_attempts,
        ):
            written.append(INTEGRATION_ORDER_SETTLED)
    return written


# -------------------------
# Stale checkout sweep
# -------------------------
def expire_order(db: Session, order_id: str, ctx: SettlementContext) -> SettlementOutcome:
    """pending -> cancelled for a checkout that never completed payment."""
    order = lock_order(db, order_id)
    if order.status != ORDER_PENDING:
        return _noop(order, order.payment, f"ORDER_{order.status.upper()}", ctx)
    order.status = ORDER_CANCELLED
    audit.record(db, "sweep", "CANCELLED", "CHECKOUT_EXPIRED", order_id=order.id)
    return SettlementOutcome(order.id, "cancelled", order.status, order.payment.status if order.payment else None, "CHECKOUT_EXPIRED")


def sweep_stale_orders(db: Session, older_than: datetime, ctx: Optional[SettlementContext] = None, limit: int = 500) -> list[str]:
    """Cancel pending orders created before ``older_than``.

    No capacity is released: pending orders never held any. Commits per order
    so one slow row lock does not hold the whole batch.
    """
    ctx = ctx or SettlementContext()
    ids = db.execute(
        select(Order.id)
        .where(Order.status == ORDER_PENDING, Order.created_at < older_than)
        .order_by(Order.created_at)
        .limit(limit)
    ).scalars().all()

    cancelled = []
    for order_id in ids:
        outcome = expire_order(db, order_id, ctx)
        db.commit()
        if outcome.action == "cancelled":
            cancelled.append(order_id)
    if cancelled:
        logger.info("stale checkouts cancelled count=%s", len(cancelled))
    return cancelled
