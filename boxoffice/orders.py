"""Order builder: turns an untrusted checkout request into a pending order.

Prices and capacity always come from the oracle; anything the client sends
about price is ignored. The capacity check here is optimistic and is repeated
under lock at issuance time.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import errors, oracle
from .authz import Authorizer, Caller
from .config import PolicyError, resolve_checkout_policy
from .errors import FatalError, RejectionError
from .models import (
    EVENT_PUBLISHED,
    Event,
    Order,
    OrderItem,
    TicketInstance,
    utcnow,
)
from .security import new_public_token

logger = logging.getLogger(__name__)


@dataclass
class LineRequest:
    ticket_type_id: str
    quantity: int
    unit_price: Optional[int] = None  # advisory only


def _merge_lines(lines: list[LineRequest]) -> "OrderedDict[str, LineRequest]":
    merged: "OrderedDict[str, LineRequest]" = OrderedDict()
    for line in lines:
        if line.quantity < 1:
            raise RejectionError(errors.INVALID_QUANTITY, "quantity must be at least 1", ticket_type_id=line.ticket_type_id)
        if line.ticket_type_id in merged:
            merged[line.ticket_type_id].quantity += line.quantity
        else:
            merged[line.ticket_type_id] = LineRequest(line.ticket_type_id, line.quantity, line.unit_price)
    return merged


def build_order(
    db: Session,
    authorizer: Authorizer,
    caller: Caller,
    event_id: str,
    lines: list[LineRequest],
    email: str,
    now: Optional[datetime] = None,
) -> Order:
    """Validate and persist a pending order with its items.

    Adds the rows to ``db`` and flushes; the caller owns the commit.
    """
    now = now or utcnow()

    event = db.get(Event, event_id)
    if event is None or event.status != EVENT_PUBLISHED or not authorizer.can_view_event(caller, event):
        raise RejectionError(errors.EVENT_NOT_VISIBLE, "event is not open for registration", event_id=event_id)

    try:
        policy = resolve_checkout_policy(event.organization.settings, event.settings)
    except PolicyError as e:
        logger.error("invalid checkout policy event_id=%s error=%s", event.id, e)
        raise FatalError("INVALID_CHECKOUT_POLICY", "checkout is misconfigured for this event", event_id=event.id) from e

    if not lines:
        raise RejectionError(errors.EMPTY_ORDER, "order has no lines")
    merged = _merge_lines(lines)
    requested_total = sum(l.quantity for l in merged.values())
    if requested_total > policy.max_tickets_per_order:
        raise RejectionError(
            errors.TOO_MANY_TICKETS,
            f"at most {policy.max_tickets_per_order} tickets per order",
            requested=requested_total,
        )

    priced = []
    for line in merged.values():
        q = oracle.quote(db, line.ticket_type_id, now)
        if q is None or q.event_id != event.id or not q.active:
            raise RejectionError(errors.TICKET_TYPE_NOT_FOUND, "unknown ticket type", ticket_type_id=line.ticket_type_id)
        if not q.sales_open:
            raise RejectionError(errors.SALES_WINDOW_CLOSED, f"sales for {q.name} are closed", ticket_type_id=q.ticket_type_id)
        if q.issued + line.quantity > q.capacity:
            raise RejectionError(
                errors.CAPACITY_EXCEEDED,
                f"only {q.remaining} left for {q.name}",
                ticket_type_id=q.ticket_type_id,
                available=q.remaining,
                requested=line.quantity,
            )
        if line.unit_price is not None and line.unit_price != q.price:
            logger.info(
                "client price ignored ticket_type_id=%s client=%s server=%s",
                q.ticket_type_id, line.unit_price, q.price,
            )
        priced.append((line, q))

    order = Order(
        org_id=event.org_id,
        event_id=event.id,
        email=email.strip().lower(),
        total_amount=sum(q.price * line.quantity for line, q in priced),
        currency=policy.currency,
        public_token=new_public_token(),
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.flush()
    for line, q in priced:
        db.add(OrderItem(order_id=order.id, ticket_type_id=q.ticket_type_id, quantity=line.quantity, unit_price=q.price))
    db.flush()
    db.refresh(order)

    logger.info(
        "order created order_id=%s event_id=%s total=%s lines=%s",
        order.id, event.id, order.total_amount, len(priced),
    )
    return order


def find_by_token(db: Session, public_token: str) -> Optional[Order]:
    return db.execute(select(Order).where(Order.public_token == public_token)).scalar_one_or_none()


def order_summary(db: Session, order: Order, include_internal: bool = False) -> dict:
    tickets = db.execute(
        select(TicketInstance).where(TicketInstance.order_id == order.id).order_by(TicketInstance.order_item_id, TicketInstance.sequence_no)
    ).scalars().all()
    out = {
        "order_id": order.id,
        "event_id": order.event_id,
        "status": order.status,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "created_at": str(order.created_at),
        "items": [
            {"ticket_type_id": i.ticket_type_id, "quantity": i.quantity, "unit_price": i.unit_price}
            for i in order.items
        ],
        "tickets": [
            {"ticket_id": t.id, "ticket_type_id": t.ticket_type_id, "sequence_no": t.sequence_no, "status": t.status}
            for t in tickets
        ],
    }
    if include_internal:
        out["org_id"] = order.org_id
        out["email"] = order.email
        out["payment"] = None
        if order.payment is not None:
            p = order.payment
            out["payment"] = {
                "provider": p.provider,
                "provider_payment_id": p.provider_payment_id,
                "status": p.status,
                "amount": p.amount,
                "checkout_url": p.checkout_url,
            }
    return out
