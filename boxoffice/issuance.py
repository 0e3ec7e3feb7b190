"""Ticket issuance under the per-ticket-type capacity lock.

Runs inside the settlement transaction. Capacity for every ticket type on the
order is locked and checked before any ticket is written, so an overbooked
order never leaves a partial set of tickets behind.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import audit, oracle
from .db import insert_ignore
from .errors import FatalError
from .models import (
    ORDER_OVERBOOKED,
    Order,
    OrderItem,
    Payment,
    TicketInstance,
    TicketType,
    TICKET_ISSUED,
    new_id,
)
from .outbox import OPERATOR_ALERT, PAYMENT_REFUND, enqueue
from .security import hash_ticket_secret, new_ticket_secret

logger = logging.getLogger(__name__)


@dataclass
class IssuedTicket:
    ticket_id: str
    ticket_type_id: str
    ticket_type_name: str
    order_item_id: str
    sequence_no: int
    secret: str  # plaintext, never stored

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "ticket_type_id": self.ticket_type_id,
            "ticket_type_name": self.ticket_type_name,
            "order_item_id": self.order_item_id,
            "sequence_no": self.sequence_no,
            "secret": self.secret,
        }


@dataclass
class Shortfall:
    ticket_type_id: str
    ticket_type_name: str
    capacity: int
    issued: int
    requested: int

    @property
    def available(self) -> int:
        return max(self.capacity - self.issued, 0)


@dataclass
class IssuanceResult:
    order_id: str
    tickets: list[IssuedTicket] = field(default_factory=list)
    already_issued: int = 0
    overbooked: bool = False
    shortfall: Optional[Shortfall] = None


def _existing_for_items(db: Session, item_ids: list[str]) -> dict[str, int]:
    rows = db.execute(
        select(TicketInstance.order_item_id, func.count(TicketInstance.id))
        .where(TicketInstance.order_item_id.in_(item_ids))
        .group_by(TicketInstance.order_item_id)
    ).all()
    return {item_id: n for item_id, n in rows}


def issue_tickets(db: Session, order: Order, payment_event_key: Optional[str] = None, max_attempts: int = 5) -> IssuanceResult:
    items: list[OrderItem] = list(order.items)
    existing = _existing_for_items(db, [i.id for i in items]) if items else {}

    # Units still to issue, per ticket type.
    needed: dict[str, int] = defaultdict(int)
    for item in items:
        needed[item.ticket_type_id] += max(item.quantity - existing.get(item.id, 0), 0)

    locked: dict[str, TicketType] = {}
    for ticket_type_id in sorted(needed):
        tt = oracle.lock_ticket_type(db, ticket_type_id)
        if tt is None:
            raise FatalError("TICKET_TYPE_MISSING", f"ticket type {ticket_type_id} vanished", order_id=order.id)
        locked[ticket_type_id] = tt
        if needed[ticket_type_id] == 0:
            continue
        issued = oracle.issued_count(db, ticket_type_id)
        if issued + needed[ticket_type_id] > tt.capacity_total:
            shortfall = Shortfall(tt.id, tt.name, tt.capacity_total, issued, needed[ticket_type_id])
            return _overbook(db, order, shortfall, payment_event_key, max_attempts)

    result = IssuanceResult(order_id=order.id, already_issued=sum(existing.values()))
    for item in items:
        tt = locked[item.ticket_type_id]
        for seq in range(1, item.quantity + 1):
            secret = new_ticket_secret()
            ticket_id = new_id("tkt")
            written = insert_ignore(
                db,
                TicketInstance,
                {
                    "id": ticket_id,
                    "event_id": order.event_id,
                    "ticket_type_id": item.ticket_type_id,
                    "order_id": order.id,
                    "order_item_id": item.id,
                    "sequence_no": seq,
                    "owner_email": order.email,
                    "token_hash": hash_ticket_secret(secret),
                    "status": TICKET_ISSUED,
                },
            )
            if written:
                result.tickets.append(IssuedTicket(ticket_id, tt.id, tt.name, item.id, seq, secret))

    logger.info(
        "tickets issued order_id=%s new=%s already=%s payment_event_key=%s",
        order.id, len(result.tickets), result.already_issued, payment_event_key,
    )
    return result


def _overbook(
    db: Session,
    order: Order,
    shortfall: Shortfall,
    payment_event_key: Optional[str],
    max_attempts: int,
) -> IssuanceResult:
    order.status = ORDER_OVERBOOKED
    trigger_fail_safe(db, order, "CAPACITY_EXCEEDED", payment_event_key, max_attempts, shortfall=shortfall)
    return IssuanceResult(order_id=order.id, overbooked=True, shortfall=shortfall)


def trigger_fail_safe(
    db: Session,
    order: Order,
    reason: str,
    payment_event_key: Optional[str],
    max_attempts: int = 5,
    shortfall: Optional[Shortfall] = None,
    refund: Optional[dict] = None,
) -> None:
    """Refund the captured payment and page an operator instead of issuing.

    ``refund`` names a provider payment other than the order's own Payment
    row (provider, provider_payment_id, amount, currency). Its outbox keys
    carry the provider payment id so it never collides with the order's
    own refund.
    """
    payment: Optional[Payment] = order.payment
    scope = ""
    if refund is not None:
        scope = f":{refund['provider_payment_id']}"
    elif payment is not None:
        refund = {
            "provider": payment.provider,
            "provider_payment_id": payment.provider_payment_id,
            "amount": payment.amount,
            "currency": payment.currency,
        }
    detail = {}
    if shortfall is not None:
        detail = {
            "ticket_type_id": shortfall.ticket_type_id,
            "ticket_type_name": shortfall.ticket_type_name,
            "capacity": shortfall.capacity,
            "issued": shortfall.issued,
            "requested": shortfall.requested,
        }

    logger.warning(
        "fail-safe triggered order_id=%s reason=%s payment_event_key=%s detail=%s",
        order.id, reason, payment_event_key, detail,
    )
    audit.record(
        db, "issuance", "REJECTED", reason,
        order_id=order.id, payment_event_key=payment_event_key, **detail,
    )

    if refund is not None:
        enqueue(
            db,
            PAYMENT_REFUND,
            f"order:{order.id}:refund{scope}",
            {
                "order_id": order.id,
                **refund,
                "reason": reason,
                "payment_event_key": payment_event_key,
            },
            aggregate_id=order.id,
            max_attempts=max_attempts,
        )
    enqueue(
        db,
        OPERATOR_ALERT,
        f"order:{order.id}:alert:{reason.lower()}{scope}",
        {
            "reason": reason,
            "order_id": order.id,
            "event_id": order.event_id,
            "email": order.email,
            "total_amount": order.total_amount,
            "refund_enqueued": refund is not None,
            "payment_event_key": payment_event_key,
            **detail,
        },
        aggregate_id=order.id,
        max_attempts=max_attempts,
    )
