"""Authoritative price, capacity and sales-window answers for ticket types."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import ACTIVE_TICKET_STATUSES, TicketInstance, TicketType, as_utc


@dataclass(frozen=True)
class TicketQuote:
    ticket_type_id: str
    event_id: str
    name: str
    price: int
    capacity: int
    issued: int
    active: bool
    sales_open: bool

    @property
    def remaining(self) -> int:
        return max(self.capacity - self.issued, 0)


def sales_window_open(tt: TicketType, now: datetime) -> bool:
    start, end = as_utc(tt.sales_start), as_utc(tt.sales_end)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def issued_count(db: Session, ticket_type_id: str) -> int:
    return db.execute(
        select(func.count(TicketInstance.id)).where(
            TicketInstance.ticket_type_id == ticket_type_id,
            TicketInstance.status.in_(ACTIVE_TICKET_STATUSES),
        )
    ).scalar_one()


def quote(db: Session, ticket_type_id: str, now: datetime) -> Optional[TicketQuote]:
    tt = db.get(TicketType, ticket_type_id)
    if tt is None:
        return None
    return TicketQuote(
        ticket_type_id=tt.id,
        event_id=tt.event_id,
        name=tt.name,
        price=tt.price,
        capacity=tt.capacity_total,
        issued=issued_count(db, tt.id),
        active=tt.is_active,
        sales_open=sales_window_open(tt, now),
    )


def lock_ticket_type(db: Session, ticket_type_id: str) -> Optional[TicketType]:
    # Row lock on the capacity row; held until the caller's transaction ends.
    return db.execute(
        select(TicketType)
        .where(TicketType.id == ticket_type_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
