import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import db as dbmod
from .models import AuditLog

logger = logging.getLogger(__name__)


def record(
    db: Session,
    action: str,
    status: str,
    reason_code: str,
    order_id: Optional[str] = None,
    payment_event_key: Optional[str] = None,
    **detail,
) -> AuditLog:
    """Add an audit row to the caller's transaction."""
    row = AuditLog(
        order_id=order_id,
        payment_event_key=payment_event_key,
        action=action,
        status=status,
        reason_code=reason_code,
        detail=detail,
    )
    db.add(row)
    return row


def record_detached(
    action: str,
    status: str,
    reason_code: str,
    order_id: Optional[str] = None,
    payment_event_key: Optional[str] = None,
    **detail,
) -> None:
    """Write an audit row in its own transaction.

    Used on paths where the business transaction has been rolled back and the
    trail must survive anyway.
    """
    db = dbmod.SessionLocal()
    try:
        record(db, action, status, reason_code, order_id, payment_event_key, **detail)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit write failed action=%s order_id=%s payment_event_key=%s",
            action, order_id, payment_event_key,
        )
    finally:
        db.close()
