"""Payment session adapter."""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import errors
from .config import Settings
from .errors import RejectionError
from .models import ORDER_PENDING, PAYMENT_OPEN, Order, Payment
from .provider import PaymentProvider

logger = logging.getLogger(__name__)


@dataclass
class PaymentSession:
    order_id: str
    provider_payment_id: str
    checkout_url: str
    existing: bool = False


async def open_payment_session(
    db: Session,
    provider: PaymentProvider,
    settings: Settings,
    order: Order,
    redirect_url: str | None = None,
) -> PaymentSession:
    """Open a provider session for a pending, non-zero order and record the Payment.

    Nothing is written if the provider call fails or times out; the caller
    simply retries.
    """
    if order.status != ORDER_PENDING or order.total_amount <= 0:
        raise RejectionError(errors.ORDER_NOT_PAYABLE, f"order is {order.status}", order_id=order.id)

    existing = order.payment
    if existing is not None:
        if existing.status == PAYMENT_OPEN and existing.checkout_url:
            logger.info("reusing open payment order_id=%s payment=%s", order.id, existing.provider_payment_id)
            return PaymentSession(order.id, existing.provider_payment_id, existing.checkout_url, existing=True)
        raise RejectionError(errors.ORDER_NOT_PAYABLE, f"payment is {existing.status}", order_id=order.id)

    # Release any read transaction before the outbound call.
    db.commit()

    base = settings.public_base_url.rstrip("/")
    created = await provider.create_payment(
        amount=order.total_amount,
        currency=order.currency,
        description=f"Order {order.id}",
        redirect_url=redirect_url or f"{base}/orders/lookup/{order.public_token}",
        webhook_url=f"{base}/webhooks/payments",
        metadata={"order_id": order.id, "org_id": order.org_id, "event_id": order.event_id},
        idempotency_key=f"order:{order.id}:payment",
    )

    payment = Payment(
        order_id=order.id,
        provider=provider.name,
        provider_payment_id=created.id,
        amount=order.total_amount,
        currency=order.currency,
        status=PAYMENT_OPEN,
        checkout_url=created.checkout_url,
        raw=created.raw,
    )
    db.add(payment)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent request recorded the session first.
        db.rollback()
        payment = db.execute(select(Payment).where(Payment.order_id == order.id)).scalar_one()
        return PaymentSession(order.id, payment.provider_payment_id, payment.checkout_url or "", existing=True)

    logger.info("payment session opened order_id=%s payment=%s amount=%s", order.id, created.id, order.total_amount)
    return PaymentSession(order.id, created.id, created.checkout_url or "")
