import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import parse_qs

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.asyncio import Redis
from sqlalchemy import text

from . import db as dbmod
from . import errors, outbox
from .admin import router as admin_router
from .authz import Authorizer, Caller, ClaimsAuthorizer
from .config import Settings, configure_logging, load_settings
from .db import Base, SessionLocal
from .deps import client_ip, current_caller, get_authorizer, get_provider, get_redis, get_settings
from .errors import BoxOfficeError, ConflictError, NotFoundError, ProviderUnavailable, RateLimitedError, RejectionError
from .idempotency import claim, get_cached_response, release, set_cached_response
from .models import Event, Order
from .orders import LineRequest, build_order, find_by_token, order_summary
from .payments import open_payment_session
from .provider import PaymentProvider
from .rate_limit import checkout_allowed
from .security import SIGNATURE_HEADER
from .settlement import settle_free_order
from .webhooks import PROCESSED, context_for, ingest_notification

logger = logging.getLogger(__name__)


class CheckoutLine(BaseModel):
    ticket_type_id: str
    quantity: int
    unit_price: Optional[int] = None


class CheckoutReq(BaseModel):
    event_id: str
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$", max_length=320)
    lines: list[CheckoutLine]
    redirect_url: Optional[str] = None


class PaymentReq(BaseModel):
    public_token: str
    redirect_url: Optional[str] = None


def create_app(
    settings: Optional[Settings] = None,
    redis=None,
    provider: Optional[PaymentProvider] = None,
    authorizer: Optional[Authorizer] = None,
) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=dbmod.engine)
        logger.info("boxoffice api started provider=%s", settings.provider_name)
        yield
        await app.state.redis.aclose()

    app = FastAPI(title="Box Office", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.redis = redis if redis is not None else Redis.from_url(settings.redis_url, decode_responses=True)
    app.state.provider = provider or PaymentProvider(
        settings.provider_url,
        settings.provider_api_key,
        name=settings.provider_name,
        timeout=settings.provider_timeout_seconds,
    )
    app.state.authorizer = authorizer or ClaimsAuthorizer()

    app.include_router(admin_router)
    app.add_exception_handler(BoxOfficeError, boxoffice_error_handler)

    app.add_api_route("/checkout", checkout, methods=["POST"])
    app.add_api_route("/orders/{order_id}/payment", reopen_payment, methods=["POST"])
    app.add_api_route("/orders/lookup/{public_token}", lookup_order, methods=["GET"])
    app.add_api_route("/webhooks/payments", payment_webhook, methods=["POST"])
    app.add_api_route("/health", health, methods=["GET"])
    return app


async def boxoffice_error_handler(request: Request, exc: BoxOfficeError):
    if exc.http_status >= 500:
        logger.error("request failed path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# -------------------------
# Checkout
# -------------------------
async def checkout(
    req: CheckoutReq,
    request: Request,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    settings: Settings = Depends(get_settings),
    redis=Depends(get_redis),
    provider: PaymentProvider = Depends(get_provider),
    authorizer: Authorizer = Depends(get_authorizer),
    caller: Caller = Depends(current_caller),
):
    # Idempotency
    if idempotency_key:
        cached = await get_cached_response(redis, "checkout", idempotency_key)
        if cached:
            return cached
        if not await claim(redis, "checkout", idempotency_key):
            raise ConflictError("REQUEST_IN_PROGRESS", "a request with this Idempotency-Key is still running")

    try:
        ip = client_ip(request)
        if not await checkout_allowed(redis, ip, settings.checkout_rate_limit_per_minute):
            logger.warning("checkout rate limited ip=%s event_id=%s", ip, req.event_id)
            raise RateLimitedError(message="too many checkout attempts, try again shortly")

        resp = await _checkout(req, settings, redis, provider, authorizer, caller)
        if idempotency_key:
            # Ticket secrets go out once; a replay gets the ticket ids only.
            await set_cached_response(redis, "checkout", idempotency_key, outbox.scrub_payload(resp))
        return resp
    finally:
        if idempotency_key:
            await release(redis, "checkout", idempotency_key)


async def _checkout(req: CheckoutReq, settings: Settings, redis, provider: PaymentProvider, authorizer: Authorizer, caller: Caller) -> dict:
    lines = [LineRequest(l.ticket_type_id, l.quantity, l.unit_price) for l in req.lines]
    db = SessionLocal()
    try:
        order = build_order(db, authorizer, caller, req.event_id, lines, req.email)
        db.commit()
        resp = {
            "ok": True,
            "order_id": order.id,
            "public_token": order.public_token,
            "total_amount": order.total_amount,
            "currency": order.currency,
        }

        if order.total_amount == 0:
            outcome = settle_free_order(db, order, context_for(settings, None))
            db.commit()
            await outbox.signal(redis, order.id)
            resp.update(status=outcome.order_status, tickets=outcome.tickets)
            return resp

        try:
            session = await open_payment_session(db, provider, settings, order, req.redirect_url)
        except ProviderUnavailable as e:
            # The order exists; the buyer can retry the payment step with the token.
            e.context.update(order_id=order.id, public_token=order.public_token)
            raise
        resp.update(status=order.status, checkout_url=session.checkout_url)
        return resp
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def reopen_payment(
    order_id: str,
    req: PaymentReq,
    settings: Settings = Depends(get_settings),
    provider: PaymentProvider = Depends(get_provider),
    authorizer: Authorizer = Depends(get_authorizer),
    caller: Caller = Depends(current_caller),
):
    db = SessionLocal()
    try:
        order = db.get(Order, order_id)
        if order is None or not secrets.compare_digest(order.public_token, req.public_token):
            raise NotFoundError("ORDER_NOT_FOUND", "order not found")
        event = db.get(Event, order.event_id)
        if event is None or not authorizer.can_view_event(caller, event):
            raise RejectionError(errors.EVENT_NOT_VISIBLE, "event is not open for registration", event_id=order.event_id)

        session = await open_payment_session(db, provider, settings, order, req.redirect_url)
        return {
            "ok": True,
            "order_id": order.id,
            "checkout_url": session.checkout_url,
            "reused": session.existing,
        }
    finally:
        db.close()


async def lookup_order(public_token: str):
    # The public token is the capability; it is only ever given to the buyer.
    db = SessionLocal()
    try:
        order = find_by_token(db, public_token)
        if order is None:
            raise NotFoundError("ORDER_NOT_FOUND", "order not found")
        return order_summary(db, order)
    finally:
        db.close()


# -------------------------
# Provider notifications
# -------------------------
async def payment_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    settings: Settings = Depends(get_settings),
    redis=Depends(get_redis),
    provider: PaymentProvider = Depends(get_provider),
):
    body = await request.body()
    resource_id = (parse_qs(body.decode("utf-8", errors="replace")).get("id") or [None])[0]

    db = SessionLocal()
    try:
        result = await ingest_notification(db, provider, settings, resource_id, body, signature)
    finally:
        db.close()

    if result.outcome == PROCESSED and result.settlement and result.settlement.action != "noop":
        await outbox.signal(redis, result.order_id)

    return JSONResponse(
        status_code=result.status_code,
        content={"ok": result.status_code == 200, "outcome": result.outcome, "reason": result.reason or None},
    )


async def health(redis=Depends(get_redis)):
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    finally:
        db.close()
    try:
        redis_ok = bool(await redis.ping())
    except Exception:
        logger.warning("redis ping failed", exc_info=True)
        redis_ok = False
    return {"ok": True, "redis": redis_ok}


_settings = load_settings()
configure_logging(_settings.log_level)
dbmod.bind_engine(_settings.database_url)
app = create_app(_settings)
