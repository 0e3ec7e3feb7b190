"""Outbox worker: delivers queued side effects and cancels stale checkouts.

The Redis stream only shortens the wait between a commit and delivery. Every
pass reads due rows from the database, so lost signals cost at most one poll
interval.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .config import Settings, configure_logging, load_settings
from .db import Base, SessionLocal, bind_engine
from .models import utcnow
from .outbox import SIGNAL_STREAM, Deliverer, dispatch_once
from .provider import PaymentProvider
from .settlement import sweep_stale_orders
from .webhooks import context_for

logger = logging.getLogger(__name__)


async def wait_for_signal(redis, last_id: str, timeout_seconds: float) -> str:
    try:
        resp = await redis.xread({SIGNAL_STREAM: last_id}, block=int(timeout_seconds * 1000), count=100)
    except RedisError as e:
        logger.warning("signal stream unavailable, polling error=%s", e)
        await asyncio.sleep(timeout_seconds)
        return last_id
    if not resp:
        return last_id
    _, messages = resp[0]
    return messages[-1][0]


def run_sweep(settings: Settings) -> list[str]:
    db = SessionLocal()
    try:
        older_than = utcnow() - timedelta(minutes=settings.pending_order_ttl_minutes)
        return sweep_stale_orders(db, older_than, context_for(settings, None))
    finally:
        db.close()


async def run(settings: Settings, deliverer: Deliverer, redis, stop: Optional[asyncio.Event] = None) -> None:
    last_id = "$"
    next_sweep = 0.0

    while stop is None or not stop.is_set():
        try:
            await dispatch_once(settings, deliverer)
        except Exception:
            logger.exception("outbox pass failed")

        if time.monotonic() >= next_sweep:
            try:
                run_sweep(settings)
            except Exception:
                logger.exception("stale checkout sweep failed")
            next_sweep = time.monotonic() + settings.sweep_interval_seconds

        last_id = await wait_for_signal(redis, last_id, settings.outbox_poll_seconds)


async def main():
    settings = load_settings()
    configure_logging(settings.log_level)
    engine = bind_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)

    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    provider = PaymentProvider(
        settings.provider_url,
        settings.provider_api_key,
        name=settings.provider_name,
        timeout=settings.provider_timeout_seconds,
    )
    logger.info("outbox worker started batch=%s poll=%ss", settings.outbox_batch_size, settings.outbox_poll_seconds)
    try:
        await run(settings, Deliverer(settings, provider, redis), redis)
    finally:
        await redis.aclose()


if __name__ == "__main__":
    asyncio.run(main())
