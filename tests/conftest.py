import dataclasses
import os

import fakeredis
import httpx
import pytest
import pytest_asyncio

from boxoffice import db as dbmod
from boxoffice import models  # noqa: F401  (registers tables)
from boxoffice.config import load_settings
from boxoffice.main import create_app
from boxoffice.outbox import Deliverer
from boxoffice.provider import PaymentProvider
from tests.helpers import IDENTITY_SECRET, PROVIDER_URL, WEBHOOK_SECRET, FakeProvider, Sink

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path):
    return TEST_DATABASE_URL or f"sqlite:///{tmp_path / 'boxoffice.db'}"


@pytest.fixture(autouse=True)
def database(database_url):
    engine = dbmod.bind_engine(database_url)
    dbmod.Base.metadata.drop_all(bind=engine)
    dbmod.Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def settings(database_url):
    return dataclasses.replace(
        load_settings(),
        database_url=database_url,
        webhook_signing_secret=WEBHOOK_SECRET,
        identity_jwt_secret=IDENTITY_SECRET,
        provider_url=PROVIDER_URL,
        provider_api_key="test_key",
        public_base_url="https://tickets.test",
        email_api_url="https://mail.test/emails",
        integration_webhook_url=None,
        alert_webhook_url="https://alerts.test/hook",
        outbox_initial_delay_seconds=60,
        outbox_max_attempts=3,
        checkout_rate_limit_per_minute=30,
    )


@pytest_asyncio.fixture
async def redis():
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    try:
        yield r
    finally:
        await r.aclose()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def provider(settings, fake_provider):
    return PaymentProvider(settings.provider_url, settings.provider_api_key, transport=fake_provider.transport)


@pytest.fixture
def sink():
    return Sink()


@pytest.fixture
def deliverer(settings, provider, redis, sink):
    return Deliverer(settings, provider, redis, transport=sink.transport)


@pytest.fixture
def app(settings, redis, provider):
    return create_app(settings, redis=redis, provider=provider)


@pytest_asyncio.fixture(scope="function")
async def client(app):
    transport = httpx.ASGITransport(app=app, client=("203.0.113.7", 40000))
    async with httpx.AsyncClient(transport=transport, base_url="http://boxoffice.test", timeout=10.0) as c:
        yield c
