from datetime import timedelta

import pytest
from sqlalchemy import func, select

from boxoffice import db as dbmod
from boxoffice.models import EVENT_DRAFT, Order, OutboxEvent, Payment, TicketType, utcnow
from tests.helpers import checkout, load_order, seed_event, tickets_for

pytestmark = pytest.mark.asyncio


def count(model) -> int:
    db = dbmod.SessionLocal()
    try:
        return db.execute(select(func.count()).select_from(model)).scalar_one()
    finally:
        db.close()


async def test_paid_checkout_opens_payment_session(client, fake_provider):
    event_id, (tt,) = seed_event(price=2500)

    r = await checkout(client, event_id, tt, quantity=2)

    assert r.status_code == 200, r.text
    data = r.json()
    assert data["status"] == "pending"
    assert data["total_amount"] == 5000
    assert data["checkout_url"].startswith("https://pay.test/checkout/tr_")

    order = load_order(data["order_id"])
    assert order.email == "buyer@example.com"
    assert order.payment.status == "open"
    assert order.payment.amount == 5000
    assert fake_provider.payments[order.payment.provider_payment_id]["metadata"]["order_id"] == order.id
    assert tickets_for(order.id) == []
    assert count(OutboxEvent) == 0


async def test_sales_window_closed_is_rejected_without_an_order(client):
    past = utcnow() - timedelta(days=2)
    event_id, (tt,) = seed_event(sales_start=past - timedelta(days=5), sales_end=past)

    r = await checkout(client, event_id, tt)

    assert r.status_code == 422
    assert r.json()["error"] == "SALES_WINDOW_CLOSED"
    assert count(Order) == 0


@pytest.mark.parametrize(
    "quantity,capacity,code",
    [
        (0, 10, "INVALID_QUANTITY"),
        (3, 2, "CAPACITY_EXCEEDED"),
        (11, 50, "TOO_MANY_TICKETS"),
    ],
)
async def test_builder_rejections(client, quantity, capacity, code):
    event_id, (tt,) = seed_event(capacity=capacity)

    r = await checkout(client, event_id, tt, quantity=quantity)

    assert r.status_code == 422
    assert r.json()["error"] == code
    assert count(Order) == 0


async def test_unpublished_event_is_not_visible(client):
    event_id, (tt,) = seed_event(status=EVENT_DRAFT)

    r = await checkout(client, event_id, tt)

    assert r.status_code == 422
    assert r.json()["error"] == "EVENT_NOT_VISIBLE"


async def test_ticket_type_from_another_event_is_rejected(client):
    event_id, _ = seed_event()
    _, (foreign_tt,) = seed_event()

    r = await checkout(client, event_id, foreign_tt)

    assert r.json()["error"] == "TICKET_TYPE_NOT_FOUND"


async def test_client_price_is_ignored_and_total_is_frozen(client):
    event_id, (tt,) = seed_event(price=2500)

    r = await checkout(
        client, event_id, tt,
        lines=[{"ticket_type_id": tt, "quantity": 2, "unit_price": 1}],
    )
    order_id = r.json()["order_id"]

    db = dbmod.SessionLocal()
    try:
        db.get(TicketType, tt).price = 9900
        db.commit()
    finally:
        db.close()

    order = load_order(order_id)
    assert order.total_amount == 5000
    assert [i.unit_price for i in order.items] == [2500]


async def test_free_order_settles_inline(client, fake_provider):
    event_id, (tt,) = seed_event(price=0, capacity=5)

    r = await checkout(client, event_id, tt, quantity=2)

    data = r.json()
    assert data["status"] == "settled"
    assert len(data["tickets"]) == 2
    assert all(t["secret"] for t in data["tickets"])
    assert fake_provider.calls == []
    assert count(Payment) == 0

    db = dbmod.SessionLocal()
    try:
        rows = db.execute(select(OutboxEvent)).scalars().all()
    finally:
        db.close()
    assert [row.event_type for row in rows] == ["order.confirmation"]
    assert rows[0].idempotency_key == f"order:{data['order_id']}:confirmation"


async def test_free_order_respects_disabled_confirmation_policy(client):
    event_id, (tt,) = seed_event(price=0, event_settings={"checkout": {"send_confirmation_email": False}})

    r = await checkout(client, event_id, tt)

    assert r.json()["status"] == "settled"
    assert count(OutboxEvent) == 0


async def test_idempotency_key_returns_same_response(client):
    event_id, (tt,) = seed_event()
    headers = {"Idempotency-Key": "chk-123"}
    body = {"event_id": event_id, "email": "a@b.test", "lines": [{"ticket_type_id": tt, "quantity": 1}]}

    r1 = await client.post("/checkout", json=body, headers=headers)
    r2 = await client.post("/checkout", json=body, headers=headers)

    assert r1.json() == r2.json()
    assert count(Order) == 1


async def test_idempotent_free_checkout_returns_ticket_secrets_once(client, redis):
    event_id, (tt,) = seed_event(price=0)
    headers = {"Idempotency-Key": "free-1"}
    body = {"event_id": event_id, "email": "a@b.test", "lines": [{"ticket_type_id": tt, "quantity": 2}]}

    first = (await client.post("/checkout", json=body, headers=headers)).json()
    replay = (await client.post("/checkout", json=body, headers=headers)).json()

    assert all(t["secret"] for t in first["tickets"])
    assert [t["ticket_id"] for t in replay["tickets"]] == [t["ticket_id"] for t in first["tickets"]]
    assert all("secret" not in t for t in replay["tickets"])
    cached = await redis.get("idem:checkout:free-1")
    assert all(t["secret"] not in cached for t in first["tickets"])
    assert count(Order) == 1


async def test_checkout_rate_limit(client, settings):
    event_id, (tt,) = seed_event(capacity=500)

    codes = [(await checkout(client, event_id, tt)).status_code for _ in range(settings.checkout_rate_limit_per_minute + 10)]

    assert 429 in codes
    assert codes[0] == 200


async def test_provider_down_keeps_pending_order_for_retry(client, fake_provider):
    event_id, (tt,) = seed_event()
    fake_provider.fail_with = 503

    r = await checkout(client, event_id, tt)

    assert r.status_code == 502
    body = r.json()
    assert body["error"] == "PROVIDER_UNAVAILABLE"
    order_id = body["context"]["order_id"]
    assert count(Payment) == 0

    fake_provider.fail_with = None
    r = await client.post(f"/orders/{order_id}/payment", json={"public_token": body["context"]["public_token"]})
    assert r.status_code == 200
    assert r.json()["reused"] is False

    r = await client.post(f"/orders/{order_id}/payment", json={"public_token": body["context"]["public_token"]})
    assert r.json()["reused"] is True
    assert count(Payment) == 1


async def test_reopen_payment_requires_public_token(client):
    event_id, (tt,) = seed_event()
    order_id = (await checkout(client, event_id, tt)).json()["order_id"]

    r = await client.post(f"/orders/{order_id}/payment", json={"public_token": "guess"})

    assert r.status_code == 404


async def test_lookup_by_public_token(client):
    event_id, (tt,) = seed_event(price=0)
    data = (await checkout(client, event_id, tt, quantity=2)).json()

    r = await client.get(f"/orders/lookup/{data['public_token']}")

    summary = r.json()
    assert summary["order_id"] == data["order_id"]
    assert summary["status"] == "settled"
    assert len(summary["tickets"]) == 2
    assert all("secret" not in t for t in summary["tickets"])
    assert "email" not in summary

    assert (await client.get("/orders/lookup/nope")).status_code == 404
