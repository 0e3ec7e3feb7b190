import os
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select

from boxoffice import db as dbmod
from boxoffice.issuance import issue_tickets
from boxoffice.models import Order, OutboxEvent
from boxoffice.oracle import issued_count
from boxoffice.settlement import SettlementContext, apply_payment_status
from tests.helpers import checkout, load_order, post_webhook, seed_event, tickets_for

pytestmark = pytest.mark.asyncio

needs_postgres = pytest.mark.skipif(
    not (os.getenv("TEST_DATABASE_URL") or "").startswith("postgresql"),
    reason="row locks need PostgreSQL: docker compose up -d postgres, then set TEST_DATABASE_URL",
)


def outbox_types(order_id: str) -> list[str]:
    db = dbmod.SessionLocal()
    try:
        return sorted(db.execute(
            select(OutboxEvent.event_type).where(OutboxEvent.aggregate_id == order_id)
        ).scalars().all())
    finally:
        db.close()


async def two_orders_for_last_unit(client):
    event_id, (tt,) = seed_event(price=2500, capacity=1)
    orders = []
    for _ in range(2):
        data = (await checkout(client, event_id, tt)).json()
        order = load_order(data["order_id"])
        orders.append((order.id, order.payment.provider_payment_id))
    return tt, orders


async def test_last_unit_goes_to_first_settlement(client, fake_provider):
    tt, [(first, pay1), (second, pay2)] = await two_orders_for_last_unit(client)
    fake_provider.set_status(pay1, "paid")
    fake_provider.set_status(pay2, "paid")

    assert (await post_webhook(client, pay1)).status_code == 200
    assert (await post_webhook(client, pay2)).status_code == 200

    assert load_order(first).status == "settled"
    assert len(tickets_for(first)) == 1
    assert load_order(second).status == "overbooked"
    assert tickets_for(second) == []
    assert outbox_types(second) == ["operator.alert", "payment.refund"]

    db = dbmod.SessionLocal()
    try:
        assert issued_count(db, tt) == 1
        refund = db.execute(
            select(OutboxEvent).where(OutboxEvent.idempotency_key == f"order:{second}:refund")
        ).scalar_one()
    finally:
        db.close()
    assert refund.payload["provider_payment_id"] == pay2
    assert refund.payload["amount"] == 2500
    assert refund.payload["reason"] == "CAPACITY_EXCEEDED"


async def test_overbooked_order_is_never_settled_later(client, fake_provider):
    _, [(first, pay1), (second, pay2)] = await two_orders_for_last_unit(client)
    fake_provider.set_status(pay1, "paid")
    fake_provider.set_status(pay2, "paid")
    await post_webhook(client, pay1)
    await post_webhook(client, pay2)

    db = dbmod.SessionLocal()
    try:
        outcome = apply_payment_status(db, second, "paid", SettlementContext(payment_event_key="replayed"))
        db.commit()
    finally:
        db.close()

    assert outcome.action == "noop"
    assert load_order(second).status == "overbooked"
    assert outbox_types(second) == ["operator.alert", "payment.refund"]


async def test_shortfall_on_one_line_issues_nothing(client, fake_provider):
    event_id, (plenty, scarce) = seed_event(price=1000, capacity=2, ticket_types=2)
    body = {
        "event_id": event_id,
        "email": "x@y.test",
        "lines": [{"ticket_type_id": plenty, "quantity": 1}, {"ticket_type_id": scarce, "quantity": 2}],
    }
    rival = (await checkout(client, event_id, scarce, quantity=1)).json()["order_id"]
    order_id = (await client.post("/checkout", json=body)).json()["order_id"]

    rival_pay = load_order(rival).payment.provider_payment_id
    pay = load_order(order_id).payment.provider_payment_id
    fake_provider.set_status(rival_pay, "paid")
    fake_provider.set_status(pay, "paid")
    await post_webhook(client, rival_pay)
    await post_webhook(client, pay)

    assert load_order(order_id).status == "overbooked"
    assert tickets_for(order_id) == []


async def test_reissue_for_same_order_is_idempotent(client, fake_provider):
    event_id, (tt,) = seed_event(price=0, capacity=5)
    order_id = (await checkout(client, event_id, tt, quantity=3)).json()["order_id"]
    before = {t.id for t in tickets_for(order_id)}

    db = dbmod.SessionLocal()
    try:
        order = db.get(Order, order_id)
        result = issue_tickets(db, order)
        db.commit()
    finally:
        db.close()

    assert result.tickets == []
    assert result.already_issued == 3
    assert {t.id for t in tickets_for(order_id)} == before


@needs_postgres
async def test_concurrent_settlements_never_exceed_capacity(client, fake_provider):
    event_id, (tt,) = seed_event(price=2500, capacity=3)
    order_ids = []
    for _ in range(8):
        order_ids.append((await checkout(client, event_id, tt)).json()["order_id"])

    def settle(order_id):
        db = dbmod.SessionLocal()
        try:
            outcome = apply_payment_status(db, order_id, "paid", SettlementContext(payment_event_key=f"{order_id}:paid"))
            db.commit()
            return outcome.action
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        actions = list(pool.map(settle, order_ids))

    assert actions.count("settled") == 3
    assert actions.count("overbooked") == 5
    db = dbmod.SessionLocal()
    try:
        assert issued_count(db, tt) == 3
    finally:
        db.close()
