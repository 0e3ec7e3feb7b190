from datetime import timedelta

import pytest
from sqlalchemy import update

from boxoffice import db as dbmod
from boxoffice.models import Order, OutboxEvent, utcnow
from tests.helpers import admin_headers, checkout, load_order, org_of, post_webhook, seed_event, tickets_for

pytestmark = pytest.mark.asyncio


async def paid_order(client, fake_provider, deliver_webhook=True):
    event_id, (tt,) = seed_event(price=2500)
    order_id = (await checkout(client, event_id, tt, quantity=2)).json()["order_id"]
    pay = load_order(order_id).payment.provider_payment_id
    fake_provider.set_status(pay, "paid")
    if deliver_webhook:
        await post_webhook(client, pay)
    return event_id, order_id, pay


async def test_admin_requires_identity(client, fake_provider):
    _, order_id, _ = await paid_order(client, fake_provider)

    assert (await client.get(f"/admin/orders/{order_id}")).status_code == 401
    outsider = admin_headers(org_ids=["org_nope"], roles=())
    assert (await client.get(f"/admin/orders/{order_id}", headers=outsider)).status_code == 403
    assert (await client.get("/admin/outbox", headers=outsider)).status_code == 403


async def test_organizer_sees_own_order_with_audit_trail(client, fake_provider):
    event_id, order_id, pay = await paid_order(client, fake_provider)
    headers = admin_headers(org_ids=[org_of(event_id)], roles=())

    r = await client.get(f"/admin/orders/{order_id}", headers=headers)

    data = r.json()
    assert data["status"] == "settled"
    assert data["email"] == "buyer@example.com"
    assert data["payment"]["provider_payment_id"] == pay
    assert [a["reason_code"] for a in data["audit"]] == ["SETTLED"]
    assert data["audit"][0]["payment_event_key"] == f"{pay}:paid"

    r = await client.get("/admin/audit", params={"event_id": event_id}, headers=headers)
    assert [a["order_id"] for a in r.json()] == [order_id]


async def test_outbox_listing_hides_ticket_secrets(client):
    event_id, (tt,) = seed_event(price=0)
    order_id = (await checkout(client, event_id, tt)).json()["order_id"]

    r = await client.get("/admin/outbox", params={"order_id": order_id}, headers=admin_headers())

    [row] = r.json()
    assert row["event_type"] == "order.confirmation"
    assert all("secret" not in t for t in row["payload"]["tickets"])


async def test_retry_failed_outbox_row(client):
    event_id, (tt,) = seed_event(price=0)
    order_id = (await checkout(client, event_id, tt)).json()["order_id"]
    db = dbmod.SessionLocal()
    try:
        db.execute(update(OutboxEvent).values(status="failed", attempts=5, last_error="boom"))
        db.commit()
        row_id = db.query(OutboxEvent.id).scalar()
    finally:
        db.close()

    r = await client.post(f"/admin/outbox/{row_id}/retry", headers=admin_headers())

    assert r.status_code == 200
    assert r.json()["status"] == "pending"
    assert r.json()["attempts"] == 0
    again = await client.post(f"/admin/outbox/{row_id}/retry", headers=admin_headers())
    assert again.status_code == 409


async def test_sweep_cancels_stale_pending_orders(client, settings):
    event_id, (tt,) = seed_event()
    stale = (await checkout(client, event_id, tt)).json()["order_id"]
    fresh = (await checkout(client, event_id, tt)).json()["order_id"]
    db = dbmod.SessionLocal()
    try:
        db.execute(
            update(Order)
            .where(Order.id == stale)
            .values(created_at=utcnow() - timedelta(minutes=settings.pending_order_ttl_minutes + 5))
        )
        db.commit()
    finally:
        db.close()

    assert (await client.post("/admin/sweep", headers=admin_headers(org_ids=[org_of(event_id)], roles=()))).status_code == 403
    r = await client.post("/admin/sweep", headers=admin_headers())

    assert r.json()["cancelled"] == [stale]
    assert load_order(stale).status == "cancelled"
    assert load_order(fresh).status == "pending"


async def test_replay_applies_missed_notification(client, fake_provider):
    event_id, order_id, pay = await paid_order(client, fake_provider, deliver_webhook=False)
    headers = admin_headers(org_ids=[org_of(event_id)], roles=())

    r = await client.post(f"/admin/payments/{pay}/replay", headers=headers)

    assert r.json()["outcome"] == "processed"
    assert r.json()["order_status"] == "settled"
    assert len(tickets_for(order_id)) == 2

    again = await client.post(f"/admin/payments/{pay}/replay", headers=headers)
    assert again.json()["outcome"] == "duplicate"
    assert len(tickets_for(order_id)) == 2


async def test_replay_unknown_payment(client):
    r = await client.post("/admin/payments/tr_missing/replay", headers=admin_headers())

    assert r.status_code == 404


async def test_health(client):
    r = await client.get("/health")

    assert r.json() == {"ok": True, "redis": True}
