import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from jose import jwt
from sqlalchemy.orm import selectinload

from boxoffice import db as dbmod
from boxoffice.models import EVENT_PUBLISHED, Event, Order, Organization, TicketInstance, TicketType, new_id
from boxoffice.security import SIGNATURE_HEADER, sign_webhook

PROVIDER_URL = "https://provider.test/v2"
WEBHOOK_SECRET = "test_webhook_secret"
IDENTITY_SECRET = "test_identity_secret"


class FakeProvider:
    """In-memory Mollie-style API served through httpx.MockTransport."""

    def __init__(self):
        self.payments: dict[str, dict] = {}
        self.refunds: dict[str, dict] = {}
        self.refund_keys: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_with: Optional[int] = None
        self._ids = itertools.count(1)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v2")
        self.calls.append((request.method, path))
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"title": "Service Unavailable"})

        parts = path.strip("/").split("/")
        if request.method == "POST" and parts == ["payments"]:
            return httpx.Response(201, json=self._create_payment(request))
        if request.method == "GET" and len(parts) == 2 and parts[0] == "payments":
            return self._found(self.payments.get(parts[1]))
        if request.method == "POST" and len(parts) == 3 and parts[2] == "refunds":
            return self._create_refund(parts[1], request)
        if request.method == "GET" and len(parts) == 2 and parts[0] == "refunds":
            return self._found(self.refunds.get(parts[1]))
        return httpx.Response(404, json={"title": "Not Found"})

    def _found(self, data: Optional[dict]) -> httpx.Response:
        if data is None:
            return httpx.Response(404, json={"title": "Not Found"})
        return httpx.Response(200, json=data)

    def _create_payment(self, request: httpx.Request) -> dict:
        body = _json(request)
        payment_id = f"tr_{next(self._ids)}"
        self.payments[payment_id] = {
            "id": payment_id,
            "status": "open",
            "amount": body["amount"],
            "description": body["description"],
            "metadata": body.get("metadata") or {},
            "_links": {"checkout": {"href": f"https://pay.test/checkout/{payment_id}"}},
        }
        return self.payments[payment_id]

    def _create_refund(self, payment_id: str, request: httpx.Request) -> httpx.Response:
        if payment_id not in self.payments:
            return httpx.Response(404, json={"title": "Not Found"})
        key = request.headers.get("Idempotency-Key", "")
        if key in self.refund_keys:
            return httpx.Response(201, json=self.refunds[self.refund_keys[key]])
        refund_id = f"re_{next(self._ids)}"
        self.refunds[refund_id] = {
            "id": refund_id,
            "paymentId": payment_id,
            "status": "pending",
            "amount": _json(request)["amount"],
        }
        self.refund_keys[key] = refund_id
        return httpx.Response(201, json=self.refunds[refund_id])

    def set_status(self, resource_id: str, status: str) -> None:
        store = self.refunds if resource_id.startswith("re_") else self.payments
        store[resource_id]["status"] = status

    def add_payment(self, status: str, amount: str = "25.00", metadata: Optional[dict] = None) -> str:
        payment_id = f"tr_{next(self._ids)}"
        self.payments[payment_id] = {
            "id": payment_id,
            "status": status,
            "amount": {"currency": "EUR", "value": amount},
            "metadata": metadata or {},
            "_links": {"checkout": {"href": f"https://pay.test/checkout/{payment_id}"}},
        }
        return payment_id


class Sink:
    """Records outbound email/integration/alert posts and answers with ``status``."""

    def __init__(self, status: int = 200):
        self.status = status
        self.requests: list[httpx.Request] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json={"ok": self.status < 400})

    def to(self, host: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]


def _json(request: httpx.Request) -> dict:
    return json.loads(request.content or b"{}")


def seed_event(
    price: int = 2500,
    capacity: int = 10,
    ticket_types: int = 1,
    status: str = EVENT_PUBLISHED,
    org_settings: Optional[dict] = None,
    event_settings: Optional[dict] = None,
    sales_start: Optional[datetime] = None,
    sales_end: Optional[datetime] = None,
) -> tuple[str, list[str]]:
    """Create an organization, an event and its ticket types; returns (event_id, ticket_type_ids)."""
    db = dbmod.SessionLocal()
    try:
        org = Organization(id=new_id("org"), name="Test Org", settings=org_settings or {})
        event = Event(id=new_id("evt"), org_id=org.id, name="Test Event", status=status, settings=event_settings or {})
        db.add_all([org, event])
        ids = []
        for i in range(ticket_types):
            tt = TicketType(
                id=new_id("tt"),
                event_id=event.id,
                name=f"Type {i + 1}",
                price=price,
                capacity_total=capacity,
                sales_start=sales_start,
                sales_end=sales_end,
                is_active=True,
            )
            db.add(tt)
            ids.append(tt.id)
        db.commit()
        return event.id, ids
    finally:
        db.close()


def org_of(event_id: str) -> str:
    db = dbmod.SessionLocal()
    try:
        return db.get(Event, event_id).org_id
    finally:
        db.close()


def load_order(order_id: str) -> Order:
    db = dbmod.SessionLocal()
    try:
        return db.get(Order, order_id, options=[selectinload(Order.items), selectinload(Order.payment)])
    finally:
        db.close()


def tickets_for(order_id: str) -> list[TicketInstance]:
    db = dbmod.SessionLocal()
    try:
        return db.query(TicketInstance).filter(TicketInstance.order_id == order_id).all()
    finally:
        db.close()


def identity_token(org_ids=(), roles=(), sub: str = "user_1") -> str:
    exp = int((datetime.now(timezone.utc) + timedelta(minutes=30)).timestamp())
    return jwt.encode({"sub": sub, "org_ids": list(org_ids), "roles": list(roles), "exp": exp}, IDENTITY_SECRET, algorithm="HS256")


def admin_headers(org_ids=(), roles=("platform_admin",)) -> dict:
    return {"Authorization": f"Bearer {identity_token(org_ids, roles)}"}


async def checkout(client: httpx.AsyncClient, event_id: str, ticket_type_id: str, quantity: int = 1, **extra) -> httpx.Response:
    body = {
        "event_id": event_id,
        "email": extra.pop("email", "Buyer@Example.com"),
        "lines": [{"ticket_type_id": ticket_type_id, "quantity": quantity}],
    }
    body.update(extra)
    return await client.post("/checkout", json=body)


async def post_webhook(client: httpx.AsyncClient, resource_id: str, secret: str = WEBHOOK_SECRET, signature: Optional[str] = None) -> httpx.Response:
    body = f"id={resource_id}".encode()
    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    headers[SIGNATURE_HEADER] = signature if signature is not None else sign_webhook(resource_id, body, secret)
    return await client.post("/webhooks/payments", content=body, headers=headers)
