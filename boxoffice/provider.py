"""HTTP client for the payment provider (Mollie-style v2 API)."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx

from .errors import ProviderUnavailable

logger = logging.getLogger(__name__)


def format_amount(amount: int, currency: str) -> dict:
    return {"currency": currency, "value": f"{amount // 100}.{amount % 100:02d}"}


def parse_amount(amount: Optional[dict]) -> int:
    if not amount or "value" not in amount:
        return 0
    return int(Decimal(str(amount["value"])) * 100)


@dataclass
class ProviderPayment:
    id: str
    status: str
    amount: int
    currency: str
    checkout_url: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict) -> "ProviderPayment":
        links = data.get("_links") or {}
        return cls(
            id=data["id"],
            status=data.get("status", "open"),
            amount=parse_amount(data.get("amount")),
            currency=(data.get("amount") or {}).get("currency", "EUR"),
            checkout_url=(links.get("checkout") or {}).get("href"),
            metadata=data.get("metadata") or {},
            raw=data,
        )


@dataclass
class ProviderRefund:
    id: str
    payment_id: str
    status: str
    amount: int
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict) -> "ProviderRefund":
        return cls(
            id=data["id"],
            payment_id=data.get("paymentId", ""),
            status=data.get("status", "pending"),
            amount=parse_amount(data.get("amount")),
            raw=data,
        )


class PaymentProvider:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        name: str = "mollie",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.name = name
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Optional[dict]:
        try:
            async with self._client() as client:
                r = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("provider timeout method=%s path=%s", method, path)
            raise ProviderUnavailable(message="payment provider timed out") from e
        except httpx.TransportError as e:
            logger.error("provider unreachable method=%s path=%s error=%s", method, path, e)
            raise ProviderUnavailable(message="payment provider unreachable") from e

        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            logger.error("provider error method=%s path=%s status=%s body=%s", method, path, r.status_code, r.text[:500])
            raise ProviderUnavailable(message=f"payment provider answered {r.status_code}", status=r.status_code)
        return r.json()

    async def create_payment(
        self,
        amount: int,
        currency: str,
        description: str,
        redirect_url: str,
        webhook_url: str,
        metadata: dict,
        idempotency_key: Optional[str] = None,
    ) -> ProviderPayment:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        data = await self._request(
            "POST",
            "/payments",
            json={
                "amount": format_amount(amount, currency),
                "description": description,
                "redirectUrl": redirect_url,
                "webhookUrl": webhook_url,
                "metadata": metadata,
            },
            headers=headers,
        )
        if data is None:
            raise ProviderUnavailable(message="payment provider rejected session creation")
        return ProviderPayment.from_json(data)

    async def get_payment(self, payment_id: str) -> Optional[ProviderPayment]:
        data = await self._request("GET", f"/payments/{payment_id}")
        return ProviderPayment.from_json(data) if data else None

    async def get_refund(self, refund_id: str) -> Optional[ProviderRefund]:
        data = await self._request("GET", f"/refunds/{refund_id}")
        return ProviderRefund.from_json(data) if data else None

    async def create_refund(
        self,
        payment_id: str,
        amount: int,
        currency: str,
        description: str,
        idempotency_key: str,
    ) -> ProviderRefund:
        data = await self._request(
            "POST",
            f"/payments/{payment_id}/refunds",
            json={"amount": format_amount(amount, currency), "description": description},
            headers={"Idempotency-Key": idempotency_key},
        )
        if data is None:
            raise ProviderUnavailable(message=f"payment {payment_id} unknown to provider")
        return ProviderRefund.from_json(data)
