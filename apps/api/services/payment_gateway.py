"""
Pakasir QRIS payment gateway client.

Two outbound calls:
- create charge: returns the QRIS payload string, total payable and expiry
- transaction detail: the authoritative status of (order id, amount)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

TRANSACTION_COMPLETED = "completed"


class PaymentGatewayError(RuntimeError):
    """Raised when the gateway is unreachable, times out or answers garbage."""


@dataclass(frozen=True)
class ChargeResult:
    order_id: str
    amount: int
    payment_reference: str
    total_payment: int
    expires_at: Optional[str]


class PakasirGateway:
    """Thin async client over the Pakasir REST API."""

    def __init__(
        self,
        *,
        project: str,
        api_key: str,
        base_url: str = "https://app.pakasir.com",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.project = project
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.project and self.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        if not self.configured:
            raise PaymentGatewayError("Pakasir is not configured (PAKASIR_PROJECT / PAKASIR_API_KEY).")
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"Pakasir request failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            logger.error("Pakasir %s %s -> HTTP %s: %s", method, path, response.status_code, response.text[:300])
            raise PaymentGatewayError(f"Pakasir error: HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentGatewayError("Pakasir returned a non-JSON response") from exc
        if not isinstance(data, dict):
            raise PaymentGatewayError("Pakasir returned an unexpected payload")
        return data

    async def create_charge(self, order_id: str, amount: int) -> ChargeResult:
        data = await self._request_json(
            "POST",
            "/api/transactioncreate/qris",
            json={
                "project": self.project,
                "order_id": order_id,
                "amount": int(amount),
                "api_key": self.api_key,
            },
        )
        payment = data.get("payment") or {}
        payment_number = payment.get("payment_number")
        if not payment_number:
            raise PaymentGatewayError("Pakasir response is missing payment.payment_number")
        return ChargeResult(
            order_id=order_id,
            amount=int(amount),
            payment_reference=str(payment_number),
            total_payment=int(payment.get("total_payment") or amount),
            expires_at=payment.get("expired_at"),
        )

    async def verify_transaction(self, order_id: str, amount: int) -> str:
        """Return the gateway's own status string for (order id, amount)."""
        data = await self._request_json(
            "GET",
            "/api/transactiondetail",
            params={
                "project": self.project,
                "amount": int(amount),
                "order_id": order_id,
                "api_key": self.api_key,
            },
        )
        transaction = data.get("transaction") or {}
        return str(transaction.get("status") or "").strip().lower()


def build_payment_gateway() -> PakasirGateway:
    return PakasirGateway(
        project=settings.PAKASIR_PROJECT,
        api_key=settings.PAKASIR_API_KEY,
        base_url=settings.PAKASIR_BASE_URL,
        timeout_seconds=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
    )
