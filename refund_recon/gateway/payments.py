from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Protocol
from uuid import uuid4

import httpx

from refund_recon.core.config import Settings, get_settings
from refund_recon.domain.errors import GatewayError
from refund_recon.domain.readers import REFUND_STATUSES

logger = logging.getLogger(__name__)


def to_local_refund_status(status: str | None) -> str:
    # Unknown or transitional gateway states are treated as still in flight.
    if status in REFUND_STATUSES:
        return status
    return "pending"


@dataclass
class GatewayRefundRequest:
    order_id: str
    order_number: str | None
    amount_cents: int
    currency: str
    payment_intent_id: str | None = None
    charge_id: str | None = None
    account_id: str | None = None
    reason: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def as_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "amount": self.amount_cents,
            "currency": self.currency,
            "metadata": dict(self.metadata),
        }
        if self.reason:
            params["reason"] = self.reason
        if self.payment_intent_id:
            params["payment_intent"] = self.payment_intent_id
        else:
            params["charge"] = self.charge_id
        return params


@dataclass
class GatewayRefundResult:
    refund_id: str
    status: str
    amount_cents: int
    backend: str
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    backend: str

    def create_refund(self, request: GatewayRefundRequest, idempotency_key: str) -> GatewayRefundResult:
        ...


class FakePaymentGateway:
    """In-process gateway. Replays the first result for a repeated idempotency key."""

    backend = "fake"

    def __init__(self, status: str = "succeeded"):
        self.status = status
        self.calls: list[tuple[GatewayRefundRequest, str]] = []
        self._by_key: dict[str, GatewayRefundResult] = {}

    def create_refund(self, request: GatewayRefundRequest, idempotency_key: str) -> GatewayRefundResult:
        self.calls.append((request, idempotency_key))
        existing = self._by_key.get(idempotency_key)
        if existing is not None:
            return existing
        result = GatewayRefundResult(
            refund_id=f"re_fake_{uuid4().hex[:16]}",
            status=to_local_refund_status(self.status),
            amount_cents=request.amount_cents,
            backend=self.backend,
            raw={"params": request.as_params()},
        )
        self._by_key[idempotency_key] = result
        return result


class HttpPaymentGateway:
    backend = "http"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.gateway_base_url.rstrip("/")
        self.timeout = max(1, self.settings.gateway_timeout_seconds)

    def _headers(self, idempotency_key: str, account_id: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Idempotency-Key": idempotency_key}
        if self.settings.gateway_api_key:
            headers["Authorization"] = f"Bearer {self.settings.gateway_api_key}"
        if account_id:
            headers["X-Gateway-Account"] = account_id
        return headers

    def create_refund(self, request: GatewayRefundRequest, idempotency_key: str) -> GatewayRefundResult:
        url = f"{self.base_url}/v1/refunds"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    url,
                    headers=self._headers(idempotency_key, request.account_id),
                    json=request.as_params(),
                )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise GatewayError(
                f"payment gateway rejected refund: status={exc.response.status_code}",
                order_id=request.order_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"payment gateway unreachable: {exc}", order_id=request.order_id) from exc

        if not isinstance(payload, dict) or not payload.get("id"):
            raise GatewayError("payment gateway returned no refund id", order_id=request.order_id)

        return GatewayRefundResult(
            refund_id=str(payload["id"]),
            status=to_local_refund_status(payload.get("status")),
            amount_cents=int(payload.get("amount", request.amount_cents)),
            backend=self.backend,
            raw=payload,
        )


def build_payment_gateway(settings: Settings | None = None) -> PaymentGateway:
    settings = settings or get_settings()
    mode = settings.gateway_mode
    if mode == "http":
        return HttpPaymentGateway(settings)
    if mode != "fake":
        raise ValueError(f"unsupported gateway_mode: {mode}")
    logger.info("using in-process fake payment gateway: status=%s", settings.fake_gateway_status)
    return FakePaymentGateway(status=settings.fake_gateway_status)


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway()
