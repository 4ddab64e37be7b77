"""
PIX payment provider

PaymentProvider is what the orchestrator consumes. MercadoPagoPixProvider
implements it against the Mercado Pago REST API:

    POST /v1/payments            create a PIX charge (payment_method_id=pix)
    GET  /v1/payments/search     find charges by external_reference
    GET  /v1/payments/{id}       read one charge (webhook notifications)

The correlation id travels as external_reference, so a charge can always be
traced back to the appointment it was created for.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import httpx

from .. import config
from ..exceptions import PaymentConfigurationError, ProviderUnavailableError
from ..utils.circuit_breaker import (
    NETWORK_EXCEPTIONS,
    CircuitBreaker,
    CircuitBreakerOpen,
    payment_provider_breaker,
)
from .external_timeouts import MERCADO_PAGO_STATUS_TIMEOUT, MERCADO_PAGO_TIMEOUT

logger = logging.getLogger(__name__)


class ProviderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


@dataclass
class PixCharge:
    pix_payload: str
    provider_reference: str


@dataclass
class ProviderPaymentStatus:
    status: ProviderStatus
    provider_reference: Optional[str] = None
    correlation_id: Optional[str] = None
    amount: Optional[Decimal] = None


class PaymentProvider(Protocol):
    async def create_pix_charge(
        self,
        amount: Decimal,
        description: str,
        correlation_id: str,
        idempotency_key: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> PixCharge: ...

    async def check_payment_status(
        self, correlation_id: str, expected_amount: Optional[Decimal] = None
    ) -> ProviderPaymentStatus: ...

    async def get_payment(self, provider_reference: str) -> ProviderPaymentStatus: ...


# Mercado Pago status -> provider status
_STATUS_MAP = {
    "approved": ProviderStatus.CONFIRMED,
    "rejected": ProviderStatus.REJECTED,
    "cancelled": ProviderStatus.REJECTED,
    "refunded": ProviderStatus.REJECTED,
    "charged_back": ProviderStatus.REJECTED,
}


def _map_status(raw: Optional[str]) -> ProviderStatus:
    return _STATUS_MAP.get((raw or "").lower(), ProviderStatus.PENDING)


def _amount(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value)).quantize(Decimal("0.01"))


class MercadoPagoPixProvider:
    """Mercado Pago adapter over httpx.AsyncClient, guarded by a circuit breaker."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        payer_email: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.access_token = access_token if access_token is not None else config.MERCADO_PAGO_ACCESS_TOKEN
        self.base_url = (base_url or config.MERCADO_PAGO_API_URL).rstrip("/")
        self.payer_email = payer_email or config.MERCADO_PAGO_PAYER_EMAIL
        self._http_client = http_client
        self._send = (breaker or payment_provider_breaker)(self._send_raw)

    async def _send_raw(self, method: str, path: str, timeout: httpx.Timeout, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._http_client is not None:
            return await self._http_client.request(method, url, timeout=timeout, **kwargs)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _request(
        self,
        method: str,
        path: str,
        timeout: httpx.Timeout = MERCADO_PAGO_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        if not self.access_token:
            raise PaymentConfigurationError("Mercado Pago access token is not configured")

        request_headers = {"Authorization": f"Bearer {self.access_token}"}
        request_headers.update(headers or {})

        try:
            response = await self._send(method, path, timeout, headers=request_headers, **kwargs)
        except CircuitBreakerOpen as e:
            raise ProviderUnavailableError(str(e)) from e
        except NETWORK_EXCEPTIONS as e:
            logger.warning(f"Mercado Pago {method} {path} failed: {e!r}")
            raise ProviderUnavailableError(f"Mercado Pago unreachable: {e}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Mercado Pago {method} {path} failed: {e!r}")
            raise ProviderUnavailableError(f"Mercado Pago request failed: {e}") from e

        if response.status_code in (401, 403):
            logger.error(f"Mercado Pago rejected credentials ({response.status_code})")
            raise PaymentConfigurationError(
                f"Mercado Pago rejected the access token ({response.status_code})"
            )
        if response.status_code >= 400:
            logger.error(
                f"Mercado Pago {method} {path} returned {response.status_code}: {response.text[:300]}"
            )
            raise ProviderUnavailableError(
                f"Mercado Pago returned {response.status_code}", status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailableError("Mercado Pago returned an unreadable body") from e

    async def create_pix_charge(
        self,
        amount: Decimal,
        description: str,
        correlation_id: str,
        idempotency_key: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> PixCharge:
        body = {
            "transaction_amount": float(amount),
            "description": description,
            "payment_method_id": "pix",
            "external_reference": correlation_id,
            "payer": {"email": self.payer_email},
        }
        if expires_at is not None:
            body["date_of_expiration"] = expires_at.isoformat(timespec="milliseconds")

        data = await self._request(
            "POST",
            "/v1/payments",
            json=body,
            headers={"X-Idempotency-Key": idempotency_key or f"pix-{correlation_id}-{uuid.uuid4()}"},
        )

        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        pix_payload = transaction.get("qr_code")
        if not pix_payload or data.get("id") is None:
            logger.error(f"Mercado Pago returned no PIX payload for {correlation_id}")
            raise ProviderUnavailableError("Mercado Pago returned no PIX code")

        logger.info(f"PIX charge {data['id']} created for {correlation_id} ({amount})")
        return PixCharge(pix_payload=pix_payload, provider_reference=str(data["id"]))

    async def check_payment_status(
        self, correlation_id: str, expected_amount: Optional[Decimal] = None
    ) -> ProviderPaymentStatus:
        data = await self._request(
            "GET",
            "/v1/payments/search",
            timeout=MERCADO_PAGO_STATUS_TIMEOUT,
            params={
                "external_reference": correlation_id,
                "sort": "date_created",
                "criteria": "desc",
            },
        )
        results = data.get("results") or []

        for result in results:
            if _map_status(result.get("status")) != ProviderStatus.CONFIRMED:
                continue
            amount = _amount(result.get("transaction_amount"))
            if expected_amount is not None and amount is not None and abs(amount - expected_amount) > Decimal("0.01"):
                logger.warning(
                    f"Approved payment {result.get('id')} for {correlation_id} has amount "
                    f"{amount}, expected {expected_amount}"
                )
                continue
            return ProviderPaymentStatus(
                status=ProviderStatus.CONFIRMED,
                provider_reference=str(result.get("id")),
                correlation_id=correlation_id,
                amount=amount,
            )

        if results and all(_map_status(r.get("status")) == ProviderStatus.REJECTED for r in results):
            return ProviderPaymentStatus(
                status=ProviderStatus.REJECTED,
                provider_reference=str(results[0].get("id")),
                correlation_id=correlation_id,
            )

        return ProviderPaymentStatus(status=ProviderStatus.PENDING, correlation_id=correlation_id)

    async def get_payment(self, provider_reference: str) -> ProviderPaymentStatus:
        data = await self._request(
            "GET", f"/v1/payments/{provider_reference}", timeout=MERCADO_PAGO_STATUS_TIMEOUT
        )
        return ProviderPaymentStatus(
            status=_map_status(data.get("status")),
            provider_reference=str(data.get("id", provider_reference)),
            correlation_id=data.get("external_reference"),
            amount=_amount(data.get("transaction_amount")),
        )
