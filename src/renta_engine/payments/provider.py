"""HTTP client for the payment provider (Mercado Pago ``/v1/payments`` API)."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from renta_engine.common.exceptions import PaymentProviderError, TransientProviderError
from renta_engine.payments.models import TransactionStatus

logger = logging.getLogger(__name__)


def map_provider_status(raw_status: str | None) -> str:
    """Collapse provider statuses onto the transaction status set."""
    if raw_status == "approved":
        return TransactionStatus.APPROVED.value
    if raw_status == "rejected":
        return TransactionStatus.REJECTED.value
    if raw_status in ("cancelled", "refunded", "charged_back"):
        return TransactionStatus.CANCELLED.value
    # pending, in_process, authorized, in_mediation, unknown
    return TransactionStatus.PENDING.value


@dataclass(frozen=True)
class ProviderPayment:
    id: str
    status: str
    raw_status: str = ""
    amount: float = 0.0
    external_reference: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ProviderPayment":
        raw_status = data.get("status") or ""
        details: dict[str, Any] = {}
        transaction_data = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        for key in ("qr_code", "qr_code_base64", "ticket_url"):
            if transaction_data.get(key):
                details[key] = transaction_data[key]
        if data.get("status_detail"):
            details["status_detail"] = data["status_detail"]
        return cls(
            id=str(data["id"]),
            status=map_provider_status(raw_status),
            raw_status=raw_status,
            amount=float(data.get("transaction_amount") or 0.0),
            external_reference=data.get("external_reference") or None,
            details=details,
        )


class MercadoPagoClient:
    """Creates payments and reads their authoritative status.

    Transport errors, timeouts and 5xx responses are retried with
    exponential backoff up to ``max_attempts``; after that a
    ``TransientProviderError`` is raised. Other 4xx responses raise
    ``PaymentProviderError`` immediately.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff: float = 0.5,
        notification_url: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.notification_url = notification_url
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        return self._http_client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        last_error = ""
        for attempt in range(self.max_attempts):
            try:
                resp = await self._get_http_client().request(method, path, **kwargs)
                if resp.status_code < 500:
                    return resp
                last_error = f"HTTP {resp.status_code}"
            except httpx.TimeoutException:
                last_error = "timeout"
            except httpx.TransportError as e:
                last_error = str(e) or type(e).__name__

            logger.warning(
                "Provider %s %s failed (attempt %d/%d): %s",
                method, path, attempt + 1, self.max_attempts, last_error,
            )
            if attempt < self.max_attempts - 1:
                await asyncio.sleep(self.backoff * (2 ** attempt))

        raise TransientProviderError(f"{method} {path} failed after {self.max_attempts} attempts: {last_error}")

    async def create_payment(
        self,
        amount: float,
        description: str,
        payment_method_id: str,
        external_reference: str,
        payer_email: str,
        card_token: str | None = None,
        installments: int = 1,
    ) -> ProviderPayment:
        body: dict[str, Any] = {
            "transaction_amount": amount,
            "description": description,
            "payment_method_id": payment_method_id,
            "external_reference": external_reference,
            "payer": {"email": payer_email},
        }
        if card_token:
            body["token"] = card_token
            body["installments"] = installments
        if self.notification_url:
            body["notification_url"] = self.notification_url

        resp = await self._request(
            "POST", "/v1/payments",
            json=body,
            headers={"X-Idempotency-Key": external_reference},
        )
        if resp.status_code >= 400:
            raise PaymentProviderError(f"Payment creation refused: HTTP {resp.status_code}")
        payment = ProviderPayment.from_api(resp.json())
        logger.info(
            "Provider payment created", extra={"payment_id": payment.id, "outcome": payment.raw_status}
        )
        return payment

    async def get_payment(self, payment_id: str) -> Optional[ProviderPayment]:
        """Return the payment, or None when the provider does not know it."""
        resp = await self._request("GET", f"/v1/payments/{payment_id}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise PaymentProviderError(f"Payment lookup refused: HTTP {resp.status_code}")
        return ProviderPayment.from_api(resp.json())

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
