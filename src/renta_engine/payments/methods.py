"""Payment methods and their per-method resolution.

The method set is closed: every transaction carries one of
``PaymentMethod`` and is opened and resolved through the matching
resolver, never by inspecting the shape of a provider response.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from renta_engine.common.exceptions import InvalidPaymentRequestError
from renta_engine.common.models import generate_uuid
from renta_engine.payments.models import TransactionStatus
from renta_engine.payments.provider import ProviderPayment

ADMIN_CREDIT_PREFIX = "admin-"


class PaymentMethod(str, Enum):
    PIX = "pix"
    CREDIT_CARD = "credit_card"
    ADMIN_CREDIT = "admin_credit"


@dataclass(frozen=True)
class PaymentRequest:
    amount: float
    description: str
    external_reference: str
    payer_email: str = ""
    card_token: Optional[str] = None
    installments: int = 1


class PaymentGateway(Protocol):
    async def create_payment(
        self,
        amount: float,
        description: str,
        payment_method_id: str,
        external_reference: str,
        payer_email: str,
        card_token: str | None = None,
        installments: int = 1,
    ) -> ProviderPayment: ...

    async def get_payment(self, payment_id: str) -> Optional[ProviderPayment]: ...


class PaymentResolver(Protocol):
    async def open_payment(self, request: PaymentRequest) -> ProviderPayment: ...

    async def fetch_status(self, payment_id: str) -> Optional[ProviderPayment]: ...


class PixResolver:
    def __init__(self, gateway: PaymentGateway):
        self.gateway = gateway

    async def open_payment(self, request: PaymentRequest) -> ProviderPayment:
        return await self.gateway.create_payment(
            amount=request.amount,
            description=request.description,
            payment_method_id="pix",
            external_reference=request.external_reference,
            payer_email=request.payer_email,
        )

    async def fetch_status(self, payment_id: str) -> Optional[ProviderPayment]:
        return await self.gateway.get_payment(payment_id)


class CreditCardResolver:
    def __init__(self, gateway: PaymentGateway, card_brand: str = "master"):
        self.gateway = gateway
        self.card_brand = card_brand

    async def open_payment(self, request: PaymentRequest) -> ProviderPayment:
        if not request.card_token:
            raise InvalidPaymentRequestError("Credit card payments require a card token")
        return await self.gateway.create_payment(
            amount=request.amount,
            description=request.description,
            payment_method_id=self.card_brand,
            external_reference=request.external_reference,
            payer_email=request.payer_email,
            card_token=request.card_token,
            installments=request.installments,
        )

    async def fetch_status(self, payment_id: str) -> Optional[ProviderPayment]:
        return await self.gateway.get_payment(payment_id)


class AdminCreditResolver:
    """Operator-issued credit: settled locally, never sent to the provider."""

    async def open_payment(self, request: PaymentRequest) -> ProviderPayment:
        return ProviderPayment(
            id=f"{ADMIN_CREDIT_PREFIX}{generate_uuid()}",
            status=TransactionStatus.APPROVED.value,
            raw_status="approved",
            amount=request.amount,
            external_reference=request.external_reference,
        )

    async def fetch_status(self, payment_id: str) -> Optional[ProviderPayment]:
        if not payment_id.startswith(ADMIN_CREDIT_PREFIX):
            return None
        return ProviderPayment(
            id=payment_id,
            status=TransactionStatus.APPROVED.value,
            raw_status="approved",
        )


def build_resolvers(gateway: PaymentGateway) -> dict[PaymentMethod, PaymentResolver]:
    return {
        PaymentMethod.PIX: PixResolver(gateway),
        PaymentMethod.CREDIT_CARD: CreditCardResolver(gateway),
        PaymentMethod.ADMIN_CREDIT: AdminCreditResolver(),
    }
