"""Pydantic schemas for payment endpoints."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from renta_engine.payments.methods import PaymentMethod


class WebhookData(BaseModel):
    id: Optional[str | int] = None


class PaymentWebhook(BaseModel):
    """Provider notification; either ``type`` or ``action`` names the event."""

    type: Optional[str] = None
    action: Optional[str] = None
    topic: Optional[str] = None
    data: WebhookData = Field(default_factory=WebhookData)

    @property
    def notification_type(self) -> str:
        return self.type or self.action or self.topic or ""


class WebhookAck(BaseModel):
    success: bool = True


class TopupRequest(BaseModel):
    user_id: str
    amount: float = Field(gt=0)
    payment_method: PaymentMethod = PaymentMethod.PIX
    payer_email: str = ""
    card_token: Optional[str] = None


class TopupResponse(BaseModel):
    transaction_id: str
    payment_id: Optional[str] = None
    amount: float
    status: str
    details: dict[str, Any] = Field(default_factory=dict)


class BalanceResponse(BaseModel):
    user_id: str
    balance: float
