"""Pydantic schemas for session endpoints."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from renta_engine.payments.methods import PaymentMethod
from renta_engine.sessions.models import StopReason


class StartSessionRequest(BaseModel):
    machine_id: str
    user_id: str
    duration_minutes: int = Field(ge=1)
    payment_method: PaymentMethod = PaymentMethod.PIX
    payer_email: str = ""
    card_token: Optional[str] = None


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    machine_id: str
    user_id: str
    status: str
    duration: int
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PaymentInfo(BaseModel):
    transaction_id: str
    payment_id: Optional[str] = None
    amount: float
    method: str
    status: str
    details: dict[str, Any] = Field(default_factory=dict)


class StartSessionResponse(BaseModel):
    session: SessionResponse
    payment: PaymentInfo


class StopSessionRequest(BaseModel):
    reason: StopReason = StopReason.USER_REQUESTED
