"""Session API router."""

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from renta_engine.common.security import is_operator_key
from renta_engine.payments.methods import PaymentMethod
from renta_engine.payments.models import TransactionStatus
from renta_engine.sessions.schemas import (
    PaymentInfo,
    SessionResponse,
    StartSessionRequest,
    StartSessionResponse,
    StopSessionRequest,
)

router = APIRouter()


def _get_service():
    from renta_engine.deps import get_session_manager
    return get_session_manager()


@router.post("/sessions", response_model=StartSessionResponse, status_code=201)
async def start_session(
    body: StartSessionRequest,
    x_renta_api_key: Optional[str] = Header(None, alias="X-Renta-Api-Key"),
):
    if body.payment_method is PaymentMethod.ADMIN_CREDIT and not is_operator_key(x_renta_api_key):
        raise HTTPException(status_code=403, detail="admin_credit requires an operator key")

    svc = _get_service()
    started = await svc.start_session(
        body.machine_id,
        body.user_id,
        body.duration_minutes,
        method=body.payment_method,
        payer_email=body.payer_email,
        card_token=body.card_token,
    )

    # Settled at creation (admin credit, instantly approved cards).
    if started.payment.status != TransactionStatus.PENDING.value:
        from renta_engine.deps import get_payment_handler
        await get_payment_handler().handle_notification(started.payment.id)

    rental = await svc.get_session(started.session.id)
    return StartSessionResponse(
        session=SessionResponse.model_validate(rental),
        payment=PaymentInfo(
            transaction_id=started.transaction.id,
            payment_id=started.payment.id,
            amount=started.transaction.amount,
            method=started.transaction.method,
            status=started.payment.status,
            details=started.payment.details,
        ),
    )


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str):
    rental = await _get_service().get_session(session_id)
    return SessionResponse.model_validate(rental)


@router.post("/sessions/{session_id}/stop", response_model=SessionResponse)
async def stop_session(session_id: str, body: StopSessionRequest | None = None):
    body = body or StopSessionRequest()
    svc = _get_service()
    rental = await svc.stop_session(session_id, body.reason)
    return SessionResponse.model_validate(rental)


@router.get("/users/{user_id}/sessions", response_model=list[SessionResponse])
async def list_user_sessions(
    user_id: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    rentals = await _get_service().list_user_sessions(user_id, limit=limit, offset=offset)
    return [SessionResponse.model_validate(r) for r in rentals]
