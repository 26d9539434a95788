"""Payment webhook, top-up and balance endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import ValidationError

from renta_engine.common.models import utcnow
from renta_engine.common.security import is_operator_key
from renta_engine.payments.methods import PaymentMethod
from renta_engine.payments.schemas import (
    BalanceResponse,
    PaymentWebhook,
    TopupRequest,
    TopupResponse,
    WebhookAck,
)

logger = logging.getLogger(__name__)

router = APIRouter()

PAYMENT_NOTIFICATION_TYPES = frozenset({"payment", "payment.created", "payment.updated"})


def _get_handler():
    from renta_engine.deps import get_payment_handler
    return get_payment_handler()


def _get_accounts():
    from renta_engine.deps import get_account_service
    return get_account_service()


async def _parse_notification(request: Request) -> PaymentWebhook:
    body: dict = {}
    raw = await request.body()
    if raw:
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Notification must be a JSON object")

    try:
        notification = PaymentWebhook.model_validate(body)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Malformed notification")

    # Older provider integrations put everything in the query string.
    params = request.query_params
    if not notification.notification_type:
        notification.type = params.get("type") or params.get("topic")
    if notification.data.id is None:
        notification.data.id = params.get("data.id") or params.get("id")
    return notification


@router.post("/webhooks/mercadopago", response_model=WebhookAck)
async def payment_webhook(request: Request):
    """Acknowledge every well-formed notification, whatever the business outcome."""
    notification = await _parse_notification(request)
    kind = notification.notification_type

    if kind not in PAYMENT_NOTIFICATION_TYPES:
        logger.debug("Ignoring notification type %s", kind)
        return WebhookAck()
    if notification.data.id is None or str(notification.data.id) == "":
        logger.warning("Payment notification without payment id")
        return WebhookAck()

    await _get_handler().handle_notification(str(notification.data.id))
    return WebhookAck()


@router.get("/webhooks/mercadopago/test")
async def payment_webhook_test():
    return {
        "status": "ok",
        "message": "Payment webhook is reachable",
        "timestamp": utcnow().isoformat(),
    }


@router.post("/payments/topup", response_model=TopupResponse, status_code=201)
async def create_topup(
    body: TopupRequest,
    x_renta_api_key: Optional[str] = Header(None, alias="X-Renta-Api-Key"),
):
    if body.payment_method is PaymentMethod.ADMIN_CREDIT and not is_operator_key(x_renta_api_key):
        raise HTTPException(status_code=403, detail="admin_credit requires an operator key")

    transaction, payment = await _get_accounts().create_topup(
        body.user_id,
        body.amount,
        method=body.payment_method,
        payer_email=body.payer_email,
        card_token=body.card_token,
    )
    return TopupResponse(
        transaction_id=transaction.id,
        payment_id=payment.id,
        amount=transaction.amount,
        status=payment.status,
        details=payment.details,
    )


@router.get("/users/{user_id}/balance", response_model=BalanceResponse)
async def get_balance(user_id: str):
    balance = await _get_accounts().get_balance(user_id)
    return BalanceResponse(user_id=user_id, balance=balance)
