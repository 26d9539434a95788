"""Notification events pushed to connected clients."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from renta_engine.common.models import utcnow

PAYMENT_CONFIRMED = "payment-confirmed"
PAYMENT_FAILED = "payment-failed"
SESSION_STARTED = "session-started"
SESSION_ENDED = "session-ended"

EVENT_TYPES = frozenset({PAYMENT_CONFIRMED, PAYMENT_FAILED, SESSION_STARTED, SESSION_ENDED})


@dataclass(frozen=True)
class NotificationEvent:
    recipient: str
    type: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)

    def to_wire(self) -> dict[str, Any]:
        return {"event": self.type, "data": self.payload}


def payment_confirmed(
    user_id: str,
    transaction_id: str,
    payment_id: str,
    amount: float,
    new_balance: float,
    kind: str,
) -> NotificationEvent:
    now = utcnow()
    return NotificationEvent(
        recipient=user_id,
        type=PAYMENT_CONFIRMED,
        payload={
            "transactionId": transaction_id,
            "paymentId": payment_id,
            "amount": amount,
            "newBalance": new_balance,
            "type": kind,
            "timestamp": now.isoformat(),
        },
        timestamp=now,
    )


def payment_failed(user_id: str, payment_id: str, status: str) -> NotificationEvent:
    now = utcnow()
    return NotificationEvent(
        recipient=user_id,
        type=PAYMENT_FAILED,
        payload={"paymentId": payment_id, "status": status, "timestamp": now.isoformat()},
        timestamp=now,
    )


def _session_event(event_type: str, user_id: str, session_id: str, machine_id: str, **extra: Any) -> NotificationEvent:
    now = utcnow()
    payload = {"sessionId": session_id, "machineId": machine_id, "timestamp": now.isoformat()}
    payload.update(extra)
    return NotificationEvent(recipient=user_id, type=event_type, payload=payload, timestamp=now)


def session_started(user_id: str, session_id: str, machine_id: str, duration: int) -> NotificationEvent:
    return _session_event(SESSION_STARTED, user_id, session_id, machine_id, duration=duration)


def session_ended(user_id: str, session_id: str, machine_id: str, status: str) -> NotificationEvent:
    return _session_event(SESSION_ENDED, user_id, session_id, machine_id, status=status)
