"""Session manager: the rental session state machine.

    pending -> active -> completed | expired
    pending -> cancelled

Every transition is one unit of work taken under the machine's exclusive
lock; device commands and client notifications go out only after the
lock is released.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from renta_engine.common.config import RentaSettings
from renta_engine.common.database import DatabaseManager
from renta_engine.common.exceptions import (
    InvalidDurationError,
    InvalidPaymentRequestError,
    MachineNotFoundError,
    MachineUnavailableError,
    PaymentProviderError,
    SessionConflictError,
    SessionNotFoundError,
)
from renta_engine.common.locks import MachineLocks
from renta_engine.common.models import as_utc, utcnow
from renta_engine.devices.dispatcher import DeviceCommandDispatcher
from renta_engine.machines.models import MachineStatus
from renta_engine.machines.service import lock_machine
from renta_engine.payments.methods import PaymentMethod, PaymentRequest, PaymentResolver
from renta_engine.payments.models import TransactionModel, TransactionStatus
from renta_engine.payments.provider import ProviderPayment
from renta_engine.realtime import events
from renta_engine.realtime.registry import ConnectionRegistry
from renta_engine.sessions.models import RentalSessionModel, SessionStatus, StopReason

logger = logging.getLogger(__name__)


@dataclass
class StartedSession:
    session: RentalSessionModel
    transaction: TransactionModel
    payment: ProviderPayment


async def count_active_sessions(session: AsyncSession, machine_id: str) -> int:
    result = await session.execute(
        select(func.count(RentalSessionModel.id)).where(
            RentalSessionModel.machine_id == machine_id,
            RentalSessionModel.status == SessionStatus.ACTIVE.value,
        )
    )
    return result.scalar_one()


class SessionManager:
    """Start, activate and stop rental sessions."""

    def __init__(
        self,
        settings: RentaSettings,
        db: DatabaseManager,
        locks: MachineLocks,
        dispatcher: DeviceCommandDispatcher,
        notifier: ConnectionRegistry,
        resolvers: dict[PaymentMethod, PaymentResolver],
    ):
        self.settings = settings
        self.db = db
        self.locks = locks
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.resolvers = resolvers

    def validate_duration(self, duration_minutes: int) -> None:
        if (
            not isinstance(duration_minutes, int)
            or duration_minutes < 1
            or duration_minutes > self.settings.max_session_minutes
        ):
            raise InvalidDurationError(
                f"Duration must be between 1 and {self.settings.max_session_minutes} minutes"
            )

    def calculate_cost(self, duration_minutes: int) -> float:
        self.validate_duration(duration_minutes)
        return round(duration_minutes * self.settings.price_per_minute, 2)

    # ── Transitions ──

    async def start_session(
        self,
        machine_id: str,
        user_id: str,
        duration_minutes: int,
        method: PaymentMethod | str = PaymentMethod.PIX,
        payer_email: str = "",
        card_token: Optional[str] = None,
    ) -> StartedSession:
        """Create a pending session with its pending transaction and open the payment."""
        method = PaymentMethod(method)
        amount = self.calculate_cost(duration_minutes)
        if method is PaymentMethod.CREDIT_CARD and not card_token:
            raise InvalidPaymentRequestError("Credit card payments require a card token")

        async with self.locks.hold(machine_id):
            async with self.db.get_session() as session:
                machine = await lock_machine(session, machine_id)
                if machine is None:
                    raise MachineNotFoundError()
                if machine.status != MachineStatus.ONLINE.value:
                    raise MachineUnavailableError(f"Machine {machine.code} is {machine.status}")

                rental = RentalSessionModel(
                    machine_id=machine_id,
                    user_id=user_id,
                    status=SessionStatus.PENDING.value,
                    duration=duration_minutes,
                )
                session.add(rental)
                await session.flush()

                transaction = TransactionModel(
                    user_id=user_id,
                    amount=amount,
                    method=method.value,
                    status=TransactionStatus.PENDING.value,
                    external_reference=rental.id,
                )
                session.add(transaction)
                await session.flush()

        logger.info(
            "Session created", extra={"session_id": rental.id, "machine_id": machine_id, "user_id": user_id}
        )

        request = PaymentRequest(
            amount=amount,
            description=f"Machine usage - {duration_minutes} minutes",
            external_reference=rental.id,
            payer_email=payer_email,
            card_token=card_token,
        )
        try:
            payment = await self.resolvers[method].open_payment(request)
        except (PaymentProviderError, InvalidPaymentRequestError):
            logger.warning("Opening payment failed, cancelling session", extra={"session_id": rental.id})
            await self._abandon(rental.id, transaction.id)
            raise

        async with self.db.get_session() as session:
            await session.execute(
                update(TransactionModel)
                .where(
                    TransactionModel.id == transaction.id,
                    TransactionModel.external_payment_id.is_(None),
                )
                .values(external_payment_id=payment.id)
            )
        transaction.external_payment_id = payment.id

        return StartedSession(session=rental, transaction=transaction, payment=payment)

    async def activate_session(self, session_id: str) -> RentalSessionModel:
        """pending -> active. Only the payment confirmation path calls this."""
        machine_id = await self._machine_of(session_id)

        async with self.locks.hold(machine_id):
            async with self.db.get_session() as session:
                machine = await lock_machine(session, machine_id)
                rental = await session.get(RentalSessionModel, session_id)
                if rental.status != SessionStatus.PENDING.value:
                    raise SessionConflictError(f"Cannot activate session with status {rental.status}")
                if machine is None or machine.status != MachineStatus.ONLINE.value:
                    status = machine.status if machine else "missing"
                    raise SessionConflictError(f"Machine is {status}, cannot activate session")
                if await count_active_sessions(session, machine_id):
                    raise SessionConflictError("Machine already has an active session")

                rental.status = SessionStatus.ACTIVE.value
                rental.start_time = utcnow()
                machine.status = MachineStatus.IN_USE.value
                await session.flush()

        logger.info("Session activated", extra={"session_id": session_id, "machine_id": machine_id})
        self.dispatcher.request_activation(machine_id, rental.duration)
        await self.notifier.notify(
            events.session_started(rental.user_id, rental.id, machine_id, rental.duration)
        )
        return rental

    async def stop_session(
        self, session_id: str, reason: StopReason | str = StopReason.USER_REQUESTED
    ) -> RentalSessionModel:
        """End a session. Already-terminal sessions are returned unchanged."""
        reason = StopReason(reason)
        machine_id = await self._machine_of(session_id)

        async with self.locks.hold(machine_id):
            async with self.db.get_session() as session:
                machine = await lock_machine(session, machine_id)
                rental = await session.get(RentalSessionModel, session_id)
                if rental.is_terminal:
                    return rental

                previous = rental.status
                now = utcnow()
                if previous == SessionStatus.PENDING.value:
                    rental.status = SessionStatus.CANCELLED.value
                elif reason is StopReason.CANCELLED:
                    raise SessionConflictError("An active session is stopped, not cancelled")
                else:
                    rental.status = (
                        SessionStatus.EXPIRED.value
                        if reason is StopReason.EXPIRED
                        else SessionStatus.COMPLETED.value
                    )
                    if machine is not None and machine.status == MachineStatus.IN_USE.value:
                        machine.status = MachineStatus.ONLINE.value
                        machine.operating_hours += self._used_hours(rental, now)
                rental.end_time = now
                await session.flush()

        logger.info(
            "Session %s -> %s (%s)", previous, rental.status, reason.value,
            extra={"session_id": session_id, "machine_id": machine_id},
        )
        if previous == SessionStatus.ACTIVE.value:
            if reason is StopReason.USER_REQUESTED:
                # Cut power now, then queue a deactivate behind any activate
                # still in flight for this machine.
                await self.dispatcher.emergency_stop(machine_id)
            self.dispatcher.request_deactivation(machine_id)
        await self.notifier.notify(
            events.session_ended(rental.user_id, rental.id, machine_id, rental.status)
        )
        return rental

    # ── Queries ──

    async def get_session(self, session_id: str) -> RentalSessionModel:
        async with self.db.get_session() as session:
            rental = await session.get(RentalSessionModel, session_id)
        if rental is None:
            raise SessionNotFoundError()
        return rental

    async def get_active_session(self, machine_id: str) -> Optional[RentalSessionModel]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(RentalSessionModel).where(
                    RentalSessionModel.machine_id == machine_id,
                    RentalSessionModel.status == SessionStatus.ACTIVE.value,
                )
            )
            return result.scalars().first()

    async def list_user_sessions(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[RentalSessionModel]:
        query = (
            select(RentalSessionModel)
            .where(RentalSessionModel.user_id == user_id)
            .order_by(RentalSessionModel.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # ── Helpers ──

    async def _machine_of(self, session_id: str) -> str:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(RentalSessionModel.machine_id).where(RentalSessionModel.id == session_id)
            )
            machine_id = result.scalar_one_or_none()
        if machine_id is None:
            raise SessionNotFoundError()
        return machine_id

    async def _abandon(self, session_id: str, transaction_id: str) -> None:
        await self.stop_session(session_id, StopReason.CANCELLED)
        async with self.db.get_session() as session:
            await session.execute(
                update(TransactionModel)
                .where(
                    TransactionModel.id == transaction_id,
                    TransactionModel.status == TransactionStatus.PENDING.value,
                )
                .values(status=TransactionStatus.CANCELLED.value)
            )

    @staticmethod
    def _used_hours(rental: RentalSessionModel, now) -> float:
        started = as_utc(rental.start_time)
        if started is None:
            return 0.0
        elapsed = max(0.0, (now - started).total_seconds())
        return min(elapsed, rental.duration * 60) / 3600
