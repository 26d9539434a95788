"""Payment confirmation and account balances.

``PaymentConfirmationHandler`` is driven by provider webhooks. It is
idempotent per external payment id: the transaction row leaves
``pending`` through a conditional update, and only the caller whose
update matched performs the side effects (balance credit, session
activation, notification).
"""

import logging
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from renta_engine.common.database import DatabaseManager
from renta_engine.common.exceptions import (
    RentaError,
    SessionConflictError,
    SessionNotFoundError,
    TransientProviderError,
    UnknownPaymentError,
)
from renta_engine.common.models import utcnow
from renta_engine.payments.methods import (
    PaymentGateway,
    PaymentMethod,
    PaymentRequest,
    PaymentResolver,
)
from renta_engine.payments.models import AccountModel, TransactionModel, TransactionStatus
from renta_engine.payments.provider import ProviderPayment
from renta_engine.realtime import events
from renta_engine.realtime.registry import ConnectionRegistry
from renta_engine.sessions.models import SessionStatus, StopReason
from renta_engine.sessions.service import SessionManager

logger = logging.getLogger(__name__)

OUTCOME_APPROVED = "approved"
OUTCOME_REJECTED = "rejected"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_PENDING = "pending"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_UNKNOWN = "unknown"
OUTCOME_UNRESOLVED = "unresolved"
OUTCOME_FAILED = "failed"


async def get_balance(session: AsyncSession, user_id: str) -> float:
    account = await session.get(AccountModel, user_id)
    return account.balance if account else 0.0


def _upsert_credit(dialect_name: str, user_id: str, amount: float):
    """Single-statement insert-or-add for the account row."""
    values = {"user_id": user_id, "balance": amount, "updated_at": utcnow()}
    if dialect_name in ("mysql", "mariadb"):
        from sqlalchemy.dialects.mysql import insert

        stmt = insert(AccountModel).values(**values)
        return stmt.on_duplicate_key_update(
            balance=AccountModel.balance + amount, updated_at=values["updated_at"]
        )
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Account credit is not supported on {dialect_name}")
    stmt = insert(AccountModel).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=[AccountModel.user_id],
        set_={"balance": AccountModel.balance + amount, "updated_at": values["updated_at"]},
    )


async def credit_account(session: AsyncSession, user_id: str, amount: float) -> float:
    """Add ``amount`` to the user's balance inside the caller's unit of work.

    The first credit creates the account row. Concurrent first credits
    for the same user both land on that one row.
    """
    await session.execute(_upsert_credit(session.get_bind().dialect.name, user_id, amount))
    result = await session.execute(
        select(AccountModel.balance).where(AccountModel.user_id == user_id)
    )
    return result.scalar_one()


class PaymentConfirmationHandler:
    """Applies provider payment notifications to the session store."""

    def __init__(
        self,
        db: DatabaseManager,
        sessions: SessionManager,
        resolvers: dict[PaymentMethod, PaymentResolver],
        gateway: PaymentGateway,
        notifier: ConnectionRegistry,
    ):
        self.db = db
        self.sessions = sessions
        self.resolvers = resolvers
        self.gateway = gateway
        self.notifier = notifier

    async def handle_notification(self, payment_id: str) -> str:
        """Process one notification. Never raises; returns the outcome."""
        log_extra = {"payment_id": payment_id}
        try:
            outcome = await self._process(payment_id)
        except UnknownPaymentError as e:
            logger.warning("Acknowledging unknown payment: %s", e.message, extra=log_extra)
            return OUTCOME_UNKNOWN
        except TransientProviderError as e:
            logger.error("Payment status unresolved: %s", e.message, extra=log_extra)
            return OUTCOME_UNRESOLVED
        except RentaError as e:
            logger.error("Payment notification failed: %s", e.message, extra=log_extra)
            return OUTCOME_FAILED
        except Exception:
            logger.exception("Payment notification crashed", extra=log_extra)
            return OUTCOME_FAILED

        logger.info("Payment notification processed", extra={**log_extra, "outcome": outcome})
        return outcome

    async def _process(self, payment_id: str) -> str:
        payment: Optional[ProviderPayment] = None
        transaction = await self._find_transaction(payment_id)
        if transaction is None:
            transaction, payment = await self._recover_transaction(payment_id)

        if transaction.is_terminal:
            return OUTCOME_DUPLICATE

        if payment is None:
            resolver = self.resolvers[PaymentMethod(transaction.method)]
            payment = await resolver.fetch_status(payment_id)
            if payment is None:
                raise UnknownPaymentError(f"Provider no longer knows payment {payment_id}")

        if payment.status == TransactionStatus.PENDING.value:
            return OUTCOME_PENDING
        if payment.status == TransactionStatus.APPROVED.value:
            return await self._approve(transaction, payment_id)
        return await self._fail(transaction, payment_id, payment.status)

    async def _find_transaction(self, payment_id: str) -> Optional[TransactionModel]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TransactionModel).where(TransactionModel.external_payment_id == payment_id)
            )
            return result.scalar_one_or_none()

    async def _recover_transaction(self, payment_id: str) -> tuple[TransactionModel, ProviderPayment]:
        """Match a payment we never stored an id for through its external reference."""
        payment = await self.gateway.get_payment(payment_id)
        if payment is None or not payment.external_reference:
            raise UnknownPaymentError(f"No transaction for payment {payment_id}")

        reference = payment.external_reference
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TransactionModel).where(
                    or_(
                        TransactionModel.external_reference == reference,
                        TransactionModel.id == reference,
                    ),
                    TransactionModel.external_payment_id.is_(None),
                )
            )
            transaction = result.scalars().first()
            if transaction is None:
                raise UnknownPaymentError(f"No transaction references {reference}")
            transaction.external_payment_id = payment_id
            await session.flush()

        logger.warning(
            "Attached payment to transaction by reference",
            extra={"payment_id": payment_id, "transaction_id": transaction.id},
        )
        return transaction, payment

    async def _settle(self, session: AsyncSession, transaction_id: str, status: str) -> bool:
        result = await session.execute(
            update(TransactionModel)
            .where(
                TransactionModel.id == transaction_id,
                TransactionModel.status == TransactionStatus.PENDING.value,
            )
            .values(status=status)
        )
        return result.rowcount == 1

    async def _approve(self, transaction: TransactionModel, payment_id: str) -> str:
        async with self.db.get_session() as session:
            if not await self._settle(session, transaction.id, TransactionStatus.APPROVED.value):
                return OUTCOME_DUPLICATE
            new_balance = await credit_account(session, transaction.user_id, transaction.amount)

        session_id = transaction.external_reference
        if session_id:
            try:
                await self.sessions.activate_session(session_id)
            except (SessionConflictError, SessionNotFoundError) as e:
                # The credit stays on the balance.
                logger.warning(
                    "Paid session not activated: %s", e.message,
                    extra={"session_id": session_id, "payment_id": payment_id},
                )

        await self.notifier.notify(
            events.payment_confirmed(
                transaction.user_id,
                transaction_id=transaction.id,
                payment_id=payment_id,
                amount=transaction.amount,
                new_balance=new_balance,
                kind="usage_payment" if session_id else "credit_added",
            )
        )
        return OUTCOME_APPROVED

    async def _fail(self, transaction: TransactionModel, payment_id: str, status: str) -> str:
        async with self.db.get_session() as session:
            if not await self._settle(session, transaction.id, status):
                return OUTCOME_DUPLICATE

        session_id = transaction.external_reference
        if session_id:
            rental = await self.sessions.get_session(session_id)
            if rental.status == SessionStatus.PENDING.value:
                await self.sessions.stop_session(session_id, StopReason.CANCELLED)

        await self.notifier.notify(events.payment_failed(transaction.user_id, payment_id, status))
        return OUTCOME_REJECTED if status == TransactionStatus.REJECTED.value else OUTCOME_CANCELLED


class AccountService:
    """Balance reads and standalone balance top-ups."""

    def __init__(
        self,
        db: DatabaseManager,
        resolvers: dict[PaymentMethod, PaymentResolver],
        handler: PaymentConfirmationHandler,
    ):
        self.db = db
        self.resolvers = resolvers
        self.handler = handler

    async def get_balance(self, user_id: str) -> float:
        async with self.db.get_session() as session:
            return await get_balance(session, user_id)

    async def create_topup(
        self,
        user_id: str,
        amount: float,
        method: PaymentMethod | str = PaymentMethod.PIX,
        payer_email: str = "",
        card_token: Optional[str] = None,
    ) -> tuple[TransactionModel, ProviderPayment]:
        method = PaymentMethod(method)
        if amount <= 0:
            raise ValueError("Top-up amount must be positive")

        async with self.db.get_session() as session:
            transaction = TransactionModel(
                user_id=user_id,
                amount=amount,
                method=method.value,
                status=TransactionStatus.PENDING.value,
            )
            session.add(transaction)
            await session.flush()

        request = PaymentRequest(
            amount=amount,
            description="Account credit",
            external_reference=transaction.id,
            payer_email=payer_email,
            card_token=card_token,
        )
        try:
            payment = await self.resolvers[method].open_payment(request)
        except RentaError:
            async with self.db.get_session() as session:
                await session.execute(
                    update(TransactionModel)
                    .where(TransactionModel.id == transaction.id)
                    .values(status=TransactionStatus.CANCELLED.value)
                )
            raise

        async with self.db.get_session() as session:
            await session.execute(
                update(TransactionModel)
                .where(TransactionModel.id == transaction.id)
                .values(external_payment_id=payment.id)
            )
        transaction.external_payment_id = payment.id

        if payment.status != TransactionStatus.PENDING.value:
            await self.handler.handle_notification(payment.id)
        return transaction, payment
