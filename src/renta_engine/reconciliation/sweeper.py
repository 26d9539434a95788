"""Reconciliation sweeper.

Runs on a fixed interval and only ever moves state toward rest: sessions
that outlived their duration are expired, machines marked in_use with no
active session are freed, and commands the device never received are
sent again from the current session state. Each row is repaired on its
own, under the same machine lock the session manager takes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update

from renta_engine.common.config import RentaSettings
from renta_engine.common.database import DatabaseManager
from renta_engine.common.exceptions import ReconciliationDrift, RentaError
from renta_engine.common.locks import MachineLocks
from renta_engine.common.models import as_utc, utcnow
from renta_engine.devices.channel import DeviceCommand
from renta_engine.devices.dispatcher import DeviceCommandDispatcher
from renta_engine.machines.models import MachineModel, MachineStatus
from renta_engine.machines.service import lock_machine
from renta_engine.payments.models import TransactionModel, TransactionStatus
from renta_engine.sessions.models import RentalSessionModel, SessionStatus, StopReason
from renta_engine.sessions.service import SessionManager, count_active_sessions

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired_sessions: list[str] = field(default_factory=list)
    repaired_machines: list[str] = field(default_factory=list)
    cancelled_pending: list[str] = field(default_factory=list)
    resent_commands: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.expired_sessions or self.repaired_machines
            or self.cancelled_pending or self.resent_commands
        )


class ReconciliationSweeper:
    def __init__(
        self,
        settings: RentaSettings,
        db: DatabaseManager,
        locks: MachineLocks,
        sessions: SessionManager,
        dispatcher: DeviceCommandDispatcher,
    ):
        self.settings = settings
        self.db = db
        self.locks = locks
        self.sessions = sessions
        self.dispatcher = dispatcher
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> SweepReport:
        report = SweepReport()
        await self._expire_overdue_sessions(report)
        await self._free_drifted_machines(report)
        if self.settings.pending_session_grace_minutes is not None:
            await self._cancel_stale_pending(report, self.settings.pending_session_grace_minutes)
        await self._resend_undelivered(report)

        if report.changed or report.errors:
            logger.info(
                "Sweep finished: %d expired, %d machines repaired, %d pending cancelled, "
                "%d commands re-sent, %d errors",
                len(report.expired_sessions), len(report.repaired_machines),
                len(report.cancelled_pending), len(report.resent_commands), len(report.errors),
            )
        return report

    async def _expire_overdue_sessions(self, report: SweepReport) -> None:
        now = utcnow()
        async with self.db.get_session() as session:
            result = await session.execute(
                select(RentalSessionModel).where(
                    RentalSessionModel.status == SessionStatus.ACTIVE.value
                )
            )
            active = list(result.scalars().all())

        for rental in active:
            started = as_utc(rental.start_time)
            if started is None or started + timedelta(minutes=rental.duration) > now:
                continue
            try:
                stopped = await self.sessions.stop_session(rental.id, StopReason.EXPIRED)
            except RentaError as e:
                report.errors.append(f"{rental.id}: {e.message}")
                logger.error("Expiring session failed: %s", e.message, extra={"session_id": rental.id})
                continue
            except Exception as e:
                report.errors.append(f"{rental.id}: {e}")
                logger.exception("Expiring session failed", extra={"session_id": rental.id})
                continue
            if stopped.status == SessionStatus.EXPIRED.value:
                report.expired_sessions.append(rental.id)

    async def _free_drifted_machines(self, report: SweepReport) -> None:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MachineModel.id).where(MachineModel.status == MachineStatus.IN_USE.value)
            )
            candidates = list(result.scalars().all())

        for machine_id in candidates:
            try:
                repaired = await self._repair_machine(machine_id)
            except Exception as e:
                report.errors.append(f"{machine_id}: {e}")
                logger.exception("Machine repair failed", extra={"machine_id": machine_id})
                continue
            if repaired:
                report.repaired_machines.append(machine_id)
                await self.dispatcher.emergency_stop(machine_id)

    async def _repair_machine(self, machine_id: str) -> bool:
        async with self.locks.hold(machine_id):
            async with self.db.get_session() as session:
                machine = await lock_machine(session, machine_id)
                if machine is None or machine.status != MachineStatus.IN_USE.value:
                    return False
                if await count_active_sessions(session, machine_id):
                    return False
                machine.status = MachineStatus.ONLINE.value
                await session.flush()

        drift = ReconciliationDrift(f"Machine {machine_id} was in_use with no active session")
        logger.warning(drift.message, extra={"machine_id": machine_id, "outcome": drift.code})
        return True

    async def _cancel_stale_pending(self, report: SweepReport, grace_minutes: int) -> None:
        cutoff = utcnow() - timedelta(minutes=grace_minutes)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(RentalSessionModel).where(
                    RentalSessionModel.status == SessionStatus.PENDING.value
                )
            )
            pending = [r for r in result.scalars().all() if as_utc(r.created_at) <= cutoff]

        for rental in pending:
            try:
                stopped = await self.sessions.stop_session(rental.id, StopReason.CANCELLED)
                if stopped.status != SessionStatus.CANCELLED.value:
                    continue
                async with self.db.get_session() as session:
                    await session.execute(
                        update(TransactionModel)
                        .where(
                            TransactionModel.external_reference == rental.id,
                            TransactionModel.status == TransactionStatus.PENDING.value,
                        )
                        .values(status=TransactionStatus.CANCELLED.value)
                    )
            except RentaError as e:
                report.errors.append(f"{rental.id}: {e.message}")
                logger.error("Cancelling stale session failed: %s", e.message, extra={"session_id": rental.id})
                continue
            except Exception as e:
                report.errors.append(f"{rental.id}: {e}")
                logger.exception("Cancelling stale session failed", extra={"session_id": rental.id})
                continue
            report.cancelled_pending.append(rental.id)
            logger.info("Stale pending session cancelled", extra={"session_id": rental.id})

    async def _resend_undelivered(self, report: SweepReport) -> None:
        for machine_id, failed in self.dispatcher.undelivered().items():
            try:
                command = await self._resend(machine_id)
            except Exception as e:
                report.errors.append(f"{machine_id}: {e}")
                logger.exception("Re-sending device command failed", extra={"machine_id": machine_id})
                continue
            report.resent_commands.append(machine_id)
            logger.info(
                "Re-sent %s after undelivered %s", command.action.value, failed.action.value,
                extra={"machine_id": machine_id, "action": command.action.value},
            )

    async def _resend(self, machine_id: str) -> DeviceCommand:
        # The session store decides what the device should be doing now.
        async with self.locks.hold(machine_id):
            rental = await self.sessions.get_active_session(machine_id)
            if rental is not None:
                started = as_utc(rental.start_time) or utcnow()
                remaining = rental.duration - (utcnow() - started).total_seconds() / 60
                if remaining > 0:
                    return self.dispatcher.request_activation(machine_id, remaining)
            return self.dispatcher.request_deactivation(machine_id)

    # ── Scheduling ──

    async def run(self) -> None:
        """Sweep every ``sweeper_interval`` seconds until cancelled."""
        logger.info("Reconciliation sweeper started (interval %ss)", self.settings.sweeper_interval)
        while True:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Sweep pass crashed")
            await asyncio.sleep(self.settings.sweeper_interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
