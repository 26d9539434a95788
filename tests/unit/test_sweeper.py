"""Tests for the reconciliation sweeper."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from renta_engine.common.config import RentaSettings
from renta_engine.common.models import utcnow
from renta_engine.machines.models import MachineModel, MachineStatus
from renta_engine.payments.models import TransactionModel, TransactionStatus
from renta_engine.sessions.models import RentalSessionModel, SessionStatus


async def _backdate(db, model, row_id, **values):
    async with db.get_session() as session:
        await session.execute(update(model).where(model.id == row_id).values(**values))


async def _active_session(engine, machine, minutes=1):
    started = await engine.sessions.start_session(machine.id, "user-1", minutes)
    return await engine.sessions.activate_session(started.session.id)


class TestExpiry:
    async def test_overdue_session_is_expired(self, engine, machine, socket_for):
        sock = socket_for("user-1")
        rental = await _active_session(engine, machine, minutes=1)
        await _backdate(
            engine.db, RentalSessionModel, rental.id, start_time=utcnow() - timedelta(minutes=2)
        )

        report = await engine.sweeper.sweep_once()
        await engine.dispatcher.drain()

        assert report.expired_sessions == [rental.id]
        stored = await engine.sessions.get_session(rental.id)
        assert stored.status == SessionStatus.EXPIRED.value
        assert stored.end_time is not None
        machine_row = await engine.machines.get_machine(machine.id)
        assert machine_row.status == MachineStatus.ONLINE.value
        assert engine.channel.actions() == ["activate", "deactivate"]
        assert sock.events("session-ended")[0]["data"]["status"] == "expired"

    async def test_running_session_is_left_alone(self, engine, machine):
        rental = await _active_session(engine, machine, minutes=10)
        report = await engine.sweeper.sweep_once()

        assert not report.changed
        stored = await engine.sessions.get_session(rental.id)
        assert stored.status == SessionStatus.ACTIVE.value

    async def test_second_pass_is_a_noop(self, engine, machine):
        rental = await _active_session(engine, machine)
        await _backdate(
            engine.db, RentalSessionModel, rental.id, start_time=utcnow() - timedelta(minutes=5)
        )
        await engine.sweeper.sweep_once()
        report = await engine.sweeper.sweep_once()
        assert not report.changed
        assert report.errors == []


class TestDriftRepair:
    async def test_in_use_without_session_is_freed(self, engine, machine):
        await _backdate(engine.db, MachineModel, machine.id, status=MachineStatus.IN_USE.value)

        report = await engine.sweeper.sweep_once()
        await engine.dispatcher.drain()

        assert report.repaired_machines == [machine.id]
        stored = await engine.machines.get_machine(machine.id)
        assert stored.status == MachineStatus.ONLINE.value
        assert engine.channel.actions(machine.id) == ["emergency_stop"]

    async def test_in_use_with_active_session_is_kept(self, engine, machine):
        await _active_session(engine, machine, minutes=10)
        report = await engine.sweeper.sweep_once()

        assert report.repaired_machines == []
        stored = await engine.machines.get_machine(machine.id)
        assert stored.status == MachineStatus.IN_USE.value


class TestStalePending:
    async def test_pending_left_alone_by_default(self, engine, machine):
        started = await engine.sessions.start_session(machine.id, "user-1", 10)
        await _backdate(
            engine.db, RentalSessionModel, started.session.id,
            created_at=utcnow() - timedelta(hours=3),
        )

        report = await engine.sweeper.sweep_once()

        assert report.cancelled_pending == []
        stored = await engine.sessions.get_session(started.session.id)
        assert stored.status == SessionStatus.PENDING.value


class TestStalePendingEnabled:
    @pytest.fixture
    def settings(self):
        return RentaSettings(
            db_url="sqlite+aiosqlite://",
            sweeper_enabled=False,
            device_telemetry_enabled=False,
            pending_session_grace_minutes=30,
        )

    async def test_stale_pending_is_cancelled(self, engine, machine):
        started = await engine.sessions.start_session(machine.id, "user-1", 10)
        await _backdate(
            engine.db, RentalSessionModel, started.session.id,
            created_at=utcnow() - timedelta(minutes=45),
        )

        report = await engine.sweeper.sweep_once()

        assert report.cancelled_pending == [started.session.id]
        stored = await engine.sessions.get_session(started.session.id)
        assert stored.status == SessionStatus.CANCELLED.value
        async with engine.db.get_session() as session:
            txn = await session.get(TransactionModel, started.transaction.id)
        assert txn.status == TransactionStatus.CANCELLED.value

    async def test_fresh_pending_is_kept(self, engine, machine):
        started = await engine.sessions.start_session(machine.id, "user-1", 10)
        report = await engine.sweeper.sweep_once()
        assert report.cancelled_pending == []
        stored = await engine.sessions.get_session(started.session.id)
        assert stored.status == SessionStatus.PENDING.value

    async def test_unexpected_error_is_recorded(self, engine, machine, monkeypatch, renta_log):
        started = await engine.sessions.start_session(machine.id, "user-1", 10)
        await _backdate(
            engine.db, RentalSessionModel, started.session.id,
            created_at=utcnow() - timedelta(minutes=45),
        )

        async def broken(session_id, reason=None):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(engine.sessions, "stop_session", broken)
        report = await engine.sweeper.sweep_once()

        assert report.cancelled_pending == []
        assert report.errors == [f"{started.session.id}: database is locked"]
        assert "Cancelling stale session failed" in renta_log.text


class TestRowFailures:
    async def test_unexpected_error_does_not_stop_the_pass(
        self, engine, machine, monkeypatch, renta_log
    ):
        rental = await _active_session(engine, machine, minutes=1)
        await _backdate(
            engine.db, RentalSessionModel, rental.id, start_time=utcnow() - timedelta(minutes=2)
        )
        other = await engine.machines.register_machine("M2")
        await _backdate(engine.db, MachineModel, other.id, status=MachineStatus.IN_USE.value)

        async def broken(session_id, reason=None):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(engine.sessions, "stop_session", broken)
        report = await engine.sweeper.sweep_once()
        await engine.dispatcher.drain()

        assert report.expired_sessions == []
        assert report.errors == [f"{rental.id}: connection reset"]
        assert report.repaired_machines == [other.id]
        assert "Expiring session failed" in renta_log.text


class TestUndeliveredCommands:
    async def test_failed_activation_is_sent_again(self, engine, machine):
        engine.channel.fail = True
        rental = await _active_session(engine, machine, minutes=10)
        await engine.dispatcher.drain()
        assert machine.id in engine.dispatcher.undelivered()

        engine.channel.fail = False
        report = await engine.sweeper.sweep_once()
        await engine.dispatcher.drain()

        assert report.resent_commands == [machine.id]
        [command] = engine.channel.commands
        assert command.action.value == "activate"
        assert 0 < command.duration_ms <= 600_000
        assert engine.dispatcher.undelivered() == {}
        stored = await engine.sessions.get_session(rental.id)
        assert stored.status == SessionStatus.ACTIVE.value

    async def test_failed_deactivation_is_sent_again(self, engine, machine):
        rental = await _active_session(engine, machine, minutes=10)
        await engine.dispatcher.drain()
        engine.channel.fail = True
        await engine.sessions.stop_session(rental.id)
        await engine.dispatcher.drain()

        engine.channel.fail = False
        report = await engine.sweeper.sweep_once()
        await engine.dispatcher.drain()

        assert report.resent_commands == [machine.id]
        assert engine.channel.actions(machine.id) == ["activate", "deactivate"]
        assert engine.dispatcher.undelivered() == {}

    async def test_still_unreachable_is_retried_next_pass(self, engine, machine):
        engine.channel.fail = True
        await _active_session(engine, machine, minutes=10)
        await engine.dispatcher.drain()

        await engine.sweeper.sweep_once()
        await engine.dispatcher.drain()
        assert machine.id in engine.dispatcher.undelivered()

        engine.channel.fail = False
        report = await engine.sweeper.sweep_once()
        await engine.dispatcher.drain()
        assert report.resent_commands == [machine.id]
        assert engine.channel.actions(machine.id) == ["activate"]

    async def test_delivered_commands_are_not_repeated(self, engine, machine):
        await _active_session(engine, machine, minutes=10)
        await engine.dispatcher.drain()

        report = await engine.sweeper.sweep_once()

        assert report.resent_commands == []
        assert engine.channel.actions(machine.id) == ["activate"]


class TestScheduling:
    async def test_start_and_stop(self, engine):
        engine.sweeper.start()
        assert engine.sweeper._task is not None
        await engine.sweeper.stop()
        assert engine.sweeper._task is None
