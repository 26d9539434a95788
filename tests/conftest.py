"""Shared test fixtures for Renta-Engine."""

import logging
from dataclasses import dataclass
from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient

from renta_engine.common.config import RentaSettings
from renta_engine.common.database import DatabaseManager
from renta_engine.common.exceptions import DeviceUnreachableError
from renta_engine.common.locks import MachineLocks
from renta_engine.devices.channel import DeviceCommand
from renta_engine.devices.dispatcher import DeviceCommandDispatcher
from renta_engine.machines.service import MachineService
from renta_engine.payments.methods import PaymentMethod, PaymentResolver, build_resolvers
from renta_engine.payments.provider import ProviderPayment, map_provider_status
from renta_engine.payments.service import AccountService, PaymentConfirmationHandler
from renta_engine.realtime.registry import ConnectionRegistry
from renta_engine.reconciliation.sweeper import ReconciliationSweeper
from renta_engine.sessions.service import SessionManager


API_KEY = "test-operator-api-key"


def make_settings(**overrides) -> RentaSettings:
    defaults = {
        "db_url": "sqlite+aiosqlite://",
        "api_key": API_KEY,
        "sweeper_enabled": False,
        "device_telemetry_enabled": False,
    }
    defaults.update(overrides)
    return RentaSettings(**defaults)


class FakeGateway:
    """In-memory payment provider. Payments open as pending; tests move them."""

    def __init__(self, initial_status: str = "pending"):
        self.initial_status = initial_status
        self.payments: dict[str, ProviderPayment] = {}
        self.created: list[dict] = []
        self.lookups = 0
        self.fail_create: Optional[Exception] = None
        self.fail_lookup: Optional[Exception] = None
        self._seq = 0

    async def create_payment(
        self,
        amount,
        description,
        payment_method_id,
        external_reference,
        payer_email,
        card_token=None,
        installments=1,
    ) -> ProviderPayment:
        if self.fail_create is not None:
            raise self.fail_create
        self._seq += 1
        payment = ProviderPayment(
            id=f"mp-{self._seq}",
            status=map_provider_status(self.initial_status),
            raw_status=self.initial_status,
            amount=amount,
            external_reference=external_reference,
            details={"qr_code": f"00020126-{self._seq}"},
        )
        self.payments[payment.id] = payment
        self.created.append({
            "amount": amount,
            "payment_method_id": payment_method_id,
            "external_reference": external_reference,
            "card_token": card_token,
        })
        return payment

    async def get_payment(self, payment_id: str) -> Optional[ProviderPayment]:
        self.lookups += 1
        if self.fail_lookup is not None:
            raise self.fail_lookup
        return self.payments.get(payment_id)

    def set_status(self, payment_id: str, raw_status: str) -> None:
        current = self.payments[payment_id]
        self.payments[payment_id] = ProviderPayment(
            id=current.id,
            status=map_provider_status(raw_status),
            raw_status=raw_status,
            amount=current.amount,
            external_reference=current.external_reference,
        )

    def add_orphan(self, payment_id: str, raw_status: str, external_reference: Optional[str]) -> None:
        """A payment the provider knows but whose id was never stored locally."""
        self.payments[payment_id] = ProviderPayment(
            id=payment_id,
            status=map_provider_status(raw_status),
            raw_status=raw_status,
            external_reference=external_reference,
        )


class RecordingChannel:
    """Device channel double that records every published command."""

    def __init__(self):
        self.commands: list[DeviceCommand] = []
        self.fail = False

    async def publish(self, command: DeviceCommand) -> int:
        if self.fail:
            raise DeviceUnreachableError("broker down")
        self.commands.append(command)
        return 1

    def actions(self, machine_id: Optional[str] = None) -> list[str]:
        return [
            c.action.value for c in self.commands
            if machine_id is None or c.machine_id == machine_id
        ]


class RecordingSocket:
    """Client channel double for the realtime registry."""

    def __init__(self, fail: bool = False):
        self.messages: list[dict] = []
        self.fail = fail

    async def send_json(self, data) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(data)

    def events(self, event_type: Optional[str] = None) -> list[dict]:
        return [
            m for m in self.messages
            if event_type is None or m["event"] == event_type
        ]


@dataclass
class Engine:
    settings: RentaSettings
    db: DatabaseManager
    locks: MachineLocks
    channel: RecordingChannel
    dispatcher: DeviceCommandDispatcher
    notifier: ConnectionRegistry
    gateway: FakeGateway
    resolvers: dict[PaymentMethod, PaymentResolver]
    machines: MachineService
    sessions: SessionManager
    payments: PaymentConfirmationHandler
    accounts: AccountService
    sweeper: ReconciliationSweeper


def build_engine(settings: RentaSettings, db: DatabaseManager) -> Engine:
    locks = MachineLocks()
    channel = RecordingChannel()
    dispatcher = DeviceCommandDispatcher(channel, settings.safety_ceiling_minutes)
    notifier = ConnectionRegistry()
    gateway = FakeGateway()
    resolvers = build_resolvers(gateway)
    sessions = SessionManager(settings, db, locks, dispatcher, notifier, resolvers)
    payments = PaymentConfirmationHandler(db, sessions, resolvers, gateway, notifier)
    return Engine(
        settings=settings,
        db=db,
        locks=locks,
        channel=channel,
        dispatcher=dispatcher,
        notifier=notifier,
        gateway=gateway,
        resolvers=resolvers,
        machines=MachineService(db, locks),
        sessions=sessions,
        payments=payments,
        accounts=AccountService(db, resolvers, payments),
        sweeper=ReconciliationSweeper(settings, db, locks, sessions, dispatcher),
    )


@pytest.fixture
def settings(tmp_path):
    return make_settings(db_url=f"sqlite+aiosqlite:///{tmp_path}/renta.db")


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
async def engine(settings, db):
    eng = build_engine(settings, db)
    yield eng
    await eng.dispatcher.close()


@pytest.fixture
async def machine(engine):
    return await engine.machines.register_machine("M1", "Posto Centro")


@pytest.fixture
def socket_for(engine):
    """Connect a recording socket for a user and return it."""

    def _connect(user_id: str) -> RecordingSocket:
        sock = RecordingSocket()
        engine.notifier.connect(user_id, sock)
        return sock

    return _connect


# ── HTTP fixtures ──


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_channel():
    return RecordingChannel()


@pytest.fixture
def app(monkeypatch, fake_gateway, fake_channel):
    """Create a test app with in-memory DB and fake collaborators."""
    monkeypatch.setenv("RENTA_DB_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("RENTA_API_KEY", API_KEY)
    monkeypatch.setenv("RENTA_SWEEPER_ENABLED", "false")
    monkeypatch.setenv("RENTA_DEVICE_TELEMETRY_ENABLED", "false")

    # Clear caches and singletons so new env vars take effect
    from renta_engine.common.config import get_settings
    get_settings.cache_clear()

    from renta_engine import deps
    deps.reset_singletons()
    deps._provider = fake_gateway
    deps._channel = fake_channel

    from renta_engine.app import create_app
    return create_app()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from renta_engine.deps import get_db, get_dispatcher
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await get_dispatcher().close()
    await db.close()


@pytest.fixture
def admin_headers():
    return {"X-Renta-Api-Key": API_KEY}


@pytest.fixture
def renta_log(caplog):
    """caplog wired to the package logger, which does not propagate once configured."""
    logger = logging.getLogger("renta_engine")
    logger.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG, logger="renta_engine")
    yield caplog
    logger.removeHandler(caplog.handler)
