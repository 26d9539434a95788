"""Dependency injection singletons for Renta-Engine."""

from renta_engine.common.config import get_settings
from renta_engine.common.database import DatabaseManager
from renta_engine.common.locks import MachineLocks
from renta_engine.devices.channel import RedisCommandChannel
from renta_engine.devices.dispatcher import CommandChannel, DeviceCommandDispatcher
from renta_engine.devices.telemetry import TelemetryMonitor
from renta_engine.machines.service import MachineService
from renta_engine.payments.methods import PaymentGateway, PaymentMethod, PaymentResolver, build_resolvers
from renta_engine.payments.provider import MercadoPagoClient
from renta_engine.payments.service import AccountService, PaymentConfirmationHandler
from renta_engine.realtime.registry import ConnectionRegistry
from renta_engine.reconciliation.sweeper import ReconciliationSweeper
from renta_engine.sessions.service import SessionManager

_db: DatabaseManager | None = None
_locks: MachineLocks | None = None
_channel: CommandChannel | None = None
_dispatcher: DeviceCommandDispatcher | None = None
_notifier: ConnectionRegistry | None = None
_provider: PaymentGateway | None = None
_resolvers: dict[PaymentMethod, PaymentResolver] | None = None
_machines: MachineService | None = None
_sessions: SessionManager | None = None
_payments: PaymentConfirmationHandler | None = None
_accounts: AccountService | None = None
_sweeper: ReconciliationSweeper | None = None
_telemetry: TelemetryMonitor | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_locks() -> MachineLocks:
    global _locks
    if _locks is None:
        _locks = MachineLocks()
    return _locks


def get_device_channel() -> CommandChannel:
    global _channel
    if _channel is None:
        settings = get_settings()
        _channel = RedisCommandChannel.from_url(settings.redis_url, settings.device_topic_prefix)
    return _channel


def get_dispatcher() -> DeviceCommandDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = DeviceCommandDispatcher(
            get_device_channel(),
            safety_ceiling_minutes=get_settings().safety_ceiling_minutes,
        )
    return _dispatcher


def get_notifier() -> ConnectionRegistry:
    global _notifier
    if _notifier is None:
        _notifier = ConnectionRegistry(send_timeout=get_settings().realtime_send_timeout)
    return _notifier


def get_payment_provider() -> PaymentGateway:
    global _provider
    if _provider is None:
        settings = get_settings()
        _provider = MercadoPagoClient(
            base_url=settings.payment_provider_url,
            access_token=settings.payment_provider_token,
            timeout=settings.payment_provider_timeout,
            max_attempts=settings.payment_provider_max_attempts,
            backoff=settings.payment_provider_backoff,
            notification_url=settings.notification_url,
        )
    return _provider


def get_resolvers() -> dict[PaymentMethod, PaymentResolver]:
    global _resolvers
    if _resolvers is None:
        _resolvers = build_resolvers(get_payment_provider())
    return _resolvers


def get_machine_service() -> MachineService:
    global _machines
    if _machines is None:
        _machines = MachineService(get_db(), get_locks())
    return _machines


def get_session_manager() -> SessionManager:
    global _sessions
    if _sessions is None:
        _sessions = SessionManager(
            get_settings(), get_db(), get_locks(),
            dispatcher=get_dispatcher(),
            notifier=get_notifier(),
            resolvers=get_resolvers(),
        )
    return _sessions


def get_payment_handler() -> PaymentConfirmationHandler:
    global _payments
    if _payments is None:
        _payments = PaymentConfirmationHandler(
            get_db(), get_session_manager(),
            resolvers=get_resolvers(),
            gateway=get_payment_provider(),
            notifier=get_notifier(),
        )
    return _payments


def get_account_service() -> AccountService:
    global _accounts
    if _accounts is None:
        _accounts = AccountService(get_db(), get_resolvers(), get_payment_handler())
    return _accounts


def get_sweeper() -> ReconciliationSweeper:
    global _sweeper
    if _sweeper is None:
        _sweeper = ReconciliationSweeper(
            get_settings(), get_db(), get_locks(),
            sessions=get_session_manager(),
            dispatcher=get_dispatcher(),
        )
    return _sweeper


def get_telemetry_monitor() -> TelemetryMonitor:
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryMonitor(get_session_manager(), get_dispatcher())
    return _telemetry


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _locks, _channel, _dispatcher, _notifier, _provider, _resolvers
    global _machines, _sessions, _payments, _accounts, _sweeper, _telemetry
    _db = None
    _locks = None
    _channel = None
    _dispatcher = None
    _notifier = None
    _provider = None
    _resolvers = None
    _machines = None
    _sessions = None
    _payments = None
    _accounts = None
    _sweeper = None
    _telemetry = None
