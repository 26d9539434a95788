"""Advisory telemetry handling.

Telemetry never changes session state. A controller reporting that it is
running while its machine has no active session gets a fresh deactivate.
"""

import logging

from renta_engine.devices.channel import TelemetryReading
from renta_engine.devices.dispatcher import DeviceCommandDispatcher
from renta_engine.sessions.service import SessionManager

logger = logging.getLogger(__name__)


class TelemetryMonitor:
    def __init__(self, sessions: SessionManager, dispatcher: DeviceCommandDispatcher):
        self.sessions = sessions
        self.dispatcher = dispatcher

    async def handle(self, reading: TelemetryReading) -> bool:
        """Return True when a corrective command was issued."""
        logger.debug("Telemetry: %s", reading.state, extra={"machine_id": reading.machine_id})
        if not reading.is_running:
            return False
        if await self.sessions.get_active_session(reading.machine_id) is not None:
            return False
        logger.warning(
            "Device reports running without an active session",
            extra={"machine_id": reading.machine_id},
        )
        self.dispatcher.request_deactivation(reading.machine_id)
        return True
