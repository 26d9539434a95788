"""Device command dispatcher: activation, deactivation and emergency stop.

Commands are published without waiting for the controller: the session
store is authoritative and the sweeper re-issues commands when state and
device disagree. Activation is always clamped to the safety ceiling and
backed by a local timer that turns the machine off when it elapses.
"""

import asyncio
import logging
from typing import Optional, Protocol

from renta_engine.common.exceptions import DeviceUnreachableError
from renta_engine.devices.channel import CommandAction, DeviceCommand

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_CEILING_MINUTES = 30


class CommandChannel(Protocol):
    async def publish(self, command: DeviceCommand) -> int: ...


class DeviceCommandDispatcher:
    """Translates session transitions into device commands."""

    def __init__(
        self,
        channel: CommandChannel,
        safety_ceiling_minutes: float = DEFAULT_SAFETY_CEILING_MINUTES,
    ):
        self.channel = channel
        self.safety_ceiling_minutes = safety_ceiling_minutes
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tails: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        # Last command per machine that the channel refused.
        self._undelivered: dict[str, DeviceCommand] = {}

    def clamp_duration_ms(self, duration_minutes: float) -> int:
        minutes = max(0.0, min(float(duration_minutes), float(self.safety_ceiling_minutes)))
        return int(minutes * 60_000)

    # ── Commands ──

    def request_activation(self, machine_id: str, duration_minutes: float) -> DeviceCommand:
        duration_ms = self.clamp_duration_ms(duration_minutes)
        if duration_ms < duration_minutes * 60_000:
            logger.warning(
                "Activation of %s min clamped to safety ceiling", duration_minutes,
                extra={"machine_id": machine_id},
            )
        command = DeviceCommand(machine_id, CommandAction.ACTIVATE, duration_ms)
        self._enqueue(command)
        self._arm_timer(machine_id, duration_ms / 1000)
        return command

    def request_deactivation(self, machine_id: str) -> DeviceCommand:
        self._disarm_timer(machine_id)
        command = DeviceCommand(machine_id, CommandAction.DEACTIVATE)
        self._enqueue(command)
        return command

    async def emergency_stop(self, machine_id: str) -> bool:
        """Publish immediately, ahead of anything queued for the machine."""
        self._disarm_timer(machine_id)
        command = DeviceCommand(machine_id, CommandAction.EMERGENCY_STOP)
        logger.warning("Emergency stop", extra={"machine_id": machine_id, "action": command.action.value})
        return await self._publish(command)

    def has_safety_timer(self, machine_id: str) -> bool:
        return machine_id in self._timers

    def undelivered(self) -> dict[str, DeviceCommand]:
        """Machines whose most recent command never reached the device."""
        return dict(self._undelivered)

    # ── Delivery ──

    def _enqueue(self, command: DeviceCommand) -> None:
        # Commands for one machine leave in issue order.
        previous = self._tails.get(command.machine_id)
        task = asyncio.get_running_loop().create_task(self._publish_after(previous, command))
        self._tails[command.machine_id] = task
        self._tasks.add(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        for machine_id, tail in list(self._tails.items()):
            if tail is task:
                del self._tails[machine_id]

    async def _publish_after(self, previous: Optional[asyncio.Task], command: DeviceCommand) -> bool:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        return await self._publish(command)

    async def _publish(self, command: DeviceCommand) -> bool:
        try:
            await self.channel.publish(command)
        except DeviceUnreachableError as e:
            logger.error(
                "Device command not delivered: %s", e.message,
                extra={"machine_id": command.machine_id, "action": command.action.value},
            )
            self._undelivered[command.machine_id] = command
            return False
        self._undelivered.pop(command.machine_id, None)
        logger.info(
            "Device command published",
            extra={"machine_id": command.machine_id, "action": command.action.value},
        )
        return True

    # ── Safety timer ──

    def _arm_timer(self, machine_id: str, seconds: float) -> None:
        self._disarm_timer(machine_id)
        loop = asyncio.get_running_loop()
        self._timers[machine_id] = loop.call_later(seconds, self._on_safety_timeout, machine_id)

    def _disarm_timer(self, machine_id: str) -> None:
        handle = self._timers.pop(machine_id, None)
        if handle is not None:
            handle.cancel()

    def _on_safety_timeout(self, machine_id: str) -> None:
        self._timers.pop(machine_id, None)
        logger.warning("Safety timer elapsed, deactivating", extra={"machine_id": machine_id})
        self._enqueue(DeviceCommand(machine_id, CommandAction.DEACTIVATE))

    # ── Lifecycle ──

    async def drain(self) -> None:
        """Wait for every queued publish to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for machine_id in list(self._timers):
            self._disarm_timer(machine_id)
        await self.drain()
