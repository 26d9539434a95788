"""Device command channel over Redis pub/sub.

Outbound commands go to ``{prefix}/{machine_id}/commands``; controllers
publish advisory telemetry on ``{prefix}/{machine_id}/telemetry``.
Delivery is at-least-once in both directions: controllers treat a repeated
``activate`` as a refresh of the running timer.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from renta_engine.common.exceptions import DeviceUnreachableError
from renta_engine.common.models import utcnow

logger = logging.getLogger(__name__)


class CommandAction(str, Enum):
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    EMERGENCY_STOP = "emergency_stop"


@dataclass(frozen=True)
class DeviceCommand:
    machine_id: str
    action: CommandAction
    duration_ms: int = 0
    issued_at: datetime = field(default_factory=utcnow)

    def to_message(self) -> dict[str, Any]:
        return {
            "machineId": self.machine_id,
            "action": self.action.value,
            "durationMs": self.duration_ms,
            "issuedAt": self.issued_at.isoformat(),
        }


@dataclass(frozen=True)
class TelemetryReading:
    machine_id: str
    state: str
    timestamp: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state in ("on", "active", "running")


def parse_telemetry(raw: str | bytes) -> Optional[TelemetryReading]:
    """Decode one telemetry frame; malformed frames yield None."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    machine_id = payload.get("machineId")
    state = payload.get("state")
    if not machine_id or not state:
        return None
    return TelemetryReading(
        machine_id=str(machine_id),
        state=str(state).lower(),
        timestamp=payload.get("timestamp"),
    )


TelemetryHandler = Callable[[TelemetryReading], Awaitable[None]]


class RedisCommandChannel:
    """Fire-and-forget publisher plus telemetry subscriber."""

    def __init__(self, redis: Redis, prefix: str = "machines"):
        self._redis = redis
        self.prefix = prefix.rstrip("/")

    @classmethod
    def from_url(cls, url: str, prefix: str = "machines") -> "RedisCommandChannel":
        return cls(Redis.from_url(url, decode_responses=True), prefix=prefix)

    def command_topic(self, machine_id: str) -> str:
        return f"{self.prefix}/{machine_id}/commands"

    @property
    def telemetry_pattern(self) -> str:
        return f"{self.prefix}/*/telemetry"

    async def publish(self, command: DeviceCommand) -> int:
        """Publish one command; return the number of subscribers that got it."""
        topic = self.command_topic(command.machine_id)
        try:
            receivers = await self._redis.publish(topic, json.dumps(command.to_message()))
        except (RedisError, OSError) as e:
            raise DeviceUnreachableError(f"Publish to {topic} failed: {e}") from e

        if not receivers:
            logger.warning(
                "No controller subscribed to %s", topic,
                extra={"machine_id": command.machine_id, "action": command.action.value},
            )
        return receivers

    async def listen(self, handler: TelemetryHandler) -> None:
        """Consume telemetry until cancelled."""
        pubsub = self._redis.pubsub()
        await pubsub.psubscribe(self.telemetry_pattern)
        logger.info("Listening for telemetry on %s", self.telemetry_pattern)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                reading = parse_telemetry(message.get("data"))
                if reading is None:
                    logger.warning("Ignoring malformed telemetry on %s", message.get("channel"))
                    continue
                try:
                    await handler(reading)
                except Exception:
                    logger.exception(
                        "Telemetry handler failed", extra={"machine_id": reading.machine_id}
                    )
        finally:
            await pubsub.aclose()

    async def close(self) -> None:
        await self._redis.aclose()
