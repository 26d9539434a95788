"""Process-scoped registry of live client connections, keyed by user."""

import asyncio
import logging
from typing import Any, Protocol

from renta_engine.realtime.events import NotificationEvent

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 2.0  # seconds per channel


class ClientChannel(Protocol):
    """Anything that can push a JSON message to one client (e.g. a WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


class ConnectionRegistry:
    """Maps user id to the channels currently connected for that user.

    Holds non-owning references: the transport closes its own sockets.
    Nothing is queued; events for users with no channel are dropped.
    """

    def __init__(self, send_timeout: float = DEFAULT_SEND_TIMEOUT) -> None:
        self.send_timeout = send_timeout
        self._channels: dict[str, set[ClientChannel]] = {}

    def connect(self, user_id: str, channel: ClientChannel) -> None:
        self._channels.setdefault(user_id, set()).add(channel)
        logger.debug("Client connected", extra={"user_id": user_id})

    def disconnect(self, user_id: str, channel: ClientChannel) -> None:
        channels = self._channels.get(user_id)
        if not channels:
            return
        channels.discard(channel)
        if not channels:
            del self._channels[user_id]
        logger.debug("Client disconnected", extra={"user_id": user_id})

    def connection_count(self, user_id: str | None = None) -> int:
        if user_id is not None:
            return len(self._channels.get(user_id, ()))
        return sum(len(c) for c in self._channels.values())

    async def publish(self, user_id: str, event: NotificationEvent) -> int:
        """Deliver to every channel of ``user_id``; return how many got it.

        Never raises: a failing or stalled channel is logged and dropped.
        Channels are written concurrently, each bounded by ``send_timeout``.
        """
        channels = list(self._channels.get(user_id, ()))
        if not channels:
            logger.debug("No live connection, dropping %s", event.type, extra={"user_id": user_id})
            return 0

        message = event.to_wire()
        results = await asyncio.gather(
            *[asyncio.wait_for(channel.send_json(message), self.send_timeout) for channel in channels],
            return_exceptions=True,
        )
        delivered = 0
        for channel, result in zip(channels, results):
            if not isinstance(result, BaseException):
                delivered += 1
                continue
            if isinstance(result, asyncio.TimeoutError):
                logger.warning(
                    "Realtime delivery of %s timed out after %ss", event.type, self.send_timeout,
                    extra={"user_id": user_id},
                )
            else:
                logger.warning(
                    "Realtime delivery of %s failed: %r", event.type, result,
                    extra={"user_id": user_id},
                )
            self.disconnect(user_id, channel)
        return delivered

    async def notify(self, event: NotificationEvent) -> int:
        return await self.publish(event.recipient, event)
