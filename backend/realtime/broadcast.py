"""
Production broadcast — publishes shift/production envelopes to subscribers.

Envelopes look like {"type": "production:update", "payload": {...}} and are
published on the Redis pub/sub channel consumed by the WebSocket relay.
"""

import json
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as aioredis
import structlog

from core.config import get_settings

logger = structlog.get_logger()


def envelope(event_type: str, payload: dict[str, Any]) -> str:
    return json.dumps({"type": event_type, "payload": payload}, default=str)


class Broadcaster(ABC):
    @abstractmethod
    async def publish(self, event_type: str, payload: dict[str, Any]) -> int:
        """Publish one envelope. Returns the number of subscribers reached."""

    async def aclose(self) -> None:
        return None


class RedisBroadcaster(Broadcaster):
    def __init__(self, redis_url: str | None = None, channel: str | None = None):
        settings = get_settings()
        self.channel = channel or settings.production_channel
        self._redis = aioredis.from_url(
            redis_url or settings.redis_url,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
        )

    async def publish(self, event_type: str, payload: dict[str, Any]) -> int:
        return await self._redis.publish(self.channel, envelope(event_type, payload))

    async def aclose(self) -> None:
        await self._redis.aclose()


class MemoryBroadcaster(Broadcaster):
    """Keeps envelopes in-process; used by tests and single-process runs."""

    def __init__(self):
        self.messages: list[dict[str, Any]] = []

    async def publish(self, event_type: str, payload: dict[str, Any]) -> int:
        self.messages.append(json.loads(envelope(event_type, payload)))
        return 1

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [message["payload"] for message in self.messages if message["type"] == event_type]


async def safe_publish(broadcaster: Broadcaster | None, event_type: str, payload: dict[str, Any]) -> int:
    """Publish without letting a broadcast outage fail a committed write."""
    if broadcaster is None:
        return 0
    try:
        return await broadcaster.publish(event_type, payload)
    except Exception as exc:  # noqa: BLE001
        logger.warning("broadcast.failed", event_type=event_type, error=str(exc))
        return 0
