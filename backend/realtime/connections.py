"""
Connection registry for live production subscribers.

One registry is created per application (held on ``app.state``) and passed
to whatever needs it, so tests can build their own without touching
transport state.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

logger = structlog.get_logger()


class TextSocket(Protocol):
    async def send_text(self, data: str) -> None: ...


@dataclass
class Subscription:
    socket: TextSocket
    user_id: str | None = None
    machine_ids: frozenset[str] = field(default_factory=frozenset)

    def wants(self, machine_id: str | None) -> bool:
        return not self.machine_ids or machine_id is None or machine_id in self.machine_ids


class ConnectionRegistry:
    def __init__(self):
        self._subscriptions: dict[int, Subscription] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._subscriptions)

    async def register(self, socket: TextSocket, user_id: str | None = None, machine_ids=None) -> Subscription:
        subscription = Subscription(
            socket=socket,
            user_id=user_id,
            machine_ids=frozenset(str(m) for m in (machine_ids or ())),
        )
        async with self._lock:
            self._subscriptions[id(socket)] = subscription
        logger.info("connections.registered", user_id=user_id, total=len(self._subscriptions))
        return subscription

    async def unregister(self, socket: TextSocket) -> None:
        async with self._lock:
            removed = self._subscriptions.pop(id(socket), None)
        if removed is not None:
            logger.info("connections.unregistered", user_id=removed.user_id, total=len(self._subscriptions))

    async def fan_out(self, message: str, machine_id: str | None = None) -> int:
        """Send a raw envelope to every interested socket; dead sockets are dropped."""
        async with self._lock:
            targets = [s for s in self._subscriptions.values() if s.wants(machine_id)]
        delivered = 0
        for subscription in targets:
            try:
                await subscription.socket.send_text(message)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.info("connections.send_failed", user_id=subscription.user_id, error=str(exc))
                await self.unregister(subscription.socket)
        return delivered

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {"user_id": s.user_id, "machine_ids": sorted(s.machine_ids)}
            for s in self._subscriptions.values()
        ]
