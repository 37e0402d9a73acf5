"""
Domain events — emitted after an operation-lifecycle write has committed.

Handlers run in subscription order inside the request that emitted the event.
A failing handler is logged and recorded on the emit result; it never undoes
or fails the committed write.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from production.metrics import refresh_shift_metrics
from realtime.broadcast import Broadcaster, safe_publish
from shifts.store import ShiftRecordStore

logger = structlog.get_logger()


class EventKind(str, Enum):
    OPERATION_STARTED = "operation:started"
    OPERATION_ENDED = "operation:ended"
    STATUS_CHANGED = "machine:status_changed"
    SPEED_CHANGED = "machine:speed_changed"


@dataclass(frozen=True)
class ShiftEvent:
    kind: EventKind
    machine_id: uuid.UUID
    operator_id: uuid.UUID | None
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "machine_id": str(self.machine_id),
            "operator_id": str(self.operator_id) if self.operator_id else None,
            "occurred_at": self.occurred_at.isoformat(),
            **self.payload,
        }


Handler = Callable[[ShiftEvent], Awaitable[None]]


class EventBus:
    def __init__(self):
        self._handlers: list[tuple[frozenset[EventKind] | None, Handler]] = []

    def subscribe(self, handler: Handler, kinds=None) -> Handler:
        """Register ``handler`` for ``kinds`` (every kind when None)."""
        self._handlers.append((frozenset(kinds) if kinds else None, handler))
        return handler

    async def emit(self, event: ShiftEvent) -> list[dict[str, Any]]:
        """Run every matching handler. Returns the failures, if any."""
        failures: list[dict[str, Any]] = []
        for kinds, handler in self._handlers:
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                await handler(event)
            except Exception as exc:  # noqa: BLE001
                name = getattr(handler, "__name__", repr(handler))
                logger.warning(
                    "events.handler_failed",
                    handler=name,
                    event_kind=event.kind.value,
                    machine_id=str(event.machine_id),
                    operator_id=str(event.operator_id) if event.operator_id else None,
                    error=str(exc),
                )
                failures.append({"handler": name, "error": str(exc)})
        return failures


def metrics_refresher(store: ShiftRecordStore) -> Handler:
    async def refresh_metrics(event: ShiftEvent) -> None:
        if event.operator_id is None:
            return
        await refresh_shift_metrics(store, event.machine_id, event.operator_id, event.occurred_at)

    return refresh_metrics


def event_forwarder(broadcaster: Broadcaster | None) -> Handler:
    async def forward(event: ShiftEvent) -> None:
        await safe_publish(broadcaster, event.kind.value, event.to_payload())

    return forward


def default_event_bus(store: ShiftRecordStore, broadcaster: Broadcaster | None = None) -> EventBus:
    bus = EventBus()
    bus.subscribe(metrics_refresher(store))
    bus.subscribe(event_forwarder(broadcaster))
    return bus
