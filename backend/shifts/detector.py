"""
Shift Transition Detector — runs before any request that mutates machine
operation state, and at the start of every ticker pass for a machine.

If the (machine, operator) pair has no open record for the window containing
"now", or its open record belongs to an earlier window, the store's reset
archives the stale record and opens a zeroed one. Counters for the new shift
therefore start from zero instead of inheriting the old accumulation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from db.models import ArchiveEntry, ShiftRecord
from shifts.clock import ShiftType
from shifts.store import ShiftRecordStore

logger = structlog.get_logger()


@dataclass
class TransitionOutcome:
    record: ShiftRecord
    shift_type: ShiftType
    created: bool = False
    archived: list[ArchiveEntry] = field(default_factory=list)

    @property
    def shift_changed(self) -> bool:
        return bool(self.archived)


class ShiftTransitionDetector:
    def __init__(self, store: ShiftRecordStore):
        self.store = store

    async def check(self, machine_id: uuid.UUID, operator_id: uuid.UUID, now: datetime | None = None) -> TransitionOutcome:
        now = self.store.resolve_now(now)
        shift_type = self.store.clock.classify(now)
        current = await self.store.current(machine_id, operator_id, now)
        if current is not None:
            return TransitionOutcome(record=current, shift_type=shift_type)

        record, archived = await self.store.reset_with_outcome(machine_id, operator_id, now)
        if archived:
            logger.info(
                "shift.transition_detected",
                machine_id=str(machine_id),
                operator_id=str(operator_id),
                new_shift_type=shift_type.value,
                archived_ids=[str(entry.shift_record_id) for entry in archived],
            )
        return TransitionOutcome(record=record, shift_type=shift_type, created=True, archived=archived)
