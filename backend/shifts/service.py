"""
ShiftService — the interface the rest of the platform (routers, workers,
user-facing CRUD) uses to read and write shift data.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import NotFound
from db.models import ArchiveEntry, ShiftRecord
from shifts.archival import ArchivalService, SweepResult, decode_archive
from shifts.clock import ShiftClock, get_shift_clock
from shifts.detector import ShiftTransitionDetector
from shifts.reporting import shift_history, shift_summary
from shifts.store import ProductionDelta, ShiftRecordStore


class ShiftService:
    def __init__(self, db: AsyncSession, clock: ShiftClock | None = None):
        self.db = db
        self.clock = clock or get_shift_clock()
        self.archival = ArchivalService(db, clock=self.clock)
        self.store = ShiftRecordStore(db, clock=self.clock, archival=self.archival)
        self.detector = ShiftTransitionDetector(self.store)

    async def get_current_shift_data(
        self,
        machine_id: uuid.UUID,
        operator_id: uuid.UUID,
        now: datetime | None = None,
    ) -> ShiftRecord | None:
        return await self.store.current(machine_id, operator_id, now)

    async def create_or_update_shift_data(
        self,
        machine_id: uuid.UUID,
        operator_id: uuid.UUID,
        data: ProductionDelta | dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ShiftRecord:
        delta = data if isinstance(data, ProductionDelta) else ProductionDelta.from_mapping(data)
        now = self.store.resolve_now(now)
        await self.detector.check(machine_id, operator_id, now)
        return await self.store.upsert(machine_id, operator_id, delta, now=now)

    async def reset_operator_data(
        self,
        machine_id: uuid.UUID,
        operator_id: uuid.UUID,
        now: datetime | None = None,
    ) -> ShiftRecord:
        return await self.store.reset(machine_id, operator_id, now)

    async def archive_shift_data(self, shift_record_id: uuid.UUID, now: datetime | None = None) -> ArchiveEntry:
        return await self.archival.archive(shift_record_id, now=now)

    async def archive_completed_shifts(self, now: datetime | None = None) -> SweepResult:
        return await self.archival.sweep_due(now)

    async def get_archived_data(
        self,
        machine_id: uuid.UUID | None = None,
        operator_id: uuid.UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        entries = await self.archival.archived_entries(machine_id, operator_id, start, end)
        return [decode_archive(entry) for entry in entries]

    async def get_archive(self, archive_id: uuid.UUID) -> dict[str, Any]:
        entry = (
            await self.db.execute(select(ArchiveEntry).where(ArchiveEntry.archive_id == archive_id))
        ).scalar_one_or_none()
        if entry is None:
            raise NotFound("Archive entry not found", archive_id=archive_id)
        return decode_archive(entry)

    def get_current_shift_type(self, now: datetime | None = None) -> dict[str, Any]:
        window = self.clock.window(self.store.resolve_now(now))
        return {
            "shift_type": window.shift_type.value,
            "shift_date": window.shift_date.isoformat(),
            "start_time": window.start.isoformat(),
            "end_time": window.end.isoformat(),
        }

    async def summary(
        self,
        start_date: date,
        end_date: date,
        machine_id: uuid.UUID | None = None,
        operator_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        return await shift_summary(self.db, start_date, end_date, machine_id, operator_id)

    async def history(self, **filters) -> dict[str, Any]:
        return await shift_history(self.db, **filters)
