"""
Shift Record Store — lifecycle of the per-(machine, operator, window) record.

    CREATED -> ACTIVE (self-loop on upsert/accumulate) -> ARCHIVED (terminal)

Writes are read-modify-write cycles guarded by the ``version`` column
(SQLAlchemy ``version_id_col``). A concurrent writer makes the UPDATE match
zero rows, SQLAlchemy raises StaleDataError, and the whole cycle is rolled
back, re-read and retried. Two writers racing to create the same open record
collide on the partial unique index and are retried the same way.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from core.config import get_settings
from core.errors import AlreadyArchived, NotFound, StaleWrite
from db.models import ArchiveEntry, Machine, Operator, ShiftRecord
from production.accumulator import counted_until, incremental_delta
from shifts.clock import ShiftClock, ShiftWindow, coerce_timestamp, get_shift_clock, plant_now

logger = structlog.get_logger()

_METRIC_FIELDS = (
    "target_production",
    "efficiency",
    "downtime",
    "quality_tests",
    "approved_tests",
    "rejected_tests",
)


@dataclass
class ProductionDelta:
    """Changes to fold into a shift record.

    ``units`` is added to the stored total; every other metric replaces the
    stored value only when it is not None.
    """

    units: int = 0
    accumulated_at: datetime | None = None
    target_production: int | None = None
    efficiency: float | None = None
    downtime: float | None = None
    quality_tests: int | None = None
    approved_tests: int | None = None
    rejected_tests: int | None = None
    detail: dict[str, Any] | None = None

    def __post_init__(self):
        if self.units is None:
            self.units = 0
        if self.units < 0:
            raise ValueError("production delta cannot be negative")
        if self.efficiency is not None:
            self.efficiency = round(max(0.0, min(100.0, float(self.efficiency))), 2)
        if self.downtime is not None:
            self.downtime = round(max(0.0, float(self.downtime)), 2)

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> "ProductionDelta":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        if "production_delta" in data and "units" not in data:
            data["units"] = data.pop("production_delta")
        return cls(**{key: value for key, value in data.items() if key in known})


def window_key(record: ShiftRecord) -> tuple:
    return (record.shift_date, str(record.shift_type))


def watermark(record: ShiftRecord, operation_start: datetime) -> datetime:
    """Instant production on ``record`` has been counted up to."""
    if record.last_accumulated_at is not None:
        return record.last_accumulated_at
    return max(operation_start, record.start_time)


class ShiftRecordStore:
    def __init__(
        self,
        db: AsyncSession,
        clock: ShiftClock | None = None,
        archival=None,
        max_retries: int | None = None,
    ):
        self.db = db
        self.clock = clock or get_shift_clock()
        self._archival = archival
        self.max_retries = max_retries or get_settings().max_write_retries

    @property
    def archival(self):
        if self._archival is None:
            from shifts.archival import ArchivalService

            self._archival = ArchivalService(self.db, clock=self.clock, max_retries=self.max_retries)
        return self._archival

    # ── Reads ──────────────────────────────────────────────────────────

    async def current(self, machine_id: uuid.UUID, operator_id: uuid.UUID, now: datetime | None = None):
        """The open record for the shift window containing ``now``, if any."""
        window = self.clock.window(self.resolve_now(now))
        return await self._find_open(machine_id, operator_id, window)

    async def latest_open(self, machine_id: uuid.UUID, operator_id: uuid.UUID) -> ShiftRecord | None:
        records = await self._open_records(machine_id, operator_id)
        return records[0] if records else None

    async def get(self, shift_record_id: uuid.UUID) -> ShiftRecord:
        result = await self.db.execute(
            select(ShiftRecord)
            .where(ShiftRecord.shift_record_id == shift_record_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFound("Shift record not found", shift_record_id=shift_record_id)
        return record

    async def _find_open(self, machine_id, operator_id, window: ShiftWindow) -> ShiftRecord | None:
        result = await self.db.execute(
            select(ShiftRecord)
            .where(
                ShiftRecord.machine_id == machine_id,
                ShiftRecord.operator_id == operator_id,
                ShiftRecord.shift_date == window.shift_date,
                ShiftRecord.shift_type == window.shift_type.value,
                ShiftRecord.is_active.is_(True),
                ShiftRecord.is_archived.is_(False),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _open_records(self, machine_id, operator_id) -> list[ShiftRecord]:
        result = await self.db.execute(
            select(ShiftRecord)
            .where(
                ShiftRecord.machine_id == machine_id,
                ShiftRecord.operator_id == operator_id,
                ShiftRecord.is_active.is_(True),
                ShiftRecord.is_archived.is_(False),
            )
            .order_by(ShiftRecord.start_time.desc(), ShiftRecord.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # ── Writes ─────────────────────────────────────────────────────────

    async def upsert(
        self,
        machine_id: uuid.UUID,
        operator_id: uuid.UUID,
        delta: ProductionDelta | int | None = None,
        now: datetime | None = None,
    ) -> ShiftRecord:
        """Fold ``delta`` into the current record, creating it when missing."""
        delta = _as_delta(delta)
        window = self.clock.window(self.resolve_now(now))

        async def _operation() -> ShiftRecord:
            record = await self._find_open(machine_id, operator_id, window)
            if record is None:
                record = await self._create(machine_id, operator_id, window)
            self._apply(record, delta)
            return record

        return await self._write(
            _operation,
            machine_id=machine_id,
            operator_id=operator_id,
            shift_date=window.shift_date,
            shift_type=window.shift_type.value,
        )

    async def accumulate(self, shift_record_id: uuid.UUID, delta: ProductionDelta | int) -> ShiftRecord:
        """Fold ``delta`` into a specific open record."""
        delta = _as_delta(delta)

        async def _operation() -> ShiftRecord:
            record = await self.get(shift_record_id)
            if record.is_archived:
                raise AlreadyArchived("Shift record is archived and read-only", shift_record_id=shift_record_id)
            self._apply(record, delta)
            return record

        return await self._write(_operation, shift_record_id=shift_record_id)

    async def accumulate_since(
        self,
        shift_record_id: uuid.UUID,
        operation_start: datetime,
        until: datetime,
        speed: float | None,
        carry: bool = False,
        detail: dict[str, Any] | None = None,
    ) -> tuple[ShiftRecord, int]:
        """Count production on an open record from its watermark up to ``until``.

        The watermark is taken from the record each write attempt re-reads,
        so an interval already counted by a concurrent writer is not counted
        again on retry. With ``carry`` the watermark advances only as far as
        the whole units cover and the fractional remainder stays uncounted.

        Returns the record and the units added.
        """
        counted = 0

        async def _operation() -> ShiftRecord:
            nonlocal counted
            record = await self.get(shift_record_id)
            if record.is_archived:
                raise AlreadyArchived("Shift record is archived and read-only", shift_record_id=shift_record_id)
            since = watermark(record, operation_start)
            counted = 0
            accumulated_at = None
            if until > since:
                counted = incremental_delta(since, until, speed)
                accumulated_at = counted_until(since, counted, speed) if carry else until
            self._apply(record, ProductionDelta(units=counted, accumulated_at=accumulated_at, detail=detail))
            return record

        record = await self._write(_operation, shift_record_id=shift_record_id)
        return record, counted

    async def reset(self, machine_id: uuid.UUID, operator_id: uuid.UUID, now: datetime | None = None) -> ShiftRecord:
        """Archive open records of other windows, then return the current window's record."""
        record, _ = await self.reset_with_outcome(machine_id, operator_id, now)
        return record

    async def reset_with_outcome(
        self,
        machine_id: uuid.UUID,
        operator_id: uuid.UUID,
        now: datetime | None = None,
    ) -> tuple[ShiftRecord, list[ArchiveEntry]]:
        now = self.resolve_now(now)
        window = self.clock.window(now)
        archived: list[ArchiveEntry] = []

        for stale in await self._open_records(machine_id, operator_id):
            if window_key(stale) == window.key:
                continue
            stale_id = stale.shift_record_id
            try:
                archived.append(await self.archival.archive(stale_id, now=now))
            except AlreadyArchived:
                logger.info(
                    "shift_store.stale_already_archived",
                    shift_record_id=str(stale_id),
                    machine_id=str(machine_id),
                    operator_id=str(operator_id),
                )

        record = await self.upsert(machine_id, operator_id, ProductionDelta(), now=now)
        logger.info(
            "shift_store.reset",
            machine_id=str(machine_id),
            operator_id=str(operator_id),
            shift_type=window.shift_type.value,
            shift_date=window.shift_date.isoformat(),
            archived_count=len(archived),
        )
        return record, archived

    async def _create(self, machine_id, operator_id, window: ShiftWindow) -> ShiftRecord:
        machine = await self.db.get(Machine, machine_id)
        if machine is None:
            raise NotFound("Machine not found", machine_id=machine_id)
        if await self.db.get(Operator, operator_id) is None:
            raise NotFound("Operator not found", operator_id=operator_id)

        record = ShiftRecord(
            shift_record_id=uuid.uuid4(),
            machine_id=machine_id,
            operator_id=operator_id,
            shift_date=window.shift_date,
            shift_type=window.shift_type.value,
            start_time=window.start,
            end_time=window.end,
            total_production=0,
            target_production=machine.target_production or 0,
            efficiency=0.0,
            downtime=0.0,
            quality_tests=0,
            approved_tests=0,
            rejected_tests=0,
            detail={},
            is_active=True,
            is_archived=False,
        )
        self.db.add(record)
        logger.info(
            "shift_store.created",
            machine_id=str(machine_id),
            operator_id=str(operator_id),
            shift_type=window.shift_type.value,
            shift_date=window.shift_date.isoformat(),
        )
        return record

    @staticmethod
    def _apply(record: ShiftRecord, delta: ProductionDelta) -> None:
        if delta.units:
            record.total_production = int(record.total_production or 0) + int(delta.units)
        if delta.accumulated_at is not None:
            record.last_accumulated_at = delta.accumulated_at
        for name in _METRIC_FIELDS:
            value = getattr(delta, name)
            if value is not None:
                setattr(record, name, value)
        if delta.detail:
            record.detail = {**(record.detail or {}), **delta.detail}

    async def _write(self, operation: Callable[[], Awaitable[ShiftRecord]], **context) -> ShiftRecord:
        """Run a read-modify-write cycle with bounded optimistic retries."""
        log_context = {key: str(value) for key, value in context.items()}
        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                record = await operation()
                await self.db.commit()
                return record
            except (StaleDataError, IntegrityError) as exc:
                await self.db.rollback()
                last_error = exc
                logger.warning("shift_store.write_conflict", attempt=attempt, error=str(exc), **log_context)
            except Exception:
                await self.db.rollback()
                raise
        logger.error("shift_store.write_abandoned", attempts=self.max_retries, **log_context)
        raise StaleWrite(
            f"Shift record write conflicted {self.max_retries} times",
            **context,
        ) from last_error

    @staticmethod
    def resolve_now(now: datetime | str | None) -> datetime:
        return coerce_timestamp(now) if now is not None else plant_now()


def _as_delta(delta: ProductionDelta | int | None) -> ProductionDelta:
    if delta is None:
        return ProductionDelta()
    if isinstance(delta, ProductionDelta):
        return delta
    return ProductionDelta(units=int(delta))
