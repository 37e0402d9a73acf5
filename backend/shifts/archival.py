"""
Archival Service — immutable, checksummed snapshots of finished shifts.

Archiving is a one-time terminal transition. The archive entry insert and
the record's is_active / is_archived / archived_at flips are flushed and
committed together, so either all four land or none do. A second archiver
(concurrent sweep, detector reset, admin request) gets AlreadyArchived:
either it reads the flag directly, or its versioned UPDATE loses the race
and the re-read finds the record archived. The unique shift_record_id on
archive_entries backs this up at the database level.

Snapshot bytes are canonical JSON (sorted keys, compact separators), so the
stored checksum can be re-verified at any time.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from core.config import get_settings
from core.errors import AlreadyArchived, NotFound, ShiftTrackError, StaleWrite
from db.models import (
    ArchiveEntry,
    Machine,
    MachineOperation,
    MachineStatus,
    OperationStatus,
    Operator,
    ShiftRecord,
)
from shifts.clock import ShiftClock, coerce_timestamp, get_shift_clock, plant_now
from shifts.store import ShiftRecordStore

logger = structlog.get_logger()

SNAPSHOT_VERSION = 1


# ──────────────────────────────────────────────────────────────────────────
# Snapshot encoding
# ──────────────────────────────────────────────────────────────────────────


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def build_snapshot(
    record: ShiftRecord,
    machine: Machine | None,
    operator: Operator | None,
    archived_at: datetime,
) -> dict[str, Any]:
    quality_tests = int(record.quality_tests or 0)
    approved = int(record.approved_tests or 0)
    return {
        "snapshot_version": SNAPSHOT_VERSION,
        "shift_info": {
            "shift_record_id": str(record.shift_record_id),
            "machine_id": str(record.machine_id),
            "machine_name": machine.name if machine else None,
            "machine_code": machine.code if machine else None,
            "operator_id": str(record.operator_id),
            "operator_name": operator.name if operator else None,
            "shift_type": str(record.shift_type),
            "shift_date": _iso(record.shift_date),
            "start_time": _iso(record.start_time),
            "end_time": _iso(record.end_time),
        },
        "production_metrics": {
            "total_production": int(record.total_production or 0),
            "target_production": int(record.target_production or 0),
            "efficiency": float(record.efficiency or 0.0),
            "downtime": float(record.downtime or 0.0),
            "last_accumulated_at": _iso(record.last_accumulated_at),
        },
        "quality_metrics": {
            "quality_tests": quality_tests,
            "approved_tests": approved,
            "rejected_tests": int(record.rejected_tests or 0),
            "approval_rate": round(approved / quality_tests * 100, 2) if quality_tests > 0 else 0.0,
        },
        "detail": record.detail or {},
        "archived_at": _iso(archived_at),
    }


def serialize_snapshot(snapshot: dict[str, Any]) -> str:
    return json.dumps(snapshot, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def snapshot_checksum(serialized: str) -> str:
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def verify_archive(entry: ArchiveEntry) -> bool:
    """Recompute size and checksum of a stored snapshot."""
    raw = entry.snapshot.encode("utf-8")
    return len(raw) == entry.data_size and hashlib.sha256(raw).hexdigest() == entry.checksum


def decode_archive(entry: ArchiveEntry) -> dict[str, Any]:
    return {
        "archive_id": str(entry.archive_id),
        "shift_record_id": str(entry.shift_record_id),
        "machine_id": str(entry.machine_id),
        "operator_id": str(entry.operator_id),
        "data_size": entry.data_size,
        "checksum": entry.checksum,
        "archived_at": _iso(entry.archived_at),
        "verified": verify_archive(entry),
        "snapshot": json.loads(entry.snapshot),
    }


# ──────────────────────────────────────────────────────────────────────────
# Service
# ──────────────────────────────────────────────────────────────────────────


@dataclass
class SweepResult:
    """Outcome of one boundary sweep."""

    swept_at: datetime
    archived: list[ArchiveEntry] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.failures and not self.archived:
            return "failed"
        if self.failures:
            return "partial"
        if not self.archived:
            return "no_data"
        return "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "swept_at": self.swept_at.isoformat(),
            "due": len(self.archived) + len(self.failures),
            "archived": len(self.archived),
            "failed": len(self.failures),
            "archive_ids": [str(entry.archive_id) for entry in self.archived],
            "failures": self.failures,
        }


class ArchivalService:
    def __init__(self, db: AsyncSession, clock: ShiftClock | None = None, max_retries: int | None = None):
        self.db = db
        self.clock = clock or get_shift_clock()
        self.max_retries = max_retries or get_settings().max_write_retries

    async def archive(self, shift_record_id: uuid.UUID, now: datetime | None = None) -> ArchiveEntry:
        """Snapshot a record and flip it to archived in one commit."""
        archived_at = coerce_timestamp(now) if now is not None else plant_now()
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                record = await self._load(shift_record_id)
                if record.is_archived:
                    raise AlreadyArchived(
                        "Shift record already archived",
                        shift_record_id=shift_record_id,
                        archived_at=record.archived_at,
                    )

                machine = await self.db.get(Machine, record.machine_id)
                operator = await self.db.get(Operator, record.operator_id)
                serialized = serialize_snapshot(build_snapshot(record, machine, operator, archived_at))
                entry = ArchiveEntry(
                    archive_id=uuid.uuid4(),
                    shift_record_id=record.shift_record_id,
                    machine_id=record.machine_id,
                    operator_id=record.operator_id,
                    snapshot=serialized,
                    data_size=len(serialized.encode("utf-8")),
                    checksum=snapshot_checksum(serialized),
                    archived_at=archived_at,
                )
                self.db.add(entry)
                record.is_active = False
                record.is_archived = True
                record.archived_at = archived_at
                await self.db.commit()
            except (StaleDataError, IntegrityError) as exc:
                # Lost a race: re-read decides between AlreadyArchived and a retry.
                await self.db.rollback()
                last_error = exc
                logger.warning(
                    "archive.write_conflict",
                    shift_record_id=str(shift_record_id),
                    attempt=attempt,
                    error=str(exc),
                )
                continue
            except Exception:
                await self.db.rollback()
                raise

            logger.info(
                "archive.completed",
                shift_record_id=str(record.shift_record_id),
                archive_id=str(entry.archive_id),
                machine_id=str(record.machine_id),
                operator_id=str(record.operator_id),
                shift_type=str(record.shift_type),
                shift_date=_iso(record.shift_date),
                total_production=record.total_production,
                data_size=entry.data_size,
            )
            return entry

        raise StaleWrite(
            f"Archival of shift record conflicted {self.max_retries} times",
            shift_record_id=shift_record_id,
        ) from last_error

    async def sweep_due(self, now: datetime | None = None) -> SweepResult:
        """Archive every open record whose window has fully elapsed.

        A record still being produced on is first settled up to its window end.
        """
        now = coerce_timestamp(now) if now is not None else plant_now()
        result = await self.db.execute(
            select(
                ShiftRecord.shift_record_id,
                ShiftRecord.machine_id,
                ShiftRecord.operator_id,
                ShiftRecord.shift_type,
                ShiftRecord.shift_date,
                ShiftRecord.end_time,
            )
            .where(
                ShiftRecord.is_active.is_(True),
                ShiftRecord.is_archived.is_(False),
                ShiftRecord.end_time <= now,
            )
            .order_by(ShiftRecord.end_time, ShiftRecord.machine_id)
        )
        due = result.all()
        logger.info("sweep.started", due_count=len(due), now=now.isoformat())

        sweep = SweepResult(swept_at=now)
        for row in due:
            context = {
                "shift_record_id": str(row.shift_record_id),
                "machine_id": str(row.machine_id),
                "operator_id": str(row.operator_id),
                "shift_type": str(row.shift_type),
                "shift_date": _iso(row.shift_date),
            }
            try:
                await self._settle_running(row, now, context)
                sweep.archived.append(await self.archive(row.shift_record_id, now=now))
            except ShiftTrackError as exc:
                logger.warning("sweep.record_failed", error_type=exc.code, error=exc.message, **context)
                sweep.failures.append({**context, "error_type": exc.code, "error": exc.message})
            except Exception as exc:  # noqa: BLE001
                logger.error("sweep.record_failed", error_type=type(exc).__name__, error=str(exc), exc_info=True, **context)
                sweep.failures.append({**context, "error_type": type(exc).__name__, "error": str(exc)})

        logger.info("sweep.complete", **{k: v for k, v in sweep.to_dict().items() if k != "archive_ids"})
        return sweep

    async def _settle_running(self, row, now: datetime, context: dict[str, Any]) -> int:
        running = (
            await self.db.execute(
                select(MachineOperation.start_time, Machine.production_speed)
                .join(Machine, Machine.machine_id == MachineOperation.machine_id)
                .where(
                    MachineOperation.machine_id == row.machine_id,
                    MachineOperation.operator_id == row.operator_id,
                    MachineOperation.status == OperationStatus.ACTIVE.value,
                    Machine.status == MachineStatus.RUNNING.value,
                )
                .order_by(MachineOperation.start_time.desc())
                .limit(1)
            )
        ).first()
        if running is None:
            return 0

        store = ShiftRecordStore(self.db, clock=self.clock, archival=self, max_retries=self.max_retries)
        _, units = await store.accumulate_since(
            row.shift_record_id,
            running.start_time,
            min(now, row.end_time),
            float(running.production_speed or 0.0),
        )
        logger.info("sweep.record_settled", units=units, **context)
        return units

    async def archived_entries(
        self,
        machine_id: uuid.UUID | None = None,
        operator_id: uuid.UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ArchiveEntry]:
        query = select(ArchiveEntry)
        if machine_id:
            query = query.where(ArchiveEntry.machine_id == machine_id)
        if operator_id:
            query = query.where(ArchiveEntry.operator_id == operator_id)
        if start:
            query = query.where(ArchiveEntry.archived_at >= start)
        if end:
            query = query.where(ArchiveEntry.archived_at <= end)
        result = await self.db.execute(query.order_by(ArchiveEntry.archived_at.desc()))
        return list(result.scalars().all())

    async def _load(self, shift_record_id: uuid.UUID) -> ShiftRecord:
        result = await self.db.execute(
            select(ShiftRecord)
            .where(ShiftRecord.shift_record_id == shift_record_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFound("Shift record not found", shift_record_id=shift_record_id)
        return record
