"""
Shift metrics refresh — efficiency, downtime and quality counts for the
current shift record.

Production totals are not touched here; only the accumulator-driven paths
(ticker and operation settling) add units.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Machine, MachineOperation, MachineStatus, QualityTest, ShiftRecord
from production.accumulator import efficiency_pct, windowed_status_breakdown
from shifts.store import ProductionDelta, ShiftRecordStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class QualityCounts:
    total: int = 0
    approved: int = 0
    rejected: int = 0

    @property
    def approval_rate(self) -> float:
        return round(self.approved / self.total * 100, 2) if self.total else 0.0


async def quality_counts(
    db: AsyncSession,
    machine_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> QualityCounts:
    result = await db.execute(
        select(QualityTest.result, func.count(QualityTest.test_id))
        .where(
            QualityTest.machine_id == machine_id,
            QualityTest.created_at >= start,
            QualityTest.created_at < end,
        )
        .group_by(QualityTest.result)
    )
    counts = {row[0]: int(row[1]) for row in result.all()}
    approved = counts.get("APPROVED", 0)
    rejected = counts.get("REJECTED", 0)
    return QualityCounts(total=approved + rejected, approved=approved, rejected=rejected)


async def shift_metrics_delta(db: AsyncSession, record: ShiftRecord, now: datetime) -> ProductionDelta:
    """Build the metrics-only delta for an open record as of ``now``."""
    end = min(now, record.end_time)
    machine = await db.get(Machine, record.machine_id)
    minutes = await windowed_status_breakdown(db, record.machine_id, record.start_time, end)
    total_minutes = sum(minutes.values())
    running = minutes.get(MachineStatus.RUNNING.value, 0)
    quality = await quality_counts(db, record.machine_id, record.start_time, end)

    operations_count = (
        await db.execute(
            select(func.count(MachineOperation.operation_id)).where(
                MachineOperation.machine_id == record.machine_id,
                MachineOperation.operator_id == record.operator_id,
                MachineOperation.start_time < end,
            ).where(
                (MachineOperation.end_time.is_(None)) | (MachineOperation.end_time >= record.start_time)
            )
        )
    ).scalar() or 0

    return ProductionDelta(
        efficiency=efficiency_pct(running, total_minutes),
        downtime=max(0, total_minutes - running),
        quality_tests=quality.total,
        approved_tests=quality.approved,
        rejected_tests=quality.rejected,
        detail={
            "machine_status": machine.status if machine else None,
            "last_update": now.isoformat(),
            "operations_count": int(operations_count),
            "running_minutes": running,
            "approval_rate": quality.approval_rate,
        },
    )


async def refresh_shift_metrics(
    store: ShiftRecordStore,
    machine_id: uuid.UUID,
    operator_id: uuid.UUID,
    now: datetime,
) -> ShiftRecord | None:
    """Recompute metrics for the current record; no-op when none is open."""
    record = await store.current(machine_id, operator_id, now)
    if record is None:
        return None
    delta = await shift_metrics_delta(store.db, record, now)
    return await store.accumulate(record.shift_record_id, delta)
