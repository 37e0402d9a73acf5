"""
Production Accumulator — incremental production and windowed status metrics.

The stored shift total is always advanced as

    new_total = previous_total + floor(minutes_since_last_update × speed)

using the speed in effect for that interval only. Deriving a total as
(now - shift_start) × current_speed would rescale already-counted output
whenever the speed changes, so nothing in the codebase does that: every
production figure is either an incremental delta from here or the persisted
ShiftRecord total.

Status breakdowns are reconstructed from machine_status_history and carry
no production math of their own.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import NotFound
from db.models import Machine, MachineStatus, MachineStatusHistory, ShiftRecord

logger = structlog.get_logger()

TRACKED_STATUSES = tuple(status.value for status in MachineStatus)


# ──────────────────────────────────────────────────────────────────────────
# Incremental production
# ──────────────────────────────────────────────────────────────────────────


def elapsed_minutes(since: datetime, now: datetime) -> float:
    """Minutes between two instants, clamped to zero for clock skew."""
    return max(0.0, (now - since).total_seconds() / 60)


def incremental_delta(last_update: datetime, now: datetime, current_speed: float | None) -> int:
    """Units produced since ``last_update`` at ``current_speed`` units/minute."""
    if not current_speed or current_speed <= 0:
        return 0
    return max(0, math.floor(elapsed_minutes(last_update, now) * current_speed))


def accumulate_total(previous_total: int, last_update: datetime, now: datetime, speed: float | None) -> int:
    return int(previous_total or 0) + incremental_delta(last_update, now, speed)


def counted_until(since: datetime, units: int, current_speed: float | None) -> datetime:
    """Instant up to which ``units`` account for production at ``current_speed``.

    Periodic updates advance their watermark here rather than to "now", so the
    fractional unit left over by the floor is carried into the next interval.
    """
    if not units or not current_speed or current_speed <= 0:
        return since
    return since + timedelta(minutes=units / current_speed)


# ──────────────────────────────────────────────────────────────────────────
# Status breakdown
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StatusChange:
    at: datetime
    new_status: str
    previous_status: str | None = None


@dataclass
class ProductionWindow:
    machine_id: uuid.UUID
    start: datetime
    end: datetime
    production_speed: float
    total_minutes: int
    running_minutes: int
    stopped_minutes: int
    maintenance_minutes: int
    off_shift_minutes: int
    estimated_production: int
    efficiency: float
    status_breakdown: list[dict[str, Any]] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "machine_id": str(self.machine_id),
            "period": {"start": self.start.isoformat(), "end": self.end.isoformat()},
            "production_speed": self.production_speed,
            "total_minutes": self.total_minutes,
            "running_minutes": self.running_minutes,
            "stopped_minutes": self.stopped_minutes,
            "maintenance_minutes": self.maintenance_minutes,
            "off_shift_minutes": self.off_shift_minutes,
            "estimated_production": self.estimated_production,
            "efficiency": self.efficiency,
            "status_breakdown": self.status_breakdown,
            **self.extra,
        }


def _whole_minutes(start: datetime, end: datetime) -> int:
    return int(elapsed_minutes(start, end) // 1)


def status_breakdown(
    changes: Iterable[StatusChange],
    start: datetime,
    end: datetime,
    initial_status: str,
) -> dict[str, int]:
    """Minutes spent in each status over [start, end) given ordered changes."""
    minutes = {status: 0 for status in TRACKED_STATUSES}
    current_status = initial_status
    cursor = start

    for change in changes:
        if change.at >= end:
            break
        if change.at > cursor:
            minutes[current_status] = minutes.get(current_status, 0) + _whole_minutes(cursor, change.at)
            cursor = change.at
        current_status = change.new_status

    if cursor < end:
        minutes[current_status] = minutes.get(current_status, 0) + _whole_minutes(cursor, end)
    return minutes


def efficiency_pct(running_minutes: float, total_minutes: float) -> float:
    if total_minutes <= 0:
        return 0.0
    return round(min(100.0, running_minutes / total_minutes * 100), 2)


def _breakdown_rows(minutes: dict[str, int], total_minutes: int) -> list[dict[str, Any]]:
    return [
        {
            "status": status,
            "minutes": value,
            "percentage": round(value / total_minutes * 100) if total_minutes > 0 else 0,
        }
        for status, value in minutes.items()
        if value > 0
    ]


async def _load_machine(db: AsyncSession, machine_id: uuid.UUID) -> Machine:
    machine = await db.get(Machine, machine_id)
    if machine is None:
        raise NotFound("Machine not found", machine_id=machine_id)
    return machine


async def windowed_status_breakdown(
    db: AsyncSession,
    machine_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> dict[str, int]:
    """Per-status minutes for a machine over [start, end).

    The status in effect at ``start`` is the last change before the window;
    failing that, the first in-window change's previous status. Without any
    history the machine's current status is assumed for the whole window.
    """
    machine = await _load_machine(db, machine_id)

    result = await db.execute(
        select(MachineStatusHistory)
        .where(
            MachineStatusHistory.machine_id == machine_id,
            MachineStatusHistory.created_at >= start,
            MachineStatusHistory.created_at < end,
        )
        .order_by(MachineStatusHistory.created_at)
    )
    rows = result.scalars().all()
    changes = [StatusChange(at=row.created_at, new_status=row.new_status, previous_status=row.previous_status) for row in rows]

    prior = (
        await db.execute(
            select(MachineStatusHistory.new_status)
            .where(
                MachineStatusHistory.machine_id == machine_id,
                MachineStatusHistory.created_at < start,
            )
            .order_by(MachineStatusHistory.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()

    if not changes and prior is None:
        minutes = {status: 0 for status in TRACKED_STATUSES}
        minutes[machine.status] = _whole_minutes(start, end)
        return minutes

    if prior is not None:
        initial = prior
    elif changes[0].previous_status:
        initial = changes[0].previous_status
    else:
        initial = machine.status
    return status_breakdown(changes, start, end, initial)


async def persisted_production(
    db: AsyncSession,
    machine_id: uuid.UUID,
    start: datetime,
    end: datetime,
    operator_id: uuid.UUID | None = None,
) -> int:
    """Sum of stored ShiftRecord totals whose windows overlap [start, end)."""
    query = select(func.coalesce(func.sum(ShiftRecord.total_production), 0)).where(
        ShiftRecord.machine_id == machine_id,
        ShiftRecord.start_time < end,
        ShiftRecord.end_time > start,
    )
    if operator_id is not None:
        query = query.where(ShiftRecord.operator_id == operator_id)
    return int((await db.execute(query)).scalar() or 0)


async def production_window(
    db: AsyncSession,
    machine_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> ProductionWindow:
    """Status minutes, efficiency and persisted production for one machine."""
    machine = await _load_machine(db, machine_id)
    total_minutes = _whole_minutes(start, end)

    if not machine.production_speed or machine.production_speed <= 0:
        return ProductionWindow(
            machine_id=machine_id,
            start=start,
            end=end,
            production_speed=0.0,
            total_minutes=0,
            running_minutes=0,
            stopped_minutes=0,
            maintenance_minutes=0,
            off_shift_minutes=0,
            estimated_production=0,
            efficiency=0.0,
        )

    minutes = await windowed_status_breakdown(db, machine_id, start, end)
    running = minutes.get(MachineStatus.RUNNING.value, 0)
    return ProductionWindow(
        machine_id=machine_id,
        start=start,
        end=end,
        production_speed=float(machine.production_speed),
        total_minutes=total_minutes,
        running_minutes=running,
        stopped_minutes=minutes.get(MachineStatus.STOPPED.value, 0),
        maintenance_minutes=minutes.get(MachineStatus.MAINTENANCE.value, 0),
        off_shift_minutes=minutes.get(MachineStatus.OFF_SHIFT.value, 0),
        estimated_production=await persisted_production(db, machine_id, start, end),
        efficiency=efficiency_pct(running, total_minutes),
        status_breakdown=_breakdown_rows(minutes, total_minutes),
    )


async def production_windows(
    db: AsyncSession,
    machine_ids: Iterable[uuid.UUID],
    start: datetime,
    end: datetime,
) -> list[dict[str, Any]]:
    """production_window for several machines; failures are reported inline."""
    results: list[dict[str, Any]] = []
    for machine_id in machine_ids:
        try:
            window = await production_window(db, machine_id, start, end)
            results.append(window.to_dict())
        except Exception as exc:  # noqa: BLE001
            logger.warning("production.window_failed", machine_id=str(machine_id), error=str(exc))
            results.append(
                {
                    "machine_id": str(machine_id),
                    "error": str(exc),
                    "period": {"start": start.isoformat(), "end": end.isoformat()},
                }
            )
    return results


async def current_shift_production(db: AsyncSession, machine_id: uuid.UUID, now: datetime) -> ProductionWindow:
    """Production window from the current shift's start until ``now``."""
    from shifts.clock import get_shift_clock

    window = get_shift_clock().window(now)
    machine = await _load_machine(db, machine_id)
    production = await production_window(db, machine_id, window.start, min(now, window.end))
    production.extra.update(
        {
            "shift_type": window.shift_type.value,
            "shift_date": window.shift_date.isoformat(),
            "current_status": machine.status,
            "is_currently_running": machine.status == MachineStatus.RUNNING.value,
            "last_update": now.isoformat(),
        }
    )
    return production


async def daily_production(db: AsyncSession, machine_id: uuid.UUID, day: date) -> ProductionWindow:
    start = datetime.combine(day, datetime.min.time())
    return await production_window(db, machine_id, start, start + timedelta(days=1))
