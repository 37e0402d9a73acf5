"""
Realtime Ticker — periodic incremental production for running machines.

For every machine in RUNNING status with an ACTIVE operation:
  1. Settle a record left open from an earlier shift window up to that
     window's end, then let the transition detector archive it and open the
     current window's record.
  2. Count units since the record's watermark (last_accumulated_at, or the
     later of operation start and window start) at the machine's current
     speed inside the record's versioned write, then broadcast the new
     total.

One machine failing is recorded on the TickResult and logged; the remaining
machines are still processed.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import AlreadyArchived, NotFound, PartialTickFailure, ShiftTrackError
from db.models import Machine, MachineOperation, MachineStatus, OperationStatus
from realtime.broadcast import Broadcaster, safe_publish
from shifts.clock import ShiftClock, get_shift_clock
from shifts.detector import ShiftTransitionDetector
from shifts.store import ShiftRecordStore, window_key

logger = structlog.get_logger()

PRODUCTION_UPDATE = "production:update"


async def settle_stale_record(
    store: ShiftRecordStore,
    machine_id: uuid.UUID,
    operator_id: uuid.UUID,
    operation_start: datetime,
    speed: float,
    now: datetime,
) -> bool:
    """Count an earlier window's remaining production up to that window's end.

    Returns True when the pair's open record belongs to an earlier window.
    """
    stale = await store.latest_open(machine_id, operator_id)
    if stale is None or window_key(stale) == store.clock.window(now).key:
        return False
    until = min(now, stale.end_time)
    try:
        _, units = await store.accumulate_since(stale.shift_record_id, operation_start, until, speed)
    except AlreadyArchived:
        logger.info(
            "production.stale_already_archived",
            machine_id=str(machine_id),
            operator_id=str(operator_id),
            shift_record_id=str(stale.shift_record_id),
        )
        return True
    logger.info(
        "production.stale_settled",
        machine_id=str(machine_id),
        operator_id=str(operator_id),
        shift_record_id=str(stale.shift_record_id),
        units=units,
    )
    return True


@dataclass
class MachineTick:
    machine_id: uuid.UUID
    operator_id: uuid.UUID
    shift_record_id: uuid.UUID
    units: int
    total_production: int
    production_speed: float
    shift_changed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "machine_id": str(self.machine_id),
            "operator_id": str(self.operator_id),
            "shift_record_id": str(self.shift_record_id),
            "units": self.units,
            "total_production": self.total_production,
            "production_speed": self.production_speed,
            "shift_changed": self.shift_changed,
        }


@dataclass
class TickResult:
    ticked_at: datetime
    updated: list[MachineTick] = field(default_factory=list)
    failures: list[PartialTickFailure] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.failures and not self.updated:
            return "failed"
        if self.failures:
            return "partial"
        if not self.updated:
            return "no_data"
        return "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "ticked_at": self.ticked_at.isoformat(),
            "machines_updated": len(self.updated),
            "machines_failed": len(self.failures),
            "units": sum(tick.units for tick in self.updated),
            "failures": [failure.to_dict() for failure in self.failures],
        }


class RealtimeTicker:
    def __init__(
        self,
        db: AsyncSession,
        broadcaster: Broadcaster | None = None,
        clock: ShiftClock | None = None,
        store: ShiftRecordStore | None = None,
    ):
        self.db = db
        self.broadcaster = broadcaster
        self.clock = clock or get_shift_clock()
        self.store = store or ShiftRecordStore(db, clock=self.clock)
        self.detector = ShiftTransitionDetector(self.store)

    async def tick(self, now: datetime | None = None) -> TickResult:
        now = self.store.resolve_now(now)
        running = await self._running_operations()
        result = TickResult(ticked_at=now)

        for operation in running:
            try:
                result.updated.append(
                    await self.update_machine(operation.machine_id, operation.operator_id, operation.start_time, now)
                )
            except Exception as exc:  # noqa: BLE001
                await self.db.rollback()
                error_type = exc.code if isinstance(exc, ShiftTrackError) else type(exc).__name__
                failure = PartialTickFailure(
                    str(exc),
                    machine_id=operation.machine_id,
                    operator_id=operation.operator_id,
                    error_type=error_type,
                )
                logger.warning(
                    "ticker.machine_failed",
                    machine_id=str(operation.machine_id),
                    operator_id=str(operation.operator_id),
                    error_type=error_type,
                    error=str(exc),
                )
                result.failures.append(failure)

        logger.info("ticker.complete", **{k: v for k, v in result.to_dict().items() if k != "failures"})
        return result

    async def force_update(self, machine_id: uuid.UUID, now: datetime | None = None) -> MachineTick:
        """Run one machine's update outside the periodic tick."""
        now = self.store.resolve_now(now)
        operation = (
            await self.db.execute(
                select(MachineOperation)
                .where(
                    MachineOperation.machine_id == machine_id,
                    MachineOperation.status == OperationStatus.ACTIVE.value,
                )
                .order_by(MachineOperation.start_time.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if operation is None:
            raise NotFound("No active operation for machine", machine_id=machine_id)
        return await self.update_machine(machine_id, operation.operator_id, operation.start_time, now)

    async def update_machine(
        self,
        machine_id: uuid.UUID,
        operator_id: uuid.UUID,
        operation_start: datetime,
        now: datetime,
    ) -> MachineTick:
        machine = await self._load_machine(machine_id)
        speed = float(machine.production_speed or 0.0) if machine.status == MachineStatus.RUNNING.value else 0.0

        settled = await settle_stale_record(self.store, machine_id, operator_id, operation_start, speed, now)
        outcome = await self.detector.check(machine_id, operator_id, now)
        record, units = await self.store.accumulate_since(
            outcome.record.shift_record_id,
            operation_start,
            now,
            speed,
            carry=True,
            detail={"machine_status": machine.status, "last_update": now.isoformat()},
        )
        if units > 0:
            await safe_publish(
                self.broadcaster,
                PRODUCTION_UPDATE,
                {
                    "machine_id": str(machine_id),
                    "operator_id": str(operator_id),
                    "total_production": record.total_production,
                    "production_speed": speed,
                    "shift_type": str(record.shift_type),
                    "shift_date": record.shift_date.isoformat(),
                    "timestamp": now.isoformat(),
                },
            )

        return MachineTick(
            machine_id=machine_id,
            operator_id=operator_id,
            shift_record_id=record.shift_record_id,
            units=units,
            total_production=int(record.total_production or 0),
            production_speed=speed,
            shift_changed=settled or outcome.shift_changed,
        )

    async def _load_machine(self, machine_id: uuid.UUID) -> Machine:
        machine = (
            await self.db.execute(
                select(Machine).where(Machine.machine_id == machine_id).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if machine is None:
            raise NotFound("Machine not found", machine_id=machine_id)
        return machine

    async def _running_operations(self):
        result = await self.db.execute(
            select(MachineOperation.machine_id, MachineOperation.operator_id, MachineOperation.start_time)
            .join(Machine, Machine.machine_id == MachineOperation.machine_id)
            .where(
                Machine.status == MachineStatus.RUNNING.value,
                Machine.is_active.is_(True),
                MachineOperation.status == OperationStatus.ACTIVE.value,
            )
            .order_by(MachineOperation.machine_id)
        )
        return result.all()
