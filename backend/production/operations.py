"""
Machine operation lifecycle — start / end operation, status and speed changes.

Every mutation follows the same order:
  1. transition detector for the operating (machine, operator) pair, so a new
     shift's counters start from zero before anything else is written; a
     record left open from an earlier window is first settled up to its end
  2. settle production accrued since the record's watermark at the speed and
     status in effect until now
  3. persist the request's own effects (operation row, machine status,
     status history) and commit
  4. emit a ShiftEvent (metrics refresh + broadcast)
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import NotFound, OperationConflict
from db.models import (
    Machine,
    MachineOperation,
    MachineStatus,
    MachineStatusHistory,
    OperationStatus,
    Operator,
    ShiftRecord,
)
from production.ticker import settle_stale_record
from realtime.broadcast import Broadcaster
from realtime.events import EventBus, EventKind, ShiftEvent, default_event_bus
from shifts.clock import ShiftClock, get_shift_clock
from shifts.detector import ShiftTransitionDetector
from shifts.store import ProductionDelta, ShiftRecordStore

logger = structlog.get_logger()


class OperationLifecycle:
    def __init__(
        self,
        db: AsyncSession,
        broadcaster: Broadcaster | None = None,
        clock: ShiftClock | None = None,
        bus: EventBus | None = None,
    ):
        self.db = db
        self.clock = clock or get_shift_clock()
        self.store = ShiftRecordStore(db, clock=self.clock)
        self.detector = ShiftTransitionDetector(self.store)
        self.bus = bus or default_event_bus(self.store, broadcaster)

    # ── Operations ──────────────────────────────────────────────────────

    async def start_operation(
        self,
        machine_id: uuid.UUID,
        operator_id: uuid.UUID,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> MachineOperation:
        now = self.store.resolve_now(now)
        machine = await self._load_machine(machine_id)
        operator = await self.db.get(Operator, operator_id)
        if operator is None:
            raise NotFound("Operator not found", operator_id=operator_id)
        if not machine.is_active:
            raise OperationConflict("Machine is not active", reason="MACHINE_INACTIVE", machine_id=machine_id)
        if await self._active_operation(machine_id=machine_id) is not None:
            raise OperationConflict("Machine is already in use", reason="MACHINE_IN_USE", machine_id=machine_id)
        if await self._active_operation(operator_id=operator_id) is not None:
            raise OperationConflict(
                "Operator already has an active operation",
                reason="OPERATOR_BUSY",
                operator_id=operator_id,
            )

        outcome = await self.detector.check(machine_id, operator_id, now)
        # Nothing was produced for this operator before the operation existed.
        await self.store.accumulate(outcome.record.shift_record_id, ProductionDelta(accumulated_at=now))

        operation = MachineOperation(
            operation_id=uuid.uuid4(),
            machine_id=machine_id,
            operator_id=operator_id,
            status=OperationStatus.ACTIVE.value,
            start_time=now,
            notes=notes,
        )
        self.db.add(operation)
        previous_status = machine.status
        self._record_status(machine, MachineStatus.RUNNING.value, operator_id, now, reason="Operation started")
        await self.db.commit()

        logger.info(
            "operation.started",
            operation_id=str(operation.operation_id),
            machine_id=str(machine_id),
            operator_id=str(operator_id),
            shift_type=outcome.shift_type.value,
        )
        await self.bus.emit(
            ShiftEvent(
                kind=EventKind.OPERATION_STARTED,
                machine_id=machine_id,
                operator_id=operator_id,
                occurred_at=now,
                payload={
                    "operation_id": str(operation.operation_id),
                    "previous_status": previous_status,
                    "status": machine.status,
                },
            )
        )
        return operation

    async def end_operation(
        self,
        machine_id: uuid.UUID,
        operator_id: uuid.UUID,
        notes: str | None = None,
        now: datetime | None = None,
        force: bool = False,
    ) -> MachineOperation:
        """Close the machine's active operation. ``force`` lets a supervisor end someone else's."""
        now = self.store.resolve_now(now)
        machine = await self._load_machine(machine_id)
        operation = await self._active_operation(machine_id=machine_id)
        if operation is None:
            raise NotFound("No active operation for machine", machine_id=machine_id)
        if operation.operator_id != operator_id and not force:
            raise OperationConflict(
                "Operation belongs to another operator",
                reason="NOT_OPERATION_OWNER",
                machine_id=machine_id,
                operator_id=operator_id,
            )

        await self._settle(machine, operation, now)

        operation.status = OperationStatus.COMPLETED.value
        operation.end_time = now
        if notes:
            operation.notes = notes
        self._record_status(machine, MachineStatus.STOPPED.value, operator_id, now, reason="Operation ended")
        await self.db.commit()

        logger.info(
            "operation.ended",
            operation_id=str(operation.operation_id),
            machine_id=str(machine_id),
            operator_id=str(operation.operator_id),
        )
        await self.bus.emit(
            ShiftEvent(
                kind=EventKind.OPERATION_ENDED,
                machine_id=machine_id,
                operator_id=operation.operator_id,
                occurred_at=now,
                payload={"operation_id": str(operation.operation_id), "status": machine.status},
            )
        )
        return operation

    async def change_status(
        self,
        machine_id: uuid.UUID,
        new_status: str,
        operator_id: uuid.UUID | None = None,
        reason: str | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Machine:
        try:
            new_status = MachineStatus(new_status).value
        except ValueError:
            raise OperationConflict(
                f"Unknown machine status {new_status!r}", reason="INVALID_STATUS", machine_id=machine_id
            ) from None

        now = self.store.resolve_now(now)
        machine = await self._load_machine(machine_id)
        operation = await self._active_operation(machine_id=machine_id)
        if operation is not None:
            await self._settle(machine, operation, now)

        previous_status = machine.status
        self._record_status(machine, new_status, operator_id, now, reason=reason, notes=notes)
        await self.db.commit()

        logger.info(
            "machine.status_changed",
            machine_id=str(machine_id),
            previous_status=previous_status,
            new_status=new_status,
        )
        await self.bus.emit(
            ShiftEvent(
                kind=EventKind.STATUS_CHANGED,
                machine_id=machine_id,
                operator_id=operation.operator_id if operation else operator_id,
                occurred_at=now,
                payload={"previous_status": previous_status, "status": new_status, "reason": reason},
            )
        )
        return machine

    async def change_production_speed(
        self,
        machine_id: uuid.UUID,
        production_speed: float,
        operator_id: uuid.UUID | None = None,
        now: datetime | None = None,
    ) -> Machine:
        if production_speed is None or production_speed < 0:
            raise OperationConflict(
                "Production speed must be zero or positive", reason="INVALID_SPEED", machine_id=machine_id
            )

        now = self.store.resolve_now(now)
        machine = await self._load_machine(machine_id)
        operation = await self._active_operation(machine_id=machine_id)
        if operation is not None:
            # Units up to now are counted at the old speed before it is replaced.
            await self._settle(machine, operation, now)

        previous_speed = float(machine.production_speed or 0.0)
        machine.production_speed = float(production_speed)
        await self.db.commit()

        logger.info(
            "machine.speed_changed",
            machine_id=str(machine_id),
            previous_speed=previous_speed,
            production_speed=machine.production_speed,
        )
        await self.bus.emit(
            ShiftEvent(
                kind=EventKind.SPEED_CHANGED,
                machine_id=machine_id,
                operator_id=operation.operator_id if operation else operator_id,
                occurred_at=now,
                payload={"previous_speed": previous_speed, "production_speed": machine.production_speed},
            )
        )
        return machine

    # ── Helpers ─────────────────────────────────────────────────────────

    async def _settle(self, machine: Machine, operation: MachineOperation, now: datetime) -> ShiftRecord:
        """Detector check, then count production up to ``now`` at the speed in effect."""
        speed = float(machine.production_speed or 0.0) if machine.status == MachineStatus.RUNNING.value else 0.0
        await settle_stale_record(self.store, machine.machine_id, operation.operator_id, operation.start_time, speed, now)
        outcome = await self.detector.check(machine.machine_id, operation.operator_id, now)
        record, _ = await self.store.accumulate_since(outcome.record.shift_record_id, operation.start_time, now, speed)
        return record

    def _record_status(
        self,
        machine: Machine,
        new_status: str,
        operator_id: uuid.UUID | None,
        now: datetime,
        reason: str | None = None,
        notes: str | None = None,
    ) -> None:
        self.db.add(
            MachineStatusHistory(
                id=uuid.uuid4(),
                machine_id=machine.machine_id,
                operator_id=operator_id,
                previous_status=machine.status,
                new_status=new_status,
                reason=reason,
                notes=notes,
                created_at=now,
            )
        )
        machine.status = new_status

    async def _load_machine(self, machine_id: uuid.UUID) -> Machine:
        machine = (
            await self.db.execute(
                select(Machine).where(Machine.machine_id == machine_id).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if machine is None:
            raise NotFound("Machine not found", machine_id=machine_id)
        return machine

    async def _active_operation(
        self,
        machine_id: uuid.UUID | None = None,
        operator_id: uuid.UUID | None = None,
    ) -> MachineOperation | None:
        query = select(MachineOperation).where(MachineOperation.status == OperationStatus.ACTIVE.value)
        if machine_id is not None:
            query = query.where(MachineOperation.machine_id == machine_id)
        if operator_id is not None:
            query = query.where(MachineOperation.operator_id == operator_id)
        result = await self.db.execute(
            query.order_by(MachineOperation.start_time.desc()).execution_options(populate_existing=True)
        )
        return result.scalars().first()
