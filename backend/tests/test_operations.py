"""
Tests for the machine operation lifecycle and the domain events it emits.
"""

from datetime import datetime

import pytest
from sqlalchemy import select

from core.errors import NotFound, OperationConflict
from db.models import Machine, MachineOperation, MachineStatusHistory, ShiftRecord
from production.operations import OperationLifecycle
from production.ticker import RealtimeTicker
from realtime.broadcast import MemoryBroadcaster
from realtime.events import EventBus, EventKind, ShiftEvent
from tests.conftest import MACHINE_ID, OPERATOR_ID, SECOND_MACHINE_ID, SUPERVISOR_ID


def at(hour: int, minute: int = 0, second: int = 0) -> datetime:
    return datetime(2026, 3, 10, hour, minute, second)


@pytest.mark.asyncio
class TestStartOperation:
    async def test_start_sets_machine_running_and_opens_record(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        operation = await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, notes="batch 7", now=at(8, 0))

        assert operation.status == "ACTIVE"
        assert operation.start_time == at(8, 0)
        machine = await test_db.get(Machine, MACHINE_ID)
        assert machine.status == "RUNNING"

        record = await lifecycle.store.current(MACHINE_ID, OPERATOR_ID, at(8, 0))
        assert record.total_production == 0
        assert record.last_accumulated_at == at(8, 0)

        history = (await test_db.execute(select(MachineStatusHistory))).scalars().all()
        assert [(h.previous_status, h.new_status) for h in history] == [("STOPPED", "RUNNING")]

    async def test_machine_in_use(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(8, 0))
        with pytest.raises(OperationConflict) as exc_info:
            await lifecycle.start_operation(MACHINE_ID, SUPERVISOR_ID, now=at(8, 5))
        assert exc_info.value.context["reason"] == "MACHINE_IN_USE"

    async def test_operator_busy(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(8, 0))
        with pytest.raises(OperationConflict) as exc_info:
            await lifecycle.start_operation(SECOND_MACHINE_ID, OPERATOR_ID, now=at(8, 5))
        assert exc_info.value.context["reason"] == "OPERATOR_BUSY"

    async def test_inactive_machine(self, test_db, seeded_db):
        seeded_db["machine"].is_active = False
        await test_db.commit()
        with pytest.raises(OperationConflict) as exc_info:
            await OperationLifecycle(test_db, bus=EventBus()).start_operation(MACHINE_ID, OPERATOR_ID, now=at(8, 0))
        assert exc_info.value.context["reason"] == "MACHINE_INACTIVE"

    async def test_unknown_machine(self, test_db, seeded_db):
        import uuid

        with pytest.raises(NotFound):
            await OperationLifecycle(test_db, bus=EventBus()).start_operation(uuid.uuid4(), OPERATOR_ID, now=at(8, 0))


@pytest.mark.asyncio
class TestEndOperation:
    async def test_end_settles_and_stops(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(8, 0))
        operation = await lifecycle.end_operation(MACHINE_ID, OPERATOR_ID, now=at(8, 30))

        assert operation.status == "COMPLETED"
        assert operation.end_time == at(8, 30)
        record = await lifecycle.store.current(MACHINE_ID, OPERATOR_ID, at(8, 30))
        assert record.total_production == 60

        # Nothing accrues after the operation ends
        result = await RealtimeTicker(test_db).tick(at(9, 0))
        assert result.updated == []

    async def test_only_owner_can_end_without_force(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(8, 0))
        with pytest.raises(OperationConflict):
            await lifecycle.end_operation(MACHINE_ID, SUPERVISOR_ID, now=at(8, 10))
        operation = await lifecycle.end_operation(MACHINE_ID, SUPERVISOR_ID, now=at(8, 10), force=True)
        assert operation.status == "COMPLETED"

    async def test_no_active_operation(self, test_db, seeded_db):
        with pytest.raises(NotFound):
            await OperationLifecycle(test_db, bus=EventBus()).end_operation(MACHINE_ID, OPERATOR_ID, now=at(8, 0))


@pytest.mark.asyncio
class TestStatusChange:
    async def test_status_change_across_boundary_archives_first(self, test_db, seeded_db):
        """Through the request path the DAY record is closed before the change lands."""
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(18, 0))

        await lifecycle.change_status(MACHINE_ID, "MAINTENANCE", operator_id=OPERATOR_ID, now=at(19, 0, 1))

        records = (
            await test_db.execute(
                select(ShiftRecord).order_by(ShiftRecord.start_time).execution_options(populate_existing=True)
            )
        ).scalars().all()
        day, night = records
        assert day.shift_type == "DAY"
        assert day.is_archived is True
        assert day.total_production == 120
        assert night.shift_type == "NIGHT"
        assert night.is_open
        assert night.total_production == 0

    async def test_stopped_time_does_not_produce(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(8, 0))
        await lifecycle.change_status(MACHINE_ID, "STOPPED", now=at(8, 10))
        await lifecycle.change_status(MACHINE_ID, "RUNNING", now=at(8, 40))
        await lifecycle.change_status(MACHINE_ID, "STOPPED", now=at(8, 50))

        record = await lifecycle.store.current(MACHINE_ID, OPERATOR_ID, at(8, 50))
        assert record.total_production == (10 + 10) * 2

    async def test_unknown_status(self, test_db, seeded_db):
        with pytest.raises(OperationConflict):
            await OperationLifecycle(test_db, bus=EventBus()).change_status(MACHINE_ID, "EXPLODED", now=at(8, 0))

    async def test_negative_speed(self, test_db, seeded_db):
        with pytest.raises(OperationConflict):
            await OperationLifecycle(test_db, bus=EventBus()).change_production_speed(MACHINE_ID, -1, now=at(8, 0))


@pytest.mark.asyncio
class TestEvents:
    async def test_default_bus_refreshes_metrics_and_broadcasts(self, test_db, seeded_db):
        broadcaster = MemoryBroadcaster()
        lifecycle = OperationLifecycle(test_db, broadcaster=broadcaster)
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(8, 0))
        await lifecycle.change_status(MACHINE_ID, "STOPPED", operator_id=OPERATOR_ID, now=at(8, 30))

        record = await lifecycle.store.current(MACHINE_ID, OPERATOR_ID, at(8, 30))
        # 07:00-08:00 stopped, 08:00-08:30 running
        assert record.efficiency == 33.33
        assert record.downtime == 60
        assert record.detail["machine_status"] == "STOPPED"

        assert [m["type"] for m in broadcaster.messages] == ["operation:started", "machine:status_changed"]
        assert broadcaster.of_type("machine:status_changed")[0]["status"] == "STOPPED"

    async def test_failing_handler_is_reported_not_raised(self, test_db, seeded_db):
        bus = EventBus()
        seen = []

        async def broken(event):
            raise RuntimeError("handler bug")

        async def recorder(event):
            seen.append(event.kind)

        bus.subscribe(broken)
        bus.subscribe(recorder, kinds=[EventKind.OPERATION_STARTED])

        operation = await OperationLifecycle(test_db, bus=bus).start_operation(MACHINE_ID, OPERATOR_ID, now=at(8, 0))

        assert operation.status == "ACTIVE"
        assert seen == [EventKind.OPERATION_STARTED]
        stored = await test_db.get(MachineOperation, operation.operation_id)
        assert stored is not None

    async def test_emit_filters_by_kind(self):
        import uuid

        bus = EventBus()
        seen = []

        async def recorder(event):
            seen.append(event.kind)

        bus.subscribe(recorder, kinds=[EventKind.SPEED_CHANGED])
        failures = await bus.emit(
            ShiftEvent(kind=EventKind.STATUS_CHANGED, machine_id=uuid.uuid4(), operator_id=None, occurred_at=at(8, 0))
        )
        assert failures == []
        assert seen == []
