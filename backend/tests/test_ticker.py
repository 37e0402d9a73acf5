"""
Tests for the realtime ticker: incremental totals, speed changes, boundary
crossings and per-machine failure isolation.
"""

from datetime import datetime

import pytest
from sqlalchemy import select

from core.errors import NotFound
from db.models import ArchiveEntry, ShiftRecord
from production.operations import OperationLifecycle
from production.ticker import RealtimeTicker
from realtime.broadcast import MemoryBroadcaster
from realtime.events import EventBus
from shifts.store import ShiftRecordStore
from tests.conftest import MACHINE_ID, OPERATOR_ID, SECOND_MACHINE_ID, SUPERVISOR_ID, seed_plant


def at(hour: int, minute: int = 0, second: int = 0, day: int = 10) -> datetime:
    return datetime(2026, 3, day, hour, minute, second)


@pytest.mark.asyncio
class TestTicker:
    async def test_ticks_and_speed_change(self, test_db, seeded_db):
        """Speed 2 from 07:00, ticks at 07:05 / 07:10, speed 5 from 07:10, tick at 07:15."""
        broadcaster = MemoryBroadcaster()
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        ticker = RealtimeTicker(test_db, broadcaster=broadcaster)

        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(7, 0))

        first = await ticker.tick(at(7, 5))
        assert [t.total_production for t in first.updated] == [10]

        second = await ticker.tick(at(7, 10))
        assert [t.units for t in second.updated] == [10]
        assert second.updated[0].total_production == 20

        await lifecycle.change_production_speed(MACHINE_ID, 5.0, now=at(7, 10))

        third = await ticker.tick(at(7, 15))
        assert third.updated[0].units == 25
        assert third.updated[0].total_production == 45

        totals = [p["total_production"] for p in broadcaster.of_type("production:update")]
        assert totals == [10, 20, 45]

    async def test_speed_change_settles_at_old_speed(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        ticker = RealtimeTicker(test_db)
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(7, 0))
        await ticker.tick(at(7, 5))

        # No tick between 07:05 and the change at 07:12: 7 minutes at speed 2
        await lifecycle.change_production_speed(MACHINE_ID, 10.0, now=at(7, 12))
        record = await ticker.store.current(MACHINE_ID, OPERATOR_ID, at(7, 12))
        assert record.total_production == 10 + 14

        result = await ticker.tick(at(7, 13))
        assert result.updated[0].units == 10
        assert result.updated[0].total_production == 34

    async def test_fractional_units_carry_between_ticks(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        ticker = RealtimeTicker(test_db)
        await lifecycle.change_production_speed(MACHINE_ID, 1.0, now=at(7, 0))
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(7, 0))

        for second in (30, 60, 90, 120):
            result = await ticker.tick(at(7, second // 60, second % 60))
        assert result.updated[0].total_production == 2

    async def test_stopped_machines_are_skipped(self, test_db, seeded_db):
        result = await RealtimeTicker(test_db).tick(at(8, 0))
        assert result.updated == []
        assert result.status == "no_data"

    async def test_boundary_crossing_settles_and_starts_new_window(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        ticker = RealtimeTicker(test_db)
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(18, 0))
        await ticker.tick(at(18, 50))

        result = await ticker.tick(at(19, 5))
        tick = result.updated[0]
        assert tick.shift_changed is True
        # 19:00 - 19:05 at speed 2
        assert tick.total_production == 10

        day_record = (
            await test_db.execute(
                select(ShiftRecord).where(ShiftRecord.shift_type == "DAY").execution_options(populate_existing=True)
            )
        ).scalar_one()
        # 18:00 - 19:00 at speed 2, the last ten minutes settled at the crossing
        assert day_record.total_production == 120
        assert day_record.is_archived is True
        entry = (
            await test_db.execute(select(ArchiveEntry).where(ArchiveEntry.shift_record_id == day_record.shift_record_id))
        ).scalar_one()
        assert '"total_production":120' in entry.snapshot

    async def test_one_machine_failure_does_not_stop_tick(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(7, 0))
        await lifecycle.start_operation(SECOND_MACHINE_ID, SUPERVISOR_ID, now=at(7, 0))

        class FlakyTicker(RealtimeTicker):
            async def update_machine(self, machine_id, operator_id, operation_start, now):
                if machine_id == MACHINE_ID:
                    raise RuntimeError("sensor offline")
                return await super().update_machine(machine_id, operator_id, operation_start, now)

        result = await FlakyTicker(test_db).tick(at(7, 10))

        assert result.status == "partial"
        assert [t.machine_id for t in result.updated] == [SECOND_MACHINE_ID]
        assert result.updated[0].total_production == 10
        assert len(result.failures) == 1
        failure = result.failures[0].to_dict()
        assert failure["error"] == "partial_tick_failure"
        assert failure["machine_id"] == str(MACHINE_ID)
        assert failure["error_type"] == "RuntimeError"

    async def test_force_update(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(7, 0))

        machine_tick = await RealtimeTicker(test_db).force_update(MACHINE_ID, now=at(7, 30))
        assert machine_tick.units == 60
        assert machine_tick.total_production == 60

    async def test_force_update_without_operation(self, test_db, seeded_db):
        with pytest.raises(NotFound):
            await RealtimeTicker(test_db).force_update(SECOND_MACHINE_ID, now=at(7, 30))

    async def test_broadcast_outage_does_not_fail_tick(self, test_db, seeded_db):
        class DownBroadcaster(MemoryBroadcaster):
            async def publish(self, event_type, payload):
                raise ConnectionError("redis unavailable")

        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(7, 0))

        result = await RealtimeTicker(test_db, broadcaster=DownBroadcaster()).tick(at(7, 5))
        assert result.status == "success"
        assert result.updated[0].total_production == 10


@pytest.mark.asyncio
class TestConcurrentSettle:
    async def test_speed_change_during_tick_is_not_double_counted(self, session_factory):
        """A request settles 07:00-07:10 while the tick for 07:10 is mid-write."""
        async with session_factory() as db:
            await seed_plant(db)
            await OperationLifecycle(db, bus=EventBus()).start_operation(MACHINE_ID, OPERATOR_ID, now=at(7, 0))

        class SpeedChangeRacingStore(ShiftRecordStore):
            raced = False

            async def get(self, shift_record_id):
                loaded = await super().get(shift_record_id)
                if not self.raced:
                    self.raced = True
                    async with session_factory() as other:
                        await OperationLifecycle(other, bus=EventBus()).change_production_speed(
                            MACHINE_ID, 5.0, now=at(7, 10)
                        )
                return loaded

        async with session_factory() as db:
            store = SpeedChangeRacingStore(db)
            result = await RealtimeTicker(db, store=store).tick(at(7, 10))
            assert store.raced
            assert result.failures == []
            assert result.updated[0].units == 0
            assert result.updated[0].total_production == 20

        async with session_factory() as db:
            stored = (await db.execute(select(ShiftRecord))).scalar_one()
            assert stored.total_production == 20
            assert stored.last_accumulated_at == at(7, 10)

            later = await RealtimeTicker(db).tick(at(7, 15))
            assert later.updated[0].total_production == 20 + 25

    async def test_tick_after_request_settle_counts_only_the_remainder(self, test_db, seeded_db):
        lifecycle = OperationLifecycle(test_db, bus=EventBus())
        await lifecycle.start_operation(MACHINE_ID, OPERATOR_ID, now=at(7, 0))
        await lifecycle.change_production_speed(MACHINE_ID, 2.0, now=at(7, 10))

        result = await RealtimeTicker(test_db).tick(at(7, 10))

        assert result.updated[0].units == 0
        assert result.updated[0].total_production == 20
