"""
Shift Workers — boundary sweep and periodic metrics refresh.

archive_completed_shifts
  Schedule: crontab(minute=0, hour="7,19") plus a safety re-check
            crontab(minute=sweep_safety_minute) every hour
  Archives every open shift record whose window has fully elapsed. Records
  that fail are logged and reported; the rest are still archived.

refresh_open_shift_metrics
  Schedule: crontab(minute="*/15")
  Recomputes efficiency, downtime and quality counts for open records of the
  current window.

Queue: shifts
"""

import asyncio

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.shifts.archive_completed_shifts",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def archive_completed_shifts(self):
    """Boundary sweep: archive every shift record whose window has ended."""
    run_id = self.request.id or "manual"

    async def _sweep():
        from db.session import build_engine
        from shifts.archival import ArchivalService

        engine = build_engine()
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                result = await ArchivalService(db).sweep_due()
            return {**result.to_dict(), "run_id": run_id}
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_sweep())
    except Exception as exc:  # noqa: BLE001
        logger.error("sweep.run_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.shifts.refresh_open_shift_metrics",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def refresh_open_shift_metrics(self):
    """Refresh efficiency / downtime / quality metrics of current-window records."""
    run_id = self.request.id or "manual"

    async def _refresh():
        from db.models import ShiftRecord
        from db.session import build_engine
        from production.metrics import refresh_shift_metrics
        from shifts.store import ShiftRecordStore

        engine = build_engine()
        refreshed = 0
        failed = 0
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                store = ShiftRecordStore(db)
                now = store.resolve_now(None)
                window = store.clock.window(now)
                result = await db.execute(
                    select(ShiftRecord.machine_id, ShiftRecord.operator_id).where(
                        ShiftRecord.is_active.is_(True),
                        ShiftRecord.is_archived.is_(False),
                        ShiftRecord.shift_date == window.shift_date,
                        ShiftRecord.shift_type == window.shift_type.value,
                    )
                )
                for machine_id, operator_id in result.all():
                    try:
                        await refresh_shift_metrics(store, machine_id, operator_id, now)
                        refreshed += 1
                    except Exception as exc:  # noqa: BLE001
                        failed += 1
                        await db.rollback()
                        logger.warning(
                            "shift_metrics.refresh_failed",
                            machine_id=str(machine_id),
                            operator_id=str(operator_id),
                            shift_type=window.shift_type.value,
                            shift_date=window.shift_date.isoformat(),
                            error=str(exc),
                        )

            summary = {
                "status": "partial" if failed else "success",
                "refreshed": refreshed,
                "failed": failed,
                "run_id": run_id,
            }
            logger.info("shift_metrics.refresh_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_refresh())
    except Exception as exc:  # noqa: BLE001
        logger.error("shift_metrics.run_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
