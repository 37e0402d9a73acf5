"""
Production Ticker Worker — incremental production for running machines.

Schedule: every ticker_interval_seconds (default 30s)
Queue: realtime

A tick that fails as a whole is not retried; the next scheduled tick picks up
from each record's watermark, so no production is lost or double counted.
Per-machine failures are reported on the tick summary.
"""

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workers.celery_app import celery_app

logger = structlog.get_logger()


async def _with_ticker(callback):
    from db.session import build_engine
    from production.ticker import RealtimeTicker
    from realtime.broadcast import RedisBroadcaster

    engine = build_engine()
    broadcaster = RedisBroadcaster()
    try:
        async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with async_session() as db:
            return await callback(RealtimeTicker(db, broadcaster=broadcaster))
    finally:
        await broadcaster.aclose()
        await engine.dispose()


@celery_app.task(
    name="workers.production.run_production_tick",
    bind=True,
    acks_late=True,
    ignore_result=True,
)
def run_production_tick(self):
    """Advance every running machine's shift total since its last update."""
    run_id = self.request.id or "manual"

    async def _tick(ticker):
        result = await ticker.tick()
        return {**result.to_dict(), "run_id": run_id}

    try:
        return asyncio.run(_with_ticker(_tick))
    except Exception as exc:  # noqa: BLE001
        logger.error("ticker.run_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise


@celery_app.task(
    name="workers.production.force_machine_update",
    bind=True,
    max_retries=2,
    default_retry_delay=10,
    acks_late=True,
)
def force_machine_update(self, machine_id: str):
    """On-demand update of one machine, outside the periodic tick."""
    import uuid

    async def _force(ticker):
        machine_tick = await ticker.force_update(uuid.UUID(machine_id))
        logger.info("ticker.forced_update", **machine_tick.to_dict())
        return machine_tick.to_dict()

    try:
        return asyncio.run(_with_ticker(_force))
    except Exception as exc:  # noqa: BLE001
        logger.error("ticker.forced_update_failed", machine_id=machine_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
