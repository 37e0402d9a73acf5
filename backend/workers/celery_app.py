"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "shifttrack",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.production", "workers.shifts"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Shift boundaries are plant wall-clock hours, so beat runs in plant time.
    timezone=settings.plant_timezone,
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.production.*": {"queue": "realtime"},
        "workers.shifts.*": {"queue": "shifts"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Realtime production ────────────────────────────────────
        "production-tick": {
            "task": "workers.production.run_production_tick",
            "schedule": settings.ticker_interval_seconds,
            "options": {"queue": "realtime", "expires": settings.ticker_interval_seconds},
        },
        # ── Shift boundaries ───────────────────────────────────────
        "archive-completed-shifts-at-boundary": {
            "task": "workers.shifts.archive_completed_shifts",
            "schedule": crontab(
                minute=0,
                hour=f"{settings.day_shift_start_hour},{settings.night_shift_start_hour}",
            ),
            "options": {"queue": "shifts"},
        },
        "archive-completed-shifts-safety-check": {
            "task": "workers.shifts.archive_completed_shifts",
            "schedule": crontab(minute=settings.sweep_safety_minute),
            "options": {"queue": "shifts"},
        },
        # ── Shift metrics ──────────────────────────────────────────
        "refresh-shift-metrics-15m": {
            "task": "workers.shifts.refresh_open_shift_metrics",
            "schedule": crontab(minute="*/15"),
            "options": {"queue": "shifts"},
        },
    },
)
