"""Celery configuration for scheduled jobs."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from metricpulse.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("metricpulse", broker=broker_url, backend=backend_url, include=["metricpulse.jobs.insights"])
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "insights-tick": {
        "task": "metricpulse.jobs.insights.run_tick",
        "schedule": crontab(minute=0),
    },
}


@celery_app.task(name="metricpulse.jobs.insights.run_tick")
def run_tick_task():  # pragma: no cover - executed by worker
    import asyncio

    from metricpulse.jobs.insights import run_tick

    summary = asyncio.run(run_tick())
    return {
        "run_id": summary.run_id,
        "status": summary.status,
        "total": summary.total,
        "successful": summary.successful,
        "failed": summary.failed,
        "skipped": summary.skipped,
    }


@celery_app.task(name="metricpulse.jobs.insights.run_for_user")
def run_for_user_task(user_id: str, force: bool = False):  # pragma: no cover - executed by worker
    import asyncio

    from metricpulse.jobs.insights import run_for_user

    result = asyncio.run(run_for_user(user_id, force=force))
    return {"user_id": result.user_id, "success": result.success, "reason": result.reason}
