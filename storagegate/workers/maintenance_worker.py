from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from storagegate.core.config import get_settings
from storagegate.core.logging import configure_logging
from storagegate.services.maintenance import run_maintenance_task


logger = logging.getLogger(__name__)


async def reset_monthly_alerts_job(ctx) -> int:
    deleted = await run_maintenance_task("reset_monthly_alerts")
    logger.info("maintenance_job_done task=reset_monthly_alerts deleted=%s", deleted)
    return deleted


async def prune_sessions_job(ctx) -> int:
    deleted = await run_maintenance_task("prune_sessions")
    logger.info("maintenance_job_done task=prune_sessions deleted=%s", deleted)
    return deleted


async def recalculate_storage_job(ctx) -> int:
    recalculated = await run_maintenance_task("recalculate_storage")
    logger.info("maintenance_job_done task=recalculate_storage recalculated=%s", recalculated)
    return recalculated


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("maintenance_worker_started")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.maintenance_queue_name
    functions = [reset_monthly_alerts_job, prune_sessions_job, recalculate_storage_job]
    # Cron times are UTC; every job is idempotent so a missed or repeated run is harmless.
    cron_jobs = [
        cron(reset_monthly_alerts_job, day=1, hour=settings.monthly_reset_hour, minute=0),
        cron(prune_sessions_job, hour=settings.session_cleanup_hour, minute=0),
        cron(recalculate_storage_job, hour=settings.recalculation_hour, minute=0),
    ]
    on_startup = _startup
