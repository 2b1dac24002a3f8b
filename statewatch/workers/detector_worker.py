from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from statewatch.core.config import get_settings
from statewatch.core.logging import configure_logging
from statewatch.services.detector import run_detector

logger = logging.getLogger(__name__)


async def run_detector_job(ctx, tenant_id: str | None = None, since: str | None = None) -> dict[str, Any]:
    # On-demand pass; `since` travels through the queue as an ISO 8601 string.
    since_at = datetime.fromisoformat(since) if since else None
    summary = await run_detector(tenant_id=tenant_id, since=since_at)
    logger.info(
        "detector_job_completed job_id=%s invocation_id=%s errors=%s",
        ctx.get("job_id"),
        summary.invocation_id,
        summary.errors,
    )
    return summary.as_dict()


async def run_scheduled_detector(ctx) -> dict[str, Any]:
    # Daily batch over every tenant; each (tenant, entity_type) resumes from its watermark.
    summary = await run_detector()
    return summary.as_dict()


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("detector_worker_started queue=%s", get_settings().detector_queue_name)


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.detector_queue_name
    # Retries come from the next schedule, not from arq re-running a failed pass.
    max_tries = 1
    functions = [run_detector_job]
    cron_jobs = [
        cron(
            run_scheduled_detector,
            hour={settings.detector_cron_hour},
            minute={settings.detector_cron_minute},
            unique=True,
        )
    ]
    on_startup = _startup
