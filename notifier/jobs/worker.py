"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate scheduler.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from notifier.config import settings
from notifier.db.documents import document_store
from notifier.db.pool import db_pool
from notifier.infrastructure.observability.logging import get_logger, setup_logging
from notifier.jobs.notification_job import execute_notification_check
from notifier.jobs.notification_loop import start_notification_scheduler
from notifier.services.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[object]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "notification_loop": start_notification_scheduler,
    "notification_check": execute_notification_check,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "notification_loop").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job with the pool and Redis available."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)

    await db_pool.initialize()
    try:
        await document_store.ensure_schema()
        await fast_redis.initialize()
        await JOB_REGISTRY[name]()
    finally:
        await fast_redis.close()
        await db_pool.close()
        logger.info("Background worker stopped", job=name)


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
