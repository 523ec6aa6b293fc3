"""
Background worker entrypoint for credential upkeep.

The job is picked from the first CLI argument or the WORKER_JOB environment
variable:

    crm-chat-worker token_refresh       # sweep on TOKEN_SWEEP_INTERVAL_MINUTES
    crm-chat-worker token_refresh_once  # one sweep, then exit
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.token_refresh_job import run_token_refresh_once, start_token_refresh_scheduler

logger = get_logger(__name__)

DEFAULT_JOB = "token_refresh"

JobCoroutine = Callable[[], Awaitable[None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "token_refresh": start_token_refresh_scheduler,
    "token_refresh_once": run_token_refresh_once,
}


def _normalize(name: str) -> str:
    return name.strip().lower().replace("-", "_")


def _resolve_job_name(argv: list[str] | None = None) -> str:
    args = sys.argv[1:] if argv is None else argv
    if args:
        return _normalize(args[0])
    return _normalize(os.getenv("WORKER_JOB", DEFAULT_JOB))


async def run_worker(job_name: str | None = None) -> None:
    """
    Run one registered job until it returns.

    Raises:
        ValueError: If the job name is not registered
    """
    name = _normalize(job_name or _resolve_job_name())
    job = JOB_REGISTRY.get(name)
    if job is None:
        raise ValueError(
            f"Unknown worker job '{name}'. Available jobs: {', '.join(sorted(JOB_REGISTRY))}"
        )

    logger.info("Starting background worker", job=name, environment=settings.environment)
    await job()


def main() -> None:
    setup_logging(settings.LOG_LEVEL)
    try:
        asyncio.run(run_worker(_resolve_job_name()))
    except KeyboardInterrupt:
        logger.info("Background worker stopped")


if __name__ == "__main__":
    main()
