"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate job entrypoint. The process
exit status is the job's return code.

    python -m app.jobs.worker mail_scheduler
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.mail_scheduler_job import run_mail_scheduler

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[int | None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "mail_scheduler": run_mail_scheduler,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "mail_scheduler").strip().lower()


async def run_worker(job_name: str | None = None) -> int:
    """Run the requested background job and return its exit status."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name, pid=os.getpid())
    result = await JOB_REGISTRY[name]()
    return result or 0


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    sys.exit(asyncio.run(run_worker(job_name)))


if __name__ == "__main__":
    main()
