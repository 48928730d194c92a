"""
SchedulerAutoStart Middleware - keeps the mail scheduler worker alive.

On every request outside the skip list, asks the mail scheduler control
plane whether a worker is running and starts one if not. This avoids a
separate always-on process supervisor: ordinary traffic brings the worker
back after a crash or a deploy.

The check is a file read plus a PID liveness check, and the start is a detached
spawn, so the request is never held up. Failures are logged and swallowed:
at worst mail delivery is delayed.
"""

from collections.abc import Sequence

from fastapi import Request
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.infrastructure.observability.logging import get_logger, log_action
from app.services.mail_scheduler_service import MailSchedulerService, mail_scheduler_service

logger = get_logger(__name__)


class SchedulerAutoStartMiddleware(BaseHTTPMiddleware):
    """
    Auto-start the mail scheduler worker on ordinary requests.

    Skipped paths (prefix match) default to the unauthenticated/setup and
    static routes from settings.MAIL_SCHEDULER_AUTOSTART_SKIP_PATHS.
    """

    def __init__(
        self,
        app,
        scheduler: MailSchedulerService | None = None,
        skip_paths: Sequence[str] | None = None,
        enabled: bool | None = None,
    ):
        super().__init__(app)
        self.scheduler = scheduler or mail_scheduler_service
        self.skip_paths = tuple(
            settings.MAIL_SCHEDULER_AUTOSTART_SKIP_PATHS if skip_paths is None else skip_paths
        )
        self.enabled = settings.MAIL_SCHEDULER_AUTOSTART_ENABLED if enabled is None else enabled

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if self.enabled and not self._should_skip(path):
            await self._check_and_start(path)

        return await call_next(request)

    def _should_skip(self, path: str) -> bool:
        return any(path.startswith(skip) for skip in self.skip_paths)

    async def _check_and_start(self, path: str) -> None:
        """Start the worker if it is not running. Never raises."""
        try:
            started = await run_in_threadpool(self._ensure_running)
        except Exception as e:
            logger.error("Scheduler auto-start error", error=str(e), path=path)
            return

        if started is None:
            return

        if started:
            logger.info("Mail scheduler auto-started", path=path)
            log_action(
                "mail_scheduler",
                "SchedulerAutoStartMiddleware",
                "checkAndStart",
                f"Scheduler auto-started on request to {path}",
            )
        else:
            logger.info("Mail scheduler auto-start attempted, worker not started", path=path)

    def _ensure_running(self) -> bool | None:
        """None if already running, else whether a worker was started."""
        if self.scheduler.is_running():
            return None
        return self.scheduler.auto_start()
