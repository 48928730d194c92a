"""
Mail Scheduler Job - background process that drains the mail job queue.

Runs as its own OS process (spawned by MailSchedulerService.start()) and is
the only writer of mail job state. Each cycle: check the stop marker, write a
heartbeat, fetch a small batch of pending jobs, deliver them one by one.
Exits cleanly when the stop marker appears; survives transient failures
with a backoff.
"""

import asyncio
import os
import signal
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, log_action
from app.models.domain.mail_job_domain import MailJob
from app.repositories.mail_job_repository import mail_job_repository
from app.services.mail_delivery_service import MailDeliveryService
from app.services.mail_scheduler_service import MailSchedulerService, utc_now_iso

logger = get_logger(__name__)

LOG_CATEGORY = "mail_scheduler"
LOG_SOURCE = "MailSchedulerWorker"

DELIVERY_FAILED_MESSAGE = "Failed to send email"


class JobStore(Protocol):
    async def fetch_pending(self, limit: int) -> list[MailJob]: ...

    async def mark_processing(self, job_id: int) -> bool: ...

    async def mark_completed(self, job_id: int) -> bool: ...

    async def mark_failed(self, job_id: int, reason: str) -> bool: ...


class MailTransport(Protocol):
    async def deliver(
        self, recipient: str, subject: str, template_name: str, template_data: dict[str, Any]
    ) -> bool: ...


class MailSchedulerError(Exception):
    """Fatal worker error (startup)."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class MailSchedulerWorker:
    """
    Single sequential worker draining mail_jobs.

    Suspension points: idle sleep, delay between jobs, delay between cycles,
    error backoff. All of them poll the stop marker in short slices so a stop
    request is honoured within one poll interval.
    """

    def __init__(
        self,
        control: MailSchedulerService,
        job_store: JobStore,
        transport: MailTransport,
        *,
        batch_size: int = 5,
        idle_seconds: float = 10.0,
        job_delay_seconds: float = 1.0,
        cycle_delay_seconds: float = 5.0,
        error_backoff_seconds: float = 30.0,
        stop_poll_seconds: float = 1.0,
        error_alert_threshold: int = 5,
        pid: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.control = control
        self.job_store = job_store
        self.transport = transport
        self.batch_size = batch_size
        self.idle_seconds = idle_seconds
        self.job_delay_seconds = job_delay_seconds
        self.cycle_delay_seconds = cycle_delay_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.stop_poll_seconds = max(stop_poll_seconds, 0.01)
        self.error_alert_threshold = error_alert_threshold
        self.pid = pid if pid is not None else os.getpid()
        self._sleep_fn = sleep

        self.started_at: str | None = None
        self.jobs_processed = 0
        self.jobs_failed = 0
        self.cycle_count = 0
        self.consecutive_errors = 0

        self._shutdown_requested = False
        self._lock_lost = False

    @classmethod
    def from_settings(cls, control: MailSchedulerService | None = None) -> "MailSchedulerWorker":
        return cls(
            control=control or MailSchedulerService.from_settings(),
            job_store=mail_job_repository,
            transport=MailDeliveryService.from_settings(),
            batch_size=settings.MAIL_SCHEDULER_BATCH_SIZE,
            idle_seconds=settings.MAIL_SCHEDULER_IDLE_SECONDS,
            job_delay_seconds=settings.MAIL_SCHEDULER_JOB_DELAY_SECONDS,
            cycle_delay_seconds=settings.MAIL_SCHEDULER_CYCLE_DELAY_SECONDS,
            error_backoff_seconds=settings.MAIL_SCHEDULER_ERROR_BACKOFF_SECONDS,
            stop_poll_seconds=settings.MAIL_SCHEDULER_STOP_POLL_SECONDS,
            error_alert_threshold=settings.MAIL_SCHEDULER_ERROR_ALERT_THRESHOLD,
        )

    # =================================================================
    # LIFECYCLE
    # =================================================================

    def request_shutdown(self) -> None:
        """In-process stop request (signal handlers)."""
        logger.info("Shutdown requested by signal", pid=self.pid)
        self._shutdown_requested = True

    def startup(self) -> None:
        """
        Claim the lock marker and write the initial status.

        Raises:
            MailSchedulerError: If another worker holds the lock or the status cannot be written
        """
        if not self.control.acquire_lock(self.pid):
            raise MailSchedulerError(
                "Another mail scheduler worker is already running", operation="acquire_lock"
            )

        self.started_at = utc_now_iso()
        written = self.control.reset_status(
            pid=self.pid,
            started_at=self.started_at,
            stopped_at=None,
            last_heartbeat_at=None,
            jobs_processed=0,
            jobs_failed=0,
            cycle_count=0,
        )
        if not written:
            self.control.release_lock(self.pid)
            raise MailSchedulerError("Failed to write initial worker status", operation="write_status")

        logger.info(
            "Mail scheduler worker started",
            pid=self.pid,
            batch_size=self.batch_size,
            idle_seconds=self.idle_seconds,
        )
        log_action(
            LOG_CATEGORY, LOG_SOURCE, "startup", f"Mail scheduler worker started with PID {self.pid}"
        )

    async def run(self) -> int:
        """
        Run the worker until a stop is requested.

        Returns:
            Process exit status: 0 after a clean shutdown, 1 if startup failed
        """
        try:
            self.startup()
        except MailSchedulerError as e:
            logger.error("Mail scheduler startup failed", error=str(e), operation=e.operation)
            log_action(LOG_CATEGORY, LOG_SOURCE, "startup", f"Startup failed: {e}")
            return 1

        try:
            await self._loop()
        finally:
            self._shutdown()
        return 0

    def _shutdown(self) -> None:
        self.control.update_status(
            stopped_at=utc_now_iso(),
            jobs_processed=self.jobs_processed,
            jobs_failed=self.jobs_failed,
            cycle_count=self.cycle_count,
        )
        self.control.release(self.pid)

        logger.info(
            "Mail scheduler worker stopped",
            pid=self.pid,
            jobs_processed=self.jobs_processed,
            jobs_failed=self.jobs_failed,
            cycles=self.cycle_count,
        )
        log_action(
            LOG_CATEGORY,
            LOG_SOURCE,
            "shutdown",
            f"Scheduler stopped gracefully. Processed: {self.jobs_processed}, Failed: {self.jobs_failed}",
        )

    def should_exit(self) -> bool:
        """Stop marker present, signal received, or our lock marker no longer records us."""
        if self._shutdown_requested or self._lock_lost:
            return True
        if self.control.should_stop():
            return True
        if not self.control.owns_lock(self.pid):
            logger.warning("Mail scheduler lock marker no longer owned, exiting", pid=self.pid)
            self._lock_lost = True
            return True
        return False

    async def _sleep(self, seconds: float) -> None:
        """Sleep up to `seconds`, returning early once a stop is requested."""
        remaining = seconds
        while remaining > 0:
            if self.should_exit():
                return
            step = min(self.stop_poll_seconds, remaining)
            await self._sleep_fn(step)
            remaining -= step

    # =================================================================
    # MAIN LOOP
    # =================================================================

    async def _loop(self) -> None:
        while True:
            if self.should_exit():
                logger.info("Stop signal received, shutting down gracefully", pid=self.pid)
                return

            self.control.write_heartbeat()
            self.cycle_count += 1

            try:
                await self.run_cycle()
                self.consecutive_errors = 0
            except Exception as e:
                self._record_loop_error(e)
                await self._sleep(self.error_backoff_seconds)
                continue

    async def run_cycle(self) -> int:
        """
        One cycle: fetch a batch and deliver it, or idle when the queue is empty.

        Returns:
            Number of jobs handled in this cycle
        """
        jobs = await self.job_store.fetch_pending(self.batch_size)

        if not jobs:
            self._write_cycle_status()
            logger.debug("No pending mail jobs, waiting", idle_seconds=self.idle_seconds)
            await self._sleep(self.idle_seconds)
            return 0

        logger.info("Found pending mail jobs", count=len(jobs))

        handled = 0
        for index, job in enumerate(jobs):
            if self.should_exit():
                logger.info("Stop requested, abandoning remaining batch", remaining=len(jobs) - index)
                break

            await self.process_job(job)
            handled += 1

            if index < len(jobs) - 1:
                await self._sleep(self.job_delay_seconds)

        self._write_cycle_status(last_run_at=utc_now_iso())
        await self._sleep(self.cycle_delay_seconds)
        return handled

    async def process_job(self, job: MailJob) -> bool:
        """
        Claim, deliver and finalize a single job.

        Delivery errors are contained here; store errors propagate to the loop,
        after logging the id of a job that was claimed but not finalized.

        Returns:
            True if the job was completed
        """
        claimed = await self.job_store.mark_processing(job.id)
        if not claimed:
            logger.warning(
                "Mail job was not pending when claimed, skipping",
                job_id=job.id,
                status=job.status.value,
            )
            return False

        logger.info("Processing mail job", job_id=job.id, recipient=job.recipient)

        error_message: str | None = None
        try:
            delivered = await self.transport.deliver(
                job.recipient,
                job.subject,
                job.template,
                job.decode_template_data(),
            )
            if not delivered:
                error_message = DELIVERY_FAILED_MESSAGE
        except Exception as e:
            delivered = False
            error_message = str(e) or type(e).__name__
            logger.warning(
                "Mail job raised during delivery",
                job_id=job.id,
                error=error_message,
                error_type=type(e).__name__,
            )

        try:
            if delivered:
                if not await self.job_store.mark_completed(job.id):
                    logger.warning("Mail job was not processing when completed", job_id=job.id)
            else:
                await self.job_store.mark_failed(job.id, error_message)
        except Exception as e:
            # The claim already succeeded, so the job stays in processing
            logger.error(
                "Failed to record mail job outcome, job left in processing",
                job_id=job.id,
                delivered=delivered,
                error=str(e),
                error_type=type(e).__name__,
            )
            log_action(
                LOG_CATEGORY,
                LOG_SOURCE,
                "processJob",
                f"Job #{job.id} left in processing, outcome not recorded: {e}",
                job_id=job.id,
            )
            raise

        if delivered:
            self.jobs_processed += 1
            log_action(
                LOG_CATEGORY,
                LOG_SOURCE,
                "processJob",
                f"Successfully sent email to {job.recipient} using template '{job.template}'",
                job_id=job.id,
            )
            return True

        self.jobs_failed += 1
        log_action(
            LOG_CATEGORY,
            LOG_SOURCE,
            "processJob",
            f"Failed to send email to {job.recipient}: {error_message}",
            job_id=job.id,
        )
        return False

    def _write_cycle_status(self, **extra: Any) -> None:
        self.control.update_status(
            last_heartbeat_at=utc_now_iso(),
            jobs_processed=self.jobs_processed,
            jobs_failed=self.jobs_failed,
            cycle_count=self.cycle_count,
            **extra,
        )

    def _record_loop_error(self, error: Exception) -> None:
        self.consecutive_errors += 1

        logger.error(
            "Mail scheduler loop error",
            error=str(error),
            error_type=type(error).__name__,
            consecutive_errors=self.consecutive_errors,
            backoff_seconds=self.error_backoff_seconds,
        )
        log_action(LOG_CATEGORY, LOG_SOURCE, "error", f"Worker loop error: {error}")

        threshold = self.error_alert_threshold
        if threshold > 0 and self.consecutive_errors % threshold == 0:
            logger.critical(
                "Mail scheduler failing repeatedly",
                consecutive_errors=self.consecutive_errors,
                last_error=str(error),
            )


def _install_signal_handlers(worker: MailSchedulerWorker) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, worker.request_shutdown)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on Windows event loops
            pass


async def run_mail_scheduler() -> int:
    """
    Worker process entrypoint: open the database pool, then run the loop.

    Returns:
        Process exit status
    """
    db_pool.application_name = "mail-scheduler"
    control = MailSchedulerService.from_settings()

    try:
        await db_pool.initialize()
        await mail_job_repository.ensure_schema()
    except Exception as e:
        logger.error("Mail scheduler could not reach the job store", error=str(e))
        log_action(LOG_CATEGORY, LOG_SOURCE, "startup", f"Startup failed: {e}")
        # The spawning parent may already have recorded our PID
        control.release_lock(os.getpid())
        await db_pool.close()
        return 1

    worker = MailSchedulerWorker.from_settings(control)
    _install_signal_handlers(worker)

    try:
        return await worker.run()
    finally:
        await db_pool.close()
