"""
Mail Scheduler Service - process control for the background mail worker.

The worker's liveness and the operator's intent live on disk in the state
directory, so the web tier, admin actions and the worker process itself can
coordinate without a process manager:

- mail_scheduler.pid             lock marker, holds the worker PID
- mail_scheduler_heartbeat.txt   unix timestamp, rewritten every worker cycle
- mail_scheduler_stop.signal     stop marker, presence = "exit at next opportunity"
- mail_scheduler_status.json     WorkerStatus snapshot written by the worker
- mail_scheduler_debug.log       stdout/stderr of the spawned worker process

Only the worker writes heartbeat/status. Anyone may write the stop marker.
is_running() removes a lock marker whose PID is gone (crash recovery).
"""

import json
import os
import subprocess
import sys
import threading
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from app.config import BASE_DIR, settings
from app.infrastructure.observability.logging import get_logger, log_action
from app.models.domain.mail_scheduler_domain import WorkerStatus

logger = get_logger(__name__)

LOG_CATEGORY = "mail_scheduler"
LOG_SOURCE = "MailSchedulerService"

PID_FILENAME = "mail_scheduler.pid"
HEARTBEAT_FILENAME = "mail_scheduler_heartbeat.txt"
STOP_SIGNAL_FILENAME = "mail_scheduler_stop.signal"
STATUS_FILENAME = "mail_scheduler_status.json"
DEBUG_LOG_FILENAME = "mail_scheduler_debug.log"

DEFAULT_WORKER_COMMAND = (sys.executable, "-m", "app.jobs.worker", "mail_scheduler")

# Background the worker with its output in the debug log, print its PID, exit
DETACH_SCRIPT = '"$@" >> "$MAIL_SCHEDULER_DEBUG_LOG" 2>&1 < /dev/null & echo $!'
SPAWN_TIMEOUT_SECONDS = 10


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class MailSchedulerService:
    """
    Control plane for the singleton mail scheduler worker.

    One instance per process; the web tier and the worker each build their
    own from settings, pointing at the same state directory.
    """

    def __init__(
        self,
        state_dir: str | Path,
        worker_command: Sequence[str] = DEFAULT_WORKER_COMMAND,
        heartbeat_max_age_seconds: float = 60.0,
        worker_cwd: str | Path | None = None,
    ):
        self.state_dir = Path(state_dir)
        self.worker_command = list(worker_command)
        self.heartbeat_max_age_seconds = heartbeat_max_age_seconds
        self.worker_cwd = Path(worker_cwd) if worker_cwd else BASE_DIR

        self.pid_file = self.state_dir / PID_FILENAME
        self.heartbeat_file = self.state_dir / HEARTBEAT_FILENAME
        self.stop_signal_file = self.state_dir / STOP_SIGNAL_FILENAME
        self.status_file = self.state_dir / STATUS_FILENAME
        self.debug_log_file = self.state_dir / DEBUG_LOG_FILENAME

        self._start_lock = threading.Lock()

    @classmethod
    def from_settings(cls) -> "MailSchedulerService":
        return cls(
            state_dir=settings.get_mail_scheduler_state_dir(),
            heartbeat_max_age_seconds=settings.MAIL_SCHEDULER_HEARTBEAT_MAX_AGE_SECONDS,
        )

    # =================================================================
    # LOCK MARKER
    # =================================================================

    def _ensure_state_dir(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _read_lock(self) -> tuple[bool, int | None]:
        """
        Return (marker exists, recorded pid or None if unparsable).

        Raises:
            OSError: If the marker exists but cannot be read; its owner is unknown
        """
        try:
            raw = self.pid_file.read_text().strip()
        except FileNotFoundError:
            return False, None

        try:
            pid = int(raw)
        except ValueError:
            return True, None
        return True, pid if pid > 0 else None

    def get_pid(self) -> int | None:
        """PID recorded in the lock marker, if any."""
        try:
            return self._read_lock()[1]
        except OSError as e:
            logger.warning("Failed to read scheduler lock marker", error=str(e))
            return None

    def _pid_alive(self, pid: int) -> bool:
        """Whether a process with this PID exists on the host."""
        if pid <= 0:
            return False

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # EPERM: the process exists but belongs to another user
            return True
        except OSError:
            return False
        return True

    def _write_lock_exclusive(self, pid: int) -> bool:
        """
        Create the lock marker holding `pid`, failing if it already exists.

        The content is written to a private temp file and hard-linked into
        place, so readers never observe an empty marker.
        """
        self._ensure_state_dir()
        tmp_file = self.state_dir / f"{PID_FILENAME}.{os.getpid()}.{pid}.tmp"
        tmp_file.write_text(str(pid))
        try:
            os.link(tmp_file, self.pid_file)
            return True
        except FileExistsError:
            return False
        finally:
            tmp_file.unlink(missing_ok=True)

    def _remove_stale_lock(self, stale_pid: int | None) -> bool:
        """
        Remove the lock marker if it still records `stale_pid` and that PID is still dead.

        Re-validated right before unlinking so a marker freshly written by a
        new worker is never removed by a concurrent stale check.
        """
        try:
            exists, current_pid = self._read_lock()
        except OSError:
            return False
        if not exists or current_pid != stale_pid:
            return False
        if current_pid is not None and self._pid_alive(current_pid):
            return False

        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            return False

        logger.warning("Removed stale mail scheduler lock marker", stale_pid=stale_pid)
        log_action(
            LOG_CATEGORY,
            LOG_SOURCE,
            "staleLock",
            f"Stale scheduler lock removed (PID {stale_pid} no longer running)",
            stale_pid=stale_pid,
        )
        return True

    def is_running(self) -> bool:
        """
        Check whether a worker is running.

        A lock marker whose PID is not alive (or does not parse) is treated as
        left over from a crash: it is removed and False is returned. A marker
        that cannot be read at all is left in place and reported as running.
        """
        try:
            exists, pid = self._read_lock()
        except OSError as e:
            # Owner unknown: report running and leave the marker alone
            logger.warning("Scheduler lock marker unreadable, assuming running", error=str(e))
            return True
        if not exists:
            return False

        if pid is not None and self._pid_alive(pid):
            return True

        self._remove_stale_lock(pid)
        return False

    def acquire_lock(self, pid: int) -> bool:
        """
        Worker-side lock acquisition at startup.

        Succeeds when the marker already records `pid` (written by the
        spawning parent) or when it is absent/stale and can be created.
        Fails when another live process holds it.
        """
        for _ in range(3):
            if self._write_lock_exclusive(pid):
                return True

            try:
                exists, holder = self._read_lock()
            except OSError as e:
                logger.warning("Scheduler lock marker unreadable", error=str(e), pid=pid)
                return False
            if holder == pid:
                return True
            if not exists:
                continue
            if holder is not None and self._pid_alive(holder):
                logger.warning("Mail scheduler lock held by another worker", holder_pid=holder, pid=pid)
                return False
            self._remove_stale_lock(holder)

        return False

    def owns_lock(self, pid: int) -> bool:
        return self.get_pid() == pid

    def release_lock(self, pid: int) -> None:
        """Remove the lock marker only if it still records `pid`."""
        if self.owns_lock(pid):
            self.pid_file.unlink(missing_ok=True)

    # =================================================================
    # START / STOP
    # =================================================================

    def _spawn_worker(self) -> int:
        """
        Launch the worker detached from the caller and return its PID.

        An intermediate shell backgrounds the worker and exits, so the worker
        is reparented to init and never lingers as a zombie of this process.
        Output goes to the debug log.

        Raises:
            OSError: If the shell cannot be run
            subprocess.SubprocessError: If the shell fails or hangs
            ValueError: If the shell does not report a PID
        """
        self._ensure_state_dir()
        result = subprocess.run(
            ["/bin/sh", "-c", DETACH_SCRIPT, "sh", *self.worker_command],
            cwd=str(self.worker_cwd),
            env={**os.environ, "MAIL_SCHEDULER_DEBUG_LOG": str(self.debug_log_file)},
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=SPAWN_TIMEOUT_SECONDS,
            check=True,
            start_new_session=True,
        )
        return int(result.stdout.strip())

    def start(self) -> bool:
        """
        Start the worker process unless one is already running.

        Fire-and-forget: returns as soon as the process is spawned and its
        PID recorded, without waiting for the worker to reach its loop.

        Returns:
            True if a worker process was spawned, False otherwise
        """
        if not self._start_lock.acquire(blocking=False):
            logger.debug("Mail scheduler start already in progress in this process")
            return False

        try:
            if self.is_running():
                logger.info("Mail scheduler already running", pid=self.get_pid())
                return False

            try:
                # Leftover stop marker would make the new worker exit immediately
                self.stop_signal_file.unlink(missing_ok=True)
                pid = self._spawn_worker()
            except (OSError, subprocess.SubprocessError, ValueError) as e:
                logger.error("Failed to spawn mail scheduler worker", error=str(e))
                log_action(
                    LOG_CATEGORY, LOG_SOURCE, "start", f"Failed to start scheduler: {e}"
                )
                return False

            try:
                recorded = self._write_lock_exclusive(pid)
            except OSError as e:
                logger.error("Failed to write mail scheduler lock marker", error=str(e))
                recorded = False

            if not recorded and self.get_pid() != pid:
                # Another starter won; the spawned worker finds the lock held and exits on its own
                logger.warning(
                    "Mail scheduler start lost race to another starter",
                    spawned_pid=pid,
                    holder_pid=self.get_pid(),
                )
                return False

            logger.info("Mail scheduler worker spawned", pid=pid)
            log_action(
                LOG_CATEGORY,
                LOG_SOURCE,
                "start",
                f"Mail scheduler started (PID {pid})",
                pid=pid,
            )
            return True
        finally:
            self._start_lock.release()

    def auto_start(self) -> bool:
        """
        Start the worker on behalf of ordinary traffic.

        Does nothing while a stop marker is present, so a requested stop is
        not undone by the next request.

        Returns:
            True if a worker was started by this call
        """
        if self.should_stop():
            logger.debug("Mail scheduler auto-start skipped, stop requested")
            return False
        return self.start()

    def request_stop(self) -> None:
        """Ask the running worker to exit at its next opportunity. Idempotent."""
        self._ensure_state_dir()
        self.stop_signal_file.write_text(str(int(time.time())))
        logger.info("Mail scheduler stop requested", pid=self.get_pid())

    def should_stop(self) -> bool:
        return self.stop_signal_file.exists()

    def release(self, pid: int) -> None:
        """Worker clean-exit cleanup: stop marker, heartbeat, and our own lock marker."""
        self.stop_signal_file.unlink(missing_ok=True)
        self.heartbeat_file.unlink(missing_ok=True)
        self.release_lock(pid)

    # =================================================================
    # HEARTBEAT
    # =================================================================

    def write_heartbeat(self) -> bool:
        try:
            self._atomic_write(self.heartbeat_file, f"{time.time():.3f}")
            return True
        except OSError as e:
            logger.error("Failed to update scheduler heartbeat", error=str(e))
            return False

    def last_heartbeat(self) -> float | None:
        """Unix timestamp of the last heartbeat, or None."""
        try:
            return float(self.heartbeat_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def is_heartbeat_stale(self, max_age_seconds: float | None = None) -> bool:
        """True if the last heartbeat is older than max_age (a missing heartbeat is stale)."""
        max_age = self.heartbeat_max_age_seconds if max_age_seconds is None else max_age_seconds
        heartbeat = self.last_heartbeat()
        if heartbeat is None:
            return True
        return time.time() - heartbeat > max_age

    # =================================================================
    # STATUS SNAPSHOT
    # =================================================================

    def _atomic_write(self, path: Path, content: str) -> None:
        self._ensure_state_dir()
        tmp_file = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        tmp_file.write_text(content)
        os.replace(tmp_file, path)

    def _read_status_dict(self) -> dict[str, Any]:
        try:
            data = json.loads(self.status_file.read_text())
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def update_status(self, **fields: Any) -> bool:
        """Merge fields into the persisted status snapshot (last write wins)."""
        merged = self._read_status_dict()
        merged.update(fields)
        return self._write_status(merged)

    def reset_status(self, **fields: Any) -> bool:
        """Replace the status snapshot with a fresh WorkerStatus built from fields."""
        return self._write_status(WorkerStatus(**fields).model_dump())

    def _write_status(self, data: dict[str, Any]) -> bool:
        try:
            self._atomic_write(self.status_file, json.dumps(data, indent=2, default=str))
            return True
        except (OSError, TypeError) as e:
            logger.error("Failed to update scheduler status", error=str(e))
            return False

    def read_status(self) -> WorkerStatus | None:
        data = self._read_status_dict()
        if not data:
            return None
        try:
            return WorkerStatus(**data)
        except ValidationError as e:
            logger.warning("Unreadable scheduler status snapshot", error=str(e))
            return None

    def get_status(self) -> dict[str, Any]:
        """
        Diagnostic view for admin/monitoring.

        Returns:
            dict: running, pid, heartbeat age, health flag and the persisted WorkerStatus fields
        """
        running = self.is_running()
        heartbeat = self.last_heartbeat()

        status: dict[str, Any] = {
            "running": running,
            "pid": self.get_pid() if running else None,
            "last_heartbeat": heartbeat,
            "last_heartbeat_human": None,
            "heartbeat_age_seconds": None,
            "is_healthy": False,
            "stop_requested": self.should_stop(),
        }

        if heartbeat is not None:
            age = max(time.time() - heartbeat, 0.0)
            status["last_heartbeat_human"] = datetime.fromtimestamp(heartbeat, UTC).isoformat()
            status["heartbeat_age_seconds"] = round(age, 1)
            status["is_healthy"] = running and age < self.heartbeat_max_age_seconds

        snapshot = self.read_status()
        if snapshot is not None:
            status["worker"] = snapshot.model_dump()

        return status


mail_scheduler_service = MailSchedulerService.from_settings()
