import asyncio
import itertools
from datetime import UTC, datetime
from typing import Any

import pytest

from app.models.domain.mail_job_domain import MAIL_JOB_TRANSITIONS, MailJob, MailJobStatus
from app.services.mail_scheduler_service import MailSchedulerService


class FakeJobStore:
    """In-memory stand-in for MailJobRepository with the same transition rules."""

    def __init__(self):
        self.jobs: dict[int, MailJob] = {}
        self.history: dict[int, list[str]] = {}
        self.fetch_errors: list[Exception] = []
        self._ids = itertools.count(1)

    def add(
        self,
        recipient: str,
        subject: str = "Welcome",
        template: str = "welcome",
        template_data: str | None = '{"name": "Ada"}',
    ) -> MailJob:
        now = datetime.now(UTC)
        job = MailJob(
            id=next(self._ids),
            recipient=recipient,
            subject=subject,
            template=template,
            template_data=template_data,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        self.history[job.id] = [MailJobStatus.PENDING.value]
        return job

    def status_of(self, job_id: int) -> MailJobStatus:
        return self.jobs[job_id].status

    def pending(self) -> list[MailJob]:
        return [job for job in self.jobs.values() if job.status == MailJobStatus.PENDING]

    async def fetch_pending(self, limit: int) -> list[MailJob]:
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return [job.model_copy() for job in sorted(self.pending(), key=lambda j: j.id)[:limit]]

    def _transition(self, job_id: int, target: MailJobStatus, **changes: Any) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status != MAIL_JOB_TRANSITIONS[target]:
            return False
        self.jobs[job_id] = job.model_copy(
            update={"status": target, "updated_at": datetime.now(UTC), **changes}
        )
        self.history[job_id].append(target.value)
        return True

    async def mark_processing(self, job_id: int) -> bool:
        return self._transition(job_id, MailJobStatus.PROCESSING)

    async def mark_completed(self, job_id: int) -> bool:
        return self._transition(job_id, MailJobStatus.COMPLETED)

    async def mark_failed(self, job_id: int, reason: str) -> bool:
        return self._transition(job_id, MailJobStatus.FAILED, error_message=reason)


class FakeTransport:
    """Delivery collaborator; outcome per recipient is True, False or an exception to raise."""

    def __init__(self, outcomes: dict[str, Any] | None = None):
        self.outcomes = outcomes or {}
        self.calls: list[tuple[str, str, str, dict]] = []
        self.on_deliver = None

    async def deliver(self, recipient, subject, template_name, template_data) -> bool:
        self.calls.append((recipient, subject, template_name, template_data))
        if self.on_deliver is not None:
            self.on_deliver(recipient)
        outcome = self.outcomes.get(recipient, True)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def scheduler(tmp_path):
    return MailSchedulerService(
        state_dir=tmp_path / "cache",
        worker_command=["true"],
        heartbeat_max_age_seconds=60,
        worker_cwd=tmp_path,
    )


@pytest.fixture
def job_store():
    return FakeJobStore()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_worker(scheduler, job_store, transport):
    """
    Build a MailSchedulerWorker with tiny delays and a recording fake sleep.

    stop_when: callable checked on every sleep; when it returns True a stop
    is requested through the control plane, like an admin would.
    """
    from app.jobs.mail_scheduler_job import MailSchedulerWorker

    def _make(stop_when=None, **overrides):
        sleeps: list[float] = []

        async def fake_sleep(seconds: float):
            sleeps.append(seconds)
            if stop_when is not None and stop_when():
                scheduler.request_stop()
            await asyncio.sleep(0)

        options = {
            "batch_size": 5,
            "idle_seconds": 0.05,
            "job_delay_seconds": 0.01,
            "cycle_delay_seconds": 0.01,
            "error_backoff_seconds": 0.03,
            "stop_poll_seconds": 0.01,
            "error_alert_threshold": 5,
        }
        options.update(overrides)

        worker = MailSchedulerWorker(
            scheduler, job_store, transport, sleep=fake_sleep, **options
        )
        worker.sleeps = sleeps
        return worker

    return _make
