"""
Tests for the mail scheduler worker loop.

Runs the real control plane against a tmp state directory, with an
in-memory job store, a fake transport and a recording sleep.
"""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.jobs import mail_scheduler_job
from app.jobs.mail_scheduler_job import DELIVERY_FAILED_MESSAGE
from app.models.domain.mail_job_domain import MailJobStatus


def assert_markers_cleared(scheduler):
    assert not scheduler.pid_file.exists()
    assert not scheduler.stop_signal_file.exists()
    assert not scheduler.heartbeat_file.exists()


@pytest.mark.asyncio
async def test_batch_with_one_delivery_failure(make_worker, scheduler, job_store, transport):
    a = job_store.add("a@example.com")
    b = job_store.add("b@example.com")
    c = job_store.add("c@example.com")
    transport.outcomes["b@example.com"] = False

    worker = make_worker(stop_when=lambda: not job_store.pending())
    exit_code = await worker.run()

    assert exit_code == 0
    assert job_store.status_of(a.id) == MailJobStatus.COMPLETED
    assert job_store.status_of(b.id) == MailJobStatus.FAILED
    assert job_store.status_of(c.id) == MailJobStatus.COMPLETED
    assert job_store.jobs[b.id].error_message == DELIVERY_FAILED_MESSAGE

    status = scheduler.read_status()
    assert status.jobs_processed == 2
    assert status.jobs_failed == 1
    assert status.pid == os.getpid()
    assert status.stopped_at is not None
    assert status.last_run_at is not None

    assert_markers_cleared(scheduler)
    assert scheduler.is_running() is False


@pytest.mark.asyncio
async def test_jobs_delivered_in_insertion_order_across_batches(make_worker, job_store, transport):
    recipients = [f"user{i}@example.com" for i in range(7)]
    for recipient in recipients:
        job_store.add(recipient)

    worker = make_worker(stop_when=lambda: not job_store.pending(), batch_size=5)
    await worker.run()

    assert [call[0] for call in transport.calls] == recipients
    assert worker.cycle_count == 2
    for job_id, history in job_store.history.items():
        assert history == ["pending", "processing", "completed"], job_id


@pytest.mark.asyncio
async def test_no_delay_after_last_job_of_batch(make_worker, job_store):
    job_store.add("a@example.com")
    job_store.add("b@example.com")

    worker = make_worker(
        stop_when=lambda: not job_store.pending(),
        job_delay_seconds=1,
        cycle_delay_seconds=5,
        stop_poll_seconds=5,
    )
    await worker.run()

    # one delay between the two jobs, then the cycle delay
    assert worker.sleeps == [1, 5]


@pytest.mark.asyncio
async def test_stop_during_idle_exits_within_one_poll_interval(make_worker, scheduler):
    worker = make_worker(stop_when=lambda: True, idle_seconds=10, stop_poll_seconds=1)

    exit_code = await worker.run()

    assert exit_code == 0
    assert worker.sleeps == [1]
    assert_markers_cleared(scheduler)
    assert scheduler.read_status().stopped_at is not None


@pytest.mark.asyncio
async def test_stop_mid_batch_leaves_remaining_jobs_pending(make_worker, scheduler, job_store, transport):
    a = job_store.add("a@example.com")
    b = job_store.add("b@example.com")
    transport.on_deliver = lambda recipient: scheduler.request_stop()

    worker = make_worker()
    exit_code = await worker.run()

    assert exit_code == 0
    assert job_store.status_of(a.id) == MailJobStatus.COMPLETED
    assert job_store.status_of(b.id) == MailJobStatus.PENDING
    assert len(transport.calls) == 1
    assert_markers_cleared(scheduler)


@pytest.mark.asyncio
async def test_delivery_exception_marks_job_failed_with_message(make_worker, job_store, transport):
    a = job_store.add("a@example.com")
    b = job_store.add("b@example.com")
    transport.outcomes["a@example.com"] = RuntimeError("SMTP connection refused")
    transport.outcomes["b@example.com"] = RuntimeError()

    worker = make_worker(stop_when=lambda: not job_store.pending())
    await worker.run()

    assert job_store.status_of(a.id) == MailJobStatus.FAILED
    assert job_store.jobs[a.id].error_message == "SMTP connection refused"
    assert job_store.status_of(b.id) == MailJobStatus.FAILED
    assert job_store.jobs[b.id].error_message == "RuntimeError"
    assert worker.jobs_failed == 2
    assert worker.consecutive_errors == 0


@pytest.mark.asyncio
async def test_malformed_payload_fails_only_that_job(make_worker, job_store, transport):
    bad = job_store.add("bad@example.com", template_data="{not json")
    good = job_store.add("good@example.com")

    worker = make_worker(stop_when=lambda: not job_store.pending())
    await worker.run()

    assert job_store.status_of(bad.id) == MailJobStatus.FAILED
    assert "Malformed template_data" in job_store.jobs[bad.id].error_message
    assert job_store.status_of(good.id) == MailJobStatus.COMPLETED
    assert [call[0] for call in transport.calls] == ["good@example.com"]


@pytest.mark.asyncio
async def test_template_data_is_decoded_for_transport(make_worker, job_store, transport):
    job_store.add("a@example.com", template="reset_password", template_data='{"code": "123456"}')

    worker = make_worker(stop_when=lambda: not job_store.pending())
    await worker.run()

    assert transport.calls == [("a@example.com", "Welcome", "reset_password", {"code": "123456"})]


@pytest.mark.asyncio
async def test_job_not_pending_is_skipped(make_worker, job_store, transport):
    job = job_store.add("a@example.com")
    await job_store.mark_processing(job.id)

    worker = make_worker()
    handled = await worker.process_job(job)

    assert handled is False
    assert transport.calls == []
    assert worker.jobs_processed == 0
    assert worker.jobs_failed == 0
    assert job_store.status_of(job.id) == MailJobStatus.PROCESSING


@pytest.mark.asyncio
async def test_outcome_not_recorded_logs_stranded_job(make_worker, job_store, monkeypatch):
    mock_logger = MagicMock()
    monkeypatch.setattr(mail_scheduler_job, "logger", mock_logger)
    job = job_store.add("a@example.com")
    monkeypatch.setattr(
        job_store, "mark_completed", AsyncMock(side_effect=RuntimeError("connection lost"))
    )

    worker = make_worker()
    with pytest.raises(RuntimeError):
        await worker.process_job(job)

    assert job_store.status_of(job.id) == MailJobStatus.PROCESSING
    assert worker.jobs_processed == 0
    stranded = [
        call for call in mock_logger.error.call_args_list if call.kwargs.get("job_id") == job.id
    ]
    assert len(stranded) == 1
    assert stranded[0].kwargs["delivered"] is True


@pytest.mark.asyncio
async def test_failed_outcome_not_recorded_is_a_loop_error(
    make_worker, job_store, transport, monkeypatch
):
    mock_logger = MagicMock()
    monkeypatch.setattr(mail_scheduler_job, "logger", mock_logger)
    job = job_store.add("a@example.com")
    transport.outcomes["a@example.com"] = False
    monkeypatch.setattr(
        job_store, "mark_failed", AsyncMock(side_effect=RuntimeError("connection lost"))
    )

    worker = make_worker(stop_when=lambda: not job_store.pending())
    exit_code = await worker.run()

    assert exit_code == 0
    assert job_store.status_of(job.id) == MailJobStatus.PROCESSING
    assert worker.jobs_failed == 0
    logged_job_ids = [call.kwargs.get("job_id") for call in mock_logger.error.call_args_list]
    assert job.id in logged_job_ids
    # the stranded-job entry plus the loop error entry
    assert mock_logger.error.call_count == 2


@pytest.mark.asyncio
async def test_loop_error_backs_off_then_continues(make_worker, job_store):
    job = job_store.add("a@example.com")
    job_store.fetch_errors.append(RuntimeError("connection lost"))

    worker = make_worker(
        stop_when=lambda: not job_store.pending(),
        error_backoff_seconds=3,
        stop_poll_seconds=1,
        cycle_delay_seconds=1,
    )
    exit_code = await worker.run()

    assert exit_code == 0
    assert worker.sleeps[:3] == [1, 1, 1]
    assert job_store.status_of(job.id) == MailJobStatus.COMPLETED
    assert worker.consecutive_errors == 0
    assert worker.cycle_count == 2


@pytest.mark.asyncio
async def test_repeated_loop_errors_raise_critical_alert(make_worker, job_store, monkeypatch):
    mock_logger = MagicMock()
    monkeypatch.setattr(mail_scheduler_job, "logger", mock_logger)
    job_store.fetch_errors.extend(RuntimeError("db down") for _ in range(4))

    worker = make_worker(
        stop_when=lambda: not job_store.fetch_errors,
        error_backoff_seconds=1,
        stop_poll_seconds=1,
        error_alert_threshold=2,
    )
    exit_code = await worker.run()

    assert exit_code == 0
    assert worker.consecutive_errors == 4
    assert mock_logger.error.call_count == 4
    assert mock_logger.critical.call_count == 2


@pytest.mark.asyncio
async def test_startup_fails_when_another_worker_holds_lock(make_worker, scheduler):
    other_pid = os.getppid()
    scheduler._write_lock_exclusive(other_pid)

    worker = make_worker()
    exit_code = await worker.run()

    assert exit_code == 1
    assert scheduler.get_pid() == other_pid
    assert scheduler.read_status() is None


@pytest.mark.asyncio
async def test_startup_adopts_lock_written_by_spawning_parent(make_worker, scheduler):
    scheduler._write_lock_exclusive(os.getpid())

    worker = make_worker(stop_when=lambda: True)
    exit_code = await worker.run()

    assert exit_code == 0
    assert_markers_cleared(scheduler)


def test_startup_replaces_stale_lock(make_worker, scheduler):
    scheduler.pid_file.parent.mkdir(parents=True, exist_ok=True)
    scheduler.pid_file.write_text("not-a-pid")

    worker = make_worker()
    worker.startup()

    assert scheduler.get_pid() == os.getpid()
    assert scheduler.read_status().jobs_processed == 0


@pytest.mark.asyncio
async def test_signal_shutdown_exits_cleanly(make_worker, scheduler, job_store, transport):
    job_store.add("a@example.com")
    job_store.add("b@example.com")
    worker = make_worker()
    transport.on_deliver = lambda recipient: worker.request_shutdown()

    exit_code = await worker.run()

    assert exit_code == 0
    assert len(transport.calls) == 1
    assert_markers_cleared(scheduler)


@pytest.mark.asyncio
async def test_worker_exits_when_lock_taken_over(make_worker, scheduler, job_store, transport):
    job_store.add("a@example.com")
    job_store.add("b@example.com")
    other_pid = os.getppid()

    def take_over(recipient):
        scheduler.pid_file.write_text(str(other_pid))

    transport.on_deliver = take_over

    worker = make_worker()
    exit_code = await worker.run()

    assert exit_code == 0
    assert len(transport.calls) == 1
    # the new holder's marker is left in place
    assert scheduler.get_pid() == other_pid


@pytest.mark.asyncio
async def test_heartbeat_written_each_cycle(make_worker, scheduler):
    heartbeats = []

    def stop_after_heartbeat():
        heartbeats.append(scheduler.last_heartbeat())
        return True

    worker = make_worker(stop_when=stop_after_heartbeat)
    await worker.run()

    assert heartbeats[0] is not None


@pytest.mark.asyncio
async def test_run_mail_scheduler_releases_lock_when_store_unreachable(scheduler, monkeypatch):
    db_pool = mail_scheduler_job.db_pool
    monkeypatch.setattr(db_pool, "application_name", db_pool.application_name)
    monkeypatch.setattr(db_pool, "initialize", AsyncMock(side_effect=RuntimeError("connection refused")))
    monkeypatch.setattr(db_pool, "close", AsyncMock())
    monkeypatch.setattr(mail_scheduler_job.MailSchedulerService, "from_settings", lambda: scheduler)
    scheduler._write_lock_exclusive(os.getpid())

    exit_code = await mail_scheduler_job.run_mail_scheduler()

    assert exit_code == 1
    assert not scheduler.pid_file.exists()
    db_pool.close.assert_awaited_once()
