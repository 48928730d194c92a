"""
Postgres repository for the mail job queue (mail_jobs table).

Every state change is a conditional UPDATE guarded on the expected prior
state, so a transition that does not apply is a no-op reported as False.
"""

import json
from typing import Any

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.infrastructure.observability.logging import get_logger
from app.models.domain.mail_job_domain import MAIL_JOB_TRANSITIONS, MailJob, MailJobStatus

logger = get_logger(__name__)

ERROR_MESSAGE_MAX_LENGTH = 1000

MAIL_JOB_COLUMNS = """
    id, recipient, subject, template, template_data, status, error_message,
    created_at, updated_at, started_at, completed_at
"""

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS mail_jobs (
        id BIGSERIAL PRIMARY KEY,
        recipient TEXT NOT NULL,
        subject TEXT NOT NULL,
        template TEXT NOT NULL,
        template_data TEXT,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_mail_jobs_status_id ON mail_jobs (status, id)",
)


class MailJobRepositoryError(Exception):
    """Raised for invalid input to the mail job repository."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class MailJobRepository:
    """Persistence helpers for mail_jobs."""

    @staticmethod
    async def ensure_schema() -> None:
        for statement in SCHEMA_STATEMENTS:
            await execute_query(statement)

    @staticmethod
    async def create_job(
        recipient: str,
        subject: str,
        template: str,
        template_data: dict[str, Any] | None = None,
    ) -> MailJob:
        """
        Enqueue a new pending mail job.

        Args:
            recipient: Email recipient
            subject: Email subject
            template: Template name understood by the delivery service
            template_data: Template variables (JSON-serializable)

        Returns:
            The created job

        Raises:
            MailJobRepositoryError: If recipient/template are empty or the payload is not serializable
        """
        if not recipient or not recipient.strip():
            raise MailJobRepositoryError("Recipient cannot be empty", operation="create_job")
        if not template or not template.strip():
            raise MailJobRepositoryError("Template cannot be empty", operation="create_job")

        try:
            payload = json.dumps(template_data or {})
        except (TypeError, ValueError) as e:
            raise MailJobRepositoryError(
                f"template_data is not JSON-serializable: {e}", operation="create_job"
            ) from e

        query = f"""
            INSERT INTO mail_jobs (recipient, subject, template, template_data, status)
            VALUES (%s, %s, %s, %s, 'pending')
            RETURNING {MAIL_JOB_COLUMNS}
        """
        row = await fetch_one(query, (recipient.strip(), subject, template.strip(), payload))
        job = MailJob(**row)

        logger.info("Mail job enqueued", job_id=job.id, recipient=job.recipient, template=job.template)
        return job

    @staticmethod
    async def get_job(job_id: int) -> MailJob | None:
        query = f"SELECT {MAIL_JOB_COLUMNS} FROM mail_jobs WHERE id = %s"
        row = await fetch_one(query, (job_id,))
        return MailJob(**row) if row else None

    @staticmethod
    async def fetch_pending(limit: int = 5) -> list[MailJob]:
        """Up to `limit` pending jobs in insertion order. Does not reserve them."""
        query = f"""
            SELECT {MAIL_JOB_COLUMNS}
            FROM mail_jobs
            WHERE status = 'pending'
            ORDER BY id ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (limit,))
        return [MailJob(**row) for row in rows]

    @staticmethod
    async def mark_processing(job_id: int) -> bool:
        """pending -> processing. Acts as the claim: False if the job was not pending."""
        return await MailJobRepository._transition(
            job_id, MailJobStatus.PROCESSING, extra_set="started_at = NOW()"
        )

    @staticmethod
    async def mark_completed(job_id: int) -> bool:
        """processing -> completed."""
        return await MailJobRepository._transition(
            job_id, MailJobStatus.COMPLETED, extra_set="completed_at = NOW()"
        )

    @staticmethod
    async def mark_failed(job_id: int, reason: str) -> bool:
        """processing -> failed, recording the reason."""
        truncated_reason = (reason or "Unknown error")[:ERROR_MESSAGE_MAX_LENGTH]
        return await MailJobRepository._transition(
            job_id,
            MailJobStatus.FAILED,
            extra_set="completed_at = NOW(), error_message = %s",
            extra_params=(truncated_reason,),
        )

    @staticmethod
    async def _transition(
        job_id: int,
        target: MailJobStatus,
        *,
        extra_set: str = "",
        extra_params: tuple = (),
    ) -> bool:
        expected = MAIL_JOB_TRANSITIONS[target]
        set_clause = "status = %s, updated_at = NOW()"
        if extra_set:
            set_clause = f"{set_clause}, {extra_set}"

        query = f"UPDATE mail_jobs SET {set_clause} WHERE id = %s AND status = %s"
        params = (target.value, *extra_params, job_id, expected.value)

        affected = await execute_query(query, params)
        if affected != 1:
            logger.debug(
                "Mail job transition not applied",
                job_id=job_id,
                target=target.value,
                expected_status=expected.value,
            )
            return False
        return True

    @staticmethod
    async def get_statistics() -> dict[str, int]:
        """Job counts per state plus total."""
        rows = await fetch_all("SELECT status, COUNT(*) AS count FROM mail_jobs GROUP BY status")
        stats = {status.value: 0 for status in MailJobStatus}
        for row in rows:
            if row["status"] in stats:
                stats[row["status"]] = int(row["count"])
        stats["total"] = sum(stats.values())
        return stats

    @staticmethod
    async def list_jobs(
        page: int = 1, page_size: int = 20, status: MailJobStatus | str | None = None
    ) -> dict[str, Any]:
        """Paginated job listing, newest first, optionally filtered by status."""
        page = max(page, 1)
        page_size = max(min(page_size, 100), 1)
        offset = (page - 1) * page_size

        where = ""
        params: tuple = ()
        if status:
            where = "WHERE status = %s"
            params = (MailJobStatus(status).value,)

        count_row = await fetch_one(f"SELECT COUNT(*) AS total FROM mail_jobs {where}", params)
        total = int(count_row["total"]) if count_row else 0

        rows = await fetch_all(
            f"""
            SELECT {MAIL_JOB_COLUMNS}
            FROM mail_jobs
            {where}
            ORDER BY created_at DESC, id DESC
            LIMIT %s OFFSET %s
            """,
            (*params, page_size, offset),
        )

        return {
            "jobs": [MailJob(**row) for row in rows],
            "total_jobs": total,
            "page": page,
            "page_size": page_size,
            "total_pages": (total + page_size - 1) // page_size,
        }


mail_job_repository = MailJobRepository()
