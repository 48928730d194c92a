# models/domain/mail_job_domain.py
"""
Mail job domain model.

A job moves pending -> processing -> completed | failed and never goes back.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class MailJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MailJobStatus.COMPLETED, MailJobStatus.FAILED)


# target state -> the only state it may be entered from
MAIL_JOB_TRANSITIONS: dict[MailJobStatus, MailJobStatus] = {
    MailJobStatus.PROCESSING: MailJobStatus.PENDING,
    MailJobStatus.COMPLETED: MailJobStatus.PROCESSING,
    MailJobStatus.FAILED: MailJobStatus.PROCESSING,
}


class MailJobPayloadError(ValueError):
    """Raised when a job's stored template_data blob cannot be decoded."""


class MailJob(BaseModel):
    """Domain model for a queued mail job (one row of mail_jobs)."""

    id: int
    recipient: str
    subject: str
    template: str
    template_data: str | None = None  # serialized JSON blob, opaque to the queue
    status: MailJobStatus = MailJobStatus.PENDING
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def decode_template_data(self) -> dict[str, Any]:
        """
        Decode the template payload for the delivery service.

        Raises:
            MailJobPayloadError: If the blob is not a JSON object
        """
        if not self.template_data:
            return {}
        try:
            decoded = json.loads(self.template_data)
        except ValueError as e:
            raise MailJobPayloadError(f"Malformed template_data for job #{self.id}: {e}") from e
        if not isinstance(decoded, dict):
            raise MailJobPayloadError(
                f"template_data for job #{self.id} must be a JSON object, "
                f"got {type(decoded).__name__}"
            )
        return decoded
