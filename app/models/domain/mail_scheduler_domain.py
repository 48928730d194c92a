# models/domain/mail_scheduler_domain.py
"""
Mail scheduler worker status snapshot.

Written only by the running worker; everyone else reads it.
"""

from pydantic import BaseModel, ConfigDict


class WorkerStatus(BaseModel):
    """Persisted status record of the mail scheduler worker (ISO-8601 timestamps)."""

    model_config = ConfigDict(extra="allow")

    pid: int | None = None
    started_at: str | None = None
    stopped_at: str | None = None
    last_heartbeat_at: str | None = None
    last_run_at: str | None = None
    jobs_processed: int = 0
    jobs_failed: int = 0
    cycle_count: int = 0
