from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from coldcase.core.errors import JobNotFoundError
from coldcase.core.audit import write_audit_event
from coldcase.db.models import AuditEventType, JobStatus
from coldcase.domain.records import JobRecord
from coldcase.domain.state_machine import ensure_transition_allowed
from coldcase.runtime.store import JobStore


async def set_job_status(
    store: JobStore,
    *,
    job_id: str,
    to_status: JobStatus,
    reason: str | None = None,
    extra: Dict[str, Any] | None = None,
) -> JobRecord:
    """Validate and apply a status transition, stamping lifecycle timestamps once."""
    job = await store.get_job(job_id)
    if not job:
        raise JobNotFoundError(job_id)

    from_status = job.status
    ensure_transition_allowed(from_status, to_status)

    fields: Dict[str, Any] = {"status": to_status, **(extra or {})}
    now = datetime.now(timezone.utc)
    if to_status == JobStatus.RUNNING and job.started_at is None:
        fields["started_at"] = now
    if to_status in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED} and job.completed_at is None:
        fields["completed_at"] = now

    job = await store.update_job(job_id, fields)

    await write_audit_event(
        store,
        job_id=job_id,
        event_type=AuditEventType.STATUS_CHANGED,
        payload={
            "from": from_status.value,
            "to": to_status.value,
            "reason": reason,
        },
    )

    return job
