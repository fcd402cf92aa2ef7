from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from pydantic import BaseModel

from coldcase.core.audit import write_audit_event
from coldcase.core.errors import JobNotFoundError, StuckJobError
from coldcase.core.logging import get_logger, log_event
from coldcase.db.models import AuditEventType, JobStatus, UnitStatus
from coldcase.domain.job_service import set_job_status
from coldcase.domain.records import ACTIVE_STATUSES, JobRecord, UnitRecord, UnitStats, progress_percentage
from coldcase.runtime.state import load_state
from coldcase.runtime.store import JobStore

logger = get_logger(__name__)

DEFAULT_STUCK_THRESHOLD_HOURS = 2
DEFAULT_POLL_INTERVAL_S = 2.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CleanupResult:
    count: int = 0
    job_ids: List[str] = field(default_factory=list)


class JobSummary(BaseModel):
    job: JobRecord
    units: UnitStats
    failed_units: List[UnitRecord]


def unit_stats(units: List[UnitRecord]) -> UnitStats:
    def count(status: UnitStatus) -> int:
        return sum(1 for u in units if u.status == status)

    completed = count(UnitStatus.COMPLETED)
    confidences = [u.confidence for u in units if u.status == UnitStatus.COMPLETED and u.confidence is not None]
    return UnitStats(
        total_units=len(units),
        completed_units=completed,
        failed_units=count(UnitStatus.FAILED),
        pending_units=count(UnitStatus.PENDING),
        processing_units=count(UnitStatus.PROCESSING),
        skipped_units=count(UnitStatus.SKIPPED),
        total_characters=sum(u.characters for u in units),
        avg_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
        progress_pct=progress_percentage(completed, len(units)),
    )


class ProgressTracker:
    """Read and lifecycle operations over analysis jobs: inspection, cancellation, stuck-job handling."""

    def __init__(
        self,
        store: JobStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ) -> None:
        self.store = store
        self.clock = clock
        self.poll_interval_s = poll_interval_s

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        return await self.store.get_job(job_id)

    async def list_jobs(self, case_id: str) -> List[JobRecord]:
        return await self.store.list_jobs(case_id)

    async def list_active(self, case_id: str) -> List[JobRecord]:
        return await self.store.list_jobs(case_id, ACTIVE_STATUSES)

    async def cancel(self, job_id: str) -> bool:
        job = await self.store.get_job(job_id)
        if job is None or job.is_terminal:
            return False

        skipped = await self.store.update_units(
            job_id, from_statuses=[UnitStatus.PENDING], fields={"status": UnitStatus.SKIPPED}
        )
        await set_job_status(self.store, job_id=job_id, to_status=JobStatus.CANCELLED, reason="cancelled")
        log_event(logger, "job_cancelled", job_id=job_id, skipped_units=skipped)
        return True

    # -----------------------
    # stuck jobs
    # -----------------------

    async def find_stuck(self, threshold_hours: float = DEFAULT_STUCK_THRESHOLD_HOURS) -> List[JobRecord]:
        cutoff = self.clock() - timedelta(hours=threshold_hours)
        return await self.store.find_jobs(status=JobStatus.RUNNING, updated_before=cutoff)

    async def cleanup_stuck(self, threshold_hours: float = DEFAULT_STUCK_THRESHOLD_HOURS) -> CleanupResult:
        result = CleanupResult()
        for job in await self.find_stuck(threshold_hours):
            last_update = job.updated_at.isoformat() if job.updated_at else None
            stuck = StuckJobError(job.id, threshold_hours, last_update)

            await self.store.update_units(
                job.id,
                from_statuses=[UnitStatus.PENDING, UnitStatus.PROCESSING],
                fields={"status": UnitStatus.FAILED, "error_log": str(stuck)},
            )
            failed = len(await self.store.list_units(job.id, [UnitStatus.FAILED]))
            await set_job_status(
                self.store,
                job_id=job.id,
                to_status=JobStatus.FAILED,
                reason="stuck",
                extra={"error_summary": stuck.to_payload(), "failed_units": failed},
            )
            logger.warning("marked stuck job %s as failed (last update %s)", job.id, last_update)
            result.count += 1
            result.job_ids.append(job.id)
        return result

    async def delete_stuck(self, threshold_hours: float = DEFAULT_STUCK_THRESHOLD_HOURS) -> CleanupResult:
        result = CleanupResult()
        for job in await self.find_stuck(threshold_hours):
            await self.store.delete_units(job.id)
            if await self.store.delete_job(job.id):
                logger.warning("deleted stuck job %s", job.id)
                result.count += 1
                result.job_ids.append(job.id)
        return result

    # -----------------------
    # retry / wait
    # -----------------------

    async def retry_failed_units(self, job_id: str) -> int:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.is_terminal:
            return 0
        # only the extract phase picks pending units up again
        raw_state = (job.metadata or {}).get("chunked_state")
        if raw_state and load_state(raw_state).phase != "extract":
            return 0

        reset = await self.store.update_units(
            job_id,
            from_statuses=[UnitStatus.FAILED],
            fields={"status": UnitStatus.PENDING, "error_log": None},
        )
        if not reset:
            return 0

        await self.store.update_job(job_id, {"failed_units": 0})
        if job.status == JobStatus.PENDING:
            await set_job_status(self.store, job_id=job_id, to_status=JobStatus.RUNNING, reason="retry")
        await write_audit_event(
            self.store,
            job_id=job_id,
            event_type=AuditEventType.STEP_COMPLETED,
            payload={"step": "retry-failed-units", "units": reset},
        )
        return reset

    async def wait_for_completion(self, job_id: str, timeout_s: float) -> Optional[JobRecord]:
        """Poll until the job is terminal; None when ``timeout_s`` elapses first."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while True:
            job = await self.store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.is_terminal:
                return job
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_s, remaining))

    # -----------------------
    # summaries
    # -----------------------

    async def get_unit_stats(self, job_id: str) -> UnitStats:
        return unit_stats(await self.store.list_units(job_id))

    async def get_summary(self, job_id: str) -> Optional[JobSummary]:
        job = await self.store.get_job(job_id)
        if job is None:
            return None
        units = await self.store.list_units(job_id)
        return JobSummary(
            job=job,
            units=unit_stats(units),
            failed_units=[u for u in units if u.status == UnitStatus.FAILED],
        )
