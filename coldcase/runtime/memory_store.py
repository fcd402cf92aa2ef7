from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from coldcase.core.errors import JobNotFoundError
from coldcase.db.models import AuditEventType, JobStatus, UnitStatus
from coldcase.domain.records import AuditRecord, DocumentRef, JobRecord, UnitRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryJobStore:
    """Dictionary-backed JobStore. Records are copied in and out so callers never share state."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._jobs: Dict[str, JobRecord] = {}
        self._units: Dict[str, Dict[str, UnitRecord]] = {}
        self._documents: Dict[str, DocumentRef] = {}
        self._analyses: List[Dict[str, Any]] = []
        self._timeline: List[Dict[str, Any]] = []
        self._events: List[AuditRecord] = []

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def insert_job(self, job: JobRecord) -> JobRecord:
        now = self._clock()
        stored = job.model_copy(deep=True, update={"created_at": job.created_at or now, "updated_at": now})
        self._jobs[job.id] = stored
        return stored.model_copy(deep=True)

    async def update_job(self, job_id: str, fields: Dict[str, Any]) -> JobRecord:
        current = self._jobs.get(job_id)
        if current is None:
            raise JobNotFoundError(job_id)
        changes = copy.deepcopy(fields)
        changes.setdefault("updated_at", self._clock())
        updated = current.model_copy(update=changes)
        self._jobs[job_id] = updated
        return updated.model_copy(deep=True)

    async def delete_job(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    async def list_jobs(self, case_id: str, statuses: Optional[Iterable[JobStatus]] = None) -> List[JobRecord]:
        wanted = set(statuses) if statuses is not None else None
        jobs = [
            j for j in self._jobs.values()
            if j.case_id == case_id and (wanted is None or j.status in wanted)
        ]
        # insertion order breaks created_at ties
        order = {job_id: idx for idx, job_id in enumerate(self._jobs)}
        jobs.sort(key=lambda j: (j.created_at, order[j.id]), reverse=True)
        return [j.model_copy(deep=True) for j in jobs]

    async def find_jobs(self, *, status: JobStatus, updated_before: datetime) -> List[JobRecord]:
        jobs = [
            j for j in self._jobs.values()
            if j.status == status and j.updated_at is not None and j.updated_at < updated_before
        ]
        jobs.sort(key=lambda j: j.updated_at)
        return [j.model_copy(deep=True) for j in jobs]

    async def insert_units(self, units: Sequence[UnitRecord]) -> None:
        now = self._clock()
        for unit in units:
            self._units.setdefault(unit.job_id, {})[unit.id] = unit.model_copy(
                update={"created_at": now, "updated_at": now}
            )

    async def list_units(
        self, job_id: str, statuses: Optional[Iterable[UnitStatus]] = None, limit: Optional[int] = None
    ) -> List[UnitRecord]:
        wanted = set(statuses) if statuses is not None else None
        units = sorted(self._units.get(job_id, {}).values(), key=lambda u: u.unit_index)
        units = [u.model_copy() for u in units if wanted is None or u.status in wanted]
        return units[:limit] if limit is not None else units

    async def update_unit(self, unit_id: str, fields: Dict[str, Any]) -> None:
        for units in self._units.values():
            if unit_id in units:
                units[unit_id] = units[unit_id].model_copy(update={**fields, "updated_at": self._clock()})
                return

    async def update_units(self, job_id: str, *, from_statuses: Iterable[UnitStatus], fields: Dict[str, Any]) -> int:
        wanted = set(from_statuses)
        units = self._units.get(job_id, {})
        count = 0
        for unit_id, unit in units.items():
            if unit.status in wanted:
                units[unit_id] = unit.model_copy(update={**fields, "updated_at": self._clock()})
                count += 1
        return count

    async def delete_units(self, job_id: str) -> int:
        return len(self._units.pop(job_id, {}))

    async def insert_document(self, document: DocumentRef) -> DocumentRef:
        stored = document.model_copy(update={"created_at": document.created_at or self._clock()})
        self._documents[document.id] = stored
        return stored.model_copy()

    async def list_documents(self, case_id: str) -> List[DocumentRef]:
        return [d.model_copy() for d in self._documents.values() if d.case_id == case_id]

    async def save_extracted_text(self, document_id: str, text: str, confidence: Optional[float]) -> None:
        doc = self._documents[document_id]
        self._documents[document_id] = doc.model_copy(
            update={"extracted_text": text, "extraction_confidence": confidence}
        )

    async def save_analysis(
        self, *, case_id: str, analysis_type: str, data: Dict[str, Any], confidence_score: float, used_prompt: str
    ) -> None:
        self._analyses.append(
            {
                "case_id": case_id,
                "analysis_type": analysis_type,
                "analysis_data": copy.deepcopy(data),
                "confidence_score": confidence_score,
                "used_prompt": used_prompt,
            }
        )

    async def list_analyses(self, case_id: str) -> List[Dict[str, Any]]:
        return [
            {k: v for k, v in a.items() if k != "case_id"}
            for a in copy.deepcopy(self._analyses)
            if a["case_id"] == case_id
        ]

    async def save_timeline_events(self, case_id: str, rows: Sequence[Dict[str, Any]]) -> int:
        self._timeline.extend({"case_id": case_id, **copy.deepcopy(r)} for r in rows)
        return len(rows)

    async def list_timeline_events(self, case_id: str) -> List[Dict[str, Any]]:
        return [
            {k: v for k, v in r.items() if k != "case_id"}
            for r in copy.deepcopy(self._timeline)
            if r["case_id"] == case_id
        ]

    async def add_event(self, *, job_id: str, event_type: AuditEventType, payload: Dict[str, Any]) -> None:
        self._events.append(
            AuditRecord(
                id=len(self._events) + 1,
                job_id=job_id,
                event_type=event_type,
                payload=copy.deepcopy(payload),
                created_at=self._clock(),
            )
        )

    async def list_events(self, job_id: str) -> List[AuditRecord]:
        return [e.model_copy() for e in self._events if e.job_id == job_id]

    async def count_jobs(self) -> int:
        return len(self._jobs)
