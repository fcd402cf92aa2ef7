from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coldcase.core.errors import JobNotFoundError
from coldcase.db.models import (
    AuditEvent,
    AuditEventType,
    CaseAnalysis,
    CaseDocument,
    JobStatus,
    JobUnit,
    ProcessingJob,
    TimelineEventRow,
    UnitStatus,
)
from coldcase.domain.records import AuditRecord, DocumentRef, JobRecord, UnitRecord


class JobStore(Protocol):
    """Persistence seam for jobs, their sub-units, case documents and results."""

    # jobs
    async def get_job(self, job_id: str) -> Optional[JobRecord]: ...
    async def insert_job(self, job: JobRecord) -> JobRecord: ...
    async def update_job(self, job_id: str, fields: Dict[str, Any]) -> JobRecord: ...
    async def delete_job(self, job_id: str) -> bool: ...
    async def list_jobs(self, case_id: str, statuses: Optional[Iterable[JobStatus]] = None) -> List[JobRecord]: ...
    async def find_jobs(self, *, status: JobStatus, updated_before: datetime) -> List[JobRecord]: ...

    # sub-units
    async def insert_units(self, units: Sequence[UnitRecord]) -> None: ...
    async def list_units(
        self, job_id: str, statuses: Optional[Iterable[UnitStatus]] = None, limit: Optional[int] = None
    ) -> List[UnitRecord]: ...
    async def update_unit(self, unit_id: str, fields: Dict[str, Any]) -> None: ...
    async def update_units(self, job_id: str, *, from_statuses: Iterable[UnitStatus], fields: Dict[str, Any]) -> int: ...
    async def delete_units(self, job_id: str) -> int: ...

    # documents
    async def insert_document(self, document: DocumentRef) -> DocumentRef: ...
    async def list_documents(self, case_id: str) -> List[DocumentRef]: ...
    async def save_extracted_text(self, document_id: str, text: str, confidence: Optional[float]) -> None: ...

    # results
    async def save_analysis(
        self, *, case_id: str, analysis_type: str, data: Dict[str, Any], confidence_score: float, used_prompt: str
    ) -> None: ...
    async def list_analyses(self, case_id: str) -> List[Dict[str, Any]]: ...
    async def save_timeline_events(self, case_id: str, rows: Sequence[Dict[str, Any]]) -> int: ...
    async def list_timeline_events(self, case_id: str) -> List[Dict[str, Any]]: ...

    # audit
    async def add_event(self, *, job_id: str, event_type: AuditEventType, payload: Dict[str, Any]) -> None: ...
    async def list_events(self, job_id: str) -> List[AuditRecord]: ...
    async def count_jobs(self) -> int: ...


def new_id() -> str:
    return str(uuid.uuid4())


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _job_record(row: ProcessingJob) -> JobRecord:
    return JobRecord(
        id=row.id,
        case_id=row.case_id,
        job_type=row.job_type,
        status=row.status,
        total_units=row.total_units,
        completed_units=row.completed_units,
        failed_units=row.failed_units,
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        error_summary=dict(row.error_summary or {}),
        metadata=dict(row.job_metadata or {}),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _unit_record(row: JobUnit) -> UnitRecord:
    rec = UnitRecord.model_validate(row, from_attributes=True)
    rec.created_at = _aware(rec.created_at)
    rec.updated_at = _aware(rec.updated_at)
    return rec


_JOB_COLUMNS = {"metadata": "job_metadata"}


class SqlJobStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _job_row(self, job_id: str) -> Optional[ProcessingJob]:
        res = await self.session.execute(select(ProcessingJob).where(ProcessingJob.id == job_id))
        return res.scalar_one_or_none()

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        row = await self._job_row(job_id)
        return _job_record(row) if row else None

    async def insert_job(self, job: JobRecord) -> JobRecord:
        row = ProcessingJob(
            id=job.id,
            case_id=job.case_id,
            job_type=job.job_type,
            status=job.status,
            total_units=job.total_units,
            completed_units=job.completed_units,
            failed_units=job.failed_units,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error_summary=job.error_summary,
            job_metadata=job.metadata,
        )
        self.session.add(row)
        await self.session.commit()
        await self.session.refresh(row)
        return _job_record(row)

    async def update_job(self, job_id: str, fields: Dict[str, Any]) -> JobRecord:
        row = await self._job_row(job_id)
        if not row:
            raise JobNotFoundError(job_id)
        for key, value in fields.items():
            setattr(row, _JOB_COLUMNS.get(key, key), value)
        await self.session.commit()
        await self.session.refresh(row)
        return _job_record(row)

    async def delete_job(self, job_id: str) -> bool:
        res = await self.session.execute(delete(ProcessingJob).where(ProcessingJob.id == job_id))
        await self.session.commit()
        return res.rowcount > 0

    async def list_jobs(self, case_id: str, statuses: Optional[Iterable[JobStatus]] = None) -> List[JobRecord]:
        stmt = select(ProcessingJob).where(ProcessingJob.case_id == case_id)
        if statuses is not None:
            stmt = stmt.where(ProcessingJob.status.in_(list(statuses)))
        res = await self.session.execute(stmt.order_by(ProcessingJob.created_at.desc()))
        return [_job_record(r) for r in res.scalars().all()]

    async def find_jobs(self, *, status: JobStatus, updated_before: datetime) -> List[JobRecord]:
        res = await self.session.execute(
            select(ProcessingJob)
            .where(ProcessingJob.status == status, ProcessingJob.updated_at < updated_before)
            .order_by(ProcessingJob.updated_at.asc())
        )
        return [_job_record(r) for r in res.scalars().all()]

    async def insert_units(self, units: Sequence[UnitRecord]) -> None:
        for unit in units:
            self.session.add(
                JobUnit(
                    id=unit.id,
                    job_id=unit.job_id,
                    document_id=unit.document_id,
                    unit_index=unit.unit_index,
                    status=unit.status,
                    attempts=unit.attempts,
                    characters=unit.characters,
                    confidence=unit.confidence,
                    error_log=unit.error_log,
                )
            )
        await self.session.commit()

    async def list_units(
        self, job_id: str, statuses: Optional[Iterable[UnitStatus]] = None, limit: Optional[int] = None
    ) -> List[UnitRecord]:
        stmt = select(JobUnit).where(JobUnit.job_id == job_id)
        if statuses is not None:
            stmt = stmt.where(JobUnit.status.in_(list(statuses)))
        stmt = stmt.order_by(JobUnit.unit_index.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        res = await self.session.execute(stmt)
        return [_unit_record(r) for r in res.scalars().all()]

    async def update_unit(self, unit_id: str, fields: Dict[str, Any]) -> None:
        await self.session.execute(update(JobUnit).where(JobUnit.id == unit_id).values(**fields))
        await self.session.commit()

    async def update_units(self, job_id: str, *, from_statuses: Iterable[UnitStatus], fields: Dict[str, Any]) -> int:
        res = await self.session.execute(
            update(JobUnit)
            .where(JobUnit.job_id == job_id, JobUnit.status.in_(list(from_statuses)))
            .values(**fields)
        )
        await self.session.commit()
        return res.rowcount

    async def delete_units(self, job_id: str) -> int:
        res = await self.session.execute(delete(JobUnit).where(JobUnit.job_id == job_id))
        await self.session.commit()
        return res.rowcount

    async def insert_document(self, document: DocumentRef) -> DocumentRef:
        row = CaseDocument(**document.model_dump(exclude={"created_at"}))
        self.session.add(row)
        await self.session.commit()
        await self.session.refresh(row)
        return DocumentRef.model_validate(row, from_attributes=True)

    async def list_documents(self, case_id: str) -> List[DocumentRef]:
        res = await self.session.execute(
            select(CaseDocument)
            .where(CaseDocument.case_id == case_id)
            .order_by(CaseDocument.created_at.asc(), CaseDocument.id.asc())
        )
        return [DocumentRef.model_validate(r, from_attributes=True) for r in res.scalars().all()]

    async def save_extracted_text(self, document_id: str, text: str, confidence: Optional[float]) -> None:
        await self.session.execute(
            update(CaseDocument)
            .where(CaseDocument.id == document_id)
            .values(extracted_text=text, extraction_confidence=confidence)
        )
        await self.session.commit()

    async def save_analysis(
        self, *, case_id: str, analysis_type: str, data: Dict[str, Any], confidence_score: float, used_prompt: str
    ) -> None:
        self.session.add(
            CaseAnalysis(
                case_id=case_id,
                analysis_type=analysis_type,
                analysis_data=data,
                confidence_score=confidence_score,
                used_prompt=used_prompt,
            )
        )
        await self.session.commit()

    async def list_analyses(self, case_id: str) -> List[Dict[str, Any]]:
        res = await self.session.execute(
            select(CaseAnalysis).where(CaseAnalysis.case_id == case_id).order_by(CaseAnalysis.id.asc())
        )
        return [
            {
                "analysis_type": r.analysis_type,
                "analysis_data": r.analysis_data,
                "confidence_score": r.confidence_score,
                "used_prompt": r.used_prompt,
            }
            for r in res.scalars().all()
        ]

    async def save_timeline_events(self, case_id: str, rows: Sequence[Dict[str, Any]]) -> int:
        for row in rows:
            self.session.add(TimelineEventRow(case_id=case_id, **row))
        await self.session.commit()
        return len(rows)

    async def list_timeline_events(self, case_id: str) -> List[Dict[str, Any]]:
        res = await self.session.execute(
            select(TimelineEventRow).where(TimelineEventRow.case_id == case_id).order_by(TimelineEventRow.id.asc())
        )
        columns = [c.key for c in TimelineEventRow.__table__.columns if c.key not in {"id", "case_id", "created_at"}]
        return [{key: getattr(r, key) for key in columns} for r in res.scalars().all()]

    async def add_event(self, *, job_id: str, event_type: AuditEventType, payload: Dict[str, Any]) -> None:
        self.session.add(AuditEvent(job_id=job_id, event_type=event_type, payload=payload))
        await self.session.commit()

    async def list_events(self, job_id: str) -> List[AuditRecord]:
        res = await self.session.execute(
            select(AuditEvent).where(AuditEvent.job_id == job_id).order_by(AuditEvent.id.asc())
        )
        return [AuditRecord.model_validate(e, from_attributes=True) for e in res.scalars().all()]

    async def count_jobs(self) -> int:
        res = await self.session.execute(select(func.count()).select_from(ProcessingJob))
        return int(res.scalar_one())
