from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field

from coldcase.db.models import AuditEventType, JobStatus
from coldcase.domain.records import JobRecord, UnitRecord, UnitStats


class DocumentCreateRequest(BaseModel):
    file_name: str
    storage_path: str | None = None
    document_type: str | None = None
    extracted_text: str | None = None


class DocumentResponse(BaseModel):
    id: str
    case_id: str
    file_name: str
    storage_path: str | None = None
    document_type: str | None = None
    has_text: bool = False
    extraction_confidence: float | None = None


class JobResponse(BaseModel):
    id: str
    case_id: str
    job_type: str
    status: JobStatus
    total_units: int
    completed_units: int
    failed_units: int
    progress_percentage: int
    phase: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, job: JobRecord) -> "JobResponse":
        state = job.metadata.get("chunked_state") or {}
        return cls(
            **job.model_dump(include=set(cls.model_fields) - {"phase", "error"}),
            phase=state.get("phase"),
            error=state.get("error") or job.error_summary.get("message"),
        )


class AuditEventResponse(BaseModel):
    id: int
    job_id: str
    event_type: AuditEventType
    payload: dict
    created_at: datetime | None = None


class SummaryResponse(BaseModel):
    job: JobResponse
    units: UnitStats
    failed_units: List[UnitRecord] = Field(default_factory=list)


class CleanupResponse(BaseModel):
    action: str
    threshold_hours: int
    count: int
    job_ids: List[str]


class RetryResponse(BaseModel):
    job_id: str
    retried: int


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool


class QueuedResponse(BaseModel):
    job_id: str
    queued: bool = True
