from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, computed_field

from coldcase.db.models import AuditEventType, JobStatus, UnitStatus

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})

# below this many characters a cached text is treated as missing
MIN_CACHED_TEXT_CHARS = 10


def progress_percentage(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, max(0, math.floor(100 * completed / total + 0.5)))


class JobRecord(BaseModel):
    id: str
    case_id: str
    job_type: str = "ai_analysis"
    status: JobStatus = JobStatus.PENDING
    total_units: int = 0
    completed_units: int = 0
    failed_units: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_summary: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def progress_percentage(self) -> int:
        return progress_percentage(self.completed_units, self.total_units)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class UnitRecord(BaseModel):
    id: str
    job_id: str
    document_id: Optional[str] = None
    unit_index: int
    status: UnitStatus = UnitStatus.PENDING
    attempts: int = 0
    characters: int = 0
    confidence: Optional[float] = None
    error_log: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def is_meaningful_text(text: Optional[str]) -> bool:
    return bool(text) and len(text.strip()) > MIN_CACHED_TEXT_CHARS


class DocumentRef(BaseModel):
    id: str
    case_id: str
    file_name: str
    storage_path: Optional[str] = None
    document_type: Optional[str] = None
    extracted_text: Optional[str] = None
    extraction_confidence: Optional[float] = None
    created_at: Optional[datetime] = None

    @property
    def has_cached_text(self) -> bool:
        return is_meaningful_text(self.extracted_text)


class AuditRecord(BaseModel):
    id: int
    job_id: str
    event_type: AuditEventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class UnitStats(BaseModel):
    total_units: int = 0
    completed_units: int = 0
    failed_units: int = 0
    pending_units: int = 0
    processing_units: int = 0
    skipped_units: int = 0
    total_characters: int = 0
    avg_confidence: float = 0.0
    progress_pct: int = 0
