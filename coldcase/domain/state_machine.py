from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Set

from coldcase.db.models import JobStatus

_ALLOWED: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}

# chunked-analysis phases; "failed" is reachable from every non-terminal phase
_PHASES_ALLOWED: Dict[str, Set[str]] = {
    "extract": {"analyze", "failed"},
    "analyze": {"consolidate", "failed"},
    "consolidate": {"complete", "failed"},
    "complete": set(),
    "failed": set(),
}

@dataclass(frozen=True)
class TransitionError(Exception):
    from_status: str
    to_status: str
    def __str__(self) -> str:
        return f"invalid transition: {self.from_status} -> {self.to_status}"

def ensure_transition_allowed(from_status: JobStatus, to_status: JobStatus) -> None:
    allowed = _ALLOWED.get(from_status, set())
    if to_status not in allowed:
        raise TransitionError(from_status=from_status.value, to_status=to_status.value)

def ensure_phase_transition_allowed(from_phase: str, to_phase: str) -> None:
    if to_phase not in _PHASES_ALLOWED.get(from_phase, set()):
        raise TransitionError(from_status=from_phase, to_status=to_phase)
