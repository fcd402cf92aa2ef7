from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field, TypeAdapter

from coldcase.analysis.contracts import CaseFindings, Conflict, PersonMention, SuspectNote, TimelineEvent, UnfollowedTip
from coldcase.domain.records import progress_percentage
from coldcase.domain.state_machine import ensure_phase_transition_allowed

Phase = Literal["extract", "analyze", "consolidate", "complete", "failed"]


class _StateBase(BaseModel):
    total_documents: int
    extracted_count: int = 0
    extraction_errors: List[str] = Field(default_factory=list)

    total_batches: int
    current_batch: int = 0

    accumulated_timeline: List[TimelineEvent] = Field(default_factory=list)
    accumulated_persons: List[PersonMention] = Field(default_factory=list)
    accumulated_conflicts: List[Conflict] = Field(default_factory=list)
    accumulated_insights: List[str] = Field(default_factory=list)
    accumulated_tips: List[UnfollowedTip] = Field(default_factory=list)
    accumulated_suspects: List[SuspectNote] = Field(default_factory=list)


class ExtractState(_StateBase):
    phase: Literal["extract"] = "extract"


class AnalyzeState(_StateBase):
    phase: Literal["analyze"] = "analyze"


class ConsolidateState(_StateBase):
    phase: Literal["consolidate"] = "consolidate"


class CompleteState(_StateBase):
    phase: Literal["complete"] = "complete"
    final_analysis: CaseFindings


class FailedState(_StateBase):
    # accumulators are kept for audit; a failed job never carries a final analysis
    phase: Literal["failed"] = "failed"
    error: str
    failed_phase: str


ChunkedJobState = Annotated[
    Union[ExtractState, AnalyzeState, ConsolidateState, CompleteState, FailedState],
    Field(discriminator="phase"),
]

_ADAPTER: TypeAdapter = TypeAdapter(ChunkedJobState)

S = TypeVar("S", bound=_StateBase)


def load_state(payload: Dict[str, Any]) -> ChunkedJobState:
    return _ADAPTER.validate_python(payload)


def dump_state(state: _StateBase) -> Dict[str, Any]:
    return state.model_dump(mode="json")


def advance(state: _StateBase, target: Type[S], **fields: Any) -> S:
    """Move ``state`` into the ``target`` phase, carrying every shared field across."""
    ensure_phase_transition_allowed(state.phase, target.model_fields["phase"].default)
    shared = {name: getattr(state, name) for name in _StateBase.model_fields}
    return target(**shared, **fields)


class Progress(BaseModel):
    current: int
    total: int
    percentage: int


def compute_progress(state: _StateBase) -> Progress:
    """Weighted progress: one unit per document, one per batch, one for consolidation."""
    total = state.total_documents + state.total_batches + 1
    phase = state.failed_phase if isinstance(state, FailedState) else state.phase

    if phase == "extract":
        current = state.extracted_count
    elif phase == "analyze":
        current = state.total_documents + state.current_batch
    elif phase == "consolidate":
        current = state.total_documents + state.total_batches
    else:
        current = total

    current = min(current, total)
    return Progress(current=current, total=total, percentage=progress_percentage(current, total))


class ContinueResult(BaseModel):
    job_id: str
    done: bool
    phase: str
    progress: Progress
    message: str
    findings: Optional[CaseFindings] = None
    warnings: Optional[List[str]] = None
    error: Optional[str] = None
