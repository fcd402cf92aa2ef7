from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from coldcase.analysis.contracts import TimelineEvent
from coldcase.analysis.gateway import OP_ANALYZE_BATCH, AnalysisGateway
from coldcase.core.audit import write_audit_event
from coldcase.core.config import Settings, settings
from coldcase.core.errors import EmptyInputError, GatewayError, InvalidJobStateError, JobNotFoundError
from coldcase.core.logging import get_logger, log_event
from coldcase.db.models import AuditEventType, JobStatus, UnitStatus
from coldcase.domain.job_service import set_job_status
from coldcase.domain.records import JobRecord, UnitRecord, is_meaningful_text
from coldcase.extraction.gateway import OP_EXTRACT, ExtractionGateway, as_error, extract_batch
from coldcase.runtime.accumulator import (
    accumulate,
    build_digest,
    build_previous_context,
    consolidate_locally,
    has_findings,
)
from coldcase.runtime.state import (
    AnalyzeState,
    ChunkedJobState,
    CompleteState,
    ConsolidateState,
    ContinueResult,
    ExtractState,
    FailedState,
    Progress,
    advance,
    compute_progress,
    dump_state,
    load_state,
)
from coldcase.runtime.store import JobStore, new_id

logger = get_logger(__name__)

JOB_TYPE = "ai_analysis"
ANALYSIS_TYPE = "timeline_and_conflicts"
ANALYSIS_CONFIDENCE = 0.85
MISSING_DOCUMENT = "document no longer exists"

_EVENT_TYPES = {
    "interview": "witness_account",
    "witness_statement": "witness_account",
    "forensic_report": "evidence_found",
}


@dataclass(frozen=True)
class AnalysisConfig:
    analysis_batch_size: int = 25
    extract_batch_size: int = 10
    extract_concurrency: int = 5
    extract_timeout_s: float = 60.0

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "AnalysisConfig":
        return cls(
            analysis_batch_size=cfg.analysis_batch_size,
            extract_batch_size=cfg.extract_batch_size,
            extract_concurrency=cfg.extract_concurrency,
            extract_timeout_s=cfg.extract_timeout_s,
        )


# -----------------------
# helpers (resume-safe)
# -----------------------

def _metadata(case_id: str, state: ChunkedJobState) -> Dict[str, Any]:
    return {"case_id": case_id, "chunked_state": dump_state(state)}


def _load(job: JobRecord) -> Tuple[str, Optional[ChunkedJobState]]:
    meta = job.metadata or {}
    raw = meta.get("chunked_state")
    return meta.get("case_id") or job.case_id, (load_state(raw) if raw else None)


def _extraction_error(unit: UnitRecord, documents: Dict[str, Any]) -> str:
    doc = documents.get(unit.document_id)
    return f"{doc.file_name if doc else unit.document_id}: {unit.error_log}"


def _completed_units(job: JobRecord, state: ChunkedJobState, failed_units: int) -> int:
    if isinstance(state, CompleteState):
        return max(0, job.total_units - failed_units)
    if state.phase == "extract":
        return state.extracted_count
    return state.extracted_count + state.current_batch


def timeline_row(event: TimelineEvent) -> Dict[str, Any]:
    """Project a timeline finding onto the case's timeline_events log."""
    if event.start_time and event.end_time:
        precision = "approximate"
    elif event.time:
        precision = "exact"
    else:
        precision = "estimated"
    return {
        "event_type": _EVENT_TYPES.get(event.source_type, "other"),
        "title": (event.description or "")[:100] or "Timeline Event",
        "description": event.description or None,
        "event_date": event.date or None,
        "event_time": event.time or event.start_time or None,
        "time_precision": precision,
        "time_range_start": event.start_time or None,
        "time_range_end": event.end_time or None,
        "location": event.location or None,
        "confidence_score": event.confidence,
        "source_type": event.source_type,
        "source_notes": event.source or None,
        "verification_status": "unverified",
    }


# -----------------------
# runner
# -----------------------

class ChunkedAnalysisRunner:
    """Drives a case through extract -> analyze -> consolidate, one bounded step per call.

    All cross-call state lives in the job record's metadata; the runner itself
    keeps nothing between calls, so any process may pick a job up.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        extractor: Optional[ExtractionGateway],
        analysis: Optional[AnalysisGateway],
        config: AnalysisConfig | None = None,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.analysis = analysis
        self.config = config or AnalysisConfig()

    # -----------------------
    # entrypoints
    # -----------------------

    async def init_analysis(self, case_id: str) -> ContinueResult:
        documents = await self.store.list_documents(case_id)
        if not documents:
            raise EmptyInputError(f"no documents found for case {case_id}")

        total = len(documents)
        extracted = sum(1 for d in documents if d.has_cached_text)
        total_batches = math.ceil(total / self.config.analysis_batch_size)

        state_cls = ExtractState if extracted < total else AnalyzeState
        state = state_cls(total_documents=total, extracted_count=extracted, total_batches=total_batches)

        job_id = new_id()
        await self.store.insert_job(
            JobRecord(
                id=job_id,
                case_id=case_id,
                job_type=JOB_TYPE,
                status=JobStatus.PENDING,
                total_units=total + total_batches + 1,
                completed_units=extracted,
                metadata=_metadata(case_id, state),
            )
        )
        await self.store.insert_units(
            [
                UnitRecord(
                    id=new_id(),
                    job_id=job_id,
                    document_id=doc.id,
                    unit_index=idx,
                    status=UnitStatus.COMPLETED if doc.has_cached_text else UnitStatus.PENDING,
                    characters=len(doc.extracted_text or "") if doc.has_cached_text else 0,
                    confidence=doc.extraction_confidence,
                )
                for idx, doc in enumerate(documents)
            ]
        )
        await write_audit_event(
            self.store,
            job_id=job_id,
            event_type=AuditEventType.JOB_CREATED,
            payload={"case_id": case_id, "documents": total, "pre_extracted": extracted, "phase": state.phase},
        )
        await set_job_status(self.store, job_id=job_id, to_status=JobStatus.RUNNING, reason="analysis_started")

        pending = total - extracted
        if pending:
            message = f"Starting extraction for {pending} unprocessed documents..."
        else:
            message = f"All {total} documents ready. Starting analysis in {total_batches} batches..."
        return self._result(job_id, state, message)

    async def continue_analysis(self, job_id: str) -> ContinueResult:
        job = await self.store.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)

        case_id, state = _load(job)

        # idempotency: already terminal
        if job.is_terminal:
            return self._terminal_result(job, state)

        if state is None:
            raise InvalidJobStateError(f"job {job_id} carries no analysis state")

        log_event(logger, "continue", job_id=job_id, phase=state.phase, batch=state.current_batch)
        try:
            if isinstance(state, ExtractState):
                return await self._run_extraction(job, case_id, state)
            if isinstance(state, AnalyzeState):
                return await self._run_analysis(job, case_id, state)
            if isinstance(state, ConsolidateState):
                return await self._run_consolidation(job, case_id, state)
            # complete/failed reached through a race: nothing left to do
            return self._terminal_result(job, state)
        except Exception as exc:
            await self._fail(job_id, case_id, state, exc)
            raise

    # -----------------------
    # phases
    # -----------------------

    async def _run_extraction(self, job: JobRecord, case_id: str, state: ExtractState) -> ContinueResult:
        pending = await self.store.list_units(job.id, [UnitStatus.PENDING], limit=self.config.extract_batch_size)

        if not pending:
            next_state = advance(state, AnalyzeState)
            await self._save(job, case_id, next_state, previous=state)
            return self._result(
                job.id, next_state, f"All {state.total_documents} documents extracted. Starting AI analysis..."
            )

        if self.extractor is None:
            raise GatewayError(OP_EXTRACT, "no extraction gateway configured")

        documents = {d.id: d for d in await self.store.list_documents(case_id)}
        batch: List[Tuple[UnitRecord, Any]] = []
        for unit in pending:
            await self.store.update_unit(unit.id, {"status": UnitStatus.PROCESSING, "attempts": unit.attempts + 1})
            batch.append((unit, documents.get(unit.document_id)))

        missing = [unit for unit, doc in batch if doc is None]
        present = [(unit, doc) for unit, doc in batch if doc is not None]
        outcomes = await extract_batch(
            self.extractor,
            [doc for _, doc in present],
            concurrency=self.config.extract_concurrency,
            timeout_s=self.config.extract_timeout_s,
        )

        for unit in missing:
            await self.store.update_unit(unit.id, {"status": UnitStatus.FAILED, "error_log": MISSING_DOCUMENT})

        for (unit, _), (doc, outcome) in zip(present, outcomes):
            if outcome.ok and is_meaningful_text(outcome.text):
                await self.store.save_extracted_text(doc.id, outcome.text, outcome.confidence)
                await self.store.update_unit(
                    unit.id,
                    {
                        "status": UnitStatus.COMPLETED,
                        "characters": len(outcome.text),
                        "confidence": outcome.confidence,
                        "error_log": None,
                    },
                )
                state.extracted_count += 1
                continue

            error = as_error(doc, outcome)
            await self.store.update_unit(unit.id, {"status": UnitStatus.FAILED, "error_log": error.reason})
            await write_audit_event(
                self.store,
                job_id=job.id,
                event_type=AuditEventType.EXTRACTION_FAILED,
                payload={"document_id": doc.id, "file_name": doc.file_name, "reason": error.reason},
            )

        # current failures only, so a retried document that succeeded drops out
        failed = await self.store.list_units(job.id, [UnitStatus.FAILED])
        state.extraction_errors = [_extraction_error(unit, documents) for unit in failed]

        remaining = await self.store.list_units(job.id, [UnitStatus.PENDING])
        next_state = advance(state, AnalyzeState) if not remaining else state
        await self._save(job, case_id, next_state, previous=state)

        if next_state.phase == "analyze":
            message = f"Extraction complete ({next_state.extracted_count} docs). Starting analysis..."
        else:
            message = f"Extracted {next_state.extracted_count}/{next_state.total_documents} documents..."
        warnings = None
        if next_state.extraction_errors:
            warnings = [f"{len(next_state.extraction_errors)} documents had extraction issues"]
        return self._result(job.id, next_state, message, warnings=warnings)

    async def _run_analysis(self, job: JobRecord, case_id: str, state: AnalyzeState) -> ContinueResult:
        if self.analysis is None:
            raise GatewayError(OP_ANALYZE_BATCH, "no analysis gateway configured")

        documents = [d for d in await self.store.list_documents(case_id) if d.has_cached_text]
        if not documents:
            raise EmptyInputError("no documents with extracted text available")

        size = self.config.analysis_batch_size
        # fewer documents than estimated may have yielded text
        state.total_batches = math.ceil(len(documents) / size)
        start = state.current_batch * size
        batch = documents[start : start + size]

        if not batch:
            next_state = advance(state, ConsolidateState)
            await self._save(job, case_id, next_state, previous=state)
            return self._result(
                job.id, next_state, f"All {state.total_batches} batches analyzed. Running consolidation..."
            )

        log_event(
            logger,
            "analyze_batch",
            job_id=job.id,
            batch=state.current_batch + 1,
            total_batches=state.total_batches,
            documents=len(batch),
        )
        prior_context = build_previous_context(
            state.accumulated_timeline, state.accumulated_persons, state.accumulated_conflicts
        )
        findings = await self.analysis.analyze_batch(batch, state.current_batch, state.total_batches, prior_context)

        accumulate(state, findings)
        state.current_batch += 1

        next_state = advance(state, ConsolidateState) if state.current_batch >= state.total_batches else state
        await self._save(job, case_id, next_state, previous=state)
        await write_audit_event(
            self.store,
            job_id=job.id,
            event_type=AuditEventType.STEP_COMPLETED,
            payload={"step": OP_ANALYZE_BATCH, "batch": state.current_batch, "documents": len(batch)},
        )

        events, persons = len(state.accumulated_timeline), len(state.accumulated_persons)
        if next_state.phase == "consolidate":
            message = f"All batches complete. Found {events} events, {persons} persons. Consolidating..."
        else:
            message = f"Batch {state.current_batch}/{state.total_batches} complete. Found {events} events so far..."
        return self._result(job.id, next_state, message)

    async def _run_consolidation(self, job: JobRecord, case_id: str, state: ConsolidateState) -> ContinueResult:
        if self.analysis is not None and has_findings(state):
            final = await self.analysis.consolidate(build_digest(state))
        else:
            final = consolidate_locally(state)

        next_state = advance(state, CompleteState, final_analysis=final)

        await self.store.save_analysis(
            case_id=case_id,
            analysis_type=ANALYSIS_TYPE,
            data=final.dump(),
            confidence_score=ANALYSIS_CONFIDENCE,
            used_prompt=f"Chunked analysis: {state.total_batches} batches, {state.total_documents} documents",
        )
        if final.timeline:
            await self.store.save_timeline_events(case_id, [timeline_row(e) for e in final.timeline])

        await self._save(job, case_id, next_state, previous=state)

        current = await self.store.get_job(job.id)
        if current and not current.is_terminal:
            await set_job_status(self.store, job_id=job.id, to_status=JobStatus.COMPLETED, reason="analysis_complete")

        message = (
            f"Analysis complete: {len(final.timeline)} events, {len(final.person_mentions)} persons, "
            f"{len(final.conflicts)} conflicts identified across {state.total_documents} documents."
        )
        return self._result(job.id, next_state, message, done=True, findings=final)

    # -----------------------
    # persistence
    # -----------------------

    async def _save(self, job: JobRecord, case_id: str, state: ChunkedJobState, *, previous: ChunkedJobState) -> None:
        failed = len(await self.store.list_units(job.id, [UnitStatus.FAILED]))
        await self.store.update_job(
            job.id,
            {
                "metadata": _metadata(case_id, state),
                "completed_units": _completed_units(job, state, failed),
                "failed_units": failed,
            },
        )
        if previous.phase != state.phase:
            await write_audit_event(
                self.store,
                job_id=job.id,
                event_type=AuditEventType.PHASE_CHANGED,
                payload={"from": previous.phase, "to": state.phase},
            )

    async def _fail(self, job_id: str, case_id: str, state: ChunkedJobState, exc: Exception) -> None:
        logger.error("job %s failed during %s: %s", job_id, state.phase, exc)
        try:
            current = await self.store.get_job(job_id)
            if current is None or current.is_terminal:
                return
            failed_state = advance(state, FailedState, error=str(exc), failed_phase=state.phase)
            await self.store.update_job(
                job_id,
                {
                    "metadata": _metadata(case_id, failed_state),
                    "error_summary": {"kind": type(exc).__name__, "message": str(exc), "phase": state.phase},
                },
            )
            await write_audit_event(
                self.store,
                job_id=job_id,
                event_type=AuditEventType.ERROR,
                payload={"error": str(exc), "kind": type(exc).__name__, "phase": state.phase},
            )
            await set_job_status(self.store, job_id=job_id, to_status=JobStatus.FAILED, reason="step_failed")
        except Exception:
            # do not mask the step error if recording it fails
            logger.exception("could not record failure of job %s", job_id)

    # -----------------------
    # results
    # -----------------------

    def _result(
        self,
        job_id: str,
        state: ChunkedJobState,
        message: str,
        *,
        done: bool = False,
        findings=None,
        warnings: Optional[List[str]] = None,
    ) -> ContinueResult:
        return ContinueResult(
            job_id=job_id,
            done=done,
            phase=state.phase,
            progress=compute_progress(state),
            message=message,
            findings=findings,
            warnings=warnings,
        )

    def _terminal_result(self, job: JobRecord, state: Optional[ChunkedJobState]) -> ContinueResult:
        progress = compute_progress(state) if state else Progress(current=1, total=1, percentage=100)
        findings = state.final_analysis if isinstance(state, CompleteState) else None

        if job.status == JobStatus.COMPLETED:
            return ContinueResult(
                job_id=job.id, done=True, phase="complete", progress=progress,
                message="Analysis complete.", findings=findings,
            )
        if job.status == JobStatus.CANCELLED:
            return ContinueResult(
                job_id=job.id, done=True, phase=state.phase if state else "cancelled", progress=progress,
                message="Analysis cancelled.", findings=findings,
            )

        error = state.error if isinstance(state, FailedState) else job.error_summary.get("message", "Unknown error")
        return ContinueResult(
            job_id=job.id, done=True, phase="failed", progress=progress,
            message=f"Analysis failed: {error}", error=error,
        )
