from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from coldcase.analysis.gateway import AnalysisGateway
from coldcase.api.deps import (
    StoreOpener,
    build_runner,
    get_runner,
    get_store,
    get_store_opener,
    get_task_queue,
    get_tracker,
)
from coldcase.api.schemas_jobs import (
    AuditEventResponse,
    CancelResponse,
    CleanupResponse,
    JobResponse,
    QueuedResponse,
    RetryResponse,
    SummaryResponse,
)
from coldcase.core.errors import JobNotFoundError
from coldcase.core.logging import get_logger
from coldcase.domain.state_machine import TransitionError
from coldcase.extraction.gateway import ExtractionGateway
from coldcase.runtime.runner import ChunkedAnalysisRunner
from coldcase.runtime.state import ContinueResult
from coldcase.runtime.store import JobStore
from coldcase.runtime.tasks import TaskQueue
from coldcase.runtime.tracker import ProgressTracker

logger = get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])

MIN_THRESHOLD_HOURS = 1
MAX_THRESHOLD_HOURS = 24
CLEANUP_ACTIONS = ("mark-failed", "delete")


def _check_threshold(threshold: int) -> int:
    if not MIN_THRESHOLD_HOURS <= threshold <= MAX_THRESHOLD_HOURS:
        raise HTTPException(
            status_code=400,
            detail=f"threshold must be between {MIN_THRESHOLD_HOURS} and {MAX_THRESHOLD_HOURS} hours",
        )
    return threshold


async def _require_job(tracker: ProgressTracker, job_id: str):
    job = await tracker.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    return job


# stuck-job routes are declared before /{job_id} so they are not captured by it

@router.get("/stuck", response_model=list[JobResponse])
async def find_stuck_jobs(threshold: int = Query(2), tracker: ProgressTracker = Depends(get_tracker)):
    jobs = await tracker.find_stuck(_check_threshold(threshold))
    return [JobResponse.from_record(j) for j in jobs]


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_stuck_jobs(
    action: str = Query("mark-failed"),
    threshold: int = Query(2),
    tracker: ProgressTracker = Depends(get_tracker),
):
    if action not in CLEANUP_ACTIONS:
        raise HTTPException(status_code=400, detail=f"action must be one of {', '.join(CLEANUP_ACTIONS)}")
    hours = _check_threshold(threshold)

    if action == "delete":
        result = await tracker.delete_stuck(hours)
    else:
        result = await tracker.cleanup_stuck(hours)
    return CleanupResponse(action=action, threshold_hours=hours, count=result.count, job_ids=result.job_ids)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, tracker: ProgressTracker = Depends(get_tracker)):
    return JobResponse.from_record(await _require_job(tracker, job_id))


@router.get("/{job_id}/summary", response_model=SummaryResponse)
async def get_job_summary(job_id: str, tracker: ProgressTracker = Depends(get_tracker)):
    summary = await tracker.get_summary(job_id)
    if not summary:
        raise HTTPException(status_code=404, detail="job not found")
    return SummaryResponse(
        job=JobResponse.from_record(summary.job),
        units=summary.units,
        failed_units=summary.failed_units,
    )


@router.get("/{job_id}/events", response_model=list[AuditEventResponse])
async def get_job_events(job_id: str, store: JobStore = Depends(get_store)):
    if not await store.get_job(job_id):
        raise HTTPException(status_code=404, detail="job not found")
    events = await store.list_events(job_id)
    return [AuditEventResponse.model_validate(e.model_dump()) for e in events]


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(job_id: str, tracker: ProgressTracker = Depends(get_tracker)):
    return CancelResponse(job_id=job_id, cancelled=await tracker.cancel(job_id))


@router.post("/{job_id}/retry", response_model=RetryResponse)
async def retry_failed_units(job_id: str, tracker: ProgressTracker = Depends(get_tracker)):
    try:
        retried = await tracker.retry_failed_units(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="job not found")
    except TransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return RetryResponse(job_id=job_id, retried=retried)


async def _continue_in_background(
    opener: StoreOpener,
    extractor: ExtractionGateway,
    analysis: Optional[AnalysisGateway],
    job_id: str,
) -> None:
    async with opener() as store:
        result = await build_runner(store, extractor, analysis).continue_analysis(job_id)
    logger.info("background step for job %s finished in phase %s", job_id, result.phase)


@router.post("/{job_id}/continue", response_model=ContinueResult)
async def continue_job(
    job_id: str,
    background: bool = Query(False),
    runner: ChunkedAnalysisRunner = Depends(get_runner),
    queue: TaskQueue = Depends(get_task_queue),
    opener: StoreOpener = Depends(get_store_opener),
):
    """
    One bounded step of a chunked analysis.
    - Terminal jobs return their stored result (done=true) without doing work.
    - A failing step leaves the job FAILED and answers 500 with the error.
    - background=true queues the step and answers 202 immediately.
    """
    if background:
        if not await runner.store.get_job(job_id):
            raise HTTPException(status_code=404, detail="job not found")
        queue.submit(
            f"continue:{job_id}",
            lambda: _continue_in_background(opener, runner.extractor, runner.analysis, job_id),
        )
        return JSONResponse(status_code=202, content=QueuedResponse(job_id=job_id).model_dump())

    try:
        return await runner.continue_analysis(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="job not found")
    except Exception as e:
        # the runner has already persisted the failure on the job
        logger.error("continue failed for job %s: %s", job_id, e)
        raise HTTPException(status_code=500, detail={"error": str(e), "done": True, "phase": "failed"})
