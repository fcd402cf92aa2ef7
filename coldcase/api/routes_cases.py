from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from coldcase.api.deps import get_runner, get_store, get_tracker
from coldcase.api.schemas_jobs import DocumentCreateRequest, DocumentResponse, JobResponse
from coldcase.core.errors import EmptyInputError
from coldcase.domain.records import DocumentRef
from coldcase.runtime.runner import ChunkedAnalysisRunner
from coldcase.runtime.state import ContinueResult
from coldcase.runtime.store import JobStore, new_id
from coldcase.runtime.tracker import ProgressTracker

router = APIRouter(prefix="/cases", tags=["cases"])


def _document_response(doc: DocumentRef) -> DocumentResponse:
    return DocumentResponse(
        id=doc.id,
        case_id=doc.case_id,
        file_name=doc.file_name,
        storage_path=doc.storage_path,
        document_type=doc.document_type,
        has_text=doc.has_cached_text,
        extraction_confidence=doc.extraction_confidence,
    )


@router.post("/{case_id}/documents", response_model=DocumentResponse, status_code=201)
async def add_document(case_id: str, req: DocumentCreateRequest, store: JobStore = Depends(get_store)):
    doc = await store.insert_document(DocumentRef(id=new_id(), case_id=case_id, **req.model_dump()))
    return _document_response(doc)


@router.get("/{case_id}/documents", response_model=list[DocumentResponse])
async def list_documents(case_id: str, store: JobStore = Depends(get_store)):
    return [_document_response(d) for d in await store.list_documents(case_id)]


@router.post("/{case_id}/analyze", response_model=ContinueResult, status_code=201)
async def start_analysis(case_id: str, runner: ChunkedAnalysisRunner = Depends(get_runner)):
    try:
        return await runner.init_analysis(case_id)
    except EmptyInputError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/{case_id}/jobs", response_model=list[JobResponse])
async def list_case_jobs(
    case_id: str,
    active: bool = Query(False),
    tracker: ProgressTracker = Depends(get_tracker),
):
    jobs = await (tracker.list_active(case_id) if active else tracker.list_jobs(case_id))
    return [JobResponse.from_record(j) for j in jobs]
