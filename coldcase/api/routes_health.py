from fastapi import APIRouter, Depends, HTTPException

from coldcase.api.deps import get_analysis_gateway, get_store
from coldcase.runtime.store import JobStore

router = APIRouter(tags=["health"])

@router.get("/")
def root():
    return {"service": "coldcase", "version": "0.1.0"}

@router.get("/health")
def health():
    return {"status": "ok"}

@router.get("/ready")
async def ready(store: JobStore = Depends(get_store), analysis=Depends(get_analysis_gateway)):
    try:
        jobs = await store.count_jobs()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"database unavailable: {e}")
    return {"ready": True, "jobs": jobs, "analysis_configured": analysis is not None}
