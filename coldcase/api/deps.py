from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coldcase.analysis.gateway import AnalysisGateway, build_analysis_gateway
from coldcase.core.config import settings
from coldcase.db.session import AsyncSessionLocal, get_session
from coldcase.extraction.gateway import ExtractionGateway, FileTextExtractor
from coldcase.runtime.runner import AnalysisConfig, ChunkedAnalysisRunner
from coldcase.runtime.store import JobStore, SqlJobStore
from coldcase.runtime.tasks import AsyncioTaskQueue, TaskQueue
from coldcase.runtime.tracker import ProgressTracker

StoreOpener = Callable[[], AsyncContextManager[JobStore]]

# Built once (module-level); both are stateless between calls.
_analysis_gateway = build_analysis_gateway(settings)
_extractor = FileTextExtractor(Path(settings.documents_root))
task_queue = AsyncioTaskQueue()


async def get_store(session: AsyncSession = Depends(get_session)) -> JobStore:
    return SqlJobStore(session)


@asynccontextmanager
async def open_store() -> AsyncIterator[JobStore]:
    # background steps outlive the request session
    async with AsyncSessionLocal() as session:
        yield SqlJobStore(session)


def get_store_opener() -> StoreOpener:
    return open_store


def get_analysis_gateway() -> Optional[AnalysisGateway]:
    return _analysis_gateway


def get_extractor() -> ExtractionGateway:
    return _extractor


def get_task_queue() -> TaskQueue:
    return task_queue


def build_runner(
    store: JobStore, extractor: ExtractionGateway, analysis: Optional[AnalysisGateway]
) -> ChunkedAnalysisRunner:
    return ChunkedAnalysisRunner(
        store,
        extractor=extractor,
        analysis=analysis,
        config=AnalysisConfig.from_settings(settings),
    )


def get_runner(
    store: JobStore = Depends(get_store),
    extractor: ExtractionGateway = Depends(get_extractor),
    analysis: Optional[AnalysisGateway] = Depends(get_analysis_gateway),
) -> ChunkedAnalysisRunner:
    return build_runner(store, extractor, analysis)


def get_tracker(store: JobStore = Depends(get_store)) -> ProgressTracker:
    return ProgressTracker(store, poll_interval_s=settings.poll_interval_s)
