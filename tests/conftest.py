from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from coldcase.analysis.gateway import AnalysisGateway
from coldcase.domain.records import DocumentRef
from coldcase.extraction.gateway import ExtractionOutcome
from coldcase.runtime.memory_store import MemoryJobStore
from coldcase.runtime.runner import AnalysisConfig, ChunkedAnalysisRunner
from coldcase.runtime.store import new_id

CASE_ID = "case-1"
DOCUMENT_TEXT = "Witness statement: the victim was last seen near the harbour at 22:00."


class ManualClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeCompletionClient:
    """Replays scripted responses; an exception in the script is raised instead of returned."""

    def __init__(self, responses: Iterable = ()) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, str]] = []
        self.default = json.dumps(findings_payload())

    async def complete(self, *, system: str, prompt: str) -> str:
        self.calls.append({"system": system, "prompt": prompt})
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(prompt)
        return item


class FakeExtractor:
    """Returns text for every document unless its file name is listed in ``failing``."""

    def __init__(self, failing: Iterable[str] = ()) -> None:
        self.failing = set(failing)
        self.calls: List[str] = []

    async def extract(self, document: DocumentRef) -> ExtractionOutcome:
        self.calls.append(document.file_name)
        if document.file_name in self.failing:
            return ExtractionOutcome(error="No text could be extracted")
        return ExtractionOutcome(text=f"{DOCUMENT_TEXT} ({document.file_name})", confidence=0.9)


def findings_payload(**overrides) -> dict:
    payload = {
        "timeline": [
            {
                "id": "evt_1",
                "date": "1994-06-12",
                "time": "22:00",
                "description": "Victim seen near the harbour",
                "source": "statement_1.txt",
                "sourceType": "witness_statement",
                "involvedPersons": ["Ann Vale"],
                "confidence": 0.8,
            }
        ],
        "conflicts": [],
        "personMentions": [
            {"name": "Ann Vale", "mentionedBy": ["statement_1.txt"], "role": "victim", "suspicionScore": 0.0}
        ],
        "unfollowedTips": [],
        "keyInsights": ["Last sighting near the harbour"],
        "suspectAnalysis": [],
    }
    payload.update(overrides)
    return payload


def run(coro):
    return asyncio.run(coro)


def add_documents(store: MemoryJobStore, count: int, *, extracted: bool = False, case_id: str = CASE_ID) -> List[str]:
    ids = []
    for idx in range(count):
        doc = DocumentRef(
            id=new_id(),
            case_id=case_id,
            file_name=f"doc_{idx:02d}.txt",
            storage_path=f"doc_{idx:02d}.txt",
            document_type="witness_statement",
            extracted_text=f"{DOCUMENT_TEXT} #{idx}" if extracted else None,
            extraction_confidence=1.0 if extracted else None,
        )
        run(store.insert_document(doc))
        ids.append(doc.id)
    return ids


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(clock) -> MemoryJobStore:
    return MemoryJobStore(clock=clock)


@pytest.fixture
def completion() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def make_runner(store, completion) -> Callable[..., ChunkedAnalysisRunner]:
    def _make(
        *,
        extractor=None,
        client=None,
        analysis=True,
        batch_size: int = 25,
        extract_batch_size: int = 10,
    ) -> ChunkedAnalysisRunner:
        gateway = None
        if analysis:
            gateway = AnalysisGateway(client or completion, timeout_s=5, max_retries=2, retry_delay_s=0)
        return ChunkedAnalysisRunner(
            store,
            extractor=extractor or FakeExtractor(),
            analysis=gateway,
            config=AnalysisConfig(
                analysis_batch_size=batch_size,
                extract_batch_size=extract_batch_size,
                extract_concurrency=3,
                extract_timeout_s=5,
            ),
        )

    return _make
