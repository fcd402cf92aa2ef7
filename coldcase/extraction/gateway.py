from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

from coldcase.core.errors import ExtractionError
from coldcase.domain.records import DocumentRef

OP_EXTRACT = "extract-document"

DEFAULT_CONCURRENCY = 5
DEFAULT_EXTRACT_TIMEOUT_S = 60


@dataclass(frozen=True)
class ExtractionOutcome:
    text: str = ""
    confidence: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.text.strip())


class ExtractionGateway(Protocol):
    async def extract(self, document: DocumentRef) -> ExtractionOutcome:
        ...


class FileTextExtractor:
    """Reads plain-text document bodies from a storage root."""

    def __init__(self, root: Path) -> None:
        self.root = root

    async def extract(self, document: DocumentRef) -> ExtractionOutcome:
        if not document.storage_path:
            return ExtractionOutcome(error="document has no storage path")
        root = self.root.resolve()
        path = (root / document.storage_path).resolve()
        if not path.is_relative_to(root):
            return ExtractionOutcome(error=f"storage path escapes the documents root: {document.storage_path}")
        if not path.is_file():
            return ExtractionOutcome(error=f"file not found: {document.storage_path}")
        text = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
        if not text.strip():
            return ExtractionOutcome(error="No text could be extracted")
        return ExtractionOutcome(text=text, confidence=1.0)


async def extract_batch(
    gateway: ExtractionGateway,
    documents: Sequence[DocumentRef],
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    timeout_s: float = DEFAULT_EXTRACT_TIMEOUT_S,
) -> List[Tuple[DocumentRef, ExtractionOutcome]]:
    """Extract every document with bounded fan-out; per-document failures become outcomes, never raise."""
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _one(doc: DocumentRef) -> Tuple[DocumentRef, ExtractionOutcome]:
        async with semaphore:
            try:
                outcome = await asyncio.wait_for(gateway.extract(doc), timeout=timeout_s)
            except asyncio.TimeoutError:
                outcome = ExtractionOutcome(error=f"extraction timed out after {timeout_s}s")
            except Exception as e:
                outcome = ExtractionOutcome(error=f"{type(e).__name__}: {e}")
        if outcome.error is None and not outcome.text.strip():
            outcome = ExtractionOutcome(error="No text could be extracted")
        return doc, outcome

    return list(await asyncio.gather(*(_one(doc) for doc in documents)))


def as_error(document: DocumentRef, outcome: ExtractionOutcome) -> ExtractionError:
    return ExtractionError(document.file_name, outcome.error or "No text could be extracted")
