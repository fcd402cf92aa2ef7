from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from openai import AsyncOpenAI
from pydantic import ValidationError

from coldcase.analysis.contracts import FINDINGS_KEYS, CaseFindings
from coldcase.core.config import Settings, settings

MAX_OUTPUT_TOKENS = 8000

_FENCED = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")


# -----------------------
# Completion client
# -----------------------

class TextCompletionClient(Protocol):
    async def complete(self, *, system: str, prompt: str) -> str:
        ...


class OpenAICompletionClient:
    def __init__(self, *, api_key: str, model: str, client: AsyncOpenAI | None = None) -> None:
        self.model = model
        # retries are owned by the gateway
        self._client = client or AsyncOpenAI(api_key=api_key, max_retries=0)

    async def complete(self, *, system: str, prompt: str) -> str:
        resp = await self._client.responses.create(
            model=self.model,
            input=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            temperature=0,
            max_output_tokens=MAX_OUTPUT_TOKENS,
        )
        return resp.output_text


def build_completion_client(cfg: Settings = settings) -> Optional[OpenAICompletionClient]:
    """Return a configured client, or None when no API key is set."""
    if not cfg.openai_api_key:
        return None
    return OpenAICompletionClient(api_key=cfg.openai_api_key, model=cfg.openai_model)


# -----------------------
# Parsing
# -----------------------

@dataclass(frozen=True)
class ParseOutcome:
    findings: Optional[CaseFindings] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.findings is not None


def _extract_json_text(s: str) -> str:
    if not s:
        return s

    s = s.strip()

    if s.startswith("```"):
        lines = s.splitlines()[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        s = "\n".join(lines).strip()

    start, end = s.find("{"), s.rfind("}")
    if start != -1 and end != -1 and end > start:
        return s[start : end + 1].strip()

    return s


def _candidates(raw: str):
    text = raw.strip()
    if text.startswith("{"):
        yield text
    fenced = _FENCED.search(text)
    if fenced:
        yield fenced.group(1).strip()
    yield _extract_json_text(text)


def parse_findings(raw: str | None) -> ParseOutcome:
    """Parse model output into findings: clean JSON, then fenced JSON, then outermost braces."""
    if not raw or not raw.strip():
        return ParseOutcome(error="empty response")

    data = None
    for candidate in _candidates(raw):
        try:
            data = json.loads(candidate)
            break
        except json.JSONDecodeError:
            continue

    if data is None:
        return ParseOutcome(error="response is not valid JSON")
    if not isinstance(data, dict):
        return ParseOutcome(error=f"expected a JSON object, got {type(data).__name__}")
    expected = set(FINDINGS_KEYS) | set(CaseFindings.model_fields)
    if not any(key in data for key in expected):
        return ParseOutcome(error="response has none of the expected findings fields")

    try:
        return ParseOutcome(findings=CaseFindings.model_validate(data))
    except ValidationError as e:
        return ParseOutcome(error=f"findings failed validation ({e.error_count()} errors)")
