from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

import openai
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_fixed

from coldcase.analysis.contracts import CaseFindings
from coldcase.analysis.engine import TextCompletionClient, build_completion_client, parse_findings
from coldcase.analysis.prompts import SYSTEM, batch_prompt, consolidation_prompt, render_documents, repair_prompt
from coldcase.core.config import Settings, settings
from coldcase.core.errors import GatewayError, GatewayTimeoutError, GatewayTransientError, MalformedResponseError
from coldcase.core.logging import get_logger
from coldcase.domain.records import DocumentRef

logger = get_logger(__name__)

OP_ANALYZE_BATCH = "analyze-batch"
OP_CONSOLIDATE = "consolidate"

DEFAULT_GATEWAY_TIMEOUT_S = 120
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY_S = 2.0

_TRANSIENT = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    ConnectionError,
)


class AnalysisGateway:
    """Unreliable text-completion service wrapped with a timeout, bounded retries and a validating parser."""

    def __init__(
        self,
        client: TextCompletionClient,
        *,
        timeout_s: float = DEFAULT_GATEWAY_TIMEOUT_S,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
        repair_malformed: bool = True,
    ) -> None:
        self.client = client
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self.repair_malformed = repair_malformed

    async def analyze_batch(
        self,
        documents: Sequence[DocumentRef],
        batch_index: int,
        total_batches: int,
        prior_context: str,
    ) -> CaseFindings:
        prompt = batch_prompt(
            documents_text=render_documents(documents),
            batch_number=batch_index + 1,
            total_batches=total_batches,
            prior_context=prior_context,
        )
        return await self._findings(OP_ANALYZE_BATCH, prompt)

    async def consolidate(self, digest: str) -> CaseFindings:
        return await self._findings(OP_CONSOLIDATE, consolidation_prompt(digest=digest))

    async def _findings(self, operation: str, prompt: str) -> CaseFindings:
        raw = await self._complete(operation, prompt)
        outcome = parse_findings(raw)

        if not outcome.ok and self.repair_malformed:
            logger.warning("%s: unparseable response (%s), requesting repair", operation, outcome.error)
            outcome = parse_findings(await self._complete(operation, repair_prompt(raw)))

        if not outcome.ok:
            raise MalformedResponseError(operation, f"could not parse model response: {outcome.error}")
        return outcome.findings

    async def _complete(self, operation: str, prompt: str) -> str:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_fixed(self.retry_delay_s),
            retry=retry_if_exception_type(GatewayTransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        raw = ""
        async for attempt in retrying:
            with attempt:
                raw = await self._complete_once(operation, prompt)
        return raw

    async def _complete_once(self, operation: str, prompt: str) -> str:
        try:
            return await asyncio.wait_for(
                self.client.complete(system=SYSTEM, prompt=prompt),
                timeout=self.timeout_s,
            )
        except (asyncio.TimeoutError, openai.APITimeoutError) as e:
            raise GatewayTimeoutError(operation, f"timed out after {self.timeout_s}s") from e
        except _TRANSIENT as e:
            raise GatewayTransientError(operation, f"{type(e).__name__}: {e}") from e
        except GatewayError:
            raise
        except Exception as e:
            raise GatewayError(operation, f"{type(e).__name__}: {e}") from e


def build_analysis_gateway(cfg: Settings = settings) -> Optional[AnalysisGateway]:
    client = build_completion_client(cfg)
    if client is None:
        return None
    return AnalysisGateway(
        client,
        timeout_s=cfg.gateway_timeout_s,
        max_retries=cfg.gateway_max_retries,
        retry_delay_s=cfg.gateway_retry_delay_s,
    )
