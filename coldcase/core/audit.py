from __future__ import annotations
from typing import Any, Dict, TYPE_CHECKING

from coldcase.core.logging import get_logger, log_event
from coldcase.db.models import AuditEventType

if TYPE_CHECKING:
    from coldcase.runtime.store import JobStore

logger = get_logger(__name__)

async def write_audit_event(
    store: "JobStore",
    *,
    job_id: str,
    event_type: AuditEventType,
    payload: Dict[str, Any],
) -> None:
    await store.add_event(job_id=job_id, event_type=event_type, payload=payload)
    log_event(logger, event_type.value.lower(), job_id=job_id, payload=payload)
