from __future__ import annotations

from typing import Any, Dict


class ColdCaseError(Exception):
    """Base class for every error raised by the analysis runtime."""


class EmptyInputError(ColdCaseError):
    pass


class JobNotFoundError(ColdCaseError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(ColdCaseError):
    pass


class ExtractionError(ColdCaseError):
    """Per-document extraction failure. Recorded on the job, never fatal."""

    def __init__(self, document_name: str, reason: str) -> None:
        super().__init__(f"{document_name}: {reason}")
        self.document_name = document_name
        self.reason = reason


class GatewayError(ColdCaseError):
    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class GatewayTimeoutError(GatewayError):
    pass


class GatewayTransientError(GatewayError):
    pass


class MalformedResponseError(GatewayError):
    pass


class StuckJobError(ColdCaseError):
    """Describes a job presumed orphaned. Attached to job records, never raised."""

    def __init__(self, job_id: str, threshold_hours: float, last_update: str | None) -> None:
        super().__init__(f"job {job_id} made no progress for more than {threshold_hours}h")
        self.job_id = job_id
        self.threshold_hours = threshold_hours
        self.last_update = last_update

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": "stuck",
            "message": str(self),
            "threshold_hours": self.threshold_hours,
            "last_update": self.last_update,
        }
