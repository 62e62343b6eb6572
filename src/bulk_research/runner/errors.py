"""Structural errors surfaced to the trigger caller."""

from __future__ import annotations


class BulkResearchError(Exception):
    """Base class for bulk research errors."""

    code = "internal_error"


class JobNotFoundError(BulkResearchError):
    code = "job_not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Bulk research job not found: {job_id}")
        self.job_id = job_id


class BadRequestError(BulkResearchError):
    code = "bad_request"


class InferenceError(BulkResearchError):
    """Inference call failed to complete (transport, timeout, protocol)."""

    code = "inference_error"
