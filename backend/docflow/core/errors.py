"""
Pipeline error kinds.

Every error raised across the ingestion core derives from DocflowError so the
API layer can translate it into the uniform ErrorResponse envelope:

  ValidationError           — bad input, rejected synchronously, never queued
  TransientProcessingError  — retryable (dependency unavailable, timeout)
  PermanentProcessingError  — non-retryable (corrupt or unsupported content)
  NotFoundError             — unknown document / job / content id
  OwnershipError            — id exists but belongs to another owner
  InvalidTransitionError    — status change off the lifecycle edges
  QueueClosedError          — job queue no longer accepting work

Handlers signal retry behaviour purely through the exception type: the job
queue retries TransientProcessingError (and anything unclassified) and fails
PermanentProcessingError immediately.
"""

from __future__ import annotations


class DocflowError(Exception):
    error_code: str = "INTERNAL_ERROR"
    http_status: int = 500

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(DocflowError):
    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message, field=field)
        if error_code:
            self.error_code = error_code


class FileTooLargeError(ValidationError):
    error_code = "FILE_TOO_LARGE"
    http_status = 413


class TransientProcessingError(DocflowError):
    error_code = "TRANSIENT_PROCESSING_ERROR"
    http_status = 503


class PermanentProcessingError(DocflowError):
    error_code = "PERMANENT_PROCESSING_ERROR"
    http_status = 422


class NotFoundError(DocflowError):
    error_code = "NOT_FOUND"
    http_status = 404


class OwnershipError(DocflowError):
    error_code = "FORBIDDEN"
    http_status = 403


class InvalidTransitionError(DocflowError):
    error_code = "INVALID_TRANSITION"
    http_status = 409


class QueueClosedError(DocflowError):
    error_code = "QUEUE_ERROR"
    http_status = 503
