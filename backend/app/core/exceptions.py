"""
Pipeline error taxonomy.

  PipelineError
   ├── ValidationError          empty/missing input — never retried (4xx)
   ├── DocumentNotFoundError    no record with the requested id (404)
   ├── ServiceError             a remote collaborator failed
   │    ├── TransientServiceError   retried by the executor
   │    │    └── OperationTimeoutError
   │    └── PermanentServiceError   auth / malformed input — not retried
   ├── RetryExhaustedError      executor gave up; carries the last error
   ├── PersistenceError         staging or durable write unreachable (fatal)
   └── CleanupError             staging delete failed — logged, never raised to callers
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all ingestion/enrichment errors."""


class ValidationError(PipelineError):
    """Raised when an upload or request is missing required input."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class DocumentNotFoundError(PipelineError):
    """No Document Record exists for the requested id."""

    def __init__(self, document_id) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class ServiceError(PipelineError):
    """A remote service call failed."""

    def __init__(
        self,
        message: str,
        service: str = "unknown",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class TransientServiceError(ServiceError):
    """Retryable failure: network, availability, rate limiting."""


class PermanentServiceError(ServiceError):
    """Non-retryable failure: authentication or malformed input."""


class OperationTimeoutError(TransientServiceError):
    """An attempt exceeded its deadline."""

    def __init__(self, message: str, attempt: int, stage: str | None = None) -> None:
        super().__init__(message, service="executor")
        self.attempt = attempt
        self.stage = stage


class RetryExhaustedError(PipelineError):
    """All attempts failed; `last_error` holds the final underlying error."""

    def __init__(self, message: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class PersistenceError(PipelineError):
    """Staging or persistence stage failed; the upload cannot complete."""

    def __init__(self, message: str, stage: str) -> None:
        super().__init__(message)
        self.stage = stage


class CleanupError(PipelineError):
    """Staging artifact could not be deleted."""

    def __init__(self, message: str, ref: str) -> None:
        super().__init__(message)
        self.ref = ref
