"""Error taxonomy for the matching pipeline and job orchestration.

Every error carries a stable ``code`` and a short message that is safe to show
to end users. Technical detail belongs in the logs, not in the message.
"""
from __future__ import annotations


class MatchingError(Exception):
    """Base class for classified pipeline errors."""

    code = "internal_error"
    default_message = "Matching failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    @property
    def classified(self) -> str:
        """Short ``code: message`` string stored on failed jobs."""
        return f"{self.code}: {self.message}"


class ValidationError(MatchingError):
    """Bad or missing input. Never retried."""
    code = "validation_error"
    default_message = "Invalid input"


class NoReferenceData(MatchingError):
    """The reference price list is empty."""
    code = "no_reference_data"
    default_message = "Price list is empty, import reference items first"


class ProviderUnavailable(MatchingError):
    """Embedding provider failed after exhausting retries."""
    code = "provider_unavailable"
    default_message = "Embedding provider unavailable, please resubmit later"


class Cancelled(MatchingError):
    """Job was cancelled by the client or by shutdown."""
    code = "cancelled"
    default_message = "Job cancelled"


class JobTimeout(MatchingError):
    """Job exceeded its overall wall-clock budget."""
    code = "timeout"
    default_message = "Job exceeded its time limit"


class PersistenceError(MatchingError):
    """A storage write or read failed."""
    code = "persistence_error"
    default_message = "Could not store job state"


class JobNotFound(MatchingError):
    """No job with the requested id."""
    code = "not_found"
    default_message = "Job not found"


class JobNotReady(MatchingError):
    """Results requested for a job that has not completed."""
    code = "job_not_ready"
    default_message = "Job has not completed"


class TransientProviderError(Exception):
    """Retryable provider failure (timeout, 5xx, rate limit).

    Raised by provider adapters and consumed by the embedding client's retry
    loop; it never reaches the job layer.
    """


def classify(exc: BaseException) -> str:
    """Return the user-facing ``code: message`` string for any exception."""
    if isinstance(exc, MatchingError):
        return exc.classified
    return f"{MatchingError.code}: {MatchingError.default_message}"
