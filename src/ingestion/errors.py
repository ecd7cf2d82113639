"""
Pipeline Error Taxonomy.

Every failure the pipeline surfaces is one of these types. The retry
classifier in ``src.ingestion.reliability.retry_handler`` relies on the
hierarchy: transient errors are retried, permanent and validation errors
are not, transaction and ingestion errors carry their own verdict.
"""

from typing import Any


class PipelineError(Exception):
    """Base class for pipeline failures."""

    def __init__(
        self,
        message: str,
        document_id: str | None = None,
        stage: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.document_id = document_id
        self.stage = stage

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "document_id": self.document_id,
            "stage": self.stage,
        }


# =============================================================================
# Transient (retried)
# =============================================================================


class TransientIOError(PipelineError):
    """Network, timeout, rate-limit or 5xx failure of an external call."""


class ProviderUnavailableError(TransientIOError):
    """Generation provider could not be reached or returned a server error."""


class RateLimitedError(TransientIOError):
    """Generation provider rejected the call with a rate limit."""


class GenerationTimeoutError(TransientIOError):
    """Generation call exceeded its timeout."""


# =============================================================================
# Permanent (never retried)
# =============================================================================


class PermanentRequestError(PipelineError):
    """Malformed request, bad credentials or unsupported input."""


class ModelNotFoundError(PermanentRequestError):
    """Configured model does not exist on the provider."""


class AuthenticationError(PermanentRequestError):
    """Provider rejected the credentials."""


class UnsupportedFormatError(PermanentRequestError):
    """No text extractor handles the submitted file."""


class ExtractionFailedError(PermanentRequestError):
    """Text extraction from a supported format failed."""


class EmptyGenerationError(PermanentRequestError):
    """The model answered but produced no usable statements."""


class ValidationError(PipelineError):
    """A statement failed the explain-only syntax check."""

    def __init__(self, message: str, statement: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.statement = statement


# =============================================================================
# Transactional
# =============================================================================


class TransactionError(PipelineError):
    """A write failed mid-transaction; the transaction was rolled back."""

    def __init__(
        self,
        message: str,
        statement: str | None = None,
        retryable: bool = False,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.statement = statement
        self.retryable = retryable


class IngestionError(PipelineError):
    """Ingestion of a statement program failed."""

    def __init__(
        self,
        message: str,
        statement: str | None = None,
        cause: Exception | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.statement = statement
        self.cause = cause


# =============================================================================
# Orchestration / storage
# =============================================================================


class InvalidTransitionError(PipelineError):
    """A status change that the state machine does not allow."""


class NotFoundError(PipelineError):
    """Requested document, schema or result does not exist."""


class DuplicateResultError(PipelineError):
    """A second result for the same (document, segment) pair."""


class PipelineStageError(PipelineError):
    """A stage failed; the document was moved to ``error``."""

    def __init__(self, message: str, cause: Exception | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.cause = cause


# =============================================================================
# Adapter classification
# =============================================================================

CLIENT_ERRORS = (
    ValidationError,
    UnsupportedFormatError,
    ExtractionFailedError,
    InvalidTransitionError,
    DuplicateResultError,
)


def root_cause(error: BaseException) -> BaseException:
    """Follow stage and ingestion wrappers down to the error that caused them."""
    while isinstance(error, (PipelineStageError, IngestionError)) and error.cause is not None:
        error = error.cause
    return error


def classify_error(error: BaseException) -> str:
    """``not_found``, ``validation`` or ``internal``; the HTTP and CLI adapters map these to codes."""
    cause = root_cause(error)
    if isinstance(cause, NotFoundError):
        return "not_found"
    if isinstance(cause, CLIENT_ERRORS):
        return "validation"
    return "internal"
