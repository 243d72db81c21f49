"""Custom exception hierarchy for autoreadme.

Every failure of an external call (GitHub, LLM providers, the queue payload)
is reclassified into one of these types before it crosses a component
boundary. ``retryable`` tells the job queue whether redelivery can help.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes for API responses and audit messages."""

    # Watch errors
    WATCH_NOT_FOUND = "WATCH_NOT_FOUND"

    # Webhook errors
    WEBHOOK_VALIDATION_FAILED = "WEBHOOK_VALIDATION_FAILED"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"

    # Source host errors
    UNAUTHORIZED = "UNAUTHORIZED"
    RATE_LIMITED = "RATE_LIMITED"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"

    # Generation errors
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDERS_EXHAUSTED = "PROVIDERS_EXHAUSTED"

    # Pipeline errors
    PIPELINE_FAILED = "PIPELINE_FAILED"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ReadmeBotError(Exception):
    """
    Base exception for all autoreadme errors.

    Provides structured error responses with:
    - Human-readable message
    - Machine-readable error code
    - HTTP status code
    - Optional additional details
    - Whether the job queue should redeliver the job
    """

    retryable: bool = True

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for JSON response.

        Returns:
            Dictionary with error, message, and details fields
        """
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class WatchNotFoundError(ReadmeBotError):
    """Watched repository row not found."""

    retryable = False

    def __init__(self, watch_id):
        super().__init__(
            f"Watched repository not found: {watch_id}",
            ErrorCode.WATCH_NOT_FOUND,
            status_code=404,
            details={"watch_id": watch_id},
        )


class SignatureInvalidError(ReadmeBotError):
    """Webhook signature validation failed. Rejected at the boundary."""

    retryable = False

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(
            message,
            ErrorCode.WEBHOOK_VALIDATION_FAILED,
            status_code=401,
        )


class PayloadValidationError(ReadmeBotError):
    """An inbound webhook body or a queued job payload is malformed."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            ErrorCode.INVALID_PAYLOAD,
            status_code=400,
            details=details,
        )


class AuthenticationError(ReadmeBotError):
    """Source-host credential is missing, expired or revoked.

    Fatal for the job: the user must re-authenticate, so redelivery cannot help.
    """

    retryable = False

    def __init__(self, message: str = "GitHub credential is invalid or revoked"):
        super().__init__(
            message,
            ErrorCode.UNAUTHORIZED,
            status_code=401,
        )


class RateLimitError(ReadmeBotError):
    """Transient rate limit on an external API."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        details = {"retry_after": retry_after} if retry_after is not None else {}
        super().__init__(
            message,
            ErrorCode.RATE_LIMITED,
            status_code=429,
            details=details,
        )
        self.retry_after = retry_after


class PreconditionFailedError(ReadmeBotError):
    """Concurrent write conflict. The job is retried from scratch."""

    def __init__(self, path: str, expected_sha: Optional[str] = None):
        super().__init__(
            f"{path} changed since it was read (expected blob {expected_sha or 'none'})",
            ErrorCode.PRECONDITION_FAILED,
            status_code=409,
            details={"path": path, "expected_sha": expected_sha},
        )


class PayloadTooLargeError(ReadmeBotError):
    """Request body rejected as too large by an external API."""

    def __init__(self, message: str = "Payload too large"):
        super().__init__(
            message,
            ErrorCode.PAYLOAD_TOO_LARGE,
            status_code=413,
        )


class SourceGatewayError(ReadmeBotError):
    """GitHub call failed for a reason other than auth, rate limit or conflict."""

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        details = {"upstream_status": upstream_status} if upstream_status is not None else {}
        super().__init__(
            message,
            ErrorCode.SOURCE_UNAVAILABLE,
            status_code=502,
            details=details,
        )
        self.upstream_status = upstream_status


class ProviderError(ReadmeBotError):
    """An LLM provider call failed."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        upstream_status: Optional[int] = None,
        error_code: ErrorCode = ErrorCode.PROVIDER_ERROR,
    ):
        details: Dict[str, Any] = {}
        if provider:
            details["provider"] = provider
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        super().__init__(
            message,
            error_code,
            status_code=502,
            details=details,
        )
        self.provider = provider
        self.upstream_status = upstream_status


class ProviderExhaustedError(ProviderError):
    """Every configured generation credential failed.

    Carries the last underlying cause; the queue retries the job later.
    """

    def __init__(self, attempts: int, last_cause: Optional[BaseException] = None):
        cause_text = f"{type(last_cause).__name__}: {last_cause}" if last_cause else "no credentials configured"
        super().__init__(
            f"All {attempts} generation credential(s) exhausted. Last error: {cause_text}",
            upstream_status=getattr(last_cause, "status_code", None),
            error_code=ErrorCode.PROVIDERS_EXHAUSTED,
        )
        self.attempts = attempts
        self.last_cause = last_cause


class PipelineError(ReadmeBotError):
    """Unclassified failure inside a pipeline stage."""

    def __init__(self, stage: str, message: str):
        super().__init__(
            f"Stage {stage} failed: {message}",
            ErrorCode.PIPELINE_FAILED,
            status_code=500,
            details={"stage": stage},
        )
        self.stage = stage
