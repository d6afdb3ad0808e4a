"""Service error hierarchy for video generation.

- ServiceError: Base for all service errors, carries the HTTP status it maps to
- TransientError: Retryable errors (network, rate limits, timeouts, store outages)
- PermanentError: Non-retryable errors (authentication, validation, provider failure)
- AdmissionError: Request rejected before anything was enqueued
"""

from typing import Any


class ServiceError(Exception):
    """Base exception for all service errors."""

    status_code: int = 500
    title: str = "Internal error"

    def __init__(self, message: str = "", details: Any = None):
        super().__init__(message or self.title)
        self.message = message or self.title
        self.details = details


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Provider rate limit exceeded (429)
    - Provider unavailable (5xx)
    - Shared store unreachable
    """

    status_code = 503
    title = "Service temporarily unavailable"


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400, 422)
    - Prediction failed on the provider side
    """

    status_code = 502
    title = "Upstream request failed"


# Shared store (queue, cache, pub/sub)
class StoreUnavailableError(TransientError):
    """Redis is unreachable or timed out."""

    title = "Queue unavailable"


# Provider-specific errors
class ProviderUnavailableError(TransientError):
    """Provider returned 429 or 5xx."""

    pass


class ProviderTimeoutError(TransientError):
    """Provider request timed out."""

    pass


class ProviderNetworkError(TransientError):
    """Connection to provider failed."""

    pass


class PredictionTimeoutError(TransientError):
    """Prediction did not reach a terminal state before the deadline."""

    pass


class ProviderAuthError(PermanentError):
    """Authentication failure (401, 403)."""

    pass


class ProviderBadRequestError(PermanentError):
    """Bad request (400, 422)."""

    pass


class ProviderNotFoundError(PermanentError):
    """Prediction or model not found (404)."""

    status_code = 404


class PredictionFailedError(PermanentError):
    """Provider reported the prediction as failed."""

    pass


class PredictionCancelledError(PermanentError):
    """Provider reported the prediction as canceled."""

    pass


class GenerationValidationError(PermanentError):
    """Request violates the constraints of the selected model."""

    status_code = 400
    title = "Invalid request"


# Admission errors
class AdmissionError(ServiceError):
    """Request rejected at admission."""

    status_code = 400
    title = "Request rejected"


class ProfileNotFoundError(AdmissionError):
    status_code = 404
    title = "Profile not found"


class InsufficientCreditsError(AdmissionError):
    status_code = 402
    title = "Insufficient credits"


class PlanNotAllowedError(AdmissionError):
    status_code = 403
    title = "Plan does not allow this request"


class RateLimitedError(AdmissionError):
    """Too many submissions in the current window."""

    status_code = 429
    title = "Rate limit exceeded"

    def __init__(self, message: str = "", retry_after: int = 60, details: Any = None):
        super().__init__(message, details)
        self.retry_after = retry_after


# Job errors
class JobNotFoundError(ServiceError):
    status_code = 404
    title = "Generation not found"


class InvalidJobStateError(ServiceError):
    """Operation not allowed in the job's current state (e.g. cancel after completion)."""

    status_code = 409
    title = "Invalid job state"


class JobCancelledError(ServiceError):
    """Raised inside the worker when the job was cancelled mid-flight."""

    status_code = 409
    title = "Job cancelled"
