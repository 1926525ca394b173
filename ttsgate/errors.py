"""Domain errors raised by the synthesis pipeline.

Every error carries a stable machine-readable ``kind`` and, where the client
can act on it (quota, concurrency, format allowance), a telemetry payload.
Routers turn these into HTTP responses; services never build HTTP errors.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Stable error codes exposed to clients."""

    INVALID_INPUT = "invalid_input"
    NO_SUBSCRIPTION = "no_subscription"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    QUOTA_EXCEEDED = "quota_exceeded"
    CONCURRENCY_LIMIT_EXCEEDED = "concurrency_limit_exceeded"
    INVALID_VOICE = "invalid_voice"
    UNSUPPORTED_FORMAT = "unsupported_format"
    UNSUPPORTED_ENGINE = "unsupported_engine"
    SYNTHESIS_PROVIDER_ERROR = "synthesis_provider_error"
    STORAGE_ERROR = "storage_error"
    SIGNING_ERROR = "signing_error"
    NOT_FOUND = "not_found"


class SynthesisPipelineError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind
    status_code: int = 500
    default_message: str = "Text-to-speech request failed"

    def __init__(self, message: str | None = None, *, telemetry: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.telemetry = telemetry or {}
        super().__init__(self.message)

    def to_detail(self) -> dict[str, Any]:
        """Serializable error body: code, message and any telemetry fields."""
        return {"code": self.kind.value, "message": self.message, **self.telemetry}


class InvalidInputError(SynthesisPipelineError):
    kind = ErrorKind.INVALID_INPUT
    status_code = 400
    default_message = "Invalid request"


class NoSubscriptionError(SynthesisPipelineError):
    kind = ErrorKind.NO_SUBSCRIPTION
    status_code = 403
    default_message = "No subscription found. Please subscribe to a plan to use this feature."


class SubscriptionInactiveError(SynthesisPipelineError):
    kind = ErrorKind.SUBSCRIPTION_INACTIVE
    status_code = 403
    default_message = "Your subscription is not active."


class SubscriptionExpiredError(SynthesisPipelineError):
    kind = ErrorKind.SUBSCRIPTION_EXPIRED
    status_code = 403
    default_message = "Your subscription has expired. Please renew to continue."


class QuotaExceededError(SynthesisPipelineError):
    kind = ErrorKind.QUOTA_EXCEEDED
    status_code = 403
    default_message = "Character limit exceeded for this month"


class ConcurrencyLimitExceededError(SynthesisPipelineError):
    kind = ErrorKind.CONCURRENCY_LIMIT_EXCEEDED
    status_code = 429
    default_message = (
        "Maximum concurrent requests reached. Please wait for current requests to complete."
    )


class InvalidVoiceError(SynthesisPipelineError):
    kind = ErrorKind.INVALID_VOICE
    status_code = 400
    default_message = "Invalid voice ID"


class UnsupportedFormatError(SynthesisPipelineError):
    kind = ErrorKind.UNSUPPORTED_FORMAT
    status_code = 400
    default_message = "Unsupported output format"


class UnsupportedEngineError(SynthesisPipelineError):
    kind = ErrorKind.UNSUPPORTED_ENGINE
    status_code = 400
    default_message = "Unsupported engine"


class SynthesisProviderError(SynthesisPipelineError):
    kind = ErrorKind.SYNTHESIS_PROVIDER_ERROR
    status_code = 502
    default_message = "Speech synthesis failed"


class StorageError(SynthesisPipelineError):
    kind = ErrorKind.STORAGE_ERROR
    status_code = 502
    default_message = "Failed to store audio file"


class SigningError(SynthesisPipelineError):
    kind = ErrorKind.SIGNING_ERROR
    status_code = 502
    default_message = "Failed to generate download URL"


class NotFoundError(SynthesisPipelineError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    default_message = "Voice file not found"
