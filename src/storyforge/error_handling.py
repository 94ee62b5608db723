"""Error types and error classification for story and illustration generation."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional


logger = logging.getLogger(__name__)


class StoryForgeError(Exception):
    """Base class for all StoryForge errors."""


class ContentBlockedError(StoryForgeError):
    """The user's concept failed the content safety check."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidPhaseTransition(StoryForgeError):
    """A generation phase change that the state machine does not allow."""


class ProviderError(StoryForgeError):
    """A generation backend failed to produce a result."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class StructuredCompletionError(StoryForgeError):
    """A structured LLM completion could not produce a typed result."""


class GuardrailRejectedError(StructuredCompletionError):
    """The model's safety filter declined the request."""

    def __init__(self, message: str = "The model's safety filter declined this request.", provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class MalformedOutputError(StructuredCompletionError):
    """The model answered, but the answer did not match the expected shape."""


class ModelUnavailableError(StructuredCompletionError, ProviderError):
    """No model is configured, installed or reachable."""

    def __init__(self, message: str = "No language model is available.", provider: Optional[str] = None):
        ProviderError.__init__(self, message, provider)


class CloudProviderError(ProviderError):
    """A hosted API call failed."""


class MissingAPIKeyError(CloudProviderError):
    def __init__(self, provider: str):
        super().__init__(f"No API key configured for {provider}.", provider)


class ProviderHTTPError(CloudProviderError):
    def __init__(self, provider: str, status_code: int, message: str = ""):
        self.status_code = status_code
        self.detail = (message or "")[:500]
        super().__init__(f"{provider} returned HTTP {status_code}: {self.detail}", provider)


class RateLimitedError(CloudProviderError):
    def __init__(self, provider: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        hint = f" Retry after {retry_after:.0f}s." if retry_after else ""
        super().__init__(f"{provider} rate limit reached.{hint}", provider)


class UnparsableResponseError(CloudProviderError):
    def __init__(self, provider: str, message: str = "Response could not be parsed."):
        super().__init__(f"{provider}: {message}", provider)


class ImageDecodingError(CloudProviderError):
    def __init__(self, provider: str, message: str = "Image data could not be decoded."):
        super().__init__(f"{provider}: {message}", provider)


class ProviderTimeoutError(CloudProviderError):
    def __init__(self, provider: str, timeout: Optional[float] = None):
        after = f" after {timeout:.0f}s" if timeout else ""
        super().__init__(f"{provider} request timed out{after}.", provider)


class ImageGenerationError(StoryForgeError):
    """A single illustration attempt failed."""

    def __init__(self, message: str, *, retryable: bool, provider: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.retryable = retryable
        self.provider = provider
        self.cause = cause

    @classmethod
    def from_exception(cls, error: BaseException, provider: Optional[str] = None) -> "ImageGenerationError":
        if isinstance(error, ImageGenerationError):
            return error
        return cls(
            str(error) or type(error).__name__,
            retryable=ErrorAnalyzer.is_retryable(error),
            provider=provider or getattr(error, "provider", None),
            cause=error,
        )

    @property
    def error_type(self) -> str:
        return type(self.cause).__name__ if self.cause is not None else type(self).__name__


class NoImageGeneratedError(ImageGenerationError):
    """Every prompt variant was tried and none produced an image."""

    def __init__(self, message: str = "No image was generated after all prompt variants."):
        super().__init__(message, retryable=False)


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error category types."""
    GUARDRAIL = "guardrail"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    MODEL_UNAVAILABLE = "model_unavailable"
    MALFORMED_OUTPUT = "malformed_output"
    VALIDATION_ERROR = "validation_error"
    PROCESSING_ERROR = "processing_error"


class ErrorAnalyzer:
    """Classifies errors so callers can pick a retry or fallback strategy."""

    # Checked in order, so guardrail wording wins over generic HTTP codes
    ERROR_PATTERNS = {
        ErrorCategory.GUARDRAIL: [
            'guardrail', 'content policy', 'safety filter', 'unsafe', 'sensitive',
            'inappropriate content', 'moderation', 'policy violation', 'nsfw',
        ],
        ErrorCategory.RATE_LIMIT: [
            'rate limit', 'too many requests', 'requests per minute',
            'rate_limit_exceeded', 'throttled', '429'
        ],
        ErrorCategory.TIMEOUT: [
            'timeout', 'timed out', 'read timeout', 'request timeout'
        ],
        ErrorCategory.AUTHENTICATION_ERROR: [
            'authentication', 'unauthorized', 'invalid api key', 'no api key', 'forbidden',
            '401', '403', 'access denied', 'invalid token'
        ],
        ErrorCategory.NETWORK_ERROR: [
            'connection error', 'network error', 'connection refused',
            'connection reset', 'dns', 'socket', 'unreachable', '502', '503', '504'
        ],
        ErrorCategory.MODEL_UNAVAILABLE: [
            'model not found', 'model unavailable', 'not available', 'not installed', 'paused'
        ],
    }

    # Worth repeating the same request after a short pause
    RETRYABLE_CATEGORIES = {
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.TIMEOUT,
        ErrorCategory.NETWORK_ERROR,
        ErrorCategory.PROCESSING_ERROR,
    }

    @classmethod
    def categorize_error(cls, error: BaseException, error_message: Optional[str] = None) -> ErrorCategory:
        """Categorize an error based on its type and message."""
        if isinstance(error, GuardrailRejectedError):
            return ErrorCategory.GUARDRAIL
        if isinstance(error, ImageGenerationError) and error.cause is not None:
            return cls.categorize_error(error.cause, error_message)
        if isinstance(error, RateLimitedError):
            return ErrorCategory.RATE_LIMIT
        if isinstance(error, ProviderTimeoutError):
            return ErrorCategory.TIMEOUT
        if isinstance(error, MissingAPIKeyError):
            return ErrorCategory.AUTHENTICATION_ERROR
        if isinstance(error, ModelUnavailableError):
            return ErrorCategory.MODEL_UNAVAILABLE
        if isinstance(error, (MalformedOutputError, UnparsableResponseError, ImageDecodingError)):
            return ErrorCategory.MALFORMED_OUTPUT
        if isinstance(error, ContentBlockedError):
            return ErrorCategory.VALIDATION_ERROR
        if isinstance(error, CloudProviderError) and error.__cause__ is not None:
            return cls.categorize_error(error.__cause__)

        error_text = (error_message or str(error)).lower()
        error_type = type(error).__name__.lower()

        for category, patterns in cls.ERROR_PATTERNS.items():
            for pattern in patterns:
                if pattern in error_text or pattern in error_type:
                    return category

        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return ErrorCategory.TIMEOUT
        elif isinstance(error, (ConnectionError, OSError)):
            return ErrorCategory.NETWORK_ERROR
        elif isinstance(error, ValueError):
            return ErrorCategory.MALFORMED_OUTPUT
        else:
            return ErrorCategory.PROCESSING_ERROR

    @classmethod
    def is_retryable(cls, error: BaseException) -> bool:
        """Whether repeating the same request could plausibly succeed."""
        if isinstance(error, ImageGenerationError):
            return error.retryable
        return cls.categorize_error(error) in cls.RETRYABLE_CATEGORIES

    @classmethod
    def is_guardrail(cls, error: BaseException) -> bool:
        return cls.categorize_error(error) == ErrorCategory.GUARDRAIL

    @classmethod
    def assess_severity(cls, error_category: ErrorCategory, attempt_number: int) -> ErrorSeverity:
        """Assess the severity of an error."""
        severity_mapping = {
            ErrorCategory.AUTHENTICATION_ERROR: ErrorSeverity.CRITICAL,
            ErrorCategory.MODEL_UNAVAILABLE: ErrorSeverity.HIGH,
            ErrorCategory.GUARDRAIL: ErrorSeverity.MEDIUM,
            ErrorCategory.RATE_LIMIT: ErrorSeverity.MEDIUM,
            ErrorCategory.TIMEOUT: ErrorSeverity.MEDIUM,
            ErrorCategory.NETWORK_ERROR: ErrorSeverity.MEDIUM,
            ErrorCategory.MALFORMED_OUTPUT: ErrorSeverity.LOW,
            ErrorCategory.PROCESSING_ERROR: ErrorSeverity.LOW,
            ErrorCategory.VALIDATION_ERROR: ErrorSeverity.LOW,
        }

        base_severity = severity_mapping.get(error_category, ErrorSeverity.MEDIUM)

        # Escalate severity with repeated attempts
        if attempt_number > 3:
            if base_severity == ErrorSeverity.LOW:
                return ErrorSeverity.MEDIUM
            elif base_severity == ErrorSeverity.MEDIUM:
                return ErrorSeverity.HIGH

        return base_severity


GUARDRAIL_USER_MESSAGE = (
    "The safety filter blocked this request. "
    "Please rephrase with gentler, child-friendly wording and try again."
)


def user_facing_error_message(error: BaseException) -> str:
    """Short message shown next to an illustration that failed to generate."""
    text = str(error).lower()
    if (
        ErrorAnalyzer.is_guardrail(error)
        or any(word in text for word in ("guardrail", "unsafe", "sensitive", "policy"))
    ):
        return "Image safety filter blocked this frame. Try retrying or editing the story wording."
    if "timed out" in text or ErrorAnalyzer.categorize_error(error) == ErrorCategory.TIMEOUT:
        return "Image generation took too long for this frame. Please retry."
    return "Could not generate this frame right now. Please retry."


@asynccontextmanager
async def error_monitoring_context(name: str):
    """Context manager for monitoring errors in a code block."""
    start_time = time.time()
    errors_caught = []

    try:
        logger.info(f"Starting monitored operation: {name}")
        yield errors_caught

    except asyncio.CancelledError:
        logger.info(f"Monitored operation {name} was cancelled")
        raise

    except Exception as e:
        errors_caught.append({
            'error': str(e),
            'type': type(e).__name__,
            'category': ErrorAnalyzer.categorize_error(e),
            'timestamp': time.time()
        })
        logger.error(f"Error in monitored operation {name}: {str(e)}")
        raise

    finally:
        duration = time.time() - start_time
        logger.info(
            f"Monitored operation {name} completed in {duration:.2f}s "
            f"with {len(errors_caught)} errors"
        )
