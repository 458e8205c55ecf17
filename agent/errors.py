"""Error taxonomy for the agent core.

Provider SDKs and HTTP clients raise their own exception types. The
dispatcher funnels them through classify_provider_error() so the retry
ladder and the loop controller only ever reason about the classes below.
"""

import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class AgentError(Exception):
    """Base class for all agent core errors."""
    pass


class ModelUnavailable(AgentError):
    """Model not found or request rejected (404/400 class)."""

    def __init__(self, message: str, model: Optional[str] = None):
        super().__init__(message)
        self.model = model


class QuotaExceeded(AgentError):
    """Rate limit or quota exhausted (429 class)."""
    pass


class ProviderAuthError(AgentError):
    """Missing or rejected API key."""
    pass


class NetworkFailure(AgentError):
    """Transport-level failure talking to a provider."""
    pass


class SearchProviderFailure(AgentError):
    """A search provider failed; always absorbed by the search chain."""
    pass


class UserCancelled(AgentError):
    """The request's cancellation token was signalled."""
    pass


class AttachmentProcessingError(AgentError):
    """An attachment could not be read or encoded."""
    pass


class VisionNotSupported(AgentError):
    """An image was sent to a model without vision support."""
    pass


VISION_UNSUPPORTED_MESSAGE = (
    "The selected model does not support image inputs. Please switch to a "
    "vision-capable model like Gemini Pro or Claude Sonnet."
)

_QUOTA_PHRASES = ("429", "quota", "resource_exhausted", "resource exhausted", "rate limit")
_AUTH_PHRASES = ("api key not valid", "invalid api key", "invalid_api_key", "unauthorized", "permission denied")
_UNAVAILABLE_PHRASES = ("404", "not found", "requested entity was not found", "invalid model", "is not a valid model")
_NETWORK_PHRASES = ("rpc failed", "fetch", "connection", "timed out")


def _status_of(exc: BaseException) -> Optional[int]:
    # httpx errors carry status_code, google-genai errors carry code
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_provider_error(exc: BaseException, model: Optional[str] = None) -> BaseException:
    """Map a raw provider exception onto the taxonomy.

    Errors that are already AgentError instances are returned unchanged, as
    are errors that match no class (they propagate as-is).
    """
    if isinstance(exc, AgentError):
        return exc

    status = _status_of(exc)
    msg = str(exc).lower()

    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return NetworkFailure(str(exc) or type(exc).__name__)
    if status in (401, 403) or any(p in msg for p in _AUTH_PHRASES):
        return ProviderAuthError(str(exc))
    if status == 429 or any(p in msg for p in _QUOTA_PHRASES):
        return QuotaExceeded(str(exc))
    if status in (400, 404) or any(p in msg for p in _UNAVAILABLE_PHRASES):
        return ModelUnavailable(str(exc), model=model)
    if any(p in msg for p in _NETWORK_PHRASES):
        return NetworkFailure(str(exc))
    return exc


def error_for_status(status: int, message: str, model: Optional[str] = None) -> AgentError:
    """Taxonomy error for a non-2xx HTTP response from a provider."""
    if status in (401, 403):
        return ProviderAuthError(message)
    if status == 429:
        return QuotaExceeded(message)
    if status in (400, 404):
        return ModelUnavailable(message, model=model)
    if status >= 500:
        return NetworkFailure(message)
    return AgentError(message)


def user_friendly_error(exc: BaseException) -> str:
    """Single user-facing message for an error that escaped all retries."""
    if isinstance(exc, NetworkFailure):
        return (
            "AI service connection failed. Please check your internet "
            "connection and try again."
        )
    if isinstance(exc, ProviderAuthError):
        return "Your API key is not valid. Please check it in your settings."
    if isinstance(exc, QuotaExceeded):
        return "You've exceeded your API quota. Please try again later."
    if isinstance(exc, ModelUnavailable):
        label = f"The model {exc.model}" if exc.model else "The selected model"
        return f"{label} is currently unavailable. Details: {exc}"
    return str(exc) or "An unknown error occurred."
