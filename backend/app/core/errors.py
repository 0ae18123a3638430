"""
Error Taxonomy — typed failures for the ingestion and query pipelines.

Every error carries a user-facing message. The orchestrator writes that
message to documents.error_message; the API returns it in ErrorResponse.

  RAGServiceError
  ├── ExtractionFailed
  │   └── EmptyExtraction
  ├── InvalidCredentials        fatal, never retried
  ├── RateLimited               transient, retried with back-off
  ├── NetworkError              transient, retried with back-off
  ├── ProviderTimeout           transient, retried with back-off
  ├── EmbeddingFailed           carries the provider status code
  ├── CompletionFailed
  ├── ClassificationFailed      swallowed by the classifier
  ├── InvalidSourceUrl
  ├── DocumentNotFound
  ├── DocumentDeleted           raised mid-run when the document disappears
  ├── JobAlreadyRunning
  └── ConversationNotFound
"""

from __future__ import annotations

import httpx
import openai


class RAGServiceError(Exception):
    """Base class. `user_message` is safe to show to end users."""

    default_message = "Processing failed"

    def __init__(self, user_message: str | None = None) -> None:
        self.user_message = user_message or self.default_message
        super().__init__(self.user_message)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractionFailed(RAGServiceError):
    default_message = "Could not extract text - file may be empty or corrupted"


class EmptyExtraction(ExtractionFailed):
    pass


# ---------------------------------------------------------------------------
# External providers
# ---------------------------------------------------------------------------

class InvalidCredentials(RAGServiceError):
    default_message = "OpenAI API key is invalid or missing"


class RateLimited(RAGServiceError):
    default_message = "OpenAI API rate limit exceeded - please try again later"


class NetworkError(RAGServiceError):
    default_message = "Network error - check your connection and try again"


class ProviderTimeout(RAGServiceError):
    default_message = "Processing timeout - file may be too large"


class EmbeddingFailed(RAGServiceError):
    def __init__(self, status_code: int | str | None = None, user_message: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(user_message or f"Failed to generate embeddings: {status_code or 'unknown'}")


class CompletionFailed(RAGServiceError):
    default_message = "Failed to generate answer"


class ClassificationFailed(RAGServiceError):
    default_message = "Document classification failed"


# Transient kinds: the only ones the retry helper re-attempts
RETRYABLE_ERRORS: tuple[type[RAGServiceError], ...] = (RateLimited, NetworkError, ProviderTimeout)


# ---------------------------------------------------------------------------
# Domain / lookup
# ---------------------------------------------------------------------------

class InvalidSourceUrl(RAGServiceError):
    default_message = "Invalid URL"


class DocumentNotFound(RAGServiceError):
    default_message = "Document not found"


class DocumentDeleted(RAGServiceError):
    default_message = "Document was deleted during processing"


class RunSuperseded(RAGServiceError):
    default_message = "Document was claimed by a newer run"


class JobAlreadyRunning(RAGServiceError):
    default_message = "Document is already being processed"


class ConversationNotFound(RAGServiceError):
    default_message = "Conversation not found"


# ---------------------------------------------------------------------------
# Mapping helpers
# ---------------------------------------------------------------------------

def classify_provider_error(exc: Exception) -> RAGServiceError:
    """
    Map an OpenAI / httpx exception onto the taxonomy.

    APITimeoutError subclasses APIConnectionError, so it is checked first.
    Already-typed errors are returned unchanged.
    """
    if isinstance(exc, RAGServiceError):
        return exc
    if isinstance(exc, openai.AuthenticationError):
        return InvalidCredentials()
    if isinstance(exc, openai.RateLimitError):
        return RateLimited()
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeout()
    if isinstance(exc, openai.APIConnectionError):
        return NetworkError()
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 401:
            return InvalidCredentials()
        if exc.status_code == 429:
            return RateLimited()
        return EmbeddingFailed(status_code=exc.status_code)
    if isinstance(exc, httpx.TimeoutException):
        return ProviderTimeout()
    if isinstance(exc, httpx.TransportError):
        return NetworkError()
    if isinstance(exc, TimeoutError):
        return ProviderTimeout()
    return RAGServiceError(normalize_error_message(exc))


def normalize_error_message(exc: BaseException) -> str:
    """Return the string written to documents.error_message for a failure."""
    if isinstance(exc, RAGServiceError):
        return exc.user_message

    raw = str(exc) or type(exc).__name__
    lowered = raw.lower()
    if "network" in lowered or "fetch" in lowered:
        return NetworkError.default_message
    if "timeout" in lowered or isinstance(exc, TimeoutError):
        return ProviderTimeout.default_message
    return raw
