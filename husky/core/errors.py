"""
Error kinds shared by every Husky component.

Each error carries ``retryable`` so the HTTP layer can tell the caller
"try again" apart from "invalid request" without inspecting types.
"""

from typing import Optional


class HuskyError(Exception):
    """Base class for all Husky errors."""

    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(HuskyError):
    """Malformed input. Never retried."""


class NotFoundError(HuskyError):
    """Referenced thread or message does not exist."""


class PersistenceError(HuskyError):
    """The authoritative store is unavailable or rejected a write."""

    retryable = True


class ProviderError(HuskyError):
    """Base class for language-model provider failures."""


class TransientProviderError(ProviderError):
    """Network failure or timeout talking to the provider."""

    retryable = True


class RateLimitError(TransientProviderError):
    """Provider signalled throttling, optionally with a wait hint in seconds."""

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderCircuitOpenError(ProviderError):
    """Circuit breaker is open; the provider was not called."""

    retryable = True

    def __init__(self, message: str = "", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentProviderError(ProviderError):
    """Provider rejected the request (invalid input, auth). Never retried."""


class PartialIngestionFailure(HuskyError):
    """One entity failed during an ingestion run."""

    def __init__(self, document_id: str, reason: str):
        super().__init__(f"{document_id}: {reason}")
        self.document_id = document_id
        self.reason = reason

    def to_dict(self):
        return {"documentId": self.document_id, "reason": self.reason}
