from typing import Optional


class ThreadlineError(Exception):
    """Base class for engine errors."""


class DuplicateError(ThreadlineError):
    """The logical operation was already handled; callers still acknowledge success upstream."""

    def __init__(self, message: str, existing_id: Optional[int] = None):
        self.existing_id = existing_id
        super().__init__(message)


class ProviderSendError(ThreadlineError):
    """Messaging provider rejected or failed the send (network, auth, rate limit, timeout)."""

    def __init__(self, message: str, *, retryable: bool = False, status_code: Optional[int] = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class GenerationError(ThreadlineError):
    """AI capability failed or returned unusable output."""


class ConfigurationError(ThreadlineError):
    """Missing credentials or capability configuration. Raised before any send is attempted."""
