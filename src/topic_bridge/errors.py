"""Exception hierarchy shared by the bridge components."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ConfigurationError(BridgeError):
    """Missing or placeholder credentials detected at startup."""


class PlatformError(BridgeError):
    """A platform API rejected the request."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        method: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.method = method


class TransientPlatformError(PlatformError):
    """Network failure, rate limiting or a server side error; safe to retry."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        method: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status=status, method=method)
        self.retry_after = retry_after


class NotFoundError(PlatformError):
    """The mapped topic or thread no longer exists on the platform."""


class AuthorizationError(BridgeError):
    """The access gate rejected the request."""

    def __init__(self, user_id: int, reason: str = "unauthorized") -> None:
        super().__init__(f"{reason}: {user_id}")
        self.user_id = user_id
        self.reason = reason


class ConversionError(BridgeError):
    """Media transcoding failed."""


class QueueFullError(BridgeError):
    """The relay queue rejected a task under the ``reject`` overflow policy."""
