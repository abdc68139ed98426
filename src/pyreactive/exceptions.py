"""Custom exception hierarchy for pyreactive."""

from __future__ import annotations


class ReactiveError(Exception):
    """Base exception for all pyreactive errors."""


class ConfigurationError(ReactiveError):
    """Invalid or missing configuration (e.g. no remote store given)."""


class PathParseError(ConfigurationError):
    """A ``table/id`` shorthand path could not be decoded."""

    def __init__(self, message: str, *, path: str = "") -> None:
        self.path = path
        super().__init__(message)


class ReentrancyError(ReactiveError):
    """An operation was re-entered while it must run exactly once.

    Raised when ``init()`` is called on an initialized session, or when a
    state replacement starts while another one still holds the write lock.
    Indicates a programming error by the caller.
    """


class UnsupportedOperationError(ReactiveError):
    """The session cannot perform the requested operation (array write-back)."""


class RemoteStoreError(ReactiveError):
    """Remote store failure (network, non-2xx, invalid JSON, unconfirmed write)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class RealtimeError(RemoteStoreError):
    """Realtime channel failure (socket closed, join rejected or timed out)."""
