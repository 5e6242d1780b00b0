"""Custom exception hierarchy for twinop."""

from __future__ import annotations


class TwinError(Exception):
    """Base exception for all twinop errors."""


class TwinConfigError(TwinError):
    """Invalid or missing configuration."""


class TwinNotFoundError(TwinError):
    """The twin resource does not exist (deleted or never created)."""

    def __init__(self, message: str, *, identity: str = "") -> None:
        self.identity = identity
        super().__init__(message)


class TwinConflictError(TwinError):
    """A resource-version guarded write lost against a concurrent update."""

    def __init__(
        self,
        message: str,
        *,
        identity: str = "",
        expected_version: int | None = None,
        current_version: int | None = None,
    ) -> None:
        self.identity = identity
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(message)


class MalformedSpecError(TwinError):
    """Desired spec failed validation or carries an unknown schema tag.

    Retrying an unchanged malformed spec cannot succeed, so the reconciler
    reports it through the twin status and waits for the next spec change.
    """

    def __init__(self, message: str, *, schema: str = "") -> None:
        self.schema = schema
        super().__init__(message)


class TwinTransientError(TwinError):
    """Adapter failure that may succeed on a later attempt."""


class TwinUnreachableError(TwinTransientError):
    """Backing store or device channel could not be reached."""

    def __init__(
        self,
        message: str,
        *,
        endpoint: str = "",
        status_code: int | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(message)


class TwinTimeoutError(TwinTransientError):
    """An adapter call exceeded its deadline."""

    def __init__(self, message: str, *, operation: str = "", timeout: float | None = None) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(message)


class QueueShutDown(TwinError):
    """The work queue is shutting down; no further items will be handed out."""
