from __future__ import annotations


class GenQueueError(Exception):
    pass


class ValidationError(GenQueueError, ValueError):
    """Rejected user input; raised synchronously and never queued."""


class InvalidTransitionError(GenQueueError):
    pass


class NetworkError(GenQueueError):
    """The remote service could not be reached at all."""


class RemoteCallError(GenQueueError):
    """The remote service answered, but not with something usable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
