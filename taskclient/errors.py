"""Errors raised by the request pipeline and the upload coordinator."""

from typing import Any


class TaskClientError(Exception):
    """Base class for every error surfaced by taskclient."""


class TransportCanceled(TaskClientError):
    """The cancel signal was set before or while a request was in flight."""

    def __init__(self, method: str, url: str) -> None:
        super().__init__(f"{method} {url} canceled")
        self.method = method
        self.url = url


class TransportFault(TaskClientError):
    """Network or IO failure; the underlying cause is chained."""


class ServiceError(TaskClientError):
    def __init__(self, status_code: int, error: dict[str, Any] | None = None, reason: str | None = None) -> None:
        detail = error if error is not None else reason
        super().__init__(f"service responded {status_code}: {detail}")
        self.status_code = status_code
        self.error = error
        self.reason = reason


class DeserializationError(TaskClientError):
    def __init__(self, message: str, target: str, content: bytes, errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.target = target
        self.content = content
        self.errors = errors or []
