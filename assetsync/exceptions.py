"""Application-level exception types.

Convention:
- ``SyncError`` and its subclasses are raised inside a sync task run. The task
  registry catches them at the execution boundary and records the message in
  the task status; they never crash the scheduler.
- ``SourceConfigError`` is a ``ValueError`` for bad or conflicting source
  configuration. It is raised at load/registration time, before any task runs.
- ``InternalServerError`` is for errors whose details must never reach API
  clients. The global handler logs the full message and returns a generic 500.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for failures raised while running a sync task."""


class TransientNetworkError(SyncError):
    """A remote request failed with a non-2xx status or a connection error.

    The next scheduled run retries naturally; there is no backoff.
    """

    def __init__(self, message: str, *, url: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RateLimitedError(TransientNetworkError):
    """The GitHub API answered 403 (quota exhausted)."""


class MalformedRemoteDataError(SyncError):
    """A remote API returned a payload of an unexpected shape."""


class PatternResolutionError(SyncError):
    """The extraction pattern did not match the watched file.

    Distinct from "unchanged": the upstream file's structure changed and
    needs operator attention.
    """


class CheckpointIOError(SyncError):
    """Reading or writing a checkpoint record failed."""


class SourceConfigError(ValueError):
    """Invalid or conflicting source descriptor configuration."""


class UnknownTaskError(KeyError):
    """No task is registered under the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown task: {self.name!r}"


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``assetsync/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """
