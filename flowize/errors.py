"""Error taxonomy for Flowize operations.

Errors carry enough operational context (endpoints tried, the command that
ran, task/PR identifiers) to diagnose a misconfigured local bridge or
filesystem. Errors that can be fixed by an explicit user-confirmed step carry
a ``RecoveryAction`` instead of being retried automatically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional


class RecoveryKind(str, Enum):
    """Kinds of user-confirmed recovery actions."""

    CLEANUP_WORKTREE = "cleanup_worktree"
    FORCE_PUSH_WITH_LEASE = "force_push_with_lease"
    RESOLVE_IN_WORKTREE = "resolve_in_worktree"
    RETRY_CLEANUP = "retry_cleanup"


@dataclass
class RecoveryAction:
    """An action offered to the user alongside a surfaced error.

    ``run`` is only awaited after the user confirms it.
    """

    label: str
    kind: RecoveryKind
    target: str = ""
    run: Optional[Callable[[], Awaitable[None]]] = field(default=None, repr=False, compare=False)


class FlowizeError(Exception):
    """Base class for all Flowize errors."""

    recovery: Optional[RecoveryAction] = None


class ConnectivityError(FlowizeError):
    """Raised when no bridge candidate endpoint could be reached."""

    def __init__(self, endpoints: list[str], last_error: str = "", message: Optional[str] = None) -> None:
        self.endpoints = list(endpoints)
        self.last_error = last_error
        if message is None:
            message = (
                f"Cannot reach local agent bridge. Tried: {', '.join(self.endpoints) or '<none>'}. "
                f"Last error: {last_error or 'unknown'}. Start your local bridge and retry."
            )
        super().__init__(message)


class RejectedError(FlowizeError):
    """Raised when a reachable bridge refuses a request for protocol reasons."""

    def __init__(self, endpoint: str, status: int, message: str = "") -> None:
        self.endpoint = endpoint
        self.status = status
        details = message or "no response body"
        super().__init__(f"Local bridge error ({status}) on {endpoint}: {details}")


class CommandFailure(FlowizeError):
    """Raised when a command ran on the bridge and failed."""

    def __init__(
        self,
        endpoint: str,
        command: str,
        exit_code: Optional[int] = None,
        stderr: str = "",
        message: str = "",
    ) -> None:
        self.endpoint = endpoint
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        details = message.strip()
        if stderr.strip() and stderr.strip() not in details:
            details = f"{details}: {stderr.strip()}" if details else stderr.strip()
        details = details or "unknown bridge error"
        if exit_code is not None:
            details = f"exitCode={exit_code}: {details}"
        super().__init__(f"Command failed on {endpoint}: {details} (command: {command})")


class ConflictError(FlowizeError):
    """Raised on a logical conflict (slot bound, branch checked out, path exists)."""

    def __init__(self, message: str, recovery: Optional[RecoveryAction] = None) -> None:
        self.recovery = recovery
        super().__init__(message)


class JobTimeoutError(FlowizeError, TimeoutError):
    """Raised when an async bridge job goes stale or exceeds the poll ceiling."""

    def __init__(
        self,
        job_id: str,
        message: str,
        idle_ms: Optional[int] = None,
        saw_output: bool = False,
        cancel_note: str = "",
    ) -> None:
        self.job_id = job_id
        self.idle_ms = idle_ms
        self.saw_output = saw_output
        self.cancel_note = cancel_note
        super().__init__(f"{message}{cancel_note}".strip())


class ApiErrorKind(str, Enum):
    """Sub-kinds of issue tracker failures."""

    RATE_LIMIT = "rate_limit"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    MERGE_NOT_ALLOWED = "merge_not_allowed"
    OTHER = "other"


class ExternalApiError(FlowizeError):
    """Raised when the issue tracker rejects a request."""

    def __init__(self, kind: ApiErrorKind, context: str, message: str, status: Optional[int] = None) -> None:
        self.kind = kind
        self.context = context
        self.status = status
        super().__init__(message)


class OperationError(FlowizeError):
    """A surfaced workflow failure, optionally paired with a recovery action."""

    def __init__(self, title: str, message: str, recovery: Optional[RecoveryAction] = None) -> None:
        self.title = title
        self.recovery = recovery
        super().__init__(message)


def error_message(error: BaseException) -> str:
    """Return a readable message for any exception."""
    return str(error) or error.__class__.__name__
