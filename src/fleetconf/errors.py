"""Error taxonomy for per-host failures.

Every failure raised inside a per-host unit of work is a ``FleetError``
subclass carrying an ``ErrorKind``. The engine catches them at the host
boundary and encodes them into that host's ``ExecutionResult``.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Kinds of per-host failures reported by the engine."""

    CONNECTION_FAILED = "connection_failed"
    AUTHENTICATION_FAILED = "authentication_failed"
    TIMEOUT = "timeout"
    UNKNOWN_HOST = "unknown_host"
    REMOTE_EXECUTION_FAILED = "remote_execution_failed"
    RENDER_ERROR = "render_error"
    VALIDATION_FAILED = "validation_failed"
    IO_ERROR = "io_error"
    INTEGRITY_MISMATCH = "integrity_mismatch"
    USER_ERROR = "user_error"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class FleetError(Exception):
    """Base class for all fleetconf errors.

    Attributes:
        kind: Error category used in execution reports
        message: Human readable message
        detail: Structured diagnostic fields
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail: dict[str, Any] = detail

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "detail": self.detail,
        }


class ConnectionFailed(FleetError):
    kind = ErrorKind.CONNECTION_FAILED


class AuthenticationFailed(FleetError):
    kind = ErrorKind.AUTHENTICATION_FAILED


class ConnectionTimeout(FleetError):
    """A connect, command or whole-host unit exceeded its time budget."""

    kind = ErrorKind.TIMEOUT


class UnknownHost(FleetError):
    kind = ErrorKind.UNKNOWN_HOST

    def __init__(self, host: str) -> None:
        super().__init__(f"Host '{host}' is not registered", host=host)


class RemoteExecutionFailed(FleetError):
    """A remote command exited non-zero."""

    kind = ErrorKind.REMOTE_EXECUTION_FAILED

    def __init__(
        self,
        message: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        command: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            command=command,
        )
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.command = command


class RenderError(FleetError):
    """Template could not be parsed or referenced an undefined variable."""

    kind = ErrorKind.RENDER_ERROR

    def __init__(self, message: str, location: Optional[str] = None) -> None:
        super().__init__(message, location=location)
        self.location = location

    def __str__(self) -> str:
        if self.location:
            return f"{self.message} (at {self.location})"
        return self.message


class ValidationFailed(FleetError):
    """Validation command rejected a rendered file."""

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, stdout: str = "", stderr: str = "", exit_code: int = 1) -> None:
        super().__init__(message, stdout=stdout, stderr=stderr, exit_code=exit_code)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


class RemoteIOError(FleetError):
    kind = ErrorKind.IO_ERROR


class LocalIOError(FleetError):
    """Reading or writing a file on the control machine failed."""

    kind = ErrorKind.IO_ERROR


class IntegrityMismatch(FleetError):
    """Transferred bytes did not match the source checksum."""

    kind = ErrorKind.INTEGRITY_MISMATCH

    def __init__(self, message: str, path: str, expected: str, actual: str) -> None:
        super().__init__(message, path=path, expected=expected, actual=actual)
        self.path = path
        self.expected = expected
        self.actual = actual


class UserError(FleetError):
    """Account convergence failed: missing privilege or unknown group."""

    kind = ErrorKind.USER_ERROR


class Cancelled(FleetError):
    kind = ErrorKind.CANCELLED


class RegistryBusyError(RuntimeError):
    """Raised when the host registry is mutated while a dispatch is running."""
