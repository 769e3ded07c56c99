"""Per-host results and the aggregate report of one dispatch."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Optional

from fleetconf.errors import ErrorKind, FleetError
from fleetconf.telemetry.logger import redact_command


class ReportStatus(str, Enum):
    """Overall outcome of a dispatch."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    EMPTY = "empty"


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one operation on one host.

    Attributes:
        host: Host name
        success: Whether the operation succeeded
        changed: Whether the host was modified
        output: Diagnostic text (command output, diff, error stderr)
        error_kind: Failure category, None on success
        error: Failure message, None on success
        exit_code: Exit code of the relevant remote command, if any
        data: Operation specific payload
        duration_ms: Wall time spent on the host
    """

    host: str
    success: bool
    changed: bool = False
    output: str = ""
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    @classmethod
    def ok(
        cls,
        host: str,
        changed: bool = False,
        output: str = "",
        data: Optional[dict[str, Any]] = None,
        exit_code: Optional[int] = None,
        duration_ms: float = 0.0,
    ) -> "ExecutionResult":
        return cls(
            host=host,
            success=True,
            changed=changed,
            output=output,
            exit_code=exit_code,
            data=data or {},
            duration_ms=duration_ms,
        )

    @classmethod
    def err(cls, host: str, error: Exception, duration_ms: float = 0.0) -> "ExecutionResult":
        """Encode an exception raised on ``host``.

        ``FleetError`` subclasses keep their kind and detail; anything else is
        reported as ``INTERNAL``. Password hashes in a failed command line are
        masked.
        """
        if isinstance(error, FleetError):
            detail = error.detail
            output = detail.get("stderr") or detail.get("stdout") or ""
            data = {k: v for k, v in detail.items() if k not in ("stdout", "stderr")}
            if isinstance(data.get("command"), str):
                data["command"] = redact_command(data["command"])
            return cls(
                host=host,
                success=False,
                output=output,
                error_kind=error.kind,
                error=str(error),
                exit_code=detail.get("exit_code"),
                data=data,
                duration_ms=duration_ms,
            )
        return cls(
            host=host,
            success=False,
            error_kind=ErrorKind.INTERNAL,
            error=f"{type(error).__name__}: {error}",
            duration_ms=duration_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "host": self.host,
            "success": self.success,
            "changed": self.changed,
            "output": self.output,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "exit_code": self.exit_code,
            "data": _jsonable(self.data),
            "duration_ms": self.duration_ms,
        }


class ExecutionReport(Mapping):
    """Read-only mapping of host name to ``ExecutionResult``.

    Holds exactly one entry per targeted host, in target order.
    """

    def __init__(
        self,
        operation: str,
        results: Mapping[str, ExecutionResult],
        duration_ms: float = 0.0,
    ) -> None:
        self._operation = operation
        self._results = MappingProxyType(dict(results))
        self._duration_ms = duration_ms

    def __getitem__(self, host: str) -> ExecutionResult:
        return self._results[host]

    def __iter__(self) -> Iterator[str]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def __repr__(self) -> str:
        return (
            f"ExecutionReport(operation={self._operation!r}, status={self.status.value}, "
            f"successful={len(self.successful)}, failed={len(self.failed)})"
        )

    @property
    def operation(self) -> str:
        return self._operation

    @property
    def duration_ms(self) -> float:
        return self._duration_ms

    @property
    def successful(self) -> list[str]:
        return sorted(host for host, result in self._results.items() if result.success)

    @property
    def failed(self) -> list[str]:
        return sorted(host for host, result in self._results.items() if not result.success)

    @property
    def changed(self) -> list[str]:
        return sorted(host for host, result in self._results.items() if result.changed)

    @property
    def status(self) -> ReportStatus:
        if not self._results:
            return ReportStatus.EMPTY
        if not self.failed:
            return ReportStatus.SUCCESS
        if not self.successful:
            return ReportStatus.FAILED
        return ReportStatus.PARTIAL

    def errors_by_kind(self) -> dict[ErrorKind, list[str]]:
        """Group failed host names by error kind."""
        grouped: dict[ErrorKind, list[str]] = {}
        for host in self.failed:
            kind = self._results[host].error_kind or ErrorKind.INTERNAL
            grouped.setdefault(kind, []).append(host)
        return grouped

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "operation": self._operation,
            "status": self.status.value,
            "total_hosts": len(self._results),
            "successful": self.successful,
            "failed": self.failed,
            "changed": self.changed,
            "duration_ms": self._duration_ms,
            "results": {host: result.to_dict() for host, result in self._results.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, bytes):
        return {"bytes": len(value)}
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return value
