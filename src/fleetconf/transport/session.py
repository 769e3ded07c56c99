"""Remote session boundary consumed by every per-host operation.

A ``RemoteSession`` is one authenticated channel to one host. Operations only
ever talk to a host through ``run``, ``upload``, ``download`` and ``close``;
the SSH implementation lives in ``fleetconf.transport.ssh``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from fleetconf.config.defaults import DEFAULT_SSH_PORT, DEFAULT_SSH_USER


@dataclass(frozen=True)
class ConnectionParams:
    """How to reach and authenticate against a host.

    Attributes:
        address: Hostname or IP address
        port: SSH port
        username: Login user
        password: Password (optional, prefer key-based auth)
        private_key_path: Path to private key file
        passphrase: Passphrase for an encrypted key
        connect_timeout: Per-host connect timeout override in seconds
    """

    address: str
    port: int = DEFAULT_SSH_PORT
    username: str = DEFAULT_SSH_USER
    password: Optional[str] = field(default=None, repr=False)
    private_key_path: Optional[Path] = None
    passphrase: Optional[str] = field(default=None, repr=False)
    connect_timeout: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary. Secrets are never serialized."""
        return {
            "address": self.address,
            "port": self.port,
            "username": self.username,
            "private_key_path": str(self.private_key_path) if self.private_key_path else None,
            "connect_timeout": self.connect_timeout,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectionParams":
        """Create from dictionary."""
        key_path = data.get("private_key_path")
        return cls(
            address=data["address"],
            port=int(data.get("port", DEFAULT_SSH_PORT)),
            username=data.get("username", DEFAULT_SSH_USER),
            password=data.get("password"),
            private_key_path=Path(key_path).expanduser() if key_path else None,
            passphrase=data.get("passphrase"),
            connect_timeout=data.get("connect_timeout"),
        )


@dataclass
class CommandResult:
    """Result of a remote command execution.

    Attributes:
        host: Name of the host where the command ran
        command: Command that was executed
        exit_code: Command exit code
        stdout: Standard output
        stderr: Standard error
        duration_ms: Execution duration in milliseconds
    """

    host: str
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        """Whether the command exited zero."""
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "host": self.host,
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
        }


class RemoteSession(ABC):
    """One authenticated channel to one host."""

    def __init__(self, host: str) -> None:
        self.host = host

    @property
    @abstractmethod
    def is_active(self) -> bool:
        """Whether the underlying channel is still usable."""

    @abstractmethod
    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run ``command`` and return its output.

        A non-zero exit is reported through ``CommandResult.exit_code``; only
        transport failures raise.

        Raises:
            ConnectionTimeout: If the command exceeds ``timeout``
            ConnectionFailed: If the channel breaks
        """

    @abstractmethod
    def upload(self, data: bytes, remote_path: str) -> None:
        """Write ``data`` to ``remote_path``.

        Raises:
            RemoteIOError: If the write fails
        """

    @abstractmethod
    def download(self, remote_path: str) -> bytes:
        """Read the whole of ``remote_path``.

        Raises:
            RemoteIOError: If the read fails
        """

    @abstractmethod
    def close(self) -> None:
        """Close the session."""

    def abort(self) -> None:
        """Best-effort interruption of in-flight work, then close."""
        self.close()

    def __enter__(self) -> "RemoteSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


SessionFactory = Callable[[str, ConnectionParams], RemoteSession]
