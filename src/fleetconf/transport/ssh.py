"""SSH transport built on paramiko.

Provides the default ``RemoteSession`` implementation: command execution over
an exec channel and file I/O over SFTP.
"""

import io
import socket
import threading
import time
from typing import Optional

import paramiko

from fleetconf.config.defaults import DEFAULT_COMMAND_TIMEOUT, DEFAULT_CONNECT_TIMEOUT
from fleetconf.errors import (
    AuthenticationFailed,
    ConnectionFailed,
    ConnectionTimeout,
    RemoteIOError,
)
from fleetconf.telemetry.logger import get_logger, redact_command
from fleetconf.transport.session import CommandResult, ConnectionParams, RemoteSession

logger = get_logger(__name__)


class SSHSession(RemoteSession):
    """A paramiko-backed session to a single host.

    Example:
        session = SSHSession.connect("web1", ConnectionParams(address="10.0.0.5"))
        result = session.run("uptime")
        session.close()
    """

    def __init__(
        self,
        host: str,
        client: paramiko.SSHClient,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        super().__init__(host)
        self._client = client
        self._sftp: Optional[paramiko.SFTPClient] = None
        self._lock = threading.Lock()
        self.command_timeout = command_timeout

    @classmethod
    def connect(
        cls,
        host: str,
        params: ConnectionParams,
        timeout: float = DEFAULT_CONNECT_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> "SSHSession":
        """Open and authenticate a session.

        Key-based auth is used when a key path is configured, then password,
        then agent/default keys.

        Raises:
            AuthenticationFailed: If the server rejects the credentials
            ConnectionTimeout: If the handshake does not finish in time
            ConnectionFailed: For any other connection error
        """
        connect_timeout = params.connect_timeout or timeout
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        kwargs = {
            "hostname": params.address,
            "port": params.port,
            "username": params.username,
            "timeout": connect_timeout,
            "banner_timeout": connect_timeout,
            "auth_timeout": connect_timeout,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if params.private_key_path:
            kwargs["key_filename"] = str(params.private_key_path.expanduser())
            kwargs["passphrase"] = params.passphrase
        elif params.password:
            kwargs["password"] = params.password
            kwargs["allow_agent"] = False
            kwargs["look_for_keys"] = False

        try:
            client.connect(**kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationFailed(
                f"Authentication failed for {params.username}@{params.address}: {e}",
                address=params.address,
            ) from e
        except socket.timeout as e:
            client.close()
            raise ConnectionTimeout(
                f"Timed out connecting to {params.address}:{params.port}",
                address=params.address,
            ) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectionFailed(
                f"Failed to connect to {params.address}:{params.port}: {e}",
                address=params.address,
            ) from e

        logger.debug("SSH connected", host=host, address=params.address, port=params.port)
        return cls(host, client, command_timeout=command_timeout)

    @property
    def is_active(self) -> bool:
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        start_time = time.perf_counter()
        exec_timeout = timeout or self.command_timeout
        shown = redact_command(command)

        try:
            _, stdout, stderr = self._client.exec_command(command, timeout=exec_timeout)
            stdout_data = stdout.read().decode("utf-8", errors="replace")
            stderr_data = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise ConnectionTimeout(
                f"Command timed out after {exec_timeout}s: {shown[:80]}",
                command=shown,
            ) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ConnectionFailed(f"SSH channel failed: {e}", command=shown) from e

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(
            "SSH command executed",
            host=self.host,
            command=shown[:80],
            exit_code=exit_code,
            duration_ms=duration_ms,
        )
        return CommandResult(
            host=self.host,
            command=command,
            exit_code=exit_code,
            stdout=stdout_data,
            stderr=stderr_data,
            duration_ms=duration_ms,
        )

    def upload(self, data: bytes, remote_path: str) -> None:
        try:
            self._sftp_client().putfo(io.BytesIO(data), remote_path, file_size=len(data), confirm=True)
        except (OSError, paramiko.SSHException) as e:
            raise RemoteIOError(f"Failed to write {remote_path}: {e}", path=remote_path) from e

    def download(self, remote_path: str) -> bytes:
        buffer = io.BytesIO()
        try:
            self._sftp_client().getfo(remote_path, buffer)
        except (OSError, paramiko.SSHException) as e:
            raise RemoteIOError(f"Failed to read {remote_path}: {e}", path=remote_path) from e
        return buffer.getvalue()

    def close(self) -> None:
        with self._lock:
            if self._sftp is not None:
                try:
                    self._sftp.close()
                except (OSError, paramiko.SSHException) as e:
                    logger.debug("SFTP close failed", host=self.host, error=str(e))
                self._sftp = None
            self._client.close()

    def abort(self) -> None:
        # Closing the transport unblocks any thread reading from a channel.
        transport = self._client.get_transport()
        if transport is not None:
            transport.close()
        self.close()

    def _sftp_client(self) -> paramiko.SFTPClient:
        with self._lock:
            if self._sftp is None:
                try:
                    self._sftp = self._client.open_sftp()
                except (OSError, paramiko.SSHException) as e:
                    raise RemoteIOError(f"Failed to open SFTP channel: {e}") from e
            return self._sftp
