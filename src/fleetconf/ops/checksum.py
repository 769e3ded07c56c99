"""SHA-256 content verification for local bytes, local files and remote files."""

import hashlib
import hmac
import shlex
from pathlib import Path
from typing import Optional, Union

from fleetconf.errors import RemoteExecutionFailed
from fleetconf.transport.remote import file_exists
from fleetconf.transport.session import RemoteSession

CHUNK_SIZE = 64 * 1024
DIGEST_LENGTH = 64


class ChecksumVerifier:
    """Computes and compares SHA-256 hex digests.

    Holds no state; an instance is shared by every transfer.
    """

    @staticmethod
    def digest(data: bytes) -> str:
        """Digest ``data`` in one shot."""
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def digest_file(path: Union[str, Path], chunk_size: int = CHUNK_SIZE) -> str:
        """Digest a local file, reading it in chunks."""
        hasher = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    @staticmethod
    def matches(expected: str, actual: str) -> bool:
        """Constant-time, case-insensitive comparison of two hex digests."""
        return hmac.compare_digest(expected.strip().lower(), actual.strip().lower())

    @staticmethod
    def remote_command(path: str) -> str:
        """Command printing the SHA-256 of ``path``, with a BSD fallback."""
        quoted = shlex.quote(path)
        return f"sha256sum {quoted} 2>/dev/null || shasum -a 256 {quoted}"

    @staticmethod
    def parse_remote_output(output: str) -> str:
        """Extract the hex digest from ``sha256sum`` style output.

        Raises:
            ValueError: If the output does not start with a SHA-256 digest
        """
        token = output.strip().split(maxsplit=1)[0] if output.strip() else ""
        if len(token) != DIGEST_LENGTH or any(c not in "0123456789abcdefABCDEF" for c in token):
            raise ValueError(f"Unrecognized checksum output: {output[:80]!r}")
        return token.lower()

    def remote_digest(self, session: RemoteSession, path: str) -> Optional[str]:
        """Digest a remote file, returning None when it does not exist.

        Raises:
            RemoteExecutionFailed: If the file exists but cannot be hashed
        """
        result = session.run(self.remote_command(path))
        if not result.success:
            if not file_exists(session, path):
                return None
            raise RemoteExecutionFailed(
                f"Failed to checksum {path}: {result.stderr.strip()}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                command=result.command,
            )
        try:
            return self.parse_remote_output(result.stdout)
        except ValueError as e:
            raise RemoteExecutionFailed(
                str(e),
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                command=result.command,
            ) from e
