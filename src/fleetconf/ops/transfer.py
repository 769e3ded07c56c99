"""Checksum-verified file transfer between the control machine and a host.

Uploads are staged to a temporary sibling, verified against the source digest
and then moved into place, so a reader never sees a partial file.
"""

import os
import secrets
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from fleetconf.errors import IntegrityMismatch, LocalIOError, RemoteIOError
from fleetconf.ops.checksum import ChecksumVerifier
from fleetconf.telemetry.logger import get_logger
from fleetconf.transport.remote import (
    apply_attributes,
    discard_file,
    ensure_parent_dir,
    get_attributes,
    move_file,
    normalize_mode,
    unique_temp_path,
)
from fleetconf.transport.session import RemoteSession

logger = get_logger(__name__)

MAX_ATTEMPTS = 2


class TransferDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass(frozen=True)
class TransferSpec:
    """Desired transfer.

    Attributes:
        remote_path: Path on the host
        direction: Upload to or download from the host
        local_path: Local source (upload) or target (download)
        content: In-memory upload source, used instead of ``local_path``
        expected_checksum: SHA-256 the source must have
        mode: Octal mode for the uploaded file
        owner: Owner for the uploaded file
        group: Group for the uploaded file
        create_dirs: Create missing parent directories of the target
    """

    remote_path: str
    direction: TransferDirection = TransferDirection.UPLOAD
    local_path: Optional[Path] = None
    content: Optional[bytes] = field(default=None, repr=False)
    expected_checksum: Optional[str] = None
    mode: Optional[str] = None
    owner: Optional[str] = None
    group: Optional[str] = None
    create_dirs: bool = False

    def __post_init__(self) -> None:
        if not self.remote_path:
            raise ValueError("remote_path is required")
        if self.direction == TransferDirection.UPLOAD:
            if (self.local_path is None) == (self.content is None):
                raise ValueError("Upload needs exactly one of local_path or content")
        elif self.content is not None:
            raise ValueError("Download does not take content")
        if self.mode is not None:
            normalize_mode(self.mode)


@dataclass
class TransferOutcome:
    """What a transfer did on one host."""

    remote_path: str
    direction: TransferDirection
    changed: bool
    bytes_moved: int
    checksum: str
    skipped: bool = False
    attributes_changed: list[str] = field(default_factory=list)
    local_path: Optional[Path] = None
    content: Optional[bytes] = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "remote_path": self.remote_path,
            "direction": self.direction.value,
            "changed": self.changed,
            "bytes_moved": self.bytes_moved,
            "checksum": self.checksum,
            "skipped": self.skipped,
            "attributes_changed": self.attributes_changed,
            "local_path": str(self.local_path) if self.local_path else None,
        }


class FileTransferer:
    """Moves bytes to and from hosts with SHA-256 verification."""

    def __init__(self, verifier: Optional[ChecksumVerifier] = None) -> None:
        self.verifier = verifier or ChecksumVerifier()

    def transfer(self, session: RemoteSession, spec: TransferSpec) -> TransferOutcome:
        """Perform the transfer described by ``spec``.

        Raises:
            IntegrityMismatch: If verification fails twice or the source does
                not match ``expected_checksum``
            RemoteIOError: If a remote read or write fails
            LocalIOError: If the local file cannot be read or written
        """
        if spec.direction == TransferDirection.UPLOAD:
            return self.upload(session, spec)
        return self.download(session, spec)

    def upload(self, session: RemoteSession, spec: TransferSpec) -> TransferOutcome:
        data = spec.content if spec.content is not None else self._read_local(spec.local_path)
        checksum = self.verifier.digest(data)

        if spec.expected_checksum and not self.verifier.matches(spec.expected_checksum, checksum):
            raise IntegrityMismatch(
                f"Local source for {spec.remote_path} does not match expected checksum",
                path=str(spec.local_path or "<content>"),
                expected=spec.expected_checksum,
                actual=checksum,
            )

        if spec.create_dirs:
            ensure_parent_dir(session, spec.remote_path)

        current = self.verifier.remote_digest(session, spec.remote_path)
        if current is not None and self.verifier.matches(checksum, current):
            changed_attrs: list[str] = []
            if spec.mode or spec.owner or spec.group:
                changed_attrs = apply_attributes(
                    session,
                    spec.remote_path,
                    spec.mode,
                    spec.owner,
                    spec.group,
                    current=get_attributes(session, spec.remote_path),
                )
            logger.debug("Upload skipped, content identical", host=session.host, path=spec.remote_path)
            return TransferOutcome(
                remote_path=spec.remote_path,
                direction=spec.direction,
                changed=bool(changed_attrs),
                bytes_moved=0,
                checksum=checksum,
                skipped=True,
                attributes_changed=changed_attrs,
                local_path=spec.local_path,
            )

        temp_path = self.stage(session, data, spec.remote_path, checksum)
        try:
            changed_attrs = apply_attributes(session, temp_path, spec.mode, spec.owner, spec.group)
            move_file(session, temp_path, spec.remote_path)
        except RemoteIOError:
            discard_file(session, temp_path)
            raise

        logger.info("File uploaded", host=session.host, path=spec.remote_path, bytes=len(data))
        return TransferOutcome(
            remote_path=spec.remote_path,
            direction=spec.direction,
            changed=True,
            bytes_moved=len(data),
            checksum=checksum,
            attributes_changed=changed_attrs,
            local_path=spec.local_path,
        )

    def stage(
        self,
        session: RemoteSession,
        data: bytes,
        dest: str,
        checksum: Optional[str] = None,
    ) -> str:
        """Upload ``data`` to a verified temporary sibling of ``dest``.

        A digest mismatch discards the staged file and retries once.

        Returns:
            Path of the verified temporary file

        Raises:
            IntegrityMismatch: If both attempts fail verification
        """
        expected = checksum or self.verifier.digest(data)

        for attempt in range(1, MAX_ATTEMPTS + 1):
            temp_path = unique_temp_path(dest)
            try:
                session.upload(data, temp_path)
                actual = self.verifier.remote_digest(session, temp_path)
            except Exception:
                discard_file(session, temp_path)
                raise

            if actual is not None and self.verifier.matches(expected, actual):
                return temp_path

            discard_file(session, temp_path)
            logger.warning(
                "Checksum mismatch after upload",
                host=session.host,
                path=dest,
                attempt=attempt,
                expected=expected,
                actual=actual,
            )

        raise IntegrityMismatch(
            f"Checksum mismatch uploading {dest} after {MAX_ATTEMPTS} attempts",
            path=dest,
            expected=expected,
            actual=actual or "",
        )

    def download(self, session: RemoteSession, spec: TransferSpec) -> TransferOutcome:
        remote_checksum = self.verifier.remote_digest(session, spec.remote_path)
        if remote_checksum is None:
            raise RemoteIOError(f"Remote file not found: {spec.remote_path}", path=spec.remote_path)

        if spec.expected_checksum and not self.verifier.matches(spec.expected_checksum, remote_checksum):
            raise IntegrityMismatch(
                f"Remote source {spec.remote_path} does not match expected checksum",
                path=spec.remote_path,
                expected=spec.expected_checksum,
                actual=remote_checksum,
            )

        data = self._download_verified(session, spec.remote_path, remote_checksum)

        if spec.local_path is None:
            return TransferOutcome(
                remote_path=spec.remote_path,
                direction=spec.direction,
                changed=False,
                bytes_moved=len(data),
                checksum=remote_checksum,
                content=data,
            )

        local_path = Path(spec.local_path)
        if local_path.is_file() and self.verifier.matches(
            remote_checksum, self._digest_local(local_path)
        ):
            return TransferOutcome(
                remote_path=spec.remote_path,
                direction=spec.direction,
                changed=False,
                bytes_moved=len(data),
                checksum=remote_checksum,
                skipped=True,
                local_path=local_path,
            )

        self._write_local(local_path, data, spec.create_dirs)
        written = self._digest_local(local_path)
        if not self.verifier.matches(remote_checksum, written):
            raise IntegrityMismatch(
                f"Local copy of {spec.remote_path} does not match remote checksum",
                path=str(local_path),
                expected=remote_checksum,
                actual=written,
            )

        logger.info("File downloaded", host=session.host, path=spec.remote_path, bytes=len(data))
        return TransferOutcome(
            remote_path=spec.remote_path,
            direction=spec.direction,
            changed=True,
            bytes_moved=len(data),
            checksum=remote_checksum,
            local_path=local_path,
        )

    def _download_verified(self, session: RemoteSession, path: str, expected: str) -> bytes:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            data = session.download(path)
            actual = self.verifier.digest(data)
            if self.verifier.matches(expected, actual):
                return data
            logger.warning(
                "Checksum mismatch after download",
                host=session.host,
                path=path,
                attempt=attempt,
                expected=expected,
                actual=actual,
            )

        raise IntegrityMismatch(
            f"Checksum mismatch downloading {path} after {MAX_ATTEMPTS} attempts",
            path=path,
            expected=expected,
            actual=actual,
        )

    @staticmethod
    def _read_local(path: Optional[Path]) -> bytes:
        try:
            return Path(path).read_bytes()
        except OSError as e:
            raise LocalIOError(f"Cannot read {path}: {e}", path=str(path)) from e

    def _digest_local(self, path: Path) -> str:
        try:
            return self.verifier.digest_file(path)
        except OSError as e:
            raise LocalIOError(f"Cannot read {path}: {e}", path=str(path)) from e

    @staticmethod
    def _write_local(path: Path, data: bytes, create_dirs: bool) -> None:
        temp_path = path.with_name(f".{path.name}.tmp.{secrets.token_hex(4)}")
        try:
            if create_dirs:
                path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_bytes(data)
            os.replace(temp_path, path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise LocalIOError(f"Cannot write {path}: {e}", path=str(path)) from e
