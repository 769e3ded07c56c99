"""Remote file helpers shared by the per-host operations.

Every command is built from an argv list and shell-quoted, so paths with
spaces or metacharacters are passed through untouched.
"""

import posixpath
import secrets
import shlex
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from fleetconf.config.defaults import BACKUP_TIMESTAMP_FORMAT
from fleetconf.errors import RemoteExecutionFailed, RemoteIOError
from fleetconf.telemetry.logger import get_logger
from fleetconf.transport.session import CommandResult, RemoteSession

logger = get_logger(__name__)

STAT_FORMAT = "%a %U %G %u %g"


@dataclass(frozen=True)
class FileAttributes:
    """Mode and ownership of a remote file as reported by ``stat``.

    Owner and group are matched by name or numeric id, so a spec may use
    either form.
    """

    mode: str
    owner: str
    group: str
    uid: Optional[int] = None
    gid: Optional[int] = None

    def owner_matches(self, owner: str) -> bool:
        return owner == self.owner or (self.uid is not None and owner == str(self.uid))

    def group_matches(self, group: str) -> bool:
        return group == self.group or (self.gid is not None and group == str(self.gid))


def run_argv(
    session: RemoteSession,
    argv: Sequence[str],
    timeout: Optional[float] = None,
) -> CommandResult:
    """Quote ``argv`` into a single command line and run it."""
    return session.run(shlex.join(argv), timeout=timeout)


def check_result(result: CommandResult, message: str) -> CommandResult:
    """Raise ``RemoteExecutionFailed`` if ``result`` exited non-zero."""
    if not result.success:
        raise RemoteExecutionFailed(
            f"{message}: exit {result.exit_code}: {result.stderr.strip()}",
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            command=result.command,
        )
    return result


def normalize_mode(mode: str) -> int:
    """Parse an octal mode string such as ``"644"`` or ``"0755"``.

    Raises:
        ValueError: If ``mode`` is not a valid octal permission
    """
    value = int(str(mode), 8)
    if not 0 <= value <= 0o7777:
        raise ValueError(f"Mode out of range: {mode}")
    return value


def unique_temp_path(path: str) -> str:
    """Return a collision-free sibling of ``path`` for staged writes."""
    return f"{path}.tmp.{time.time_ns()}.{secrets.token_hex(4)}"


def backup_path(path: str, now: Optional[datetime] = None) -> str:
    """Return ``<path>.<YYYYmmdd_HHMMSS>.backup`` using UTC time."""
    stamp = (now or datetime.now(timezone.utc)).strftime(BACKUP_TIMESTAMP_FORMAT)
    return f"{path}.{stamp}.backup"


def file_exists(session: RemoteSession, path: str) -> bool:
    """Check whether a regular file exists at ``path``."""
    result = run_argv(session, ["test", "-f", path])
    if result.exit_code in (0, 1):
        return result.exit_code == 0
    check_result(result, f"Cannot test {path}")
    return False


def read_file(session: RemoteSession, path: str) -> Optional[bytes]:
    """Read a remote file, returning None when it does not exist."""
    if not file_exists(session, path):
        return None
    return session.download(path)


def ensure_parent_dir(session: RemoteSession, path: str) -> None:
    """Create the parent directory of ``path`` if it is missing."""
    parent = posixpath.dirname(path)
    if parent in ("", "/"):
        return
    _run_io(session, ["mkdir", "-p", parent], f"Failed to create directory {parent}")


def copy_file(session: RemoteSession, src: str, dest: str) -> None:
    """Copy ``src`` to ``dest`` preserving mode and ownership."""
    _run_io(session, ["cp", "-p", src, dest], f"Failed to copy {src} to {dest}")


def move_file(session: RemoteSession, src: str, dest: str) -> None:
    """Atomically move ``src`` over ``dest``."""
    _run_io(session, ["mv", "-f", src, dest], f"Failed to move {src} to {dest}")


def remove_file(session: RemoteSession, path: str) -> None:
    """Remove ``path``; a missing file is not an error."""
    _run_io(session, ["rm", "-f", path], f"Failed to remove {path}")


def discard_file(session: RemoteSession, path: str) -> None:
    """Remove a staged file during cleanup, logging instead of raising.

    Used on error paths so the cleanup failure never masks the original error.
    """
    try:
        remove_file(session, path)
    except RemoteIOError as e:
        logger.warning("Failed to clean up staged file", host=session.host, path=path, error=str(e))


def get_attributes(session: RemoteSession, path: str) -> FileAttributes:
    """Read mode, owner and group of ``path`` with a single ``stat``."""
    result = _run_io(session, ["stat", "-c", STAT_FORMAT, path], f"Failed to stat {path}")
    fields = result.stdout.split()
    if len(fields) != 5 or not (fields[3].isdigit() and fields[4].isdigit()):
        raise RemoteIOError(f"Unexpected stat output for {path}: {result.stdout!r}", path=path)
    return FileAttributes(
        mode=fields[0],
        owner=fields[1],
        group=fields[2],
        uid=int(fields[3]),
        gid=int(fields[4]),
    )


def apply_attributes(
    session: RemoteSession,
    path: str,
    mode: Optional[str] = None,
    owner: Optional[str] = None,
    group: Optional[str] = None,
    current: Optional[FileAttributes] = None,
) -> list[str]:
    """Set mode and ownership on ``path``.

    When ``current`` is given only the attributes that differ from it are
    touched; otherwise every requested attribute is applied.

    Args:
        session: Session to the host
        path: Remote file path
        mode: Octal mode string
        owner: Owning user
        group: Owning group
        current: Attributes already present on the file

    Returns:
        Names of the attributes that were changed
    """
    changed: list[str] = []

    if mode is not None and (current is None or normalize_mode(current.mode) != normalize_mode(mode)):
        _run_io(session, ["chmod", mode, path], f"Failed to chmod {path}")
        changed.append("mode")

    set_owner = owner is not None and (current is None or not current.owner_matches(owner))
    set_group = group is not None and (current is None or not current.group_matches(group))

    if set_owner:
        spec = f"{owner}:{group}" if group else owner
        _run_io(session, ["chown", spec, path], f"Failed to chown {path}")
        changed.append("owner")
        if set_group:
            changed.append("group")
    elif set_group:
        _run_io(session, ["chgrp", group, path], f"Failed to chgrp {path}")
        changed.append("group")

    return changed


def _run_io(session: RemoteSession, argv: Sequence[str], message: str) -> CommandResult:
    result = run_argv(session, argv)
    if not result.success:
        raise RemoteIOError(
            f"{message}: {result.stderr.strip() or f'exit {result.exit_code}'}",
            command=result.command,
            exit_code=result.exit_code,
            stderr=result.stderr,
        )
    return result
