"""Ad-hoc commands, connectivity checks and uploaded scripts."""

import posixpath
import shlex
from typing import Optional

from fleetconf.config.defaults import REMOTE_SCRIPT_DIR
from fleetconf.errors import RemoteExecutionFailed
from fleetconf.ops.transfer import FileTransferer
from fleetconf.telemetry.logger import get_logger
from fleetconf.transport.remote import discard_file, run_argv
from fleetconf.transport.session import CommandResult, RemoteSession

logger = get_logger(__name__)

PING_COMMAND = "echo pong"
PING_REPLY = "pong"
SCRIPT_NAME = "fleetconf-script.sh"


def run_command(
    session: RemoteSession,
    command: str,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run a shell command, raising when it exits non-zero.

    Raises:
        RemoteExecutionFailed: If the command exits non-zero
    """
    result = session.run(command, timeout=timeout)
    if not result.success:
        raise RemoteExecutionFailed(
            f"Command exited {result.exit_code}: {result.stderr.strip() or command}",
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            command=command,
        )
    return result


def ping(session: RemoteSession) -> bool:
    """Check that the host runs commands and echoes back."""
    result = session.run(PING_COMMAND)
    return result.success and result.stdout.strip() == PING_REPLY


def run_script(
    session: RemoteSession,
    script: str,
    timeout: Optional[float] = None,
    transferer: Optional[FileTransferer] = None,
) -> CommandResult:
    """Upload ``script``, run it with ``sh`` and remove it afterward.

    Raises:
        RemoteExecutionFailed: If the script exits non-zero
    """
    body = script.replace("\r", "").encode("utf-8")
    script_path = (transferer or FileTransferer()).stage(
        session, body, posixpath.join(REMOTE_SCRIPT_DIR, SCRIPT_NAME)
    )
    logger.debug("Script staged", host=session.host, path=script_path, bytes=len(body))
    try:
        run_argv(session, ["chmod", "700", script_path])
        return run_command(session, f"sh {shlex.quote(script_path)}", timeout=timeout)
    finally:
        discard_file(session, script_path)
