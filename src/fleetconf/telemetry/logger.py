"""Structured logging for fleet runs.

Every event passes through ``redact_secrets`` before it is rendered, so
password hashes handed to account tools never reach a log sink. Per-host
units bind ``run_id``, ``host`` and ``operation`` with ``bound_context`` and
every event they emit carries those fields.
"""

import logging
import re
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, MutableMapping, Optional

import structlog
from structlog.typing import Processor

SECRET_MASK = "********"

# Event fields whose values are never logged.
SECRET_FIELDS = frozenset({"password", "passphrase", "key_passphrase"})

# Third-party loggers that are chatty below WARNING.
NOISY_LOGGERS = ("paramiko",)

_ACCOUNT_TOOL = re.compile(r"^\s*(?:sudo\s+)?(?:useradd|usermod)\s")
_PASSWORD_ARG = re.compile(r"(\s(?:-p|--password)(?:=|\s+))('[^']*'|\S+)")


def redact_command(command: str) -> str:
    """Mask the password hash in a ``useradd``/``usermod`` command line.

    Other commands are returned unchanged; ``-p`` means something else to
    ``mkdir`` and friends.

    Args:
        command: Shell command line as sent to the host

    Returns:
        The command with any ``-p``/``--password`` value replaced
    """
    if not _ACCOUNT_TOOL.match(command):
        return command
    return _PASSWORD_ARG.sub(lambda m: m.group(1) + SECRET_MASK, command)


def redact_secrets(
    logger: Any,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor that masks secret fields and command passwords."""
    for key in SECRET_FIELDS.intersection(event_dict):
        event_dict[key] = SECRET_MASK
    command = event_dict.get("command")
    if isinstance(command, str):
        event_dict["command"] = redact_command(command)
    return event_dict


def build_processors(json_format: bool = True) -> list[Processor]:
    """Processor chain shared by every fleetconf logger.

    Args:
        json_format: End with a JSON renderer (True) or the console renderer

    Returns:
        Processors in the order structlog should run them
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    return processors


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    json_format: bool = True,
) -> None:
    """Configure structured logging for fleet runs.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        json_format: Whether to use JSON format (True) or console format (False)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", level=log_level, stream=sys.stderr)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=build_processors(json_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(file_handler)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def bound_context(**kwargs: Any) -> Iterator[None]:
    """Bind context for the duration of a block.

    Values bound before the block are restored when it exits.

    Example:
        with bound_context(run_id=run_id, host="web1"):
            logger.info("Host started")
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield


def bind_context(**kwargs: Any) -> None:
    """Bind context variables to all future log messages."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
