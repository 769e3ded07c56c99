"""Structured logging for fleetconf."""

from fleetconf.telemetry.logger import (
    bind_context,
    bound_context,
    clear_context,
    get_logger,
    redact_command,
    setup_logging,
    unbind_context,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "bind_context",
    "bound_context",
    "unbind_context",
    "clear_context",
    "redact_command",
]
