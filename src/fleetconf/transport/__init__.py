"""Transport layer: the remote session boundary and its SSH implementation."""

from fleetconf.transport.session import (
    CommandResult,
    ConnectionParams,
    RemoteSession,
    SessionFactory,
)
from fleetconf.transport.ssh import SSHSession

__all__ = [
    "CommandResult",
    "ConnectionParams",
    "RemoteSession",
    "SessionFactory",
    "SSHSession",
]
