"""
fleetconf - configuration management for fleets of SSH hosts.

fleetconf applies idempotent operations to many hosts at once:
- Run commands and scripts
- Render and install configuration files from Jinja2 templates
- Converge user accounts to a declared state
- Transfer files with SHA-256 verification
"""

__version__ = "0.1.0"

from fleetconf.config.schemas import FleetConfig
from fleetconf.engine import (
    DeployTemplate,
    ExecutionEngine,
    ExecutionReport,
    ExecutionResult,
    GatherFacts,
    ManageUser,
    Ping,
    ReportStatus,
    RunCommand,
    RunScript,
    TransferFile,
)
from fleetconf.errors import ErrorKind, FleetError
from fleetconf.ops import TemplateSpec, TransferDirection, TransferSpec, UserSpec, UserState
from fleetconf.transport import ConnectionParams, RemoteSession

__all__ = [
    "__version__",
    "ConnectionParams",
    "DeployTemplate",
    "ErrorKind",
    "ExecutionEngine",
    "ExecutionReport",
    "ExecutionResult",
    "FleetConfig",
    "FleetError",
    "GatherFacts",
    "ManageUser",
    "Ping",
    "RemoteSession",
    "ReportStatus",
    "RunCommand",
    "RunScript",
    "TemplateSpec",
    "TransferDirection",
    "TransferFile",
    "TransferSpec",
    "UserSpec",
    "UserState",
]
