"""Multi-host execution engine, host registry and operations."""

from fleetconf.engine.engine import ExecutionEngine
from fleetconf.engine.inventory import Host, HostRegistry
from fleetconf.engine.operations import (
    DeployTemplate,
    GatherFacts,
    ManageUser,
    Operation,
    OperationContext,
    Ping,
    RunCommand,
    RunScript,
    TransferFile,
)
from fleetconf.engine.results import ExecutionReport, ExecutionResult, ReportStatus
from fleetconf.engine.sessions import SessionPool

__all__ = [
    "DeployTemplate",
    "ExecutionEngine",
    "ExecutionReport",
    "ExecutionResult",
    "GatherFacts",
    "Host",
    "HostRegistry",
    "ManageUser",
    "Operation",
    "OperationContext",
    "Ping",
    "ReportStatus",
    "RunCommand",
    "RunScript",
    "SessionPool",
    "TransferFile",
]
