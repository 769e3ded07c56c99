"""Operations the engine can apply to a host.

Each operation is an immutable value with a ``kind`` tag and an ``execute``
method that runs it over one session and returns that host's
``ExecutionResult``. Failures are raised as ``FleetError`` and encoded by the
engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar, Optional

from fleetconf.config.defaults import DEFAULT_COMMAND_TIMEOUT
from fleetconf.engine.results import ExecutionResult
from fleetconf.errors import RemoteExecutionFailed
from fleetconf.ops.command import PING_COMMAND, ping, run_command, run_script
from fleetconf.ops.facts import FactGatherer
from fleetconf.ops.renderer import TemplateRenderer
from fleetconf.ops.template import TemplateDeployer, TemplateSpec
from fleetconf.ops.transfer import FileTransferer, TransferSpec
from fleetconf.ops.user import UserConverger, UserSpec
from fleetconf.transport.session import RemoteSession


@dataclass
class OperationContext:
    """Shared collaborators handed to every operation."""

    renderer: TemplateRenderer = field(default_factory=TemplateRenderer)
    transferer: FileTransferer = field(default_factory=FileTransferer)
    converger: UserConverger = field(default_factory=UserConverger)
    facts: FactGatherer = field(default_factory=FactGatherer)
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    deployer: Optional[TemplateDeployer] = None

    def __post_init__(self) -> None:
        if self.deployer is None:
            self.deployer = TemplateDeployer(self.renderer, self.transferer)


class Operation(ABC):
    """Base class for engine operations."""

    kind: ClassVar[str] = "operation"

    @abstractmethod
    def execute(self, session: RemoteSession, ctx: OperationContext) -> ExecutionResult:
        """Run the operation on one host and describe the outcome."""

    def describe(self) -> str:
        """Short human readable summary used in logs."""
        return self.kind


@dataclass(frozen=True)
class RunCommand(Operation):
    """Run a shell command. Makes no convergence claim, so never ``changed``."""

    kind: ClassVar[str] = "command"

    command: str
    timeout: Optional[float] = None

    def execute(self, session: RemoteSession, ctx: OperationContext) -> ExecutionResult:
        result = run_command(session, self.command, timeout=self.timeout or ctx.command_timeout)
        return ExecutionResult.ok(
            session.host,
            output=result.stdout.strip(),
            exit_code=result.exit_code,
            data={"stdout": result.stdout, "stderr": result.stderr},
        )

    def describe(self) -> str:
        return f"{self.kind}: {self.command[:60]}"


@dataclass(frozen=True)
class DeployTemplate(Operation):
    kind: ClassVar[str] = "template"

    spec: TemplateSpec

    def execute(self, session: RemoteSession, ctx: OperationContext) -> ExecutionResult:
        outcome = ctx.deployer.deploy(session, self.spec)
        return ExecutionResult.ok(
            session.host,
            changed=outcome.changed,
            output=outcome.diff,
            data=outcome.to_dict(),
        )

    def describe(self) -> str:
        return f"{self.kind}: {self.spec.src} -> {self.spec.dest}"


@dataclass(frozen=True)
class ManageUser(Operation):
    kind: ClassVar[str] = "user"

    spec: UserSpec

    def execute(self, session: RemoteSession, ctx: OperationContext) -> ExecutionResult:
        outcome = ctx.converger.converge(session, self.spec)
        return ExecutionResult.ok(
            session.host,
            changed=outcome.changed,
            output=", ".join(outcome.changes) if outcome.changes else "noop",
            data=outcome.to_dict(),
        )

    def describe(self) -> str:
        return f"{self.kind}: {self.spec.name} ({self.spec.state.value})"


@dataclass(frozen=True)
class TransferFile(Operation):
    kind: ClassVar[str] = "transfer"

    spec: TransferSpec

    def execute(self, session: RemoteSession, ctx: OperationContext) -> ExecutionResult:
        outcome = ctx.transferer.transfer(session, self.spec)
        data = outcome.to_dict()
        if outcome.content is not None:
            data["content"] = outcome.content
        return ExecutionResult.ok(
            session.host,
            changed=outcome.changed,
            output=f"{outcome.bytes_moved} bytes {outcome.direction.value}ed",
            data=data,
        )

    def describe(self) -> str:
        return f"{self.kind}: {self.spec.direction.value} {self.spec.remote_path}"


@dataclass(frozen=True)
class Ping(Operation):
    kind: ClassVar[str] = "ping"

    def execute(self, session: RemoteSession, ctx: OperationContext) -> ExecutionResult:
        if not ping(session):
            raise RemoteExecutionFailed(
                "Host did not answer ping",
                exit_code=-1,
                command=PING_COMMAND,
            )
        return ExecutionResult.ok(session.host, output="pong")


@dataclass(frozen=True)
class GatherFacts(Operation):
    kind: ClassVar[str] = "facts"

    def execute(self, session: RemoteSession, ctx: OperationContext) -> ExecutionResult:
        facts = ctx.facts.gather(session)
        return ExecutionResult.ok(session.host, output=facts.hostname, data=facts.to_dict())


@dataclass(frozen=True)
class RunScript(Operation):
    """Upload and run a shell script. Like ``RunCommand`` it is never ``changed``."""

    kind: ClassVar[str] = "script"

    script: str
    timeout: Optional[float] = None

    def execute(self, session: RemoteSession, ctx: OperationContext) -> ExecutionResult:
        result = run_script(
            session,
            self.script,
            timeout=self.timeout or ctx.command_timeout,
            transferer=ctx.transferer,
        )
        return ExecutionResult.ok(
            session.host,
            output=result.stdout,
            exit_code=result.exit_code,
            data={"stdout": result.stdout, "stderr": result.stderr},
        )
