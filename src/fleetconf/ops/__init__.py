"""Per-host operations: checksums, templates, users, transfers and facts."""

from fleetconf.ops.checksum import ChecksumVerifier
from fleetconf.ops.command import ping, run_command, run_script
from fleetconf.ops.facts import FactGatherer, HostFacts, NetworkInterface
from fleetconf.ops.renderer import TemplateRenderer
from fleetconf.ops.template import DeployOutcome, TemplateDeployer, TemplateSpec
from fleetconf.ops.transfer import (
    FileTransferer,
    TransferDirection,
    TransferOutcome,
    TransferSpec,
)
from fleetconf.ops.user import (
    ConvergeOutcome,
    UserAccount,
    UserConverger,
    UserDiff,
    UserSpec,
    UserState,
)

__all__ = [
    "ChecksumVerifier",
    "ConvergeOutcome",
    "DeployOutcome",
    "FactGatherer",
    "FileTransferer",
    "HostFacts",
    "NetworkInterface",
    "TemplateDeployer",
    "TemplateRenderer",
    "TemplateSpec",
    "TransferDirection",
    "TransferOutcome",
    "TransferSpec",
    "UserAccount",
    "UserConverger",
    "UserDiff",
    "UserSpec",
    "UserState",
    "ping",
    "run_command",
    "run_script",
]
