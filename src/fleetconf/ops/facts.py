"""Read-only system facts collected from a host."""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from fleetconf.errors import RemoteExecutionFailed
from fleetconf.telemetry.logger import get_logger
from fleetconf.transport.session import RemoteSession

logger = get_logger(__name__)

LOOPBACK_PREFIX = "127."


@dataclass
class NetworkInterface:
    name: str
    ip_address: str


@dataclass
class HostFacts:
    """System information for one host. Fields are None when unavailable."""

    hostname: str
    os: Optional[str] = None
    kernel: Optional[str] = None
    architecture: Optional[str] = None
    uptime: Optional[str] = None
    memory_total: Optional[str] = None
    memory_free: Optional[str] = None
    disk_usage: dict[str, str] = field(default_factory=dict)
    cpu_model: Optional[str] = None
    network_interfaces: list[NetworkInterface] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


class FactGatherer:
    """Runs the probe commands and parses their output."""

    def gather(self, session: RemoteSession) -> HostFacts:
        """Collect facts from the host behind ``session``.

        Only ``hostname`` is required; other probes that fail leave their
        field empty.

        Raises:
            RemoteExecutionFailed: If the hostname cannot be read
        """
        result = session.run("hostname")
        if not result.success:
            raise RemoteExecutionFailed(
                f"Cannot read hostname: {result.stderr.strip()}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                command=result.command,
            )

        facts = HostFacts(hostname=result.stdout.strip())
        facts.os = self._probe(session, "uname -s")
        facts.kernel = self._probe(session, "uname -r")
        facts.architecture = self._probe(session, "uname -m")
        facts.uptime = self._probe(session, "uptime")

        memory = self._probe(session, "free -h")
        if memory:
            facts.memory_total, facts.memory_free = parse_memory(memory)

        disks = self._probe(session, "df -h")
        if disks:
            facts.disk_usage = parse_disk_usage(disks)

        cpu = self._probe(session, "lscpu")
        if cpu:
            facts.cpu_model = parse_cpu_model(cpu)

        interfaces = self._probe(session, "ip addr show")
        if interfaces:
            facts.network_interfaces = parse_interfaces(interfaces)

        logger.debug("Facts gathered", host=session.host, hostname=facts.hostname)
        return facts

    @staticmethod
    def _probe(session: RemoteSession, command: str) -> Optional[str]:
        result = session.run(command)
        if not result.success:
            logger.debug("Fact probe failed", host=session.host, command=command, exit_code=result.exit_code)
            return None
        return result.stdout.strip()


def parse_memory(output: str) -> tuple[Optional[str], Optional[str]]:
    """Total and free memory from ``free -h`` output."""
    for line in output.splitlines():
        parts = line.split()
        if parts and parts[0] == "Mem:" and len(parts) >= 4:
            return parts[1], parts[3]
    return None, None


def parse_disk_usage(output: str) -> dict[str, str]:
    """Mount point to use percentage from ``df -h`` output."""
    usage: dict[str, str] = {}
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 6:
            usage[parts[5]] = parts[4]
    return usage


def parse_cpu_model(output: str) -> Optional[str]:
    for line in output.splitlines():
        key, _, value = line.partition(":")
        if key.strip() == "Model name":
            return " ".join(value.split())
    return None


def parse_interfaces(output: str) -> list[NetworkInterface]:
    """IPv4 addresses per interface from ``ip addr show``, loopback excluded."""
    interfaces: list[NetworkInterface] = []
    current = ""
    for line in output.splitlines():
        if line[:1].isdigit():
            parts = line.split(":")
            if len(parts) >= 2:
                current = parts[1].strip().split("@")[0]
        elif current and line.strip().startswith("inet "):
            address = line.split()[1].split("/")[0]
            if address and not address.startswith(LOOPBACK_PREFIX):
                interfaces.append(NetworkInterface(name=current, ip_address=address))
    return interfaces
