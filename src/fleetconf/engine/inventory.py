"""Host registry and YAML inventory persistence.

Inventory file layout::

    hosts:
      - name: web1
        address: 10.0.0.5
        username: deploy
        private_key_path: ~/.ssh/id_ed25519
        groups: [web]
        labels: {env: prod}
    groups:
      db: [db1, db2]

Group membership is the union of each host's ``groups`` list and the
top-level ``groups`` mapping.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional

import yaml

from fleetconf.errors import RegistryBusyError
from fleetconf.telemetry.logger import get_logger
from fleetconf.transport.session import ConnectionParams

logger = get_logger(__name__)


@dataclass(frozen=True)
class Host:
    """A registered host.

    Attributes:
        name: Unique name used to target the host
        params: How to connect to it
        groups: Inventory groups the host belongs to
        labels: Free-form key/value labels for filtering
    """

    name: str
    params: ConnectionParams
    groups: frozenset[str] = frozenset()
    labels: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Host name is required")
        if not isinstance(self.groups, frozenset):
            object.__setattr__(self, "groups", frozenset(self.groups))

    def matches_labels(self, labels: Mapping[str, str]) -> bool:
        """Check that every given label is present with the same value."""
        return all(self.labels.get(key) == value for key, value in labels.items())

    def to_dict(self, include_secrets: bool = False) -> dict[str, Any]:
        """Convert host to dictionary for serialization."""
        data: dict[str, Any] = {"name": self.name}
        data.update({k: v for k, v in self.params.to_dict().items() if v is not None})
        if include_secrets:
            if self.params.password:
                data["password"] = self.params.password
            if self.params.passphrase:
                data["passphrase"] = self.params.passphrase
        if self.groups:
            data["groups"] = sorted(self.groups)
        if self.labels:
            data["labels"] = dict(self.labels)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Host":
        """Create host from dictionary."""
        return cls(
            name=data["name"],
            params=ConnectionParams.from_dict({"address": data["name"], **data}),
            groups=frozenset(data.get("groups") or ()),
            labels={str(k): str(v) for k, v in (data.get("labels") or {}).items()},
        )


class HostRegistry:
    """Thread-safe collection of hosts, optionally backed by a YAML file.

    The registry is frozen while a dispatch is in flight: ``add`` and
    ``remove`` raise ``RegistryBusyError`` until every dispatch has finished.

    Example:
        registry = HostRegistry()
        registry.load(Path("inventory.yaml"))
        registry.add(Host("web-1", ConnectionParams(address="10.0.0.5")))
        web = registry.hosts_in_group("web")
        registry.save()
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        """Initialize the registry.

        Args:
            path: Optional inventory file, loaded if it exists
        """
        self._hosts: dict[str, Host] = {}
        self._path: Optional[Path] = path
        self._lock = threading.RLock()
        self._dispatches = 0

        if path and path.exists():
            self.load(path)

        logger.debug("HostRegistry initialized", host_count=len(self._hosts))

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def busy(self) -> bool:
        """Whether a dispatch currently holds the registry read-only."""
        with self._lock:
            return self._dispatches > 0

    @contextmanager
    def dispatch(self) -> Iterator["HostRegistry"]:
        """Hold the registry read-only for the duration of a dispatch."""
        with self._lock:
            self._dispatches += 1
        try:
            yield self
        finally:
            with self._lock:
                self._dispatches -= 1

    def load(self, path: Path) -> None:
        """Load hosts and groups from a YAML inventory file.

        Args:
            path: Path to inventory file

        Raises:
            ValueError: If an entry is malformed or a host name repeats
        """
        self._path = path

        if not path.exists():
            logger.warning("Inventory file not found", path=str(path))
            return

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        hosts: dict[str, Host] = {}
        for entry in data.get("hosts") or []:
            try:
                host = Host.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(f"Invalid host entry in {path}: {entry!r}: {e}") from e
            if host.name in hosts:
                raise ValueError(f"Duplicate host '{host.name}' in {path}")
            hosts[host.name] = host

        for group, members in (data.get("groups") or {}).items():
            for name in members or []:
                if name not in hosts:
                    raise ValueError(f"Group '{group}' references unknown host '{name}'")
                host = hosts[name]
                hosts[name] = replace(host, groups=host.groups | {group})

        with self._lock:
            self._check_idle()
            self._hosts = hosts

        logger.info("Inventory loaded", path=str(path), host_count=len(hosts))

    def save(self, path: Optional[Path] = None) -> None:
        """Save the registry to a YAML inventory file.

        Args:
            path: Optional path (uses the loaded path if not specified)
        """
        save_path = path or self._path
        if not save_path:
            raise ValueError("No path specified for saving inventory")

        save_path.parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            data = {
                "version": "1.0",
                "updated_at": datetime.now().isoformat(),
                "hosts": [host.to_dict(include_secrets=True) for host in self._hosts.values()],
            }

        with open(save_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

        logger.info("Inventory saved", path=str(save_path), host_count=len(data["hosts"]))

    def get(self, name: str) -> Optional[Host]:
        with self._lock:
            return self._hosts.get(name)

    def list(self) -> List[Host]:
        with self._lock:
            return list(self._hosts.values())

    def names(self) -> List[str]:
        with self._lock:
            return list(self._hosts)

    def snapshot(self, names: List[str]) -> dict[str, Optional[Host]]:
        """Resolve names to hosts in one consistent read."""
        with self._lock:
            return {name: self._hosts.get(name) for name in names}

    def add(self, host: Host) -> None:
        """Add a host.

        Raises:
            ValueError: If the name is already registered
            RegistryBusyError: If a dispatch is in flight
        """
        with self._lock:
            self._check_idle()
            if host.name in self._hosts:
                raise ValueError(f"Host '{host.name}' already exists")
            self._hosts[host.name] = host
        logger.info("Host added", host=host.name, address=host.params.address)

    def remove(self, name: str) -> bool:
        """Remove a host.

        Returns:
            True if the host was removed, False if it was not registered

        Raises:
            RegistryBusyError: If a dispatch is in flight
        """
        with self._lock:
            self._check_idle()
            if name not in self._hosts:
                return False
            del self._hosts[name]
        logger.info("Host removed", host=name)
        return True

    def groups(self) -> dict[str, List[str]]:
        """Map every group to its sorted member names."""
        groups: dict[str, List[str]] = {}
        with self._lock:
            for host in self._hosts.values():
                for group in host.groups:
                    groups.setdefault(group, []).append(host.name)
        return {group: sorted(members) for group, members in sorted(groups.items())}

    def hosts_in_group(self, group: str) -> List[str]:
        """Names of the hosts in ``group``.

        Raises:
            KeyError: If no host belongs to ``group``
        """
        members = self.groups().get(group)
        if members is None:
            raise KeyError(f"Unknown group: {group}")
        return members

    def filter(self, labels: Optional[Mapping[str, str]] = None) -> List[Host]:
        """Hosts carrying all of the given labels."""
        with self._lock:
            return [host for host in self._hosts.values() if host.matches_labels(labels or {})]

    def count(self) -> int:
        with self._lock:
            return len(self._hosts)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._hosts

    def _check_idle(self) -> None:
        if self._dispatches:
            raise RegistryBusyError("Host registry cannot change while operations are running")
