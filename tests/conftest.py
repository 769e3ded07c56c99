"""Pytest configuration and fixtures.

Hosts are simulated by ``FakeHost``: an in-memory filesystem and account
database. ``FakeSession`` implements ``RemoteSession`` by interpreting the
shell commands fleetconf issues against that state.
"""

import hashlib
import shlex
import threading
import time
from datetime import date
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from fleetconf.config.schemas import EngineConfig
from fleetconf.engine import ExecutionEngine
from fleetconf.errors import AuthenticationFailed, ConnectionFailed, RemoteIOError
from fleetconf.ops.renderer import TemplateRenderer
from fleetconf.transport.session import CommandResult, ConnectionParams, RemoteSession

WRITE_PROGRAMS = {
    "rm", "mv", "cp", "mkdir", "chmod", "chown", "chgrp",
    "useradd", "usermod", "userdel", "gpasswd",
}

DEFAULT_OUTPUTS = {
    "hostname": "fake-host\n",
    "uname -s": "Linux\n",
    "uname -r": "6.1.0-18-amd64\n",
    "uname -m": "x86_64\n",
    "uptime": " 10:00:00 up 3 days,  2:01,  1 user,  load average: 0.00, 0.01, 0.05\n",
    "free -h": (
        "               total        used        free      shared  buff/cache   available\n"
        "Mem:           7.7Gi       1.2Gi       5.1Gi        12Mi       1.4Gi       6.2Gi\n"
        "Swap:          2.0Gi          0B       2.0Gi\n"
    ),
    "df -h": (
        "Filesystem      Size  Used Avail Use% Mounted on\n"
        "/dev/sda1        50G   20G   28G  42% /\n"
        "/dev/sdb1       100G   10G   90G  10% /data\n"
    ),
    "lscpu": "Architecture:        x86_64\nModel name:          Intel(R) Xeon(R) CPU   E5-2680\n",
    "ip addr show": (
        "1: lo: <LOOPBACK,UP> mtu 65536\n"
        "    inet 127.0.0.1/8 scope host lo\n"
        "2: eth0: <BROADCAST,MULTICAST,UP> mtu 1500\n"
        "    inet 10.0.0.5/24 brd 10.0.0.255 scope global eth0\n"
    ),
}


class ConcurrencyTracker:
    """Records how many units were in flight at once."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0

    def __enter__(self) -> "ConcurrencyTracker":
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        with self._lock:
            self.current -= 1


class FakeHost:
    """In-memory state of one simulated host."""

    def __init__(self, name: str = "fake-host") -> None:
        self.name = name
        self.files: dict[str, bytes] = {}
        self.attrs: dict[str, list[str]] = {}
        self.dirs: set[str] = {"/", "/etc", "/tmp", "/home", "/opt"}
        self.users: dict[str, dict[str, Any]] = {}
        self.groups: dict[str, int] = {"root": 0, "wheel": 10, "users": 100}
        self.commands: list[str] = []
        self.uploads: list[str] = []
        self.outputs = dict(DEFAULT_OUTPUTS, hostname=f"{name}\n")
        self.handlers: dict[str, Callable[[list[str]], tuple[int, str, str]]] = {}
        self.privileged = True
        self.shadow_readable = True
        self.corrupt_uploads = 0
        self.corrupt_downloads = 0
        self.run_delay = 0.0
        self.on_run: Optional[Callable[[str], None]] = None
        self.tracker: Optional[ConcurrencyTracker] = None
        self.connect_delay = 0.0
        self.connect_failures = 0
        self.auth_fails = False
        self.connects = 0
        self._next_uid = 1000
        self._lock = threading.Lock()

    # State helpers

    def put(self, path: str, data: bytes, mode: str = "644", owner: str = "root", group: str = "root") -> None:
        self.files[path] = data
        self.attrs[path] = [mode, owner, group]

    def add_user(
        self,
        name: str,
        uid: Optional[int] = None,
        primary: Optional[str] = None,
        groups: Optional[set[str]] = None,
        shell: str = "/bin/bash",
        home: Optional[str] = None,
        comment: str = "",
        password: str = "!",
        expiry_days: Optional[int] = None,
    ) -> None:
        primary = primary or name
        self.groups.setdefault(primary, 1000 + len(self.groups))
        for group in groups or ():
            self.groups.setdefault(group, 1000 + len(self.groups))
        self.users[name] = {
            "uid": uid if uid is not None else self._allocate_uid(),
            "primary": primary,
            "groups": set(groups or ()),
            "shell": shell,
            "home": home or f"/home/{name}",
            "comment": comment,
            "password": password,
            "expiry_days": expiry_days,
        }

    @property
    def writes(self) -> list[str]:
        """Mutating commands and uploads seen so far."""
        mutating = [
            command for command in self.commands
            if command.split(" ", 1)[0] in WRITE_PROGRAMS
        ]
        return mutating + [f"upload {path}" for path in self.uploads]

    def reset_log(self) -> None:
        self.commands.clear()
        self.uploads.clear()

    def _allocate_uid(self) -> int:
        self._next_uid += 1
        return self._next_uid

    # Command interpreter

    def execute(self, command: str) -> tuple[int, str, str]:
        with self._lock:
            self.commands.append(command)

        if command in self.handlers:
            return self.handlers[command](shlex.split(command))
        if command in self.outputs:
            return 0, self.outputs[command], ""
        if command.startswith("sha256sum "):
            return self._sha256sum(shlex.split(command.split(" || ")[0])[1])

        argv = shlex.split(command)
        if argv[0] in self.handlers:
            return self.handlers[argv[0]](argv)
        method = getattr(self, f"_cmd_{argv[0]}", None)
        if method is None:
            return 127, "", f"sh: {argv[0]}: command not found\n"
        return method(argv[1:])

    def _sha256sum(self, path: str) -> tuple[int, str, str]:
        if path not in self.files:
            return 1, "", f"sha256sum: {path}: No such file or directory\n"
        return 0, f"{hashlib.sha256(self.files[path]).hexdigest()}  {path}\n", ""

    def _missing(self, program: str, path: str) -> tuple[int, str, str]:
        return 1, "", f"{program}: cannot access '{path}': No such file or directory\n"

    def _cmd_echo(self, args: list[str]) -> tuple[int, str, str]:
        return 0, " ".join(args) + "\n", ""

    def _cmd_test(self, args: list[str]) -> tuple[int, str, str]:
        return (0 if args[1] in self.files else 1), "", ""

    def _cmd_rm(self, args: list[str]) -> tuple[int, str, str]:
        self.files.pop(args[-1], None)
        self.attrs.pop(args[-1], None)
        return 0, "", ""

    def _cmd_mv(self, args: list[str]) -> tuple[int, str, str]:
        src, dest = args[-2], args[-1]
        if src not in self.files:
            return self._missing("mv", src)
        self.files[dest] = self.files.pop(src)
        self.attrs[dest] = self.attrs.pop(src)
        return 0, "", ""

    def _cmd_cp(self, args: list[str]) -> tuple[int, str, str]:
        src, dest = args[-2], args[-1]
        if src not in self.files:
            return self._missing("cp", src)
        self.files[dest] = self.files[src]
        self.attrs[dest] = list(self.attrs[src])
        return 0, "", ""

    def _cmd_mkdir(self, args: list[str]) -> tuple[int, str, str]:
        self.dirs.add(args[-1])
        return 0, "", ""

    def _cmd_stat(self, args: list[str]) -> tuple[int, str, str]:
        path = args[-1]
        if path not in self.files:
            return self._missing("stat", path)
        mode, owner, group = self.attrs[path]
        return 0, f"{mode} {owner} {group} {self._uid_of(owner)} {self.groups.get(group, 65534)}\n", ""

    def _cmd_chmod(self, args: list[str]) -> tuple[int, str, str]:
        mode, path = args
        if path not in self.files:
            return self._missing("chmod", path)
        self.attrs[path][0] = format(int(mode, 8), "o")
        return 0, "", ""

    def _cmd_chown(self, args: list[str]) -> tuple[int, str, str]:
        spec, path = args
        if path not in self.files:
            return self._missing("chown", path)
        owner, _, group = spec.partition(":")
        self.attrs[path][1] = self._user_name(owner)
        if group:
            self.attrs[path][2] = self._group_name(group)
        return 0, "", ""

    def _cmd_chgrp(self, args: list[str]) -> tuple[int, str, str]:
        group, path = args
        if path not in self.files:
            return self._missing("chgrp", path)
        self.attrs[path][2] = self._group_name(group)
        return 0, "", ""

    def _cmd_sh(self, args: list[str]) -> tuple[int, str, str]:
        path = args[0]
        if path not in self.files:
            return 127, "", f"sh: {path}: not found\n"
        script = self.files[path].decode()
        if "exit 3" in script:
            return 3, "", "script failed\n"
        return 0, f"ran {len(script.splitlines())} lines\n", ""

    def _cmd_getent(self, args: list[str]) -> tuple[int, str, str]:
        database, key = args
        if database == "group":
            if key not in self.groups:
                return 2, "", ""
            return 0, f"{key}:x:{self.groups[key]}:\n", ""
        user = self.users.get(key)
        if user is None:
            return 2, "", ""
        if database == "passwd":
            gid = self.groups[user["primary"]]
            line = f"{key}:x:{user['uid']}:{gid}:{user['comment']}:{user['home']}:{user['shell']}"
            return 0, line + "\n", ""
        if database == "shadow":
            if not self.shadow_readable:
                return 2, "", ""
            expiry = "" if user["expiry_days"] is None else str(user["expiry_days"])
            return 0, f"{key}:{user['password']}:19000:0:99999:7::{expiry}:\n", ""
        return 1, "", "Unknown database\n"

    def _cmd_id(self, args: list[str]) -> tuple[int, str, str]:
        flag, name = args
        user = self.users.get(name)
        if user is None:
            return 1, "", f"id: '{name}': no such user\n"
        if flag == "-gn":
            return 0, user["primary"] + "\n", ""
        return 0, " ".join([user["primary"], *sorted(user["groups"])]) + "\n", ""

    def _account_flags(self, args: list[str]) -> tuple[dict[str, str], set[str], str]:
        values: dict[str, str] = {}
        switches: set[str] = set()
        i = 0
        while i < len(args) - 1:
            flag = args[i]
            if flag in ("-m", "-M", "-r", "-a"):
                switches.add(flag)
                i += 1
            else:
                values[flag] = args[i + 1]
                i += 2
        return values, switches, args[-1]

    def _uid_of(self, name: str) -> int:
        if name == "root":
            return 0
        user = self.users.get(name)
        return user["uid"] if user else 65534

    def _user_name(self, value: str) -> str:
        if value.isdigit():
            if int(value) == 0:
                return "root"
            for name, user in self.users.items():
                if user["uid"] == int(value):
                    return name
        return value

    def _group_name(self, value: str) -> str:
        if value.isdigit():
            for name, gid in self.groups.items():
                if gid == int(value):
                    return name
        return value

    def _denied(self, program: str) -> tuple[int, str, str]:
        return 1, "", f"{program}: Permission denied.\n{program}: cannot lock /etc/passwd; try again later.\n"

    def _cmd_useradd(self, args: list[str]) -> tuple[int, str, str]:
        if not self.privileged:
            return self._denied("useradd")
        values, switches, name = self._account_flags(args)
        if name in self.users:
            return 9, "", f"useradd: user '{name}' already exists\n"
        self.add_user(
            name,
            uid=int(values["-u"]) if "-u" in values else None,
            primary=self._group_name(values["-g"]) if "-g" in values else None,
            groups=set(values["-G"].split(",")) if "-G" in values else set(),
            shell=values.get("-s", "/bin/sh"),
            home=values.get("-d"),
            comment=values.get("-c", ""),
            password=values.get("-p", "!"),
        )
        if "-e" in values:
            self.users[name]["expiry_days"] = _days(values["-e"])
        if "-m" in switches:
            self.dirs.add(self.users[name]["home"])
        self.users[name]["system"] = "-r" in switches
        return 0, "", ""

    def _cmd_usermod(self, args: list[str]) -> tuple[int, str, str]:
        if not self.privileged:
            return self._denied("usermod")
        values, switches, name = self._account_flags(args)
        user = self.users.get(name)
        if user is None:
            return 6, "", f"usermod: user '{name}' does not exist\n"
        if "-u" in values:
            user["uid"] = int(values["-u"])
        if "-g" in values:
            user["primary"] = self._group_name(values["-g"])
        if "-s" in values:
            user["shell"] = values["-s"]
        if "-d" in values:
            user["home"] = values["-d"]
        if "-c" in values:
            user["comment"] = values["-c"]
        if "-p" in values:
            user["password"] = values["-p"]
        if "-e" in values:
            user["expiry_days"] = _days(values["-e"])
        if "-G" in values:
            groups = set(values["-G"].split(","))
            user["groups"] = user["groups"] | groups if "-a" in switches else groups
        return 0, "", ""

    def _cmd_userdel(self, args: list[str]) -> tuple[int, str, str]:
        if not self.privileged:
            return self._denied("userdel")
        name = args[-1]
        user = self.users.pop(name, None)
        if user is None:
            return 6, "", f"userdel: user '{name}' does not exist\n"
        if "-r" in args:
            self.dirs.discard(user["home"])
        return 0, "", ""

    def _cmd_gpasswd(self, args: list[str]) -> tuple[int, str, str]:
        if not self.privileged:
            return self._denied("gpasswd")
        _, name, group = args
        self.users[name]["groups"].discard(group)
        return 0, "", ""


def _days(value: str) -> int:
    year, month, day = (int(part) for part in value.split("-"))
    return (date(year, month, day) - date(1970, 1, 1)).days


class FakeSession(RemoteSession):
    """``RemoteSession`` backed by a ``FakeHost``."""

    def __init__(self, host: str, fake: FakeHost) -> None:
        super().__init__(host)
        self.fake = fake
        self.closed = False
        self.aborted = False

    @property
    def is_active(self) -> bool:
        return not self.closed

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        if self.closed:
            raise ConnectionFailed("Session is closed")
        if self.fake.on_run is not None:
            self.fake.on_run(command)
        if self.fake.tracker is not None:
            with self.fake.tracker:
                self._wait()
        else:
            self._wait()
        exit_code, stdout, stderr = self.fake.execute(command)
        return CommandResult(
            host=self.host,
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )

    def upload(self, data: bytes, remote_path: str) -> None:
        if self.closed:
            raise RemoteIOError("Session is closed", path=remote_path)
        with self.fake._lock:
            self.fake.uploads.append(remote_path)
            if self.fake.corrupt_uploads:
                self.fake.corrupt_uploads -= 1
                data = data + b"\x00corrupt"
        self.fake.put(remote_path, data)

    def download(self, remote_path: str) -> bytes:
        if remote_path not in self.fake.files:
            raise RemoteIOError(f"Failed to read {remote_path}: No such file", path=remote_path)
        data = self.fake.files[remote_path]
        if self.fake.corrupt_downloads:
            self.fake.corrupt_downloads -= 1
            return data[:-1] + b"?"
        return data

    def close(self) -> None:
        self.closed = True

    def abort(self) -> None:
        self.aborted = True
        self.close()

    def _wait(self) -> None:
        deadline = time.monotonic() + self.fake.run_delay
        while time.monotonic() < deadline:
            if self.aborted:
                raise ConnectionFailed("Session aborted")
            time.sleep(0.005)


class FakeFleet:
    """A set of fake hosts plus the session factory the engine uses."""

    def __init__(self) -> None:
        self.hosts: dict[str, FakeHost] = {}
        self.sessions: list[FakeSession] = []

    def add(self, name: str) -> FakeHost:
        self.hosts[name] = FakeHost(name)
        return self.hosts[name]

    def __getitem__(self, name: str) -> FakeHost:
        return self.hosts[name]

    def connect(self, name: str, params: ConnectionParams) -> FakeSession:
        fake = self.hosts[name]
        fake.connects += 1
        if fake.connect_delay:
            time.sleep(fake.connect_delay)
        if fake.auth_fails:
            raise AuthenticationFailed(f"Authentication failed for {params.username}@{params.address}")
        if fake.connect_failures:
            fake.connect_failures -= 1
            raise ConnectionFailed(f"Failed to connect to {params.address}:{params.port}")
        session = FakeSession(name, fake)
        self.sessions.append(session)
        return session


@pytest.fixture
def fake_host() -> FakeHost:
    """A single simulated host."""
    return FakeHost("web1")


@pytest.fixture
def session(fake_host: FakeHost) -> FakeSession:
    """A session to ``fake_host``."""
    return FakeSession("web1", fake_host)


@pytest.fixture
def templates() -> dict[str, str]:
    """In-memory templates available to the renderer."""
    return {
        "motd.j2": "Welcome to {{ hostname }}\nManaged by {{ team }}\n",
        "app.conf.j2": "port={{ port }}\nworkers={{ workers | default(4) }}\n",
        "broken.j2": "line one\n{% if x %}\nno endif\n",
        "strict.j2": "value={{ missing }}\n",
    }


@pytest.fixture
def renderer(templates: dict[str, str]) -> TemplateRenderer:
    return TemplateRenderer(templates=templates)


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet()


@pytest.fixture
def tracker() -> ConcurrencyTracker:
    return ConcurrencyTracker()


@pytest.fixture
def make_engine(fleet: FakeFleet, renderer: TemplateRenderer):
    """Build an engine over fake hosts.

    Usage: ``engine = make_engine(["a", "b"], max_concurrency=2)``
    """
    engines: list[ExecutionEngine] = []

    def _make(names: list[str], **config: Any) -> ExecutionEngine:
        config.setdefault("retry_delay", 0)
        engine = ExecutionEngine(
            config=EngineConfig(**config),
            session_factory=fleet.connect,
            renderer=renderer,
        )
        for index, name in enumerate(names, start=1):
            fleet.add(name)
            engine.register_host(name, ConnectionParams(address=f"10.0.0.{index}"))
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        engine.close()


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Create a temporary config file."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
engine:
  max_concurrency: 4
  host_timeout: 30
  connect_retries: 2

templates:
  search_paths:
    - /srv/templates

log_level: DEBUG
""")
    return config_file
