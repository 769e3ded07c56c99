"""Declarative user-account convergence.

The converger inspects the account on the host, computes a ``UserDiff``
against the desired ``UserSpec`` and issues only the commands needed to close
it. A second converge with the same UserSpec issues no writes.
"""

import re
import shlex
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Optional

from fleetconf.errors import RemoteExecutionFailed, UserError
from fleetconf.telemetry.logger import get_logger, redact_command
from fleetconf.transport.remote import run_argv
from fleetconf.transport.session import CommandResult, RemoteSession

logger = get_logger(__name__)

NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_.-]*\$?$", re.IGNORECASE)
EXPIRY_FORMAT = "%Y-%m-%d"
EPOCH = date(1970, 1, 1)

# getent exit status for "key not found"
GETENT_NOT_FOUND = 2
# useradd/usermod/userdel exit status for "can't update password file"
TOOL_PERMISSION_EXIT = 1


class UserState(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"


@dataclass(frozen=True)
class UserSpec:
    """Desired state of a user account.

    Attributes:
        name: Login name
        state: Whether the account should exist
        password: Pre-hashed crypt(3) string
        shell: Login shell
        home: Home directory
        create_home: Create the home directory when adding the account
        groups: Supplementary groups; None leaves membership unmanaged
        group: Primary group name
        system: Create a system account
        uid: Numeric user id
        gid: Numeric primary group id, used when ``group`` is unset
        comment: GECOS field
        expires: Expiry date as YYYY-MM-DD
        remove_home: Delete the home directory when removing the account
    """

    name: str
    state: UserState = UserState.PRESENT
    password: Optional[str] = field(default=None, repr=False)
    shell: Optional[str] = None
    home: Optional[str] = None
    create_home: bool = True
    groups: Optional[frozenset[str]] = None
    group: Optional[str] = None
    system: bool = False
    uid: Optional[int] = None
    gid: Optional[int] = None
    comment: Optional[str] = None
    expires: Optional[str] = None
    remove_home: bool = False

    def __post_init__(self) -> None:
        if not self.name or not NAME_PATTERN.match(self.name):
            raise ValueError(f"Invalid user name: {self.name!r}")
        if not isinstance(self.state, UserState):
            object.__setattr__(self, "state", UserState(self.state))
        if self.groups is not None and not isinstance(self.groups, frozenset):
            object.__setattr__(self, "groups", frozenset(self.groups))
        for label, value in (("uid", self.uid), ("gid", self.gid)):
            if value is not None and value < 0:
                raise ValueError(f"{label} must be non-negative")
        if self.expires is not None:
            datetime.strptime(self.expires, EXPIRY_FORMAT)
        if self.comment is not None and ":" in self.comment:
            raise ValueError("comment must not contain ':'")

    @property
    def referenced_groups(self) -> list[str]:
        """Every group name the UserSpec mentions, primary first."""
        names = [self.group] if self.group else []
        names.extend(sorted(self.groups or ()))
        return list(dict.fromkeys(names))

    @property
    def expiry_days(self) -> Optional[int]:
        """Expiry as days since the epoch, the shadow file representation."""
        if self.expires is None:
            return None
        return (datetime.strptime(self.expires, EXPIRY_FORMAT).date() - EPOCH).days


@dataclass
class UserAccount:
    """An account as observed on the host."""

    name: str
    uid: int
    gid: int
    comment: str
    home: str
    shell: str
    primary_group: str = ""
    groups: frozenset[str] = frozenset()
    password: Optional[str] = field(default=None, repr=False)
    expiry_days: Optional[int] = None

    @classmethod
    def from_passwd(cls, line: str) -> "UserAccount":
        """Parse a ``getent passwd`` line.

        Raises:
            ValueError: If the line does not have seven fields
        """
        fields = line.strip().split(":")
        if len(fields) != 7:
            raise ValueError(f"Malformed passwd entry: {line!r}")
        return cls(
            name=fields[0],
            uid=int(fields[2]),
            gid=int(fields[3]),
            comment=fields[4],
            home=fields[5],
            shell=fields[6],
        )


@dataclass
class UserDiff:
    """Fields that differ between an account and its spec. None means equal."""

    uid: Optional[int] = None
    primary_group: Optional[str] = None
    shell: Optional[str] = None
    home: Optional[str] = None
    comment: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    expires: Optional[str] = None
    add_groups: frozenset[str] = frozenset()
    remove_groups: frozenset[str] = frozenset()

    @property
    def scalar_args(self) -> list[str]:
        """usermod flags for the scalar fields."""
        args: list[str] = []
        if self.uid is not None:
            args += ["-u", str(self.uid)]
        if self.primary_group is not None:
            args += ["-g", self.primary_group]
        if self.shell is not None:
            args += ["-s", self.shell]
        if self.home is not None:
            args += ["-d", self.home]
        if self.comment is not None:
            args += ["-c", self.comment]
        if self.password is not None:
            args += ["-p", self.password]
        if self.expires is not None:
            args += ["-e", self.expires]
        return args

    @property
    def changed_fields(self) -> list[str]:
        names = [
            name
            for name in ("uid", "primary_group", "shell", "home", "comment", "password", "expires")
            if getattr(self, name) is not None
        ]
        names += [f"+{g}" for g in sorted(self.add_groups)]
        names += [f"-{g}" for g in sorted(self.remove_groups)]
        return names

    @property
    def is_empty(self) -> bool:
        return not self.changed_fields

    @classmethod
    def compute(cls, account: UserAccount, spec: UserSpec) -> "UserDiff":
        """Compare an observed account with the desired spec."""
        diff = cls()
        if spec.uid is not None and account.uid != spec.uid:
            diff.uid = spec.uid
        if spec.group is not None:
            if account.primary_group != spec.group:
                diff.primary_group = spec.group
        elif spec.gid is not None and account.gid != spec.gid:
            diff.primary_group = str(spec.gid)
        if spec.shell is not None and account.shell != spec.shell:
            diff.shell = spec.shell
        if spec.home is not None and account.home != spec.home:
            diff.home = spec.home
        if spec.comment is not None and account.comment != spec.comment:
            diff.comment = spec.comment
        if spec.password is not None and account.password != spec.password:
            diff.password = spec.password
        if spec.expires is not None and account.expiry_days != spec.expiry_days:
            diff.expires = spec.expires

        if spec.groups is not None:
            primary = spec.group or account.primary_group
            current = account.groups - {account.primary_group, primary}
            desired = spec.groups - {primary}
            diff.add_groups = frozenset(desired - current)
            diff.remove_groups = frozenset(current - desired)
        return diff


@dataclass
class ConvergeOutcome:
    """What a converge did to one account."""

    name: str
    changed: bool
    action: str
    changes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "changed": self.changed,
            "action": self.action,
            "changes": self.changes,
        }


class UserConverger:
    """Reconciles accounts on a host with a ``UserSpec``."""

    def converge(self, session: RemoteSession, spec: UserSpec) -> ConvergeOutcome:
        """Bring the account named by ``spec`` to the desired state.

        Args:
            session: Session to the host
            spec: Desired account state

        Returns:
            ConvergeOutcome listing the fields that were changed

        Raises:
            UserError: If a referenced group is missing or privileges are
                insufficient
            RemoteExecutionFailed: If an account tool fails for another reason
        """
        account = self.inspect(session, spec)

        if spec.state == UserState.ABSENT:
            if account is None:
                return ConvergeOutcome(name=spec.name, changed=False, action="none")
            argv = ["userdel"]
            if spec.remove_home:
                argv.append("-r")
            argv.append(spec.name)
            self._run_tool(session, argv, "remove")
            logger.info("User removed", host=session.host, user=spec.name, remove_home=spec.remove_home)
            return ConvergeOutcome(name=spec.name, changed=True, action="removed", changes=["removed"])

        self._check_groups(session, spec)

        if account is None:
            self._run_tool(session, self._useradd_argv(spec), "create")
            logger.info("User created", host=session.host, user=spec.name)
            return ConvergeOutcome(name=spec.name, changed=True, action="created", changes=["created"])

        diff = UserDiff.compute(account, spec)
        if diff.is_empty:
            return ConvergeOutcome(name=spec.name, changed=False, action="none")

        if diff.scalar_args:
            self._run_tool(session, ["usermod", *diff.scalar_args, spec.name], "modify")
        if diff.add_groups:
            self._run_tool(
                session,
                ["usermod", "-a", "-G", ",".join(sorted(diff.add_groups)), spec.name],
                "add groups to",
            )
        for group in sorted(diff.remove_groups):
            self._run_tool(session, ["gpasswd", "-d", spec.name, group], f"remove group {group} from")

        logger.info("User modified", host=session.host, user=spec.name, changes=diff.changed_fields)
        return ConvergeOutcome(
            name=spec.name,
            changed=True,
            action="modified",
            changes=diff.changed_fields,
        )

    def inspect(self, session: RemoteSession, spec: UserSpec) -> Optional[UserAccount]:
        """Read the current account, or None when it does not exist."""
        result = run_argv(session, ["getent", "passwd", spec.name])
        if result.exit_code == GETENT_NOT_FOUND:
            return None
        self._check(result, f"Cannot look up user {spec.name}")
        try:
            account = UserAccount.from_passwd(result.stdout.splitlines()[0])
        except (ValueError, IndexError) as e:
            raise RemoteExecutionFailed(
                f"Unparseable passwd entry for {spec.name}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                command=result.command,
            ) from e

        if spec.state == UserState.ABSENT:
            return account

        primary = self._check(run_argv(session, ["id", "-gn", spec.name]), f"Cannot read groups of {spec.name}")
        account.primary_group = primary.stdout.strip()
        groups = self._check(run_argv(session, ["id", "-nG", spec.name]), f"Cannot read groups of {spec.name}")
        account.groups = frozenset(groups.stdout.split())

        if spec.password is not None or spec.expires is not None:
            shadow = run_argv(session, ["getent", "shadow", spec.name])
            if not shadow.success:
                raise UserError(
                    f"Cannot read shadow entry for {spec.name}: insufficient privilege",
                    user=spec.name,
                    exit_code=shadow.exit_code,
                    stderr=shadow.stderr,
                )
            fields = shadow.stdout.strip().split(":")
            account.password = fields[1] if len(fields) > 1 else None
            if len(fields) > 7 and fields[7].strip():
                account.expiry_days = int(fields[7])

        return account

    def _check_groups(self, session: RemoteSession, spec: UserSpec) -> None:
        missing = [
            group
            for group in spec.referenced_groups
            if not run_argv(session, ["getent", "group", group]).success
        ]
        if missing:
            raise UserError(
                f"Groups do not exist for user {spec.name}: {', '.join(missing)}",
                user=spec.name,
                groups=missing,
            )

    @staticmethod
    def _useradd_argv(spec: UserSpec) -> list[str]:
        argv = ["useradd"]
        if spec.uid is not None:
            argv += ["-u", str(spec.uid)]
        if spec.group:
            argv += ["-g", spec.group]
        elif spec.gid is not None:
            argv += ["-g", str(spec.gid)]
        supplementary = sorted((spec.groups or frozenset()) - {spec.group})
        if supplementary:
            argv += ["-G", ",".join(supplementary)]
        if spec.home:
            argv += ["-d", spec.home]
        if spec.shell:
            argv += ["-s", spec.shell]
        if spec.comment is not None:
            argv += ["-c", spec.comment]
        argv.append("-m" if spec.create_home else "-M")
        if spec.system:
            argv.append("-r")
        if spec.expires:
            argv += ["-e", spec.expires]
        if spec.password is not None:
            argv += ["-p", spec.password]
        argv.append(spec.name)
        return argv

    @staticmethod
    def _run_tool(session: RemoteSession, argv: Iterable[str], action: str) -> CommandResult:
        argv = list(argv)
        result = run_argv(session, argv)
        if result.success:
            return result

        user = argv[-1] if argv[0] != "gpasswd" else argv[2]
        if result.exit_code == TOOL_PERMISSION_EXIT or "permission denied" in result.stderr.lower():
            raise UserError(
                f"Cannot {action} user {user}: insufficient privilege: {result.stderr.strip()}",
                user=user,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        raise RemoteExecutionFailed(
            f"Failed to {action} user {user}: exit {result.exit_code}: {result.stderr.strip()}",
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            command=redact_command(shlex.join(argv)),
        )

    @staticmethod
    def _check(result: CommandResult, message: str) -> CommandResult:
        if not result.success:
            raise RemoteExecutionFailed(
                f"{message}: exit {result.exit_code}: {result.stderr.strip()}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                command=result.command,
            )
        return result

