"""Render-and-install of configuration files.

A deploy renders the template, compares it with what the host already has and
only writes when the content differs: backup, staged upload, validation and an
atomic move into place. Converged hosts see a single read and, when
attributes are managed, a single ``stat``.
"""

import difflib
import shlex
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from fleetconf.config.defaults import VALIDATE_PLACEHOLDER
from fleetconf.errors import FleetError, ValidationFailed
from fleetconf.ops.renderer import TemplateRenderer
from fleetconf.ops.transfer import FileTransferer
from fleetconf.telemetry.logger import get_logger
from fleetconf.transport.remote import (
    apply_attributes,
    backup_path,
    copy_file,
    discard_file,
    get_attributes,
    move_file,
    normalize_mode,
    read_file,
)
from fleetconf.transport.session import RemoteSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class TemplateSpec:
    """Desired state of a rendered file.

    Attributes:
        src: Template name resolved by the renderer
        dest: Destination path on the host
        variables: Values available to the template
        mode: Octal mode string, e.g. "644"
        owner: Owning user
        group: Owning group
        backup: Keep a timestamped copy of the replaced file
        validate: Command run against the staged file; ``%s`` is replaced
            with its quoted path
    """

    src: str
    dest: str
    variables: Mapping[str, Any] = field(default_factory=dict)
    mode: Optional[str] = None
    owner: Optional[str] = None
    group: Optional[str] = None
    backup: bool = False
    validate: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.src:
            raise ValueError("Template src is required")
        if not self.dest:
            raise ValueError("Template dest is required")
        if self.mode is not None:
            normalize_mode(self.mode)
        if self.validate is not None and VALIDATE_PLACEHOLDER not in self.validate:
            raise ValueError(f"validate command must contain '{VALIDATE_PLACEHOLDER}'")

    @property
    def manages_attributes(self) -> bool:
        return any(value is not None for value in (self.mode, self.owner, self.group))


@dataclass
class DeployOutcome:
    """What a deploy did on one host."""

    dest: str
    changed: bool
    content_changed: bool = False
    diff: str = ""
    backup_path: Optional[str] = None
    validated: bool = False
    attributes_changed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "dest": self.dest,
            "changed": self.changed,
            "content_changed": self.content_changed,
            "diff": self.diff,
            "backup_path": self.backup_path,
            "validated": self.validated,
            "attributes_changed": self.attributes_changed,
        }


class TemplateDeployer:
    """Renders templates and converges remote files to the rendered text."""

    def __init__(
        self,
        renderer: TemplateRenderer,
        transferer: Optional[FileTransferer] = None,
    ) -> None:
        self.renderer = renderer
        self.transferer = transferer or FileTransferer()

    def deploy(self, session: RemoteSession, spec: TemplateSpec) -> DeployOutcome:
        """Bring ``spec.dest`` on the host in line with the rendered template.

        Args:
            session: Session to the host
            spec: Desired file state

        Returns:
            DeployOutcome describing any change

        Raises:
            RenderError: If the template cannot be rendered
            ValidationFailed: If the validate command rejects the new content
            RemoteIOError: If backup, move or attribute updates fail
        """
        rendered = self.renderer.render_template(spec.src, spec.variables).encode("utf-8")
        current = read_file(session, spec.dest)

        if current == rendered:
            changed_attrs: list[str] = []
            if spec.manages_attributes:
                changed_attrs = apply_attributes(
                    session,
                    spec.dest,
                    spec.mode,
                    spec.owner,
                    spec.group,
                    current=get_attributes(session, spec.dest),
                )
            logger.debug(
                "Template content unchanged",
                host=session.host,
                dest=spec.dest,
                attributes_changed=changed_attrs,
            )
            return DeployOutcome(
                dest=spec.dest,
                changed=bool(changed_attrs),
                attributes_changed=changed_attrs,
            )

        diff = unified_diff(spec.dest, current, rendered)

        backup = None
        if spec.backup and current is not None:
            backup = backup_path(spec.dest)
            copy_file(session, spec.dest, backup)
            logger.debug("Backup created", host=session.host, dest=spec.dest, backup=backup)

        temp_path = self.transferer.stage(session, rendered, spec.dest)
        try:
            if spec.validate:
                self._validate(session, spec, temp_path)
            changed_attrs = apply_attributes(session, temp_path, spec.mode, spec.owner, spec.group)
            move_file(session, temp_path, spec.dest)
        except FleetError:
            discard_file(session, temp_path)
            raise

        logger.info("Template deployed", host=session.host, dest=spec.dest, backup=backup)
        return DeployOutcome(
            dest=spec.dest,
            changed=True,
            content_changed=True,
            diff=diff,
            backup_path=backup,
            validated=spec.validate is not None,
            attributes_changed=changed_attrs,
        )

    @staticmethod
    def _validate(session: RemoteSession, spec: TemplateSpec, temp_path: str) -> None:
        command = spec.validate.replace(VALIDATE_PLACEHOLDER, shlex.quote(temp_path))
        result = session.run(command)
        if not result.success:
            raise ValidationFailed(
                f"Validation of {spec.dest} failed with exit {result.exit_code}: "
                f"{result.stderr.strip() or result.stdout.strip()}",
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=result.exit_code,
            )


def unified_diff(path: str, old: Optional[bytes], new: bytes) -> str:
    """Unified diff between the current and the rendered content."""
    old_lines = old.decode("utf-8", errors="replace").splitlines(keepends=True) if old else []
    new_lines = new.decode("utf-8", errors="replace").splitlines(keepends=True)
    return "".join(
        difflib.unified_diff(
            old_lines,
            new_lines,
            fromfile=path if old is not None else "/dev/null",
            tofile=path,
        )
    )
