"""
fleetconf CLI entry point.

Usage:
    fleetconf hosts list                       List inventory hosts
    fleetconf ping                             Check every host answers
    fleetconf --group web run uptime           Run a command on a group
    fleetconf template nginx.conf.j2 /etc/nginx/nginx.conf --var port=80
    fleetconf user deploy --groups wheel,docker
    fleetconf config show                      Show current configuration

Exit status is 0 when every host succeeded, 2 when some failed and 1 when
all failed or the command could not run.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

import yaml

from fleetconf import __version__
from fleetconf.config.defaults import DEFAULT_INVENTORY_FILE
from fleetconf.config.loader import create_default_config, get_default_config_path, load_config
from fleetconf.config.schemas import FleetConfig
from fleetconf.engine import (
    DeployTemplate,
    ExecutionEngine,
    ExecutionReport,
    GatherFacts,
    HostRegistry,
    ManageUser,
    Operation,
    Ping,
    ReportStatus,
    RunCommand,
    RunScript,
    TransferFile,
)
from fleetconf.engine.inventory import Host
from fleetconf.errors import FleetError
from fleetconf.ops import TemplateSpec, TransferDirection, TransferSpec, UserSpec, UserState
from fleetconf.telemetry.logger import get_logger, setup_logging
from fleetconf.transport import ConnectionParams

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2

OPERATION_COMMANDS = {"ping", "run", "script", "facts", "template", "user", "upload", "download"}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="fleetconf",
        description="Apply idempotent configuration to fleets of SSH hosts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fleetconf hosts add web1 --address 10.0.0.5 --groups web
  fleetconf --group web ping
  fleetconf --hosts web1,web2 run "systemctl is-active nginx"
  fleetconf template motd.j2 /etc/motd --var owner=ops --backup
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, metavar="PATH", help="Path to custom configuration file")
    parser.add_argument("--inventory", type=Path, metavar="PATH", help="Path to inventory file")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override log level",
    )
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    targets = parser.add_mutually_exclusive_group()
    targets.add_argument("--hosts", metavar="A,B", help="Comma separated host names")
    targets.add_argument("--group", metavar="NAME", help="Inventory group to target")

    parser.add_argument("--max-concurrency", type=int, metavar="N", help="Hosts processed at once (0 = all)")
    parser.add_argument("--timeout", type=float, metavar="SECONDS", help="Per-host time budget")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # hosts subcommand
    hosts_parser = subparsers.add_parser("hosts", help="Inventory management")
    hosts_subparsers = hosts_parser.add_subparsers(dest="hosts_command")
    hosts_subparsers.add_parser("list", help="List inventory hosts")
    hosts_add = hosts_subparsers.add_parser("add", help="Add a host")
    hosts_add.add_argument("name", help="Host name")
    hosts_add.add_argument("--address", help="Hostname or IP (defaults to name)")
    hosts_add.add_argument("--port", type=int, default=22, help="SSH port")
    hosts_add.add_argument("--user", default="root", help="SSH user")
    hosts_add.add_argument("--key", type=Path, help="Private key path")
    hosts_add.add_argument("--groups", default="", help="Comma separated groups")
    hosts_add.add_argument("--label", action="append", default=[], metavar="K=V", help="Label (repeatable)")
    hosts_remove = hosts_subparsers.add_parser("remove", help="Remove a host")
    hosts_remove.add_argument("name", help="Host name")

    subparsers.add_parser("ping", help="Check that hosts answer")
    subparsers.add_parser("facts", help="Gather system facts")

    run_parser = subparsers.add_parser("run", help="Run a shell command")
    run_parser.add_argument("cmd", nargs="+", help="Command to run")

    script_parser = subparsers.add_parser("script", help="Upload and run a shell script")
    script_parser.add_argument("file", type=Path, help="Local script file")

    template_parser = subparsers.add_parser("template", help="Render and install a template")
    template_parser.add_argument("src", help="Template name in the search paths")
    template_parser.add_argument("dest", help="Destination path on the hosts")
    template_parser.add_argument("--var", action="append", default=[], metavar="K=V", help="Variable (repeatable)")
    template_parser.add_argument("--vars-file", type=Path, help="YAML file with variables")
    template_parser.add_argument("--mode", help="Octal file mode")
    template_parser.add_argument("--owner", help="File owner")
    template_parser.add_argument("--group-owner", help="File group")
    template_parser.add_argument("--backup", action="store_true", help="Back up the replaced file")
    template_parser.add_argument("--validate", help="Validation command, %%s is the staged file")

    user_parser = subparsers.add_parser("user", help="Converge a user account")
    user_parser.add_argument("name", help="Login name")
    user_parser.add_argument("--absent", action="store_true", help="Ensure the account does not exist")
    user_parser.add_argument("--remove-home", action="store_true", help="Delete the home when removing")
    user_parser.add_argument("--shell", help="Login shell")
    user_parser.add_argument("--home", help="Home directory")
    user_parser.add_argument("--no-create-home", action="store_true", help="Do not create the home")
    user_parser.add_argument("--groups", help="Exact supplementary groups, comma separated")
    user_parser.add_argument("--primary-group", help="Primary group")
    user_parser.add_argument("--uid", type=int, help="User id")
    user_parser.add_argument("--gid", type=int, help="Primary group id")
    user_parser.add_argument("--comment", help="GECOS comment")
    user_parser.add_argument("--password-hash", help="Pre-hashed password")
    user_parser.add_argument("--expires", help="Expiry date (YYYY-MM-DD)")
    user_parser.add_argument("--system", action="store_true", help="Create a system account")

    upload_parser = subparsers.add_parser("upload", help="Upload a file")
    upload_parser.add_argument("local", type=Path, help="Local file")
    upload_parser.add_argument("remote", help="Remote path")
    upload_parser.add_argument("--checksum", help="Expected SHA-256 of the local file")
    upload_parser.add_argument("--mode", help="Octal file mode")
    upload_parser.add_argument("--owner", help="File owner")
    upload_parser.add_argument("--group-owner", help="File group")
    upload_parser.add_argument("--create-dirs", action="store_true", help="Create parent directories")

    download_parser = subparsers.add_parser("download", help="Download a file from one host")
    download_parser.add_argument("remote", help="Remote path")
    download_parser.add_argument("local", type=Path, help="Local file")
    download_parser.add_argument("--checksum", help="Expected SHA-256 of the remote file")
    download_parser.add_argument("--create-dirs", action="store_true", help="Create parent directories")

    # config subcommand
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("init", help="Initialize default configuration")

    return parser


def parse_assignments(items: list[str]) -> dict[str, Any]:
    """Parse ``K=V`` pairs; values are read as YAML scalars."""
    values: dict[str, Any] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected K=V, got {item!r}")
        values[key] = yaml.safe_load(value) if value else ""
    return values


def split_csv(value: Optional[str]) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def resolve_inventory_path(args: argparse.Namespace, config: FleetConfig) -> Path:
    return args.inventory or config.inventory_file or DEFAULT_INVENTORY_FILE


def build_engine(args: argparse.Namespace, config: FleetConfig) -> ExecutionEngine:
    """Create the engine used by operation commands."""
    return ExecutionEngine.from_config(config, inventory_path=resolve_inventory_path(args, config))


def build_operation(args: argparse.Namespace) -> Operation:
    """Translate an operation subcommand into an engine operation.

    Raises:
        ValueError: If the arguments describe an invalid operation
        OSError: If a local input file cannot be read
    """
    if args.command == "ping":
        return Ping()
    if args.command == "facts":
        return GatherFacts()
    if args.command == "run":
        return RunCommand(" ".join(args.cmd))
    if args.command == "script":
        return RunScript(args.file.read_text())
    if args.command == "template":
        variables: dict[str, Any] = {}
        if args.vars_file:
            with open(args.vars_file, "r") as f:
                variables.update(yaml.safe_load(f) or {})
        variables.update(parse_assignments(args.var))
        return DeployTemplate(
            TemplateSpec(
                src=args.src,
                dest=args.dest,
                variables=variables,
                mode=args.mode,
                owner=args.owner,
                group=args.group_owner,
                backup=args.backup,
                validate=args.validate,
            )
        )
    if args.command == "user":
        return ManageUser(
            UserSpec(
                name=args.name,
                state=UserState.ABSENT if args.absent else UserState.PRESENT,
                password=args.password_hash,
                shell=args.shell,
                home=args.home,
                create_home=not args.no_create_home,
                groups=frozenset(split_csv(args.groups)) if args.groups is not None else None,
                group=args.primary_group,
                system=args.system,
                uid=args.uid,
                gid=args.gid,
                comment=args.comment,
                expires=args.expires,
                remove_home=args.remove_home,
            )
        )
    if args.command == "upload":
        return TransferFile(
            TransferSpec(
                remote_path=args.remote,
                direction=TransferDirection.UPLOAD,
                local_path=args.local,
                expected_checksum=args.checksum,
                mode=args.mode,
                owner=args.owner,
                group=args.group_owner,
                create_dirs=args.create_dirs,
            )
        )
    if args.command == "download":
        return TransferFile(
            TransferSpec(
                remote_path=args.remote,
                direction=TransferDirection.DOWNLOAD,
                local_path=args.local,
                expected_checksum=args.checksum,
                create_dirs=args.create_dirs,
            )
        )
    raise ValueError(f"Unknown operation: {args.command}")


def exit_code_for(report: ExecutionReport) -> int:
    if report.status == ReportStatus.PARTIAL:
        return EXIT_PARTIAL
    if report.status == ReportStatus.FAILED:
        return EXIT_FAILED
    return EXIT_OK


def print_report(report: ExecutionReport, as_json: bool) -> None:
    """Print a report as text or JSON."""
    if as_json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
        return

    for host, result in report.items():
        if result.success:
            state = "changed" if result.changed else "ok"
            print(f"✓ {host}: {state}")
        else:
            kind = result.error_kind.value if result.error_kind else "error"
            print(f"✗ {host}: [{kind}] {result.error}")
        if result.output.strip():
            for line in result.output.rstrip().splitlines():
                print(f"    {line}")

    print()
    print(
        f"{report.operation}: {report.status.value} "
        f"({len(report.successful)} ok, {len(report.failed)} failed, "
        f"{len(report.changed)} changed, {report.duration_ms:.0f}ms)"
    )


def cmd_operation(args: argparse.Namespace, config: FleetConfig) -> int:
    """Run an operation subcommand against the selected hosts."""
    try:
        operation = build_operation(args)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    with build_engine(args, config) as engine:
        if args.hosts:
            targets = split_csv(args.hosts)
        elif args.group:
            try:
                targets = engine.registry.hosts_in_group(args.group)
            except KeyError:
                print(f"Unknown group: {args.group}", file=sys.stderr)
                return EXIT_FAILED
        else:
            targets = engine.registry.names()

        if not targets:
            print("No hosts selected. Add hosts with: fleetconf hosts add <name>", file=sys.stderr)
            return EXIT_FAILED
        if args.command == "download" and len(targets) != 1:
            print("download needs exactly one target host (use --hosts)", file=sys.stderr)
            return EXIT_FAILED

        report = engine.apply(
            operation,
            targets,
            max_concurrency=args.max_concurrency,
            host_timeout=args.timeout,
        )

    print_report(report, args.json)
    return exit_code_for(report)


def cmd_hosts(args: argparse.Namespace, config: FleetConfig) -> int:
    """Inventory management commands."""
    inventory_path = resolve_inventory_path(args, config)
    try:
        registry = HostRegistry(inventory_path)
    except (ValueError, yaml.YAMLError) as e:
        print(f"Error loading inventory: {e}", file=sys.stderr)
        return EXIT_FAILED

    if args.hosts_command == "list":
        hosts = registry.list()
        if args.json:
            print(json.dumps([host.to_dict() for host in hosts], indent=2))
            return EXIT_OK
        if not hosts:
            print("No hosts in inventory")
            print("\nTo add a host: fleetconf hosts add <name> --address <ip>")
            return EXIT_OK

        print(f"Hosts ({len(hosts)} total):")
        print("-" * 60)
        for host in hosts:
            print(f"  {host.name}")
            print(f"    Address: {host.params.username}@{host.params.address}:{host.params.port}")
            if host.groups:
                print(f"    Groups: {', '.join(sorted(host.groups))}")
            if host.labels:
                print(f"    Labels: {', '.join(f'{k}={v}' for k, v in host.labels.items())}")
        return EXIT_OK

    if args.hosts_command == "add":
        try:
            labels = {k: str(v) for k, v in parse_assignments(args.label).items()}
            host = Host(
                name=args.name,
                params=ConnectionParams(
                    address=args.address or args.name,
                    port=args.port,
                    username=args.user,
                    private_key_path=args.key,
                ),
                groups=frozenset(split_csv(args.groups)),
                labels=labels,
            )
            registry.add(host)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILED
        registry.save(inventory_path)
        print(f"Added host: {host.name} ({host.params.address})")
        return EXIT_OK

    if args.hosts_command == "remove":
        if registry.remove(args.name):
            registry.save(inventory_path)
            print(f"Removed host: {args.name}")
            return EXIT_OK
        print(f"Host not found: {args.name}")
        return EXIT_FAILED

    print("Unknown hosts command. Use: list, add, remove")
    return EXIT_FAILED


def cmd_config_show(config: FleetConfig) -> int:
    """Show current configuration."""
    print("Current fleetconf Configuration:")
    print("=" * 50)
    print(config.model_dump_json(indent=2))
    return EXIT_OK


def cmd_config_init(config_path: Optional[Path]) -> int:
    """Initialize default configuration file."""
    target_path = config_path or get_default_config_path()
    try:
        create_default_config(target_path)
    except OSError as e:
        print(f"Error creating configuration: {e}", file=sys.stderr)
        return EXIT_FAILED
    print(f"Created default configuration at: {target_path}")
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_FAILED

    if args.command == "config" and args.config_command == "init":
        return cmd_config_init(args.config)

    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return EXIT_FAILED

    if args.log_level:
        config.log_level = args.log_level

    setup_logging(config.log_level, config.telemetry.log_file, json_format=config.telemetry.json_logs)
    logger = get_logger(__name__)
    logger.debug("fleetconf starting", version=__version__, command=args.command)

    if args.command == "config":
        if args.config_command == "show":
            return cmd_config_show(config)
        parser.parse_args(["config", "--help"])
        return EXIT_FAILED

    if args.command == "hosts":
        return cmd_hosts(args, config)

    if args.command in OPERATION_COMMANDS:
        try:
            return cmd_operation(args, config)
        except (FleetError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILED
        except KeyboardInterrupt:
            print("\nInterrupted", file=sys.stderr)
            return EXIT_FAILED

    parser.print_help()
    return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
