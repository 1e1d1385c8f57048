"""Command line interface for monitoring stack operations.

Usage:
    stackops backup [-d DIR] [-r N] [-n]          # snapshot + prune
    stackops backups                              # list snapshots
    stackops prune -r 3                           # prune only
    stackops verify-backup <id>                   # re-checksum a snapshot
    stackops restore <id> [--include-config]      # restore service data
    stackops reconcile [--state running]          # drive services to desired state
    stackops upgrade                              # backup, pull, recycle
    stackops teardown --yes [--remove-data]       # remove the stack
    stackops status                               # observed runtime state
    stackops verify                               # runtime + HTTP checks
    stackops schedule install|remove|show|run     # recurring backups

Exit codes: 0 success, 1 any failed item or precondition, 2 usage error.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

import structlog
import yaml
from pydantic import ValidationError

from .config import load_config
from .coordinator import StackCoordinator
from .errors import StackOpsError
from .logging_setup import configure_logging
from .models import DesiredState
from .reporting import OperationReport

logger = structlog.get_logger(__name__)


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer") from None
    if number < 0:
        raise argparse.ArgumentTypeError("must be a non-negative integer")
    return number


def _add_store_options(parser: argparse.ArgumentParser, retention: bool = True, compress: bool = True) -> None:
    parser.add_argument("-d", "--directory", type=Path, help="Backup directory")
    if retention:
        parser.add_argument("-r", "--retention", type=non_negative_int,
                            help="Number of snapshots to keep (0 keeps all)")
    if compress:
        parser.add_argument("-n", "--no-compress", dest="compress", action="store_false", default=None,
                            help="Write plain directory copies instead of archives")


def _add_service_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-s", "--service", dest="services", action="append",
                        help="Limit to this service (repeatable)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stackops", description="Monitoring stack backup and lifecycle operations")
    parser.add_argument("--config", help="Path to YAML config (default: $STACKOPS_CONFIG or config/stackops.yaml)")
    parser.add_argument("--log-level", help="Logging level (INFO, WARNING, ...)")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    sub = parser.add_subparsers(dest="command", required=True)

    backup = sub.add_parser("backup", help="Create a snapshot and apply retention")
    _add_store_options(backup)
    _add_service_option(backup)

    backups = sub.add_parser("backups", help="List snapshots, newest first")
    _add_store_options(backups, retention=False, compress=False)

    prune = sub.add_parser("prune", help="Apply retention without creating a snapshot")
    _add_store_options(prune, compress=False)

    verify_backup = sub.add_parser("verify-backup", help="Check a snapshot against its manifest")
    verify_backup.add_argument("snapshot", help="Snapshot id, name or label")
    _add_store_options(verify_backup, retention=False, compress=False)

    restore = sub.add_parser("restore", help="Restore service data from a snapshot")
    restore.add_argument("snapshot", help="Snapshot id, name or label")
    _add_store_options(restore, retention=False, compress=False)
    _add_service_option(restore)
    restore.add_argument("--include-config", action="store_true", help="Restore config paths too")
    restore.add_argument("--no-restart", dest="restart", action="store_false",
                         help="Leave services stopped after restoring")

    reconcile = sub.add_parser("reconcile", help="Drive services to their desired state")
    _add_service_option(reconcile)
    reconcile.add_argument("--state", choices=[s.value for s in DesiredState],
                           help="Override the desired state for this run")

    upgrade = sub.add_parser("upgrade", help="Snapshot, pull images and recycle services")
    _add_service_option(upgrade)
    upgrade.add_argument("--no-backup", dest="backup", action="store_false", help="Skip the pre-upgrade snapshot")

    teardown = sub.add_parser("teardown", help="Remove every managed service")
    teardown.add_argument("--yes", action="store_true", help="Confirm teardown")
    teardown.add_argument("--no-backup", dest="backup", action="store_false", help="Skip the pre-teardown snapshot")
    teardown.add_argument("--remove-images", action="store_true", help="Delete container images")
    teardown.add_argument("--remove-data", action="store_true", help="Delete data directories")
    teardown.add_argument("--remove-config", action="store_true", help="Delete config paths")

    status = sub.add_parser("status", help="Show observed runtime state")
    _add_service_option(status)

    verify = sub.add_parser("verify", help="Check runtime state and HTTP endpoints")
    _add_service_option(verify)
    verify.add_argument("--no-http", dest="http", action="store_false", help="Skip HTTP checks")

    schedule = sub.add_parser("schedule", help="Manage the recurring backup trigger")
    schedule_sub = schedule.add_subparsers(dest="schedule_command", required=True)
    install = schedule_sub.add_parser("install", help="Add the backup line to root's crontab")
    install.add_argument("--script", dest="entry_point", help="Command that runs stackops")
    _add_store_options(install)
    install.add_argument("-t", "--time", dest="expression", help="Cron schedule, e.g. '0 2 * * *'")
    install.add_argument("--replace", action="store_true", help="Replace an existing backup line")
    for name, help_text in (("remove", "Remove the backup line"), ("show", "Show the backup line")):
        entry = schedule_sub.add_parser(name, help=help_text)
        entry.add_argument("--script", dest="entry_point", help="Command that runs stackops")
    run = schedule_sub.add_parser("run", help="Run backups in the foreground on the schedule")
    _add_store_options(run)
    run.add_argument("-t", "--time", dest="expression", help="Cron schedule, e.g. '0 2 * * *'")

    return parser


def print_report(report: OperationReport, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
        return
    print(f"{'✅' if report.success else '❌'} {report.operation}")
    for item in report.items:
        print(f"   {'✅' if item.success else '❌'} {item.name}: {item.message}")
    if report.error:
        print(f"   Error: {report.error}")
    summary = report.to_dict()["summary"]
    print(f"   {summary['succeeded']} succeeded, {summary['failed']} failed")


def _print_backups(coordinator: StackCoordinator, directory: Optional[Path], as_json: bool) -> int:
    snapshots = coordinator.list_backups(directory)
    rows = [
        {"id": s.id, "name": s.name, "compressed": s.compressed, "size_bytes": s.size_bytes()}
        for s in snapshots
    ]
    if as_json:
        print(json.dumps(rows, indent=2))
    elif not rows:
        print("No snapshots found")
    else:
        for row in rows:
            print(f"📦 {row['name']}  {row['size_bytes']} bytes")
    return 0


def _schedule(coordinator: StackCoordinator, args: argparse.Namespace) -> int:
    if args.schedule_command == "install":
        report = coordinator.schedule_install(
            entry_point=args.entry_point,
            directory=args.directory,
            retention=args.retention,
            compress=args.compress,
            expression=args.expression,
            replace=args.replace,
        )
    elif args.schedule_command == "remove":
        report = coordinator.schedule_remove(args.entry_point)
    elif args.schedule_command == "show":
        lines = coordinator.schedule_show(args.entry_point)
        print("\n".join(lines) if lines else "No backup trigger installed")
        return 0
    else:
        coordinator.schedule_run(
            expression=args.expression,
            directory=args.directory,
            retention=args.retention,
            compress=args.compress,
        )
        return 0
    print_report(report, args.json)
    return report.exit_code


def run_command(coordinator: StackCoordinator, args: argparse.Namespace) -> int:
    command = args.command
    if command == "backups":
        return _print_backups(coordinator, args.directory, args.json)
    if command == "schedule":
        return _schedule(coordinator, args)

    if command == "backup":
        report = coordinator.backup(args.directory, args.retention, args.compress, args.services)
    elif command == "prune":
        report = coordinator.prune(args.directory, args.retention)
    elif command == "verify-backup":
        report = coordinator.verify_backup(args.snapshot, args.directory)
    elif command == "restore":
        report = coordinator.restore(
            args.snapshot,
            names=args.services,
            include_config=args.include_config,
            restart=args.restart,
            directory=args.directory,
        )
    elif command == "reconcile":
        desired = DesiredState(args.state) if args.state else None
        report = coordinator.reconcile(args.services, desired)
    elif command == "upgrade":
        report = coordinator.upgrade(args.services, backup=args.backup)
    elif command == "teardown":
        report = coordinator.teardown(
            confirm=args.yes,
            backup=args.backup,
            remove_images=args.remove_images,
            remove_data=args.remove_data,
            remove_config=args.remove_config,
        )
    elif command == "status":
        report = coordinator.status(args.services)
    elif command == "verify":
        report = coordinator.verify(args.services, http=args.http)
    else:
        raise StackOpsError(f"unknown command {command}")

    print_report(report, args.json)
    return report.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, yaml.YAMLError, ValidationError, ValueError) as e:
        print(f"❌ Invalid configuration: {e}", file=sys.stderr)
        return 1

    configure_logging(args.log_level or config.log_level, config.log_file)

    try:
        coordinator = StackCoordinator(config)
        return run_command(coordinator, args)
    except StackOpsError as e:
        logger.error("Operation failed", command=args.command, error=str(e))
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
