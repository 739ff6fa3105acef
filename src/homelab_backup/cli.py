from __future__ import annotations

from typing import Sequence
import argparse
import logging
import shlex
import sys

from .config import ConfigurationError, RunContext, expand_home
from .operations import BackupOperations
from .reporting import BackupReporter
from .specs import discover, validate_and_normalize
from .workflow import BackupRunner

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="homelab-backup",
        description="Back up service volumes into restic repositories and report the outcome.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging verbosity (default: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="back up every discovered service (default)")
    subparsers.add_parser("check", help="validate service specs without touching containers or repositories")
    restore_parser = subparsers.add_parser("restore-help", help="print manual restore steps for a service")
    restore_parser.add_argument("service", help="service name or repository name")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        context = RunContext.from_environment()
    except ConfigurationError as error:
        logger.error("%s", error)
        return 1

    command = args.command or "run"
    if command == "check":
        return check_specs(context)
    if command == "restore-help":
        return print_restore_help(context, args.service)

    operations = BackupOperations(context=context)
    reporter = BackupReporter(context=context)
    return BackupRunner(context=context, operations=operations, reporter=reporter).run()


def check_specs(context: RunContext) -> int:
    states = discover(context.spec_directories, context)
    if not states:
        print("No backup specs found")
        return 1

    operations = BackupOperations(context=context)
    exit_code = 0
    for state in states:
        if validate_and_normalize(state, context):
            print(f"OK    {state.name} -> {operations.repository_path(state)}")
        else:
            print(f"ERROR {state.name}: {state.error}")
            exit_code = 1
    return exit_code


def print_restore_help(context: RunContext, service: str) -> int:
    states = [
        state
        for state in discover(context.spec_directories, context)
        if service in {state.name, state.repository_name} and not state.is_failed
    ]
    if not states:
        print(f"Unknown service: {service}", file=sys.stderr)
        return 1

    state = states[0]
    if not validate_and_normalize(state, context):
        print(f"Service {state.name} has an invalid spec: {state.error}", file=sys.stderr)
        return 1

    repository = shlex.quote(str(BackupOperations(context=context).repository_path(state)))
    owner = f"{context.user}:{context.user}"
    lines = [
        f"Restore procedure for {state.name} (repository {repository})",
        "",
        "1. List snapshots:",
        "   export RESTIC_PASSWORD='<backups password>'",
        f"   restic -r {repository} snapshots",
        "",
        "2. Restore to a temporary location:",
        f"   restic -r {repository} restore latest --target /tmp/restore-{state.name}",
        "",
    ]
    if state.containers:
        lines.append("3. Stop the service:")
        lines.extend(f"   docker stop {shlex.quote(container)}" for container in state.containers)
    else:
        lines.append("3. Stop anything writing to the source paths.")
    lines.append("")
    lines.append("4. Copy restored files back:")
    for source_path in state.source_paths:
        absolute_path = str(expand_home(source_path, context.user))
        restored = f"/tmp/restore-{state.name}{absolute_path}"
        lines.append(f"   rsync -a {shlex.quote(restored)}/ {shlex.quote(absolute_path)}/")
    lines.append("")
    lines.append("5. Fix ownership:")
    for path in state.ownership_paths or state.source_paths:
        lines.append(f"   sudo chown -R {owner} {shlex.quote(str(expand_home(path, context.user)))}")
    if state.containers:
        lines.append("")
        lines.append("6. Start the service:")
        lines.extend(f"   docker start {shlex.quote(container)}" for container in state.containers)

    print("\n".join(lines))
    return 0
