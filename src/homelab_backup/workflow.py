from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator
import logging
import time

from .config import RunContext
from .models import RunResult, ServiceBackupState
from .operations import BackupOperations
from .reporting import BackupReporter, format_total_duration
from .specs import discover, validate_and_normalize

logger = logging.getLogger(__name__)

ServiceWorkflow = Callable[[ServiceBackupState], None]
SpecLoader = Callable[[RunContext], list[ServiceBackupState]]


@contextmanager
def stopped_containers(operations: BackupOperations, state: ServiceBackupState) -> Iterator[None]:
    """Stop the service's containers and start them again on every exit path.

    The restart is keyed on whether containers are configured, not on whether
    stopping them worked, since a partially failed stop still leaves some down.
    """
    if not state.containers:
        yield
        return

    try:
        operations.manage_containers(state, "stop")
        yield
    finally:
        operations.manage_containers(state, "start")


class BackupWorkflow:
    def __init__(self, operations: BackupOperations) -> None:
        self.operations = operations

    def __call__(self, state: ServiceBackupState) -> None:
        try:
            with stopped_containers(self.operations, state):
                if state.is_failed:
                    return
                self.operations.change_ownership(state)
                if state.is_failed:
                    return
                self.operations.perform_backup(state)
        except Exception as error:  # pylint: disable=broad-except
            message = f"Unexpected error: {_error_message(error)}"
            state.mark_failed("workflow", message)
            logger.exception("[WORKFLOW] %s: %s", state.name, message)


class BackupRunner:
    def __init__(
        self,
        *,
        context: RunContext,
        operations: BackupOperations,
        reporter: BackupReporter,
        workflow: ServiceWorkflow | None = None,
        loader: SpecLoader | None = None,
    ) -> None:
        self.context = context
        self.operations = operations
        self.reporter = reporter
        self.workflow = workflow or BackupWorkflow(operations)
        self.loader = loader or _discover_from_context

    def run(self) -> int:
        started = time.monotonic()
        logger.info("Starting backup process for %s", self.context.server_name)
        try:
            states = self.loader(self.context)
            if not states:
                logger.error("No backup specs found in %s", ", ".join(str(p) for p in self.context.spec_directories))
                result = RunResult.empty(time.monotonic() - started)
                self.reporter.print_console_report(result)
                self.reporter.send_notification(result)
                return 1

            self.schedule(states)

            logger.info("--------- Calculating repository sizes ---------")
            self.operations.calculate_repository_sizes(states)

            duration_seconds = time.monotonic() - started
            logger.info("--------- Total backup duration: %s ---------", format_total_duration(duration_seconds))

            result = RunResult.build(states, duration_seconds)
            self.reporter.print_console_report(result)
            self.reporter.send_notification(result)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Fatal error during backup process")
            return 1

        return 0 if result.all_succeeded else 1

    def schedule(self, states: list[ServiceBackupState]) -> None:
        # One service at a time, in discovery order.
        for state in states:
            self.process(state)

    def process(self, state: ServiceBackupState) -> None:
        logger.info("--------- %s ---------", state.name)
        if state.is_failed:
            return
        try:
            if not validate_and_normalize(state, self.context):
                return
        except Exception as error:  # pylint: disable=broad-except
            message = f"Failed to validate backup spec: {_error_message(error)}"
            state.mark_failed("config", message)
            logger.exception("[CONFIG] %s: %s", state.name, message)
            return

        started = time.monotonic()
        try:
            self.workflow(state)
        except Exception as error:  # pylint: disable=broad-except
            message = f"Unexpected error: {_error_message(error)}"
            state.mark_failed("workflow", message)
            logger.exception("[WORKFLOW] %s: %s", state.name, message)
        finally:
            state.duration_seconds = time.monotonic() - started

        state.mark_succeeded()
        logger.info("Completed %s in %.1fs", state.name, state.duration_seconds)


def _discover_from_context(context: RunContext) -> list[ServiceBackupState]:
    return discover(context.spec_directories, context)


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
