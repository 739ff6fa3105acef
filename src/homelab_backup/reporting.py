from __future__ import annotations

from typing import Any
import logging
import time

import requests

from .config import RunContext
from .models import BackupStatus, RunResult, ServiceBackupState

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAY_SECONDS = 3.0
REQUEST_TIMEOUT_SECONDS = 30
NOTIFICATION_TOP_SERVICES = 10
UNKNOWN_SHARE = float("-inf")
_NAME_COLUMN_WIDTH = 20


class BackupReporter:
    def __init__(
        self,
        *,
        context: RunContext,
        session: Any | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        self.context = context
        self.session = session if session is not None else requests.Session()
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_seconds = retry_delay_seconds

    def send_notification(self, result: RunResult) -> bool:
        self.send_healthchecks_ping(result)

        for attempt in range(1, self.max_attempts + 1):
            if self._send_ntfy_notification(result):
                logger.info("ntfy notification sent to %s", self.context.ntfy_url)
                return True
            if attempt < self.max_attempts:
                logger.warning(
                    "ntfy notification attempt %d/%d failed, retrying in %ss",
                    attempt,
                    self.max_attempts,
                    self.retry_delay_seconds,
                )
                time.sleep(self.retry_delay_seconds)

        logger.error("ntfy notification failed after %d attempts to %s", self.max_attempts, self.context.ntfy_url)
        return False

    def send_healthchecks_ping(self, result: RunResult) -> bool:
        if not self.context.healthchecks_url:
            return False

        base_url = self.context.healthchecks_url.rstrip("/")
        url = base_url if result.all_succeeded else f"{base_url}/fail"
        try:
            response = self.session.post(
                url,
                data=self.build_healthchecks_message(result).encode("utf-8"),
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as error:
            logger.error("Failed to send healthchecks ping: %s", error)
            return False
        except Exception as error:  # pylint: disable=broad-except
            logger.exception("Unexpected error sending healthchecks ping: %s", error)
            return False

        if not response.ok:
            logger.error("healthchecks ping failed: %s %s", response.status_code, response.reason)
            return False
        logger.info("healthchecks ping sent (%s)", "success" if result.all_succeeded else "fail")
        return True

    def build_healthchecks_message(self, result: RunResult) -> str:
        lines = [
            f"Server: {self.context.server_name}",
            f"Success: {result.success_count}/{result.total_count}",
            f"Size: {result.total_size_gb:.2f} GB",
            f"Duration: {format_total_duration(result.duration_seconds)}",
        ]
        if result.failed_services:
            lines.append("")
            lines.append("Failed:")
            lines.extend(f"- {state.name}: {state.error or 'unknown error'}" for state in result.failed_services)
        return "\n".join(lines) + "\n"

    def build_ntfy_title(self, result: RunResult) -> str:
        title = (
            f'Backup report, server "{self.context.server_name}": '
            f"{result.success_count}/{result.total_count} ({result.success_rate}%)"
        )
        # HTTP headers must stay ASCII.
        return title.encode("ascii", "replace").decode("ascii")

    def build_ntfy_headers(self, result: RunResult) -> dict[str, str]:
        headers = {
            "Title": self.build_ntfy_title(result),
            "Priority": "default" if result.all_succeeded else "high",
            "Tags": "white_check_mark" if result.all_succeeded else "warning",
        }
        if self.context.ntfy_token:
            headers["Authorization"] = f"Bearer {self.context.ntfy_token}"
        return headers

    def print_console_report(self, result: RunResult) -> None:
        for line in build_console_report(result):
            print(line)

    def _send_ntfy_notification(self, result: RunResult) -> bool:
        try:
            response = self.session.post(
                self.context.ntfy_url,
                headers=self.build_ntfy_headers(result),
                data=build_ntfy_message(result).encode("utf-8"),
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as error:
            logger.error("Failed to send ntfy notification: %s", error)
            return False
        except Exception as error:  # pylint: disable=broad-except
            logger.exception("Unexpected error sending ntfy notification: %s", error)
            return False

        logger.info("ntfy response status: %s", response.status_code)
        logger.debug("ntfy response body: %s", response.text)
        return bool(response.ok)


def build_ntfy_message(result: RunResult) -> str:
    ranked = sort_by_share(list(result.services), result.total_size_gb)
    lines = [
        f"💾 Total: {result.total_size_gb:.2f} GB",
        f"⏱️ Duration: {format_total_duration(result.duration_seconds)}",
        "",
    ]
    for state in ranked[:NOTIFICATION_TOP_SERVICES]:
        _, size = format_size(state, result.total_size_gb)
        lines.append(f"{status_icon(state)} {state.name}: {size} ({format_duration(state.duration_seconds)})")

    if len(ranked) > NOTIFICATION_TOP_SERVICES:
        lines.append("")
        lines.append(f"...and {len(ranked) - NOTIFICATION_TOP_SERVICES} more")

    failed = [state for state in result.failed_services if state.error]
    if failed:
        lines.append("")
        lines.append("⚠️ Errors:")
        lines.extend(f"• {state.name}: [{(state.error_step or 'unknown').upper()}] {state.error}" for state in failed)

    return "\n".join(lines) + "\n"


def build_console_report(result: RunResult) -> list[str]:
    lines = [
        f"--------- Backups finished: {result.success_count} / {result.total_count} successful ---------",
        f"Duration: {format_total_duration(result.duration_seconds)}",
    ]

    with_size = [state for state in result.services if state.size_gb is not None]
    size_errors = sum(1 for state in result.services if state.size_error)
    if with_size:
        lines.append(f"Total backup size: {result.total_size_gb:.2f} GB")
        if size_errors:
            lines.append(f"Size calculation errors: {size_errors} repositories")
    elif size_errors:
        lines.append(f"Size calculation failed for all {size_errors} repositories")

    lines.append(f"Status | {'Name'.ljust(_NAME_COLUMN_WIDTH)} | %     | Size      | Time")
    lines.append(f"-------|-{'-' * _NAME_COLUMN_WIDTH}-|-------|-----------|-------")
    for state in sort_by_share(list(result.services), result.total_size_gb):
        name = state.name.ljust(_NAME_COLUMN_WIDTH)[:_NAME_COLUMN_WIDTH]
        percentage, size = format_size(state, result.total_size_gb)
        lines.append(
            f"{status_icon(state)}     | {name} | {percentage} | {size.ljust(9)} | {format_duration(state.duration_seconds)}"
        )
    return lines


def sort_by_share(states: list[ServiceBackupState], total_size_gb: float) -> list[ServiceBackupState]:
    return sorted(states, key=lambda state: share_of_total(state, total_size_gb), reverse=True)


def share_of_total(state: ServiceBackupState, total_size_gb: float) -> float:
    if state.size_gb is None:
        return UNKNOWN_SHARE
    if total_size_gb <= 0:
        return 0.0
    return state.size_gb / total_size_gb * 100


def format_size(state: ServiceBackupState, total_size_gb: float) -> tuple[str, str]:
    if state.size_gb is not None and total_size_gb > 0:
        return f"{share_of_total(state, total_size_gb):.1f}%".ljust(5), f"{state.size_gb:.2f} GB"
    if state.size_gb is not None:
        return "N/A  ", f"{state.size_gb:.2f} GB"
    if state.size_error:
        return "ERR  ", "Error"
    return "N/A  ", "N/A"


def format_duration(duration_seconds: float | None) -> str:
    if duration_seconds is None:
        return "N/A"
    minutes, seconds = divmod(int(duration_seconds), 60)
    if minutes > 0:
        return f"{minutes}m{seconds}s"
    return f"{seconds}s"


def format_total_duration(duration_seconds: float) -> str:
    minutes, seconds = divmod(int(duration_seconds), 60)
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def status_icon(state: ServiceBackupState) -> str:
    return "✅" if state.status is BackupStatus.SUCCESS else "❌"
