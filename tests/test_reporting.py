from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
import requests

from homelab_backup.config import RunContext
from homelab_backup.models import BackupStatus, RunResult, ServiceBackupSpec, ServiceBackupState
from homelab_backup.reporting import (
    BackupReporter,
    build_console_report,
    build_ntfy_message,
    format_duration,
    format_size,
    sort_by_share,
)


def _context(*, healthchecks_url: str | None = None, ntfy_token: str | None = None) -> RunContext:
    return RunContext(
        server_name="home",
        user="alice",
        apps_path=Path("/srv/apps"),
        volumes_path=Path("/srv/apps/.volumes"),
        backups_path=Path("/srv/backups"),
        backups_password="secret",
        ntfy_url="https://ntfy.example.com/backups",
        spec_directories=(Path("/srv/apps/configs/backup"),),
        ntfy_token=ntfy_token,
        healthchecks_url=healthchecks_url,
    )


def _state(
    name: str,
    *,
    status: BackupStatus = BackupStatus.SUCCESS,
    size_gb: float | None = None,
    size_error: str | None = None,
    duration_seconds: float | None = 12.0,
    error: str | None = None,
    error_step: str | None = None,
) -> ServiceBackupState:
    return ServiceBackupState(
        spec=ServiceBackupSpec(name=name, source_paths=(f"/srv/{name}",)),
        file_name=f"{name}.backup.yaml",
        status=status,
        size_gb=size_gb,
        size_error=size_error,
        duration_seconds=duration_seconds,
        error=error,
        error_step=error_step,
    )


class _ScriptedSession:
    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = outcomes
        self.requests: list[dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> SimpleNamespace:
        self.requests.append({"url": url, **kwargs})
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(ok=outcome, status_code=200 if outcome else 500, reason="", text="")


def test_build_result_sums_only_known_sizes() -> None:
    states = [
        _state("immich", size_gb=40.0),
        _state("gatus", size_gb=0.5),
        _state("broken", size_error="Repository not found"),
    ]

    result = RunResult.build(states, duration_seconds=75.0)

    assert result.total_size_gb == pytest.approx(40.5)
    assert result.success_count == 3
    assert result.total_count == 3


def test_sort_by_share_places_unknown_sizes_after_every_known_size() -> None:
    unknown = _state("unknown", size_error="Not a directory")
    zero = _state("zero", size_gb=0.0)
    small = _state("small", size_gb=1.0)
    large = _state("large", size_gb=9.0)

    ordered = sort_by_share([unknown, zero, small, large], total_size_gb=10.0)

    assert [state.name for state in ordered] == ["large", "small", "zero", "unknown"]


def test_format_size_covers_share_missing_total_error_and_unknown() -> None:
    assert format_size(_state("a", size_gb=2.5), 10.0) == ("25.0%", "2.50 GB")
    assert format_size(_state("b", size_gb=0.0), 0.0) == ("N/A  ", "0.00 GB")
    assert format_size(_state("c", size_error="boom"), 10.0) == ("ERR  ", "Error")
    assert format_size(_state("d"), 10.0) == ("N/A  ", "N/A")


def test_format_duration_switches_to_minutes() -> None:
    assert format_duration(None) == "N/A"
    assert format_duration(42.9) == "42s"
    assert format_duration(125.0) == "2m5s"


def test_build_console_report_renders_summary_and_sorted_table() -> None:
    result = RunResult.build(
        [
            _state("gatus", size_gb=1.0),
            _state("immich", size_gb=3.0, duration_seconds=190.0),
            _state("broken", status=BackupStatus.ERROR, size_error="Repository not found", duration_seconds=None),
        ],
        duration_seconds=200.0,
    )

    lines = build_console_report(result)

    assert lines[0] == "--------- Backups finished: 2 / 3 successful ---------"
    assert lines[1] == "Duration: 3m 20s"
    assert "Total backup size: 4.00 GB" in lines
    assert "Size calculation errors: 1 repositories" in lines
    table = lines[-3:]
    assert table[0].startswith("✅     | immich")
    assert "75.0%" in table[0]
    assert table[0].endswith("3m10s")
    assert table[1].startswith("✅     | gatus")
    assert table[2].startswith("❌     | broken")
    assert table[2].endswith("| Error     | N/A")


def test_build_console_report_with_all_sizes_failed_says_so() -> None:
    result = RunResult.build(
        [_state("a", size_error="Repository not found"), _state("b", size_error="Not a directory")],
        duration_seconds=5.0,
    )

    assert "Size calculation failed for all 2 repositories" in build_console_report(result)


def test_build_ntfy_message_truncates_to_ten_and_lists_every_error() -> None:
    states = [_state(f"svc-{index:02d}", size_gb=float(index + 1)) for index in range(12)]
    states.append(
        _state(
            "vaultwarden",
            status=BackupStatus.ERROR,
            error="Wrong password for repository (code 12)",
            error_step="restic_check",
            duration_seconds=None,
        )
    )
    result = RunResult.build(states, duration_seconds=30.0)

    message = build_ntfy_message(result)

    assert message.startswith("💾 Total: 78.00 GB\n⏱️ Duration: 30s\n")
    assert "✅ svc-11: 12.00 GB (12s)" in message
    assert "svc-01" not in message
    assert "...and 3 more" in message
    assert "• vaultwarden: [RESTIC_CHECK] Wrong password for repository (code 12)" in message


def test_send_notification_with_success_uses_default_priority_and_bearer_token() -> None:
    session = _ScriptedSession([True, True])
    reporter = BackupReporter(
        context=_context(healthchecks_url="https://hc.example.com/ping/abc/", ntfy_token="tk_abc"),
        session=session,
    )
    result = RunResult.build([_state("gatus", size_gb=1.0)], duration_seconds=10.0)

    assert reporter.send_notification(result) is True

    ping, notification = session.requests
    assert ping["url"] == "https://hc.example.com/ping/abc"
    assert b"Success: 1/1" in ping["data"]
    assert notification["url"] == "https://ntfy.example.com/backups"
    assert notification["headers"] == {
        "Title": 'Backup report, server "home": 1/1 (100%)',
        "Priority": "default",
        "Tags": "white_check_mark",
        "Authorization": "Bearer tk_abc",
    }
    assert notification["headers"]["Title"].isascii()


def test_send_notification_with_failures_pings_fail_endpoint_and_raises_priority() -> None:
    session = _ScriptedSession([True, True])
    reporter = BackupReporter(context=_context(healthchecks_url="https://hc.example.com/ping/abc"), session=session)
    result = RunResult.build(
        [_state("gatus"), _state("immich", status=BackupStatus.ERROR, error="boom", error_step="chown")],
        duration_seconds=10.0,
    )

    reporter.send_notification(result)

    ping, notification = session.requests
    assert ping["url"] == "https://hc.example.com/ping/abc/fail"
    assert b"- immich: boom" in ping["data"]
    assert notification["headers"]["Priority"] == "high"
    assert notification["headers"]["Tags"] == "warning"
    assert "Authorization" not in notification["headers"]


def test_send_notification_with_persistent_failure_makes_exactly_max_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("homelab_backup.reporting.time.sleep", sleeps.append)
    session = _ScriptedSession([False] * 10)
    reporter = BackupReporter(context=_context(), session=session, max_attempts=5, retry_delay_seconds=3.0)

    assert reporter.send_notification(RunResult.build([_state("gatus")], duration_seconds=1.0)) is False

    assert len(session.requests) == 5
    assert sleeps == [3.0, 3.0, 3.0, 3.0]


def test_send_notification_with_transient_errors_retries_until_delivered(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("homelab_backup.reporting.time.sleep", lambda _: None)
    session = _ScriptedSession([requests.ConnectionError("refused"), False, True])
    reporter = BackupReporter(context=_context(), session=session)

    assert reporter.send_notification(RunResult.build([_state("gatus")], duration_seconds=1.0)) is True
    assert len(session.requests) == 3


def test_send_notification_with_failing_ping_still_delivers_notification() -> None:
    session = _ScriptedSession([requests.Timeout("slow"), True])
    reporter = BackupReporter(context=_context(healthchecks_url="https://hc.example.com/ping/abc"), session=session)

    assert reporter.send_notification(RunResult.build([_state("gatus")], duration_seconds=1.0)) is True
    assert session.requests[1]["url"] == "https://ntfy.example.com/backups"


def test_build_ntfy_title_with_non_ascii_server_name_stays_ascii() -> None:
    context = _context()
    reporter = BackupReporter(context=replace(context, server_name="Zuhause-Küche-Σ"), session=_ScriptedSession([]))

    title = reporter.build_ntfy_title(RunResult.build([_state("gatus")], 5.0))

    assert title == 'Backup report, server "Zuhause-K?che-?": 1/1 (100%)'
    title.encode("latin-1")


def test_send_notification_with_unexpected_exceptions_returns_false(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("homelab_backup.reporting.time.sleep", lambda _: None)
    session = _ScriptedSession([UnicodeEncodeError("latin-1", "Σ", 0, 1, "ordinal not in range(256)")] * 6)
    reporter = BackupReporter(context=_context(healthchecks_url="https://hc.example.com/ping/abc"), session=session)

    assert reporter.send_notification(RunResult.build([_state("gatus")], 5.0)) is False
    assert len(session.requests) == 6
