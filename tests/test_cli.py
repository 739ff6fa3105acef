from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock

import pytest

from homelab_backup import cli
from homelab_backup.config import RunContext


def _context(tmp_path: Path) -> RunContext:
    return RunContext(
        server_name="home",
        user="alice",
        apps_path=tmp_path / "apps",
        volumes_path=tmp_path / "volumes",
        backups_path=tmp_path / "backups",
        backups_password="secret",
        ntfy_url="https://ntfy.example.com/backups",
        spec_directories=(tmp_path / "configs",),
    )


def _write_spec(tmp_path: Path, file_name: str, content: str) -> None:
    directory = tmp_path / "configs"
    directory.mkdir(parents=True, exist_ok=True)
    (directory / file_name).write_text(content, encoding="utf-8")


def test_main_with_missing_environment_exits_one(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("SERVER_NAME", "PATH_BACKUPS", "BACKUPS_PASSWORD"):
        monkeypatch.delenv(key, raising=False)

    assert cli.main(["run"]) == 1


def test_main_without_subcommand_runs_backup(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runner = Mock()
    runner.return_value.run.return_value = 0
    monkeypatch.setattr(cli.RunContext, "from_environment", classmethod(lambda cls: _context(tmp_path)))
    monkeypatch.setattr(cli, "BackupRunner", runner)

    assert cli.main([]) == 0
    runner.return_value.run.assert_called_once_with()


def test_check_specs_reports_each_service_without_side_effects(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "volumes" / "gatus").mkdir(parents=True)
    _write_spec(tmp_path, "gatus.backup.yaml", "name: gatus\nsource_paths: default\ncontainers:\n  stop: default\n")
    _write_spec(tmp_path, "immich.backup.yaml", "name: immich\nsource_paths: ['/definitely/not/here']\n")

    exit_code = cli.check_specs(_context(tmp_path))

    output = capsys.readouterr().out
    assert exit_code == 1
    assert f"OK    gatus -> {tmp_path / 'backups' / 'gatus'}" in output
    assert "ERROR immich: Source path /definitely/not/here does not exist" in output


def test_check_specs_without_specs_exits_one(tmp_path: Path) -> None:
    assert cli.check_specs(_context(tmp_path)) == 1


def test_print_restore_help_with_known_service_prints_restic_and_docker_steps(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    (tmp_path / "volumes" / "healthchecks").mkdir(parents=True)
    _write_spec(
        tmp_path,
        "healthchecks.backup.yaml",
        "name: healthchecks\ndest_name: healthchecks-${SERVER_NAME}\nsource_paths: default\ncontainers:\n  stop: default\n",
    )

    exit_code = cli.print_restore_help(_context(tmp_path), "healthchecks-home")

    output = capsys.readouterr().out
    assert exit_code == 0
    assert f"restic -r {tmp_path / 'backups' / 'healthchecks-home'} snapshots" in output
    assert "docker stop healthchecks" in output
    assert "docker start healthchecks" in output
    assert "sudo chown -R alice:alice" in output


def test_print_restore_help_with_unknown_service_exits_one(tmp_path: Path) -> None:
    assert cli.print_restore_help(_context(tmp_path), "nope") == 1


def test_print_restore_help_expands_home_relative_paths(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _write_spec(tmp_path, "notes.backup.yaml", "name: notes\nsource_paths: ['~/notes']\nownership_paths: ['~/notes']\n")
    monkeypatch.setattr(cli, "validate_and_normalize", lambda state, context: True)

    exit_code = cli.print_restore_help(_context(tmp_path), "notes")

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "rsync -a /tmp/restore-notes/home/alice/notes/ /home/alice/notes/" in output
    assert "sudo chown -R alice:alice /home/alice/notes" in output
    assert "~" not in output
