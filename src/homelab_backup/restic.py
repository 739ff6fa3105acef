from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable
import logging
import os
import subprocess

logger = logging.getLogger(__name__)

RESTIC_BINARY = "restic"
EXIT_CODE_REPOSITORY_MISSING = 10

RESTIC_EXIT_CODE_MESSAGES = {
    1: "Restic command failed (code 1)",
    2: "Restic internal error (code 2)",
    3: "Backup could not read some source data (code 3)",
    EXIT_CODE_REPOSITORY_MISSING: "Repository does not exist (code 10)",
    11: "Failed to lock repository (code 11)",
    12: "Wrong password for repository (code 12)",
    130: "Restic was interrupted (code 130)",
}

# Restic prints these when the repository path is empty or missing. The wording
# changes between releases, so exit code 10 is checked first.
MISSING_REPOSITORY_MARKERS = (
    "is not a restic repository",
    "does not exist",
    "no such file or directory",
)


@dataclass(frozen=True)
class RetentionPolicy:
    keep_daily: int = 7
    keep_weekly: int = 4
    keep_monthly: int = 3
    # Grouping by host would split a service's history whenever the hostname changes.
    group_by: str = "paths,tags"

    def as_arguments(self) -> list[str]:
        return [
            "--keep-daily",
            str(self.keep_daily),
            "--keep-weekly",
            str(self.keep_weekly),
            "--keep-monthly",
            str(self.keep_monthly),
            "--group-by",
            self.group_by,
        ]


class ResticCommandError(RuntimeError):
    def __init__(self, *, step: str, exit_code: int, stderr: str = "", stdout: str = "") -> None:
        self.step = step
        self.exit_code = exit_code
        self.stderr = stderr.strip()
        self.stdout = stdout.strip()
        self.reason = describe_exit_code(exit_code, stderr=self.stderr, stdout=self.stdout)
        detail = f"{self.reason}: {self.stderr}" if self.stderr and self.stderr not in self.reason else self.reason
        super().__init__(f"restic {step} failed: {detail}")


def describe_exit_code(exit_code: int, *, stderr: str = "", stdout: str = "") -> str:
    if exit_code == 1:
        return stderr or stdout or RESTIC_EXIT_CODE_MESSAGES[1]
    known = RESTIC_EXIT_CODE_MESSAGES.get(exit_code)
    if known is not None:
        return known
    return f"Restic failed with exit code {exit_code}"


def is_missing_repository(error: ResticCommandError) -> bool:
    if error.exit_code == EXIT_CODE_REPOSITORY_MISSING:
        return True
    output = f"{error.stderr}\n{error.stdout}".lower()
    return any(marker in output for marker in MISSING_REPOSITORY_MARKERS)


class ResticRepository:
    def __init__(self, *, path: Path, password: str) -> None:
        self.path = path
        self._password = password

    def cat_config(self) -> None:
        self._run(step="check", arguments=["cat", "config"])

    def init(self) -> None:
        self._run(step="init", arguments=["init"])

    def check(self, *, step: str) -> None:
        self._run(step=step, arguments=["check"])

    def backup(self, paths: Iterable[str | Path]) -> None:
        self._run(step="backup", arguments=["backup", *(str(path) for path in paths)])

    def forget(self, policy: RetentionPolicy) -> None:
        self._run(step="forget", arguments=["forget", "--prune", *policy.as_arguments()])

    def _run(self, *, step: str, arguments: list[str]) -> subprocess.CompletedProcess[str]:
        environment = os.environ.copy()
        environment["RESTIC_PASSWORD"] = self._password
        completed = subprocess.run(
            [RESTIC_BINARY, "-r", str(self.path), *arguments],
            check=False,
            capture_output=True,
            text=True,
            env=environment,
        )
        if completed.returncode != 0:
            raise ResticCommandError(
                step=step,
                exit_code=completed.returncode,
                stderr=completed.stderr or "",
                stdout=completed.stdout or "",
            )
        logger.info("Restic %s succeeded", step)
        return completed
