from __future__ import annotations

from pathlib import Path
from typing import Literal
import logging
import subprocess

from .config import RunContext, expand_home
from .models import ServiceBackupState
from .restic import ResticCommandError, ResticRepository, RetentionPolicy, is_missing_repository

logger = logging.getLogger(__name__)

ContainerAction = Literal["start", "stop"]
BYTES_PER_GB = 1024 * 1024 * 1024


class BackupOperations:
    def __init__(self, *, context: RunContext, retention: RetentionPolicy | None = None) -> None:
        self.context = context
        self.retention = retention or RetentionPolicy()

    def repository_path(self, state: ServiceBackupState) -> Path:
        return expand_home(self.context.backups_path / state.repository_name, self.context.user)

    def manage_containers(self, state: ServiceBackupState, action: ContainerAction) -> None:
        for container_name in state.containers:
            logger.info("%s container %s", "Starting" if action == "start" else "Stopping", container_name)
            completed = subprocess.run(
                ["docker", action, container_name],
                check=False,
                capture_output=True,
                text=True,
            )
            if completed.returncode != 0:
                reason = _process_output(completed) or f"docker {action} exited with code {completed.returncode}"
                _mark_failed(state, f"docker_{action}", f"Error {action}ing container {container_name}: {reason}")
                return

    def change_ownership(self, state: ServiceBackupState) -> None:
        ownership_paths = state.ownership_paths
        if not ownership_paths:
            return

        owner = f"{self.context.user}:{self.context.user}"
        for path in ownership_paths:
            absolute_path = expand_home(path, self.context.user)
            logger.info("Changing ownership of %s to %s", absolute_path, owner)
            completed = _chown(owner=owner, path=absolute_path)
            if completed.returncode != 0:
                reason = _process_output(completed) or f"chown exited with code {completed.returncode}"
                _mark_failed(state, "chown", f"Error changing ownership of {absolute_path}: {reason}")
                return

        logger.info("Ownership changed successfully")

    def perform_backup(self, state: ServiceBackupState) -> bool:
        if state.is_failed:
            return False

        repository = ResticRepository(path=self.repository_path(state), password=self.context.backups_password)
        source_paths = [expand_home(path, self.context.user) for path in state.source_paths]
        try:
            self._ensure_repository(repository)
            repository.check(step="check_integrity_before")
            repository.backup(source_paths)
            repository.forget(self.retention)
            repository.check(step="check_integrity_after")
        except ResticCommandError as error:
            _mark_failed(state, f"restic_{error.step}", str(error))
            return False

        self.change_repository_ownership(repository.path)
        return True

    def change_repository_ownership(self, repository_path: Path) -> bool:
        # Backups run as root; the sync process reading the repository does not.
        owner = f"{self.context.user}:{self.context.user}"
        logger.info("Changing repository ownership of %s to %s", repository_path, owner)
        try:
            completed = _chown(owner=owner, path=repository_path)
        except OSError as error:
            logger.warning("Could not change repository ownership: %s", _error_message(error))
            return False
        if completed.returncode != 0:
            logger.warning(
                "Could not change repository ownership: %s",
                _process_output(completed) or f"exit code {completed.returncode}",
            )
            return False
        return True

    def calculate_repository_sizes(self, states: list[ServiceBackupState]) -> None:
        for state in states:
            repository_path = self.repository_path(state)
            try:
                if not repository_path.exists():
                    state.size_error = "Repository not found"
                    logger.error("Repository %s: directory does not exist at %s", state.name, repository_path)
                    continue
                if not repository_path.is_dir():
                    state.size_error = "Not a directory"
                    logger.error("Repository %s: path exists but is not a directory", state.name)
                    continue

                size_bytes = _directory_size(repository_path)
                if size_bytes is None:
                    state.size_error = "Failed to calculate directory size"
                    logger.error("Repository %s: failed to calculate size", state.name)
                    continue

                state.size_gb = size_bytes / BYTES_PER_GB
                logger.info("Repository %s: %.2f GB", state.name, state.size_gb)
            except Exception as error:  # pylint: disable=broad-except
                state.size_error = f"Unexpected error: {_error_message(error)}"
                logger.error("Repository %s: unexpected error calculating size: %s", state.name, state.size_error)

    def _ensure_repository(self, repository: ResticRepository) -> None:
        try:
            repository.cat_config()
            return
        except ResticCommandError as error:
            # Anything other than "missing" may be an existing repository we cannot read.
            if not is_missing_repository(error):
                raise

        logger.info("Restic repository does not exist at %s, initializing", repository.path)
        repository.init()
        repository.cat_config()


def _chown(*, owner: str, path: Path) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["sudo", "chown", "-R", owner, str(path)],
        check=False,
        capture_output=True,
        text=True,
    )


def _directory_size(path: Path) -> int | None:
    completed = subprocess.run(["du", "-sb", str(path)], check=False, capture_output=True, text=True)
    if completed.returncode != 0:
        logger.error("du failed for %s: %s", path, _process_output(completed))
        return None

    output = (completed.stdout or "").strip()
    try:
        return int(output.split("\t")[0].split()[0])
    except (IndexError, ValueError):
        logger.error("Could not parse size from du output: %r", output)
        return None


def _mark_failed(state: ServiceBackupState, step: str, message: str) -> None:
    state.add_error(step, message)
    logger.error("[%s] %s: %s", step.upper(), state.name, message)


def _process_output(completed: subprocess.CompletedProcess[str]) -> str:
    return (completed.stderr or "").strip() or (completed.stdout or "").strip()


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
