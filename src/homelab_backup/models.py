from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Literal, Union

DEFAULT = "default"

PathSelection = Union[tuple[str, ...], Literal["default"]]


class BackupStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ServiceBackupSpec:
    name: str | None
    source_paths: PathSelection
    dest_name: str | None = None
    ownership_paths: PathSelection | None = None
    stop_containers: PathSelection | None = None

    @property
    def is_normalized(self) -> bool:
        return DEFAULT not in (self.source_paths, self.ownership_paths, self.stop_containers)

    def normalized(self, volumes_path: Path) -> ServiceBackupSpec:
        if self.is_normalized:
            return self
        if not self.name:
            raise ValueError("a service without a name cannot be normalized")

        default_paths = (str(volumes_path / self.name),)
        return replace(
            self,
            source_paths=default_paths if self.source_paths == DEFAULT else self.source_paths,
            ownership_paths=default_paths if self.ownership_paths == DEFAULT else self.ownership_paths,
            stop_containers=(self.name,) if self.stop_containers == DEFAULT else self.stop_containers,
        )


@dataclass
class ServiceBackupState:
    spec: ServiceBackupSpec
    file_name: str
    status: BackupStatus = BackupStatus.IN_PROGRESS
    error: str | None = None
    error_step: str | None = None
    size_gb: float | None = None
    size_error: str | None = None
    duration_seconds: float | None = None

    @classmethod
    def failed_to_load(cls, *, file_name: str, message: str) -> ServiceBackupState:
        return cls(
            spec=ServiceBackupSpec(name=None, source_paths=()),
            file_name=file_name,
            status=BackupStatus.ERROR,
            error=message,
            error_step="config",
        )

    @property
    def name(self) -> str:
        return self.spec.name or self.file_name

    @property
    def repository_name(self) -> str:
        return self.spec.dest_name or self.name

    @property
    def is_failed(self) -> bool:
        return self.status is BackupStatus.ERROR

    @property
    def source_paths(self) -> tuple[str, ...]:
        return self._resolved("source_paths", self.spec.source_paths)

    @property
    def ownership_paths(self) -> tuple[str, ...]:
        return self._resolved("ownership_paths", self.spec.ownership_paths)

    @property
    def containers(self) -> tuple[str, ...]:
        return self._resolved("stop_containers", self.spec.stop_containers)

    def mark_failed(self, step: str, message: str) -> None:
        if self.status is not BackupStatus.IN_PROGRESS:
            return
        self.status = BackupStatus.ERROR
        self.error = message
        self.error_step = step

    def add_error(self, step: str, message: str) -> None:
        """Record a failure; later failures are appended to the first one."""
        if self.status is BackupStatus.IN_PROGRESS:
            self.mark_failed(step, message)
        elif self.is_failed:
            self.error = f"{self.error}; {message}" if self.error else message

    def mark_succeeded(self) -> None:
        if self.status is BackupStatus.IN_PROGRESS:
            self.status = BackupStatus.SUCCESS

    def _resolved(self, field_name: str, value: PathSelection | None) -> tuple[str, ...]:
        if value == DEFAULT:
            raise RuntimeError(f"{self.name}: {field_name} read before normalization")
        return tuple(value or ())


@dataclass(frozen=True)
class RunResult:
    services: tuple[ServiceBackupState, ...]
    success_count: int
    total_count: int
    total_size_gb: float
    duration_seconds: float = 0.0

    @classmethod
    def build(cls, states: list[ServiceBackupState], duration_seconds: float) -> RunResult:
        return cls(
            services=tuple(states),
            success_count=sum(1 for state in states if state.status is BackupStatus.SUCCESS),
            total_count=len(states),
            total_size_gb=float(sum(state.size_gb for state in states if state.size_gb is not None)),
            duration_seconds=duration_seconds,
        )

    @classmethod
    def empty(cls, duration_seconds: float = 0.0) -> RunResult:
        return cls(services=(), success_count=0, total_count=0, total_size_gb=0.0, duration_seconds=duration_seconds)

    @property
    def failed_services(self) -> list[ServiceBackupState]:
        return [state for state in self.services if state.is_failed]

    @property
    def all_succeeded(self) -> bool:
        return self.total_count > 0 and self.success_count == self.total_count

    @property
    def success_rate(self) -> int:
        if self.total_count <= 0:
            return 0
        return round(self.success_count / self.total_count * 100)

