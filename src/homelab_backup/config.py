from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping
import os

_REQUIRED_VARIABLES = (
    "SERVER_NAME",
    "USER",
    "PATH_APPS",
    "PATH_BACKUPS",
    "BACKUPS_PASSWORD",
    "NTFY_URL_BACKUPS",
)


class ConfigurationError(RuntimeError):
    """Raised when the run environment is missing or malformed."""


@dataclass(frozen=True)
class RunContext:
    server_name: str
    user: str
    apps_path: Path
    volumes_path: Path
    backups_path: Path
    backups_password: str = field(repr=False)
    ntfy_url: str
    spec_directories: tuple[Path, ...]
    media_path: Path | None = None
    sync_path: Path | None = None
    ntfy_token: str | None = field(default=None, repr=False)
    healthchecks_url: str | None = None

    @classmethod
    def from_environment(cls, environ: Mapping[str, str] | None = None) -> RunContext:
        environment = os.environ if environ is None else environ
        values = {key: (environment.get(key) or "").strip() for key in _REQUIRED_VARIABLES}
        missing = [key for key, value in values.items() if not value]
        if missing:
            raise ConfigurationError(f"missing environment variables: {', '.join(missing)}")

        user = values["USER"]
        apps_path = expand_home(values["PATH_APPS"], user)
        volumes_raw = (environment.get("VOLUMES_PATH") or "").strip()
        volumes_path = expand_home(volumes_raw, user) if volumes_raw else apps_path / ".volumes"

        directories_raw = (environment.get("BACKUP_SPEC_DIRS") or "").strip()
        if directories_raw:
            spec_directories = tuple(
                expand_home(entry.strip(), user) for entry in directories_raw.split(os.pathsep) if entry.strip()
            )
        else:
            spec_directories = (apps_path / "stacks", apps_path / "configs" / "backup")

        return cls(
            server_name=values["SERVER_NAME"],
            user=user,
            apps_path=apps_path,
            volumes_path=volumes_path,
            backups_path=expand_home(values["PATH_BACKUPS"], user),
            backups_password=values["BACKUPS_PASSWORD"],
            ntfy_url=values["NTFY_URL_BACKUPS"],
            spec_directories=spec_directories,
            media_path=_optional_path(environment.get("PATH_MEDIA"), user),
            sync_path=_optional_path(environment.get("PATH_SYNC"), user),
            ntfy_token=_optional_value(environment.get("NTFY_TOKEN_BACKUPS")),
            healthchecks_url=_optional_value(environment.get("HEALTHCHECKS_BACKUP_URL")),
        )

    def placeholders(self) -> dict[str, str]:
        """Values that service spec files may reference as ``${NAME}``."""
        values = {
            "USER": self.user,
            "SERVER_NAME": self.server_name,
            "PATH_APPS": str(self.apps_path),
            "VOLUMES_PATH": str(self.volumes_path),
            "PATH_BACKUPS": str(self.backups_path),
        }
        if self.media_path is not None:
            values["PATH_MEDIA"] = str(self.media_path)
        if self.sync_path is not None:
            values["PATH_SYNC"] = str(self.sync_path)
        return values


def expand_home(path: str | Path, user: str) -> Path:
    raw = str(path)
    if raw == "~":
        return Path(f"/home/{user}")
    if raw.startswith("~/"):
        return Path(f"/home/{user}") / raw[2:]
    return Path(raw)


def _optional_value(value: str | None) -> str | None:
    normalized = (value or "").strip()
    return normalized or None


def _optional_path(value: str | None, user: str) -> Path | None:
    normalized = _optional_value(value)
    return expand_home(normalized, user) if normalized else None
