from __future__ import annotations

from pathlib import Path
from string import Template
from typing import Any, Iterable
import logging

import yaml

from .config import RunContext, expand_home
from .models import DEFAULT, PathSelection, ServiceBackupSpec, ServiceBackupState

logger = logging.getLogger(__name__)

SPEC_FILE_SUFFIXES = (".backup.yaml", ".backup.yml")
STACK_SPEC_FILE_NAMES = ("backup.yaml", "backup.yml")
_ALLOWED_KEYS = {"name", "dest_name", "source_paths", "ownership_paths", "containers"}
_ALLOWED_CONTAINER_KEYS = {"stop"}


class SpecFileError(ValueError):
    """Raised when a service spec file cannot be turned into a ServiceBackupSpec."""


def discover(directories: Iterable[Path], context: RunContext) -> list[ServiceBackupState]:
    states: list[ServiceBackupState] = []
    for directory in directories:
        if not directory.is_dir():
            logger.warning("Spec directory %s does not exist, skipping", directory)
            continue
        for spec_file in _spec_files(directory):
            states.append(load_spec_file(spec_file, context=context))
    return states


def load_spec_file(path: Path, *, context: RunContext) -> ServiceBackupState:
    file_name = _display_file_name(path)
    try:
        spec = parse_spec(path.read_text(encoding="utf-8"), placeholders=context.placeholders())
    except SpecFileError as error:
        message = f"Invalid backup spec {file_name}: {error}"
        logger.error("[CONFIG] %s", message)
        return ServiceBackupState.failed_to_load(file_name=file_name, message=message)
    except Exception as error:  # pylint: disable=broad-except
        message = f"Failed to load backup spec {file_name}: {_error_message(error)}"
        logger.error("[CONFIG] %s", message)
        return ServiceBackupState.failed_to_load(file_name=file_name, message=message)

    return ServiceBackupState(spec=spec, file_name=file_name)


def parse_spec(content: str, *, placeholders: dict[str, str]) -> ServiceBackupSpec:
    try:
        documents = [document for document in yaml.safe_load_all(content) if document is not None]
    except yaml.YAMLError as error:
        raise SpecFileError(f"malformed YAML ({_error_message(error)})") from error

    if len(documents) != 1:
        raise SpecFileError(f"expected exactly one backup declaration, found {len(documents)}")
    document = documents[0]
    if not isinstance(document, dict):
        raise SpecFileError("backup declaration must be a mapping")

    unknown_keys = sorted(str(key) for key in document if key not in _ALLOWED_KEYS)
    if unknown_keys:
        raise SpecFileError(f"unknown keys: {', '.join(unknown_keys)}")

    containers = document.get("containers")
    stop_containers: PathSelection | None = None
    if containers is not None:
        if not isinstance(containers, dict):
            raise SpecFileError("containers must be a mapping with a 'stop' entry")
        unknown_container_keys = sorted(str(key) for key in containers if key not in _ALLOWED_CONTAINER_KEYS)
        if unknown_container_keys:
            raise SpecFileError(f"unknown container keys: {', '.join(unknown_container_keys)}")
        stop_containers = _selection(containers.get("stop"), field_name="containers.stop", placeholders=placeholders)

    source_paths = _selection(document.get("source_paths"), field_name="source_paths", placeholders=placeholders)
    return ServiceBackupSpec(
        name=_optional_string(document.get("name"), field_name="name", placeholders=placeholders),
        dest_name=_optional_string(document.get("dest_name"), field_name="dest_name", placeholders=placeholders),
        source_paths=source_paths if source_paths is not None else (),
        ownership_paths=_selection(
            document.get("ownership_paths"),
            field_name="ownership_paths",
            placeholders=placeholders,
        ),
        stop_containers=stop_containers,
    )


def validate_and_normalize(state: ServiceBackupState, context: RunContext) -> bool:
    if state.is_failed:
        return False

    if not state.spec.name:
        _mark_config_failed(state, "Backup config is missing a name")
        return False

    state.spec = state.spec.normalized(context.volumes_path)

    if not state.source_paths:
        _mark_config_failed(state, "Backup config is missing source paths")
        return False

    for source_path in state.source_paths:
        absolute_path = expand_home(source_path, context.user)
        if not absolute_path.exists():
            _mark_config_failed(state, f"Source path {absolute_path} does not exist")
            return False

    return True


def _spec_files(directory: Path) -> list[Path]:
    spec_files: list[Path] = []
    for entry in sorted(directory.iterdir()):
        if entry.is_file() and entry.name.endswith(SPEC_FILE_SUFFIXES):
            spec_files.append(entry)
        elif entry.is_dir():
            for candidate_name in STACK_SPEC_FILE_NAMES:
                candidate = entry / candidate_name
                if candidate.is_file():
                    spec_files.append(candidate)
                    break
    return spec_files


def _display_file_name(path: Path) -> str:
    if path.name in STACK_SPEC_FILE_NAMES:
        return f"{path.parent.name}/{path.name}"
    return path.name


def _selection(value: Any, *, field_name: str, placeholders: dict[str, str]) -> PathSelection | None:
    if value is None:
        return None
    if value == DEFAULT:
        return DEFAULT
    if isinstance(value, str):
        raise SpecFileError(f"{field_name} must be '{DEFAULT}' or a list of strings")
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise SpecFileError(f"{field_name} must be '{DEFAULT}' or a list of strings")
    return tuple(_substitute(item, field_name=field_name, placeholders=placeholders) for item in value)


def _optional_string(value: Any, *, field_name: str, placeholders: dict[str, str]) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise SpecFileError(f"{field_name} must be a string")
    normalized = _substitute(value, field_name=field_name, placeholders=placeholders).strip()
    return normalized or None


def _substitute(value: str, *, field_name: str, placeholders: dict[str, str]) -> str:
    try:
        return Template(value).substitute(placeholders)
    except KeyError as error:
        raise SpecFileError(f"{field_name} references unknown placeholder ${{{error.args[0]}}}") from error
    except ValueError as error:
        raise SpecFileError(f"{field_name} has an invalid placeholder in {value!r}") from error


def _mark_config_failed(state: ServiceBackupState, message: str) -> None:
    state.mark_failed("config", message)
    logger.error("[CONFIG] %s: %s", state.name, message)


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
