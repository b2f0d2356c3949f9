"""Configuration loading and hot reload.

config.yaml is parsed with PyYAML and validated by ``AppConfig``. One
``_ConfigHolder`` per process keeps the active config and the mtime it was
read at; the triage loop calls ``reload_config_if_changed`` at the top of
every cycle so operators can tune thresholds without a restart.
"""

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mailpilot.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from mailpilot.core.errors import ConfigLoadError, ConfigValidationError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)

CONFIG_PATH_ENV = "MAILPILOT_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path("config/config.yaml")
EXAMPLE_CONFIG_PATH = Path("config/config.yaml.example")

_TYPE_HINTS = {
    "string_type": "must be a string",
    "int_type": "must be an integer",
    "int_parsing": "must be an integer",
    "float_type": "must be a number",
    "float_parsing": "must be a number",
    "bool_type": "must be true or false",
    "bool_parsing": "must be true or false",
}


def resolve_config_path(path: Path | None = None) -> Path:
    if path is not None:
        return path
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def _describe(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        where = ".".join(str(part) for part in item["loc"])
        if item["type"] == "missing":
            lines.append(f"  - Missing required field '{where}'")
        elif item["type"] in _TYPE_HINTS:
            lines.append(f"  - Field '{where}' {_TYPE_HINTS[item['type']]}")
        else:
            lines.append(f"  - Field '{where}': {item['msg']}")
    return "\n".join(lines)


def _read_mapping(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Start from {EXAMPLE_CONFIG_PATH} and save it as {path}"
        ) from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Could not parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"{path} must contain a YAML mapping at the top level, not a {type(data).__name__}"
        )
    return data


def load_config(path: Path | None = None) -> AppConfig:
    """Read and validate a config file. Does not touch the active config.

    Raises:
        ConfigLoadError: The file is missing or is not a YAML mapping
        ConfigValidationError: A field is missing or out of range, or the
            schema version is newer than this build understands
    """
    config_path = resolve_config_path(path)
    data = _read_mapping(config_path)

    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid configuration in {config_path}:\n{_describe(e)}") from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"{config_path} declares schema version {config.schema_version}, which is newer than "
            f"the supported version {CURRENT_SCHEMA_VERSION}. Upgrade mailpilot to use it."
        )

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        llm_provider=config.llm.provider,
        similarity_enabled=config.similarity.enabled,
    )
    return config


@dataclass
class _ConfigHolder:
    config: AppConfig | None = None
    path: Path | None = None
    mtime: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock)

    def current(self) -> AppConfig:
        with self.lock:
            if self.config is None:
                path = resolve_config_path()
                self.config = load_config(path)
                self.path = path
                self.mtime = path.stat().st_mtime
            return self.config

    def refresh(self) -> bool:
        with self.lock:
            if self.path is None:
                return False

            try:
                mtime = self.path.stat().st_mtime
            except OSError as e:
                logger.warning("config_stat_failed", path=str(self.path), error=str(e))
                return False
            if mtime <= self.mtime:
                return False

            # Remember the mtime even on failure; a broken file is reported once
            self.mtime = mtime
            try:
                self.config = load_config(self.path)
            except (ConfigLoadError, ConfigValidationError) as e:
                logger.warning("config_reload_rejected", path=str(self.path), error=str(e))
                return False

            logger.info("config_reloaded", path=str(self.path))
            return True

    def clear(self) -> None:
        with self.lock:
            self.config = None
            self.path = None
            self.mtime = 0.0


_holder = _ConfigHolder()


def get_config() -> AppConfig:
    """Return the active config, loading it on first use."""
    return _holder.current()


def reload_config_if_changed() -> bool:
    """Swap in config.yaml if it changed on disk since the last load.

    Returns False when nothing changed, when nothing was loaded yet, or when
    the new file is invalid (the previous config stays active).
    """
    return _holder.refresh()


def reset_config() -> None:
    _holder.clear()


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file for the ``validate-config`` command.

    Returns:
        (ok, message) where message is either a short summary of the
        effective settings or the load/validation error
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    summary = [
        f"Configuration valid (schema version {config.schema_version})",
        f"  - operator: {config.operator.email}",
        f"  - llm: {config.llm.provider} / {config.llm.model}",
        f"  - embeddings: {config.similarity.embeddings_endpoint or 'disabled'}",
        f"  - triage every {config.triage.interval_minutes} min",
    ]
    return True, "\n".join(summary)
