"""App configuration loading helpers."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

import tomllib

from pydantic import BaseModel, Field
from pydantic import ValidationError as SettingsValidationError

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "dbquery" / "config.toml"
DEFAULT_STORE_PATH = "~/.db_query/db_query.db"

# Environment variable -> (section, key); section None means top level.
ENV_OVERRIDES: Mapping[str, tuple[str | None, str]] = {
    "SQLITE_DB_PATH": (None, "store_path"),
    "DBQUERY_LOG_LEVEL": (None, "log_level"),
    "LLM_API_KEY": ("llm", "api_key"),
    "LLM_API_URL": ("llm", "api_url"),
    "LLM_MODEL": ("llm", "model"),
}


class PoolSettings(BaseModel):
    """Resource limits applied to every per-connection pool."""

    max_size: int = Field(default=5, ge=1)
    acquire_timeout: float = Field(default=30.0, gt=0)
    idle_timeout: float = Field(default=600.0, gt=0)
    max_lifetime: float = Field(default=3600.0, gt=0)
    connect_timeout: float = Field(default=15.0, gt=0)
    probe_timeout: float = Field(default=5.0, gt=0)


class LlmSettings(BaseModel):
    """Chat-completion endpoint used for prompt-to-SQL translation."""

    api_key: str = ""
    api_url: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-3.5-turbo"
    temperature: float = 0.3
    timeout: float = 60.0


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    store_path: str = DEFAULT_STORE_PATH
    log_level: str = "INFO"
    pool: PoolSettings = Field(default_factory=PoolSettings)
    llm: LlmSettings = Field(default_factory=LlmSettings)

    def resolved_store_path(self) -> Path:
        """Store path with ``~`` expanded."""

        return Path(self.store_path).expanduser()


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from disk and the environment; fall back to defaults."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        data = {}
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config file", extra={"path": str(CONFIG_FILE), "error": str(exc)})
        data = {}

    _apply_env_overrides(data, os.environ if environ is None else environ)
    try:
        return AppConfig.model_validate(data)
    except SettingsValidationError as exc:
        LOG.warning("Ignoring invalid config values", extra={"path": str(CONFIG_FILE), "error": str(exc)})
        return AppConfig()


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    for key in ("store_path", "log_level"):
        value = raw.get(key)
        if isinstance(value, str):
            data[key] = value
    for section in ("pool", "llm"):
        value = raw.get(section)
        if isinstance(value, dict):
            data[section] = dict(value)
    return data


def _apply_env_overrides(data: dict[str, object], environ: Mapping[str, str]) -> None:
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value is None:
            continue
        if section is None:
            data[key] = value
            continue
        target = data.setdefault(section, {})
        if isinstance(target, dict):
            target[key] = value


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "LlmSettings",
    "PoolSettings",
    "load_config",
]
