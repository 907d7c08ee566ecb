"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from flite.llm.client import (
    DEFAULT_API_URL,
    DEFAULT_CONTEXT_MESSAGES,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
)
from flite.shell import DEFAULT_TIMEOUT_SECONDS

DEFAULT_APP_DIR = "~/.flite"
LOCAL_CONFIG_FILE = "flite.config.json"
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables and config files."""

    api_key: str | None
    model: str
    api_url: str
    system_prompt: str | None
    temperature: float
    context_messages: int
    command_timeout: float
    shell: str
    app_dir: Path
    log_dir: str | None
    log_level: str

    @property
    def history_file(self) -> Path:
        return self.app_dir / "history.json"

    @classmethod
    def from_env(cls) -> AppConfig:
        app_dir = Path(os.getenv("FLITE_HOME") or DEFAULT_APP_DIR).expanduser()
        file_config = _load_preferred_file_config(app_dir)

        return cls(
            api_key=(
                os.getenv("OPENROUTER_API_KEY")
                or os.getenv("FLITE_API_KEY")
                or _to_optional_string(file_config.get("apiKey"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            model=(
                os.getenv("AI_MODEL")
                or os.getenv("FLITE_MODEL")
                or _to_optional_string(file_config.get("defaultModel"))
                or _to_optional_string(file_config.get("default_model"))
                or DEFAULT_MODEL
            ),
            api_url=(
                os.getenv("FLITE_API_URL")
                or _to_optional_string(file_config.get("apiUrl"))
                or _to_optional_string(file_config.get("api_url"))
                or DEFAULT_API_URL
            ),
            system_prompt=(
                os.getenv("FLITE_SYSTEM_PROMPT")
                or _to_optional_string(file_config.get("systemPrompt"))
            ),
            temperature=_to_float(
                os.getenv("FLITE_TEMPERATURE") or file_config.get("temperature"),
                default=DEFAULT_TEMPERATURE,
                minimum=0.0,
            ),
            context_messages=_to_positive_int(
                os.getenv("FLITE_CONTEXT_MESSAGES") or file_config.get("contextMessages"),
                default=DEFAULT_CONTEXT_MESSAGES,
            ),
            command_timeout=_to_float(
                os.getenv("FLITE_COMMAND_TIMEOUT") or file_config.get("commandTimeout"),
                default=DEFAULT_TIMEOUT_SECONDS,
                minimum=0.001,
            ),
            shell=(
                os.getenv("FLITE_SHELL")
                or _to_optional_string(file_config.get("shell"))
                or "bash"
            ),
            app_dir=app_dir,
            log_dir=(
                os.getenv("FLITE_LOG_DIR")
                or _to_optional_string(file_config.get("logDir"))
            ),
            log_level=_to_log_level(
                os.getenv("FLITE_LOG_LEVEL") or _to_optional_string(file_config.get("logLevel"))
            ),
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str | Path) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config(app_dir: Path) -> dict[str, object]:
    explicit_path = os.getenv("FLITE_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(Path(explicit_path).expanduser())

    user_config = _load_file_config(app_dir / "config.json")
    local_override = _load_file_config(LOCAL_CONFIG_FILE)
    return _merge_dicts(user_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _to_log_level(value: str | None) -> str:
    if value is None:
        return "WARNING"
    normalized = value.strip().upper()
    return normalized if normalized in _LOG_LEVELS else "WARNING"


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_float(value: object, *, default: float, minimum: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    return parsed if parsed >= minimum else default
