"""Environment-backed application configuration."""

from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass
from pathlib import Path

from minion.agent.loop import LoopConfig
from minion.llm.client import DEFAULT_SYSTEM_PROMPT

ENV_PREFIX = "MINION_"


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env(name: str) -> str | None:
    return os.getenv(f"{ENV_PREFIX}{name}")


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables."""

    api_key: str | None
    api_url: str
    model: str
    reasoning_effort: str | None
    system_prompt: str
    backend_timeout_seconds: float
    step_budget: int
    command_timeout_seconds: float
    max_context_chars: int
    full_history_actions: int
    log_dir: str | None
    log_level: str
    shell: str
    commit_on_complete: bool
    commit_message: str
    git_user_name: str | None
    git_user_email: str | None

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        openai_from_file = file_config.get("openai")
        openai_config = openai_from_file if isinstance(openai_from_file, dict) else {}
        git_from_file = file_config.get("git")
        git_config = git_from_file if isinstance(git_from_file, dict) else {}

        model = _env("MODEL") or _to_optional_string(file_config.get("model")) or "gpt-4.1"
        return cls(
            api_key=(
                _env("API_TOKEN")
                or _env("API_KEY")
                or _to_optional_string(openai_config.get("api_key"))
            ),
            api_url=(
                _env("API_URL")
                or _to_optional_string(openai_config.get("api_url"))
                or "https://api.openai.com/v1/responses"
            ),
            model=model,
            reasoning_effort=(
                _env("REASONING_EFFORT")
                or _to_optional_string(file_config.get("reasoning_effort"))
                or _default_reasoning_effort(model)
            ),
            system_prompt=(
                _env("SYSTEM_PROMPT")
                or _to_optional_string(file_config.get("system_prompt"))
                or DEFAULT_SYSTEM_PROMPT
            ),
            backend_timeout_seconds=_to_positive_float(
                _env("BACKEND_TIMEOUT_SECONDS") or file_config.get("backend_timeout_seconds"),
                default=60.0,
            ),
            step_budget=_to_positive_int(
                _env("STEP_BUDGET") or file_config.get("step_budget"),
                default=30,
            ),
            command_timeout_seconds=_to_positive_float(
                _env("COMMAND_TIMEOUT_SECONDS") or file_config.get("command_timeout_seconds"),
                default=120.0,
            ),
            max_context_chars=_to_positive_int(
                _env("MAX_CONTEXT_CHARS") or file_config.get("max_context_chars"),
                default=24000,
            ),
            full_history_actions=_to_positive_int(
                _env("FULL_HISTORY_ACTIONS") or file_config.get("full_history_actions"),
                default=5,
            ),
            log_dir=(
                _env("LOG_DIR")
                or _to_optional_string(file_config.get("log_dir"))
                or "logs"
            ),
            log_level=(
                _env("LOG_LEVEL") or _to_optional_string(file_config.get("log_level")) or "INFO"
            ).upper(),
            shell=(
                _env("SHELL") or _to_optional_string(file_config.get("shell")) or "bash"
            ),
            commit_on_complete=_to_bool(
                _env("COMMIT_ON_COMPLETE"),
                default=bool(file_config.get("commit_on_complete", False)),
            ),
            commit_message=(
                _env("COMMIT_MESSAGE")
                or _to_optional_string(file_config.get("commit_message"))
                or "Commit from minion"
            ),
            git_user_name=(
                _env("GIT_USER_NAME") or _to_optional_string(git_config.get("user_name"))
            ),
            git_user_email=(
                _env("GIT_USER_EMAIL") or _to_optional_string(git_config.get("user_email"))
            ),
        )

    def loop_config(self) -> LoopConfig:
        return LoopConfig(
            default_step_budget=self.step_budget,
            command_timeout_seconds=self.command_timeout_seconds,
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str) -> dict[str, object]:
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


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = _env("CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("minion.config.json")
    local_override = _load_file_config("minion.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _default_reasoning_effort(model: str) -> str | None:
    """Provide practical defaults for reasoning-capable model families."""
    normalized = model.strip().lower()
    if normalized.startswith("gpt-5") or normalized.startswith("o"):
        return "medium"
    return None


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


def _to_positive_float(value: object, *, default: float) -> float:
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
    return parsed if math.isfinite(parsed) and parsed > 0 else default
