"""Runtime configuration loading from environment and optional .env file."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os

REQUIRED_ENV_VARS = ("OPENAI_API_KEY", "PREMIUM_LLM_MODEL", "BUDGET_LLM_MODEL")

_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}


class ConfigError(Exception):
    """Configuration loading error with user-facing message text."""


@dataclass(frozen=True)
class EngineSettings:
    """Budgets and fan-out limits shared by every phase of a pipeline run."""

    retry: int = 4
    concurrency: int = 8
    retrieval_limit: int = 10
    correction_capacity: int = 8
    # Model request timeout used by LLMClient.
    timeout_seconds: int = 1800


@dataclass(frozen=True)
class AppConfig:
    """Application config contract for model and API settings."""

    openai_api_key: str
    premium_model: str
    budget_model: str
    premium_reasoning_effort: str | None = None
    budget_reasoning_effort: str | None = None
    verbose_llm_logging: bool = False
    verbose_llm_log_max_chars: int = 4000
    engine: EngineSettings = field(default_factory=EngineSettings)

    def __repr__(self) -> str:
        return (
            "AppConfig("
            "openai_api_key='***REDACTED***', "
            f"premium_model={self.premium_model!r}, "
            f"budget_model={self.budget_model!r}, "
            f"premium_reasoning_effort={self.premium_reasoning_effort!r}, "
            f"budget_reasoning_effort={self.budget_reasoning_effort!r}, "
            f"verbose_llm_logging={self.verbose_llm_logging!r}, "
            f"verbose_llm_log_max_chars={self.verbose_llm_log_max_chars!r}, "
            f"engine={self.engine!r})"
        )


def _parse_env_line(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    if stripped.startswith("export "):
        stripped = stripped[len("export "):].lstrip()

    key, raw_value = stripped.split("=", 1)
    key = key.strip()
    value = raw_value.strip()
    if not key:
        return None

    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        value = value[1:-1]
    return key, value


def _load_dotenv(dotenv_path: Path) -> None:
    if not dotenv_path.exists():
        return

    for line in dotenv_path.read_text(encoding="utf-8").splitlines():
        parsed = _parse_env_line(line)
        if parsed is None:
            continue
        key, value = parsed
        os.environ.setdefault(key, value)


def _require_env(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if value:
        return value
    raise KeyError(name)


def _optional_env(name: str) -> str | None:
    value = os.environ.get(name)
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _optional_bool_env(name: str, default: bool) -> bool:
    value = _optional_env(name)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    raise ConfigError(
        f"Configuration error: {name} must be one of true/false/yes/no/on/off/1/0, got {value!r}."
    )


def _optional_int_env(name: str, default: int, *, minimum: int) -> int:
    value = _optional_env(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ConfigError(
            f"Configuration error: {name} must be a valid integer, got {value!r}."
        ) from exc
    if parsed < minimum:
        raise ConfigError(f"Configuration error: {name} must be >= {minimum}, got {parsed}.")
    return parsed


def get_settings() -> EngineSettings:
    """Load engine budgets; no credentials are needed for these."""
    _load_dotenv(Path(".env"))
    defaults = EngineSettings()
    return EngineSettings(
        retry=_optional_int_env("PIPELINE_RETRY", defaults.retry, minimum=0),
        concurrency=_optional_int_env("PIPELINE_CONCURRENCY", defaults.concurrency, minimum=1),
        retrieval_limit=_optional_int_env(
            "PIPELINE_RETRIEVAL_LIMIT", defaults.retrieval_limit, minimum=1
        ),
        correction_capacity=_optional_int_env(
            "PIPELINE_CORRECTION_CAPACITY", defaults.correction_capacity, minimum=1
        ),
        timeout_seconds=_optional_int_env(
            "PIPELINE_TIMEOUT_SECONDS", defaults.timeout_seconds, minimum=1
        ),
    )


def get_config() -> AppConfig:
    """Load config from environment variables and `.env` in repo root."""
    _load_dotenv(Path(".env"))

    missing: list[str] = []
    values: dict[str, str] = {}
    for var_name in REQUIRED_ENV_VARS:
        try:
            values[var_name] = _require_env(var_name)
        except KeyError:
            missing.append(var_name)

    if missing:
        missing_text = ", ".join(missing)
        raise ConfigError(
            "Configuration error: missing required environment variables: "
            f"{missing_text}. Set them in your shell or in `.env`."
        )

    return AppConfig(
        openai_api_key=values["OPENAI_API_KEY"],
        premium_model=values["PREMIUM_LLM_MODEL"],
        budget_model=values["BUDGET_LLM_MODEL"],
        premium_reasoning_effort=_optional_env("PREMIUM_LLM_REASONING_EFFORT"),
        budget_reasoning_effort=_optional_env("BUDGET_LLM_REASONING_EFFORT"),
        verbose_llm_logging=_optional_bool_env("VERBOSE_LLM_LOGGING", False),
        verbose_llm_log_max_chars=_optional_int_env("VERBOSE_LLM_LOG_MAX_CHARS", 4000, minimum=100),
        engine=get_settings(),
    )
