import os
from dataclasses import dataclass, field, replace
from datetime import time
from typing import Mapping, Optional

from fitter.core.errors import ConfigError

SUPPORTED_PROVIDERS = {"gemini", "openai"}

DEFAULT_GEMINI_MODELS = ("gemini-2.5-flash", "gemini-2.5-pro")
DEFAULT_FALLBACK_MODELS = ("gemini-2.5-pro", "gemini-2.5-flash")


@dataclass(frozen=True)
class PipelineConfig:
    ai_provider: str = "gemini"
    ai_api_key: str = ""
    ai_model: str = "gemini-2.5-flash"
    ai_fallback_models: tuple[str, ...] = DEFAULT_FALLBACK_MODELS
    ai_supported_models: tuple[str, ...] = DEFAULT_GEMINI_MODELS
    ai_temperature: float = 0.7
    ai_max_output_tokens: int = 1024
    ai_max_context_turns: int = 12
    ai_max_context_chars: int = 8000
    ai_retry_backoff_seconds: float = 0.15
    ai_timeout_seconds: float = 30.0
    ai_connect_timeout_seconds: float = 10.0
    ai_user_budget_seconds: float = 90.0

    batch_max_workers: int = 4
    batch_user_timeout_seconds: float = 120.0

    suggestion_ttl_hours: int = 24
    suggestion_history_days: int = 7
    max_suggestions_per_batch: int = 5

    aggregation_time: time = field(default_factory=lambda: time(0, 15))
    suggestion_time: time = field(default_factory=lambda: time(6, 0))
    scheduler_poll_seconds: float = 30.0

    db_path: str = "./data/fitter.db"
    log_level: str = "INFO"

    def with_overrides(self, **changes) -> "PipelineConfig":
        return replace(self, **changes)


def parse_clock_time(value: str) -> time:
    raw = (value or "").strip()
    parts = raw.split(":")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise ConfigError(f"Invalid clock time {raw!r}; expected HH:MM")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ConfigError(f"Invalid clock time {raw!r}; out of range")
    return time(hour, minute)


def _split_models(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _positive_float(env: Mapping[str, str], name: str, default: str) -> float:
    raw = env.get(name, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _non_negative_float(env: Mapping[str, str], name: str, default: str) -> float:
    raw = env.get(name, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {raw!r}")
    return value


def _positive_int(env: Mapping[str, str], name: str, default: str) -> int:
    raw = env.get(name, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def load_config(environ: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    """Build the pipeline configuration from environment variables.

    Only this function reads the environment. Everything downstream receives the
    returned value explicitly, so tests can construct ``PipelineConfig`` directly.
    """
    env = os.environ if environ is None else environ

    provider = env.get("AI_PROVIDER", "gemini").strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ConfigError(f"Unsupported AI_PROVIDER {provider!r}")
    if provider == "openai":
        api_key = env.get("OPENAI_API_KEY", "")
        default_model = "gpt-4.1-mini"
        default_fallbacks = "gpt-4.1,gpt-4.1-mini"
        default_supported = ""
    else:
        api_key = env.get("GEMINI_API_KEY", "") or env.get("GOOGLE_API_KEY", "")
        default_model = "gemini-2.5-flash"
        default_fallbacks = ",".join(DEFAULT_FALLBACK_MODELS)
        default_supported = ",".join(DEFAULT_GEMINI_MODELS)

    return PipelineConfig(
        ai_provider=provider,
        ai_api_key=api_key.strip(),
        ai_model=env.get("AI_MODEL", default_model).strip() or default_model,
        ai_fallback_models=_split_models(env.get("AI_FALLBACK_MODELS", default_fallbacks)),
        ai_supported_models=_split_models(env.get("AI_SUPPORTED_MODELS", default_supported)),
        ai_temperature=_non_negative_float(env, "AI_TEMPERATURE", "0.7"),
        ai_max_output_tokens=_positive_int(env, "AI_MAX_OUTPUT_TOKENS", "1024"),
        ai_max_context_turns=_positive_int(env, "AI_MAX_CONTEXT_TURNS", "12"),
        ai_max_context_chars=_positive_int(env, "AI_MAX_CONTEXT_CHARS", "8000"),
        ai_retry_backoff_seconds=_non_negative_float(env, "AI_RETRY_BACKOFF_SECONDS", "0.15"),
        ai_timeout_seconds=_positive_float(env, "AI_TIMEOUT_SECONDS", "30"),
        ai_connect_timeout_seconds=_positive_float(env, "AI_CONNECT_TIMEOUT_SECONDS", "10"),
        ai_user_budget_seconds=_positive_float(env, "AI_USER_BUDGET_SECONDS", "90"),
        batch_max_workers=_positive_int(env, "BATCH_MAX_WORKERS", "4"),
        batch_user_timeout_seconds=_positive_float(env, "BATCH_USER_TIMEOUT_SECONDS", "120"),
        suggestion_ttl_hours=_positive_int(env, "SUGGESTION_TTL_HOURS", "24"),
        suggestion_history_days=_positive_int(env, "SUGGESTION_HISTORY_DAYS", "7"),
        max_suggestions_per_batch=_positive_int(env, "MAX_SUGGESTIONS_PER_BATCH", "5"),
        aggregation_time=parse_clock_time(env.get("AGGREGATION_TIME", "00:15")),
        suggestion_time=parse_clock_time(env.get("SUGGESTION_TIME", "06:00")),
        scheduler_poll_seconds=_positive_float(env, "SCHEDULER_POLL_SECONDS", "30"),
        db_path=env.get("DB_PATH", "./data/fitter.db"),
        log_level=env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
