"""Engine settings: defaults, environment overrides, optional YAML tuning file.

Every empirically tuned constant (fuzzy-match thresholds, depth decay,
smoothing priors) lives here so it can be adjusted per deployment without
touching the matching or aggregation code.
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

_ENV_PREFIX = "BRANDLENS_"

DEFAULT_MODELS: dict[str, str] = {
    "openai": "openai/gpt-4o",
    "gemini": "google/gemini-2.5-flash",
    "claude": "anthropic/claude-3.5-sonnet",
    "perplexity": "perplexity/sonar-pro",
}

# Native Anthropic Messages API ids; the slugs above are OpenRouter routes.
ANTHROPIC_MODELS: dict[str, str] = {
    "claude": "claude-sonnet-4-5",
}


class Settings(BaseModel):
    # Provider calls
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_api_key: str = ""
    anthropic_api_key: str = ""
    models: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_MODELS))
    anthropic_models: dict[str, str] = Field(default_factory=lambda: dict(ANTHROPIC_MODELS))
    temperature: float = 0.6
    top_p: float = 0.9
    max_tokens: int = 1500
    request_timeout: float = 60.0
    max_retries: int = 3
    backoff_base: float = 2.0

    # Brand matching
    fuzzy_threshold: float = 0.8
    fuzzy_min_length: int = 7
    fuzzy_strict_length: int = 10
    fuzzy_strict_threshold: float = 0.9
    fuzzy_chars_per_edit: int = 6
    fuzzy_max_sentence_chars: int = 400
    depth_decay: float = 1.0

    # Aggregation
    visibility_smoothing_threshold: int = 20
    depth_smoothing_threshold: int = 20
    citation_smoothing_threshold: int = 10
    prior_weight: float = 2.0
    visibility_prior: float = 0.5
    depth_prior: float = 0.0
    z_score: float = 1.96

    # Orchestration
    prompt_concurrency: int = 4

    database_path: Path | None = None

    def model_for(self, provider_id: str, backend: str = "openai") -> str:
        if backend == "anthropic":
            native = self.anthropic_models.get(provider_id)
            if native:
                return native
            return self.models.get(provider_id, provider_id).removeprefix("anthropic/")
        return self.models.get(provider_id, provider_id)


def _coerce(raw: str, current: Any) -> Any:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Build settings from defaults, then a YAML file, then environment variables.

    Environment variables use the ``BRANDLENS_`` prefix with the upper-cased
    field name (``BRANDLENS_FUZZY_THRESHOLD=0.85``).  Provider credentials are
    also read from their conventional names.
    """
    values: dict[str, Any] = {}
    path = config_path or os.environ.get(f"{_ENV_PREFIX}CONFIG")
    if path:
        values.update(load_yaml(Path(path)))

    defaults = Settings()
    for name in Settings.model_fields:
        raw = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
        if raw is None or name in ("models", "anthropic_models"):
            continue
        current = getattr(defaults, name)
        values[name] = _coerce(raw, current) if current is not None else raw

    values.setdefault("openrouter_api_key", os.environ.get("OPENROUTER_API_KEY", ""))
    values.setdefault("anthropic_api_key", os.environ.get("ANTHROPIC_API_KEY", ""))
    base_url = os.environ.get("OPENROUTER_BASE_URL")
    if base_url:
        values.setdefault("openrouter_base_url", base_url)
    return Settings(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
