from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from exam_pipeline.errors import ConfigurationError

MODEL_FAMILIES = ("claude", "gpt", "gemini")

# env var -> (field, cast)
_ENV_FIELDS = {
    "TRANSCRIPT_DIR": ("transcript_dir", str),
    "OUTPUT_DIR": ("output_dir", str),
    "LOGS_DIR": ("logs_dir", str),
    "CHUNK_SIZE": ("chunk_size", int),
    "CHUNK_OVERLAP": ("chunk_overlap", int),
    "SUMMARIZER_MODEL": ("summarizer_model", str),
    "CONSOLIDATOR_MODEL": ("consolidator_model", str),
    "CLAUDE_API_KEY": ("claude_api_key", str),
    "OPENAI_API_KEY": ("openai_api_key", str),
    "GEMINI_API_KEY": ("gemini_api_key", str),
    "MODEL_CLAUDE": ("model_claude", str),
    "MODEL_GPT": ("model_gpt", str),
    "MODEL_GEMINI": ("model_gemini", str),
    "API_TIMEOUT": ("api_timeout", float),
    "RATE_LIMIT_SECONDS": ("rate_limit_seconds", float),
    "MAX_SUMMARY_INPUT_TOKENS": ("max_summary_input_tokens", int),
    "MAX_EXAM_INPUT_TOKENS": ("max_exam_input_tokens", int),
    "FALLBACK_SUMMARY_WORDS": ("fallback_summary_words", int),
    "STATE_URL": ("state_url", str),
    "PROGRESS_REDIS_URL": ("progress_redis_url", str),
}

_ALIASES = {
    "max_tokens": "chunk_size",
    "overlap": "chunk_overlap",
}


class PipelineSettings(BaseModel):
    transcript_dir: str = Field("transcripts", description="Directory scanned for .txt transcripts")
    output_dir: str = Field("output", description="Root directory for every generated artifact")
    logs_dir: Optional[str] = Field(None, description="Directory for pipeline.log; console only when unset")
    chunk_size: int = Field(1500, description="Target chunk size in estimated tokens")
    chunk_overlap: int = Field(200, description="Tokens repeated from the previous chunk's tail")
    summarizer_model: str = Field("claude", description="Model family used for chunk summaries")
    consolidator_model: str = Field("gpt", description="Model family used for consolidation and exam materials")
    claude_api_key: Optional[str] = Field(None, description="API key for the claude family")
    openai_api_key: Optional[str] = Field(None, description="API key for the gpt family")
    gemini_api_key: Optional[str] = Field(None, description="API key for the gemini family")
    model_claude: str = Field("claude-3-5-sonnet-latest")
    model_gpt: str = Field("gpt-4o-mini")
    model_gemini: str = Field("gemini-1.5-flash")
    api_timeout: float = Field(60.0, description="Per-request timeout in seconds handed to the client")
    rate_limit_seconds: float = Field(1.0, description="Minimum delay between consecutive generation calls")
    max_summary_input_tokens: int = Field(100000, description="Token budget for a single summary request")
    max_exam_input_tokens: int = Field(50000, description="Token budget for exam-material requests")
    fallback_summary_words: int = Field(50, description="Words kept in a fallback summary")
    state_url: Optional[str] = Field(None, description="State location: JSON path or SQL URL")
    progress_redis_url: Optional[str] = Field(None, description="Redis URL for progress snapshots")

    @model_validator(mode="after")
    def _check_consistency(self) -> "PipelineSettings":
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ValueError(f"chunk_overlap must not be negative, got {self.chunk_overlap}")
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than chunk_size ({self.chunk_size})"
            )
        for name in ("summarizer_model", "consolidator_model"):
            family = getattr(self, name).lower()
            if family not in MODEL_FAMILIES:
                raise ValueError(f"{name} must be one of {', '.join(MODEL_FAMILIES)}, got {family!r}")
            setattr(self, name, family)
        if self.rate_limit_seconds < 0:
            raise ValueError("rate_limit_seconds must not be negative")
        if self.api_timeout <= 0:
            raise ValueError("api_timeout must be positive")
        if self.max_summary_input_tokens <= 0 or self.max_exam_input_tokens <= 0:
            raise ValueError("input token budgets must be positive")
        if self.fallback_summary_words <= 0:
            raise ValueError("fallback_summary_words must be positive")
        return self

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir)

    @property
    def resolved_state_url(self) -> str:
        return self.state_url or str(self.output_path / ".pipeline_state.json")

    def api_key_for(self, family: str) -> Optional[str]:
        return {"claude": self.claude_api_key, "gpt": self.openai_api_key, "gemini": self.gemini_api_key}.get(family)

    def model_for(self, family: str) -> str:
        return {"claude": self.model_claude, "gpt": self.model_gpt, "gemini": self.model_gemini}[family]


def load_env(env_path: Path | str = ".env", *, override: bool = False) -> None:
    """Lightweight .env loader; existing variables win unless ``override``."""
    path = Path(env_path)
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if override or key not in os.environ:
            os.environ[key] = value


def normalize_settings(settings: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Resolve alias keys and drop unset (None) values."""
    if settings is None:
        return {}
    normalized = {key: value for key, value in settings.items() if value is not None}
    for alias, target in _ALIASES.items():
        if alias in normalized:
            value = normalized.pop(alias)
            normalized.setdefault(target, value)
    return normalized


def settings_from_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    for env_name, (field_name, cast) in _ENV_FIELDS.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            values[field_name] = cast(raw)
        except ValueError as exc:
            raise ConfigurationError(f"{env_name} has an invalid value {raw!r}: {exc}") from exc
    return values


def load_settings(
    override: Optional[Dict[str, Any]] = None,
    *,
    env_file: Path | str | None = ".env",
    environ: Optional[Dict[str, str]] = None,
) -> PipelineSettings:
    """Build the configuration value once: defaults < .env < environment < override."""
    if env_file and environ is None:
        load_env(env_file)
    values = settings_from_env(environ)
    values.update(normalize_settings(override))
    try:
        return PipelineSettings(**values)
    except ValidationError as exc:
        messages = "; ".join(error["msg"] for error in exc.errors())
        raise ConfigurationError(f"Invalid configuration: {messages}") from exc


__all__ = ["MODEL_FAMILIES", "PipelineSettings", "load_env", "load_settings", "normalize_settings", "settings_from_env"]
