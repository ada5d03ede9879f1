"""
Engine configuration and model context window mappings.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .constants import (
    DEFAULT_CLEANUP_INTERVAL_SECONDS,
    DEFAULT_CONTEXT_WINDOW,
    DEFAULT_SCORE_THRESHOLDS,
    DEFAULT_SCORE_WEIGHTS,
    DEFAULT_SYSTEM_RESERVED,
    DEFAULT_USER_MESSAGE_RESERVED,
)
from .errors import ValidationError

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-opus-4-5-20251101": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    # DeepSeek
    "deepseek-chat": 64_000,
    "deepseek-reasoner": 64_000,
    # GLM
    "glm-4": 128_000,
    "glm-4-flash": 128_000,
}

# Summarizer engine id → chat model name
DEFAULT_ENGINE_MODELS: dict[str, str] = {
    "claude-code": "claude-sonnet-4-5-20250929",
    "deepseek": "deepseek-chat",
    "iflow": "glm-4-flash",
}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes")


@dataclass
class ContextConfig:
    """Token budget and housekeeping settings for context selection."""

    model_name: str = ""
    # 0 = auto-detect from model name
    context_window: int = 0
    system_reserved: int = DEFAULT_SYSTEM_RESERVED
    user_message_reserved: int = DEFAULT_USER_MESSAGE_RESERVED

    auto_cleanup: bool = True
    cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS

    def __post_init__(self):
        if self.context_window < 0:
            raise ValidationError("context_window must be >= 0")
        if self.system_reserved < 0 or self.user_message_reserved < 0:
            raise ValidationError("reserved token counts must be >= 0")
        if self.cleanup_interval_seconds <= 0:
            raise ValidationError("cleanup_interval_seconds must be > 0")

    @classmethod
    def from_env(cls) -> "ContextConfig":
        return cls(
            model_name=os.getenv("CONTEXT_MODEL", ""),
            context_window=int(os.getenv("CONTEXT_WINDOW", "0")),
            system_reserved=int(
                os.getenv("CONTEXT_SYSTEM_RESERVED", str(DEFAULT_SYSTEM_RESERVED))
            ),
            user_message_reserved=int(
                os.getenv(
                    "CONTEXT_USER_MESSAGE_RESERVED", str(DEFAULT_USER_MESSAGE_RESERVED)
                )
            ),
            auto_cleanup=_env_bool("CONTEXT_AUTO_CLEANUP", True),
            cleanup_interval_seconds=float(
                os.getenv(
                    "CONTEXT_CLEANUP_INTERVAL", str(DEFAULT_CLEANUP_INTERVAL_SECONDS)
                )
            ),
        )

    def get_context_window(self, model_name: Optional[str] = None) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        model_name = model_name or self.model_name
        if not model_name:
            return DEFAULT_CONTEXT_WINDOW
        # Try exact match first, then prefix match
        if model_name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[model_name]
        for key, size in MODEL_CONTEXT_WINDOWS.items():
            if model_name.startswith(key) or key.startswith(model_name):
                return size
        return DEFAULT_CONTEXT_WINDOW


@dataclass
class CompressionConfig:
    """Trigger thresholds, targets and summarizer settings for compression."""

    # Triggers
    max_tokens: int = 10_000
    max_message_count: int = 100
    max_age_hours: float = 168  # 7 days

    # Target: fraction of the original tokens left after compression
    target_token_ratio: float = 0.3
    min_summary_length: int = 100
    max_summary_length: int = 500

    # Summary content
    extract_key_points: bool = True
    max_key_points: int = 5
    preserve_tools: bool = True
    preserve_errors: bool = True

    # Remote summarizer
    summary_model: str = "deepseek"
    summary_temperature: float = 0.3
    summary_timeout_seconds: float = 60.0

    # When to compress
    compress_on_save: bool = True
    compress_on_load: bool = False
    compress_in_background: bool = True
    background_delay_seconds: float = 1.0

    def __post_init__(self):
        if self.max_tokens <= 0 or self.max_message_count <= 0:
            raise ValidationError("compression thresholds must be positive")
        if self.max_age_hours <= 0:
            raise ValidationError("max_age_hours must be positive")
        if not 0 < self.target_token_ratio < 1:
            raise ValidationError("target_token_ratio must be between 0 and 1")
        if self.min_summary_length > self.max_summary_length:
            raise ValidationError("min_summary_length exceeds max_summary_length")
        if self.max_key_points < 0:
            raise ValidationError("max_key_points must be >= 0")
        if self.summary_timeout_seconds <= 0 or self.background_delay_seconds < 0:
            raise ValidationError("timeouts and delays must be non-negative")

    @classmethod
    def from_env(cls) -> "CompressionConfig":
        return cls(
            max_tokens=int(os.getenv("COMPRESSION_MAX_TOKENS", "10000")),
            max_message_count=int(os.getenv("COMPRESSION_MAX_MESSAGES", "100")),
            max_age_hours=float(os.getenv("COMPRESSION_MAX_AGE_HOURS", "168")),
            target_token_ratio=float(os.getenv("COMPRESSION_TARGET_RATIO", "0.3")),
            max_key_points=int(os.getenv("COMPRESSION_MAX_KEY_POINTS", "5")),
            summary_model=os.getenv("COMPRESSION_SUMMARY_MODEL", "deepseek"),
            summary_temperature=float(
                os.getenv("COMPRESSION_SUMMARY_TEMPERATURE", "0.3")
            ),
            summary_timeout_seconds=float(
                os.getenv("COMPRESSION_SUMMARY_TIMEOUT", "60")
            ),
            compress_on_save=_env_bool("COMPRESSION_ON_SAVE", True),
            compress_on_load=_env_bool("COMPRESSION_ON_LOAD", False),
            compress_in_background=_env_bool("COMPRESSION_IN_BACKGROUND", True),
        )


@dataclass
class ScorerConfig:
    """Dimension weights (summing to 100) and importance level thresholds."""

    weights: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_SCORE_WEIGHTS))
    thresholds: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_SCORE_THRESHOLDS)
    )

    def __post_init__(self):
        self.weights = {**DEFAULT_SCORE_WEIGHTS, **self.weights}
        self.thresholds = {**DEFAULT_SCORE_THRESHOLDS, **self.thresholds}
        unknown = set(self.weights) - set(DEFAULT_SCORE_WEIGHTS)
        if unknown:
            raise ValidationError(f"unknown score dimensions: {sorted(unknown)}")
        if sum(self.weights.values()) != 100:
            raise ValidationError("score weights must sum to 100")
        if not self.thresholds["high"] >= self.thresholds["medium"] >= self.thresholds["low"]:
            raise ValidationError("thresholds must satisfy high >= medium >= low")


@dataclass
class MemoryConfig:
    """Top-level configuration for the whole engine."""

    # Empty = in-memory backend
    database_url: str = ""
    context: ContextConfig = field(default_factory=ContextConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    scorer: ScorerConfig = field(default_factory=ScorerConfig)
    engine_models: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_ENGINE_MODELS)
    )

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "MemoryConfig":
        """Load configuration from environment variables (and ``.env``)."""
        if dotenv:
            load_dotenv(override=True)
        engine_models = dict(DEFAULT_ENGINE_MODELS)
        for engine_id in list(engine_models):
            env_name = f"ENGINE_MODEL_{engine_id.upper().replace('-', '_')}"
            engine_models[engine_id] = os.getenv(env_name, engine_models[engine_id])
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            context=ContextConfig.from_env(),
            compression=CompressionConfig.from_env(),
            engine_models=engine_models,
        )
