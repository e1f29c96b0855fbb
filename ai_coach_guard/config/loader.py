"""
Configuration management and loading.

Handles quota limits, AI adapter settings and storage options.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


class RateLimitBackend(Enum):
    """Where rate-limit windows are kept."""
    MEMORY = "memory"
    SHARED = "shared"


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-identity throttle settings."""
    window_seconds: float = 10
    max_requests: int = 1
    backend: RateLimitBackend = RateLimitBackend.MEMORY
    sweep_multiplier: int = 360

    def __post_init__(self):
        """Validate throttle values are positive."""
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if self.max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if self.sweep_multiplier <= 0:
            raise ValueError("sweep_multiplier must be > 0")

    @property
    def sweep_interval_seconds(self) -> float:
        return self.window_seconds * self.sweep_multiplier


@dataclass(frozen=True)
class CreditConfig:
    """Hourly pool and daily cap for AI coaching credits."""
    hourly_pool: int = 5
    daily_cap: int = 20
    reset_timezone: str = "UTC"

    def __post_init__(self):
        """Validate credit limits and the reset timezone."""
        if self.hourly_pool <= 0:
            raise ValueError("hourly_pool must be > 0")
        if self.daily_cap <= 0:
            raise ValueError("daily_cap must be > 0")
        try:
            ZoneInfo(self.reset_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown reset_timezone: {self.reset_timezone}")

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.reset_timezone)


@dataclass(frozen=True)
class ErrorLogConfig:
    """Retention policy for the error log."""
    retention_days: int = 30

    def __post_init__(self):
        if self.retention_days <= 0:
            raise ValueError("retention_days must be > 0")


@dataclass(frozen=True)
class AIConfig:
    """Settings for the generative-AI provider call."""
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 30
    max_output_tokens: int = 200
    temperature: float = 0.7
    max_question_length: int = 500

    def __post_init__(self):
        """Validate AI call settings."""
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be > 0")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if self.max_question_length <= 0:
            raise ValueError("max_question_length must be > 0")


@dataclass(frozen=True)
class ChatConfig:
    """Lifetime of in-memory coaching conversations."""
    max_age_seconds: float = 3600
    sweep_interval_seconds: float = 3600

    def __post_init__(self):
        if self.max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be > 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Database location and write retry policy."""
    db_path: str = "ai_coach_guard.db"
    persist_retries: int = 3

    def __post_init__(self):
        if not self.db_path:
            raise ValueError("db_path is required and cannot be empty")
        if self.persist_retries <= 0:
            raise ValueError("persist_retries must be > 0")


@dataclass(frozen=True)
class CoachConfig:
    """Complete AI coach configuration."""
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    credits: CreditConfig = field(default_factory=CreditConfig)
    errors: ErrorLogConfig = field(default_factory=ErrorLogConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


# Allowed keys and their expected types per section
_SECTION_SCHEMA: Dict[str, Dict[str, tuple]] = {
    "rate_limit": {
        "window_seconds": (int, float),
        "max_requests": (int,),
        "backend": (str,),
        "sweep_multiplier": (int,),
    },
    "credits": {
        "hourly_pool": (int,),
        "daily_cap": (int,),
        "reset_timezone": (str,),
    },
    "errors": {
        "retention_days": (int,),
    },
    "ai": {
        "model": (str,),
        "timeout_seconds": (int, float),
        "max_output_tokens": (int,),
        "temperature": (int, float),
        "max_question_length": (int,),
    },
    "chat": {
        "max_age_seconds": (int, float),
        "sweep_interval_seconds": (int, float),
    },
    "storage": {
        "db_path": (str,),
        "persist_retries": (int,),
    },
}


def load_coach_config(path: str) -> CoachConfig:
    """Load and validate coach configuration from YAML file.

    Every section and key is optional; omitted values keep their defaults.
    Unknown keys and wrongly typed values are rejected so a typo never
    silently falls back to a default limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated CoachConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Coach config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return CoachConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_SCHEMA)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(name, raw_config.get(name))
        for name in _SECTION_SCHEMA
    }

    rate_limit = sections["rate_limit"]
    if "backend" in rate_limit:
        rate_limit["backend"] = _parse_backend(rate_limit["backend"])

    return CoachConfig(
        rate_limit=RateLimitConfig(**rate_limit),
        credits=CreditConfig(**sections["credits"]),
        errors=ErrorLogConfig(**sections["errors"]),
        ai=AIConfig(**sections["ai"]),
        chat=ChatConfig(**sections["chat"]),
        storage=StorageConfig(**sections["storage"]),
    )


def load_config_or_default(path: Optional[str]) -> CoachConfig:
    """Load configuration from path, or return defaults when no path is given."""
    if path is None:
        return CoachConfig()
    return load_coach_config(path)


def _parse_section(name: str, data: Optional[Any]) -> Dict[str, Any]:
    """Validate one configuration section.

    Args:
        name: Section name, used in error messages
        data: Raw section data from YAML

    Returns:
        Dictionary of validated keyword arguments

    Raises:
        ValueError: If the section is malformed
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    schema = _SECTION_SCHEMA[name]
    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    parsed = {}
    for key, value in data.items():
        expected = schema[key]
        # bool is a subclass of int
        if isinstance(value, bool) or not isinstance(value, expected):
            type_names = " or ".join(t.__name__ for t in expected)
            raise ValueError(f"'{key}' in {name} must be {type_names}")
        parsed[key] = value
    return parsed


def _parse_backend(value: str) -> RateLimitBackend:
    try:
        return RateLimitBackend(value.lower())
    except ValueError:
        valid = [backend.value for backend in RateLimitBackend]
        raise ValueError(f"'backend' in rate_limit must be one of: {valid}")
