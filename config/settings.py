"""
Configuration loader for the conversation job system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 1024
    api_key: str = ""


@dataclass
class StoreConfig:
    backend: str = "memory"             # "memory" for dev/tests, "redis" for production
    redis_url: str = "redis://localhost:6379"
    namespace: str = "ia"               # prefix for every key written to the shared store


@dataclass
class ConversationConfig:
    ttl_seconds: int = 1800             # sliding expiry window
    sweep_interval: int = 300           # seconds between orphan sweeps


@dataclass
class WorkerConfig:
    max_workers: int = 10
    poll_interval: float = 1.0
    batch_cap: int = 10                 # max claims per tick
    monitor_interval: float = 5.0
    overload_factor: int = 2            # advisory warning when pending > max_workers * factor
    generation_timeout: float = 60.0
    default_max_retries: int = 3
    estimated_job_seconds: float = 2.0
    cleanup_interval_hours: float = 6.0
    cleanup_max_age_hours: int = 24
    stale_after_seconds: int = 600


@dataclass
class AuditConfig:
    backend: str = "memory"             # "memory" | "rest"
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "ConverseWorker"
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "console"         # "console" | "json"
    llm: LLMConfig = field(default_factory=LLMConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _coerce(value: Any, default: Any) -> Any:
    """Cast a YAML/env value to the type of its dataclass default."""
    if value is None:
        return default
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def _build_section(cls, raw: dict[str, Any]):
    """Instantiate a config dataclass from a raw dict, ignoring unknown keys."""
    base = cls()
    kwargs = {}
    for name in cls.__dataclass_fields__:
        if name in raw:
            kwargs[name] = _coerce(raw[name], getattr(base, name))
    return cls(**kwargs)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CONVERSE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _coerce(raw.get("debug"), settings.debug)
        settings.log_level = raw.get("log_level", settings.log_level)
        settings.log_format = raw.get("log_format", settings.log_format)

        if "llm" in raw:
            settings.llm = _build_section(LLMConfig, raw["llm"] or {})
        if "store" in raw:
            settings.store = _build_section(StoreConfig, raw["store"] or {})
        if "conversation" in raw:
            settings.conversation = _build_section(ConversationConfig, raw["conversation"] or {})
        if "worker" in raw:
            settings.worker = _build_section(WorkerConfig, raw["worker"] or {})
        if "audit" in raw:
            settings.audit = _build_section(AuditConfig, raw["audit"] or {})

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
