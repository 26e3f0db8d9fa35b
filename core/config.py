"""Settings: defaults, optional YAML file, then SCHEDULER_* environment overrides."""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from scheduler.rate_limiter import RateLimits

ENV_PREFIX = "SCHEDULER_"
DEFAULT_CONFIG_FILE = "scheduler.yaml"


class ConfigError(ValueError):
    """Raised when configuration cannot be read or does not validate."""


class RateLimitSettings(BaseModel):
    max_tasks_per_tenant: int = Field(default=10, ge=1)
    max_operations_per_day: int = Field(default=20, ge=1)
    max_executions_per_hour: int = Field(default=60, ge=1)
    task_cooldown_seconds: int = Field(default=60, ge=0)

    def to_limits(self) -> RateLimits:
        return RateLimits(
            max_tasks_per_tenant=self.max_tasks_per_tenant,
            max_operations_per_day=self.max_operations_per_day,
            max_executions_per_hour=self.max_executions_per_hour,
            task_cooldown=timedelta(seconds=self.task_cooldown_seconds),
        )


class RetrySettings(BaseModel):
    retry_interval_hours: float = Field(default=1.0, gt=0)
    max_retry_duration_hours: float = Field(default=48.0, gt=0)

    @property
    def retry_interval(self) -> timedelta:
        return timedelta(hours=self.retry_interval_hours)

    @property
    def max_retry_duration(self) -> timedelta:
        return timedelta(hours=self.max_retry_duration_hours)

    @model_validator(mode="after")
    def check_window(self):
        if self.max_retry_duration_hours < self.retry_interval_hours:
            raise ValueError("max_retry_duration_hours must be >= retry_interval_hours")
        return self


class LoopSettings(BaseModel):
    task_interval_seconds: float = Field(default=10.0, gt=0)
    reminder_interval_seconds: float = Field(default=5.0, gt=0)
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)


class DedupSettings(BaseModel):
    retention_hours: float = Field(default=24.0, gt=0)
    max_entries: int = Field(default=100, ge=1)


class Settings(BaseModel):
    db_url: str = "sqlite+aiosqlite:///scheduler.db"
    log_level: str = "INFO"
    notify_webhook_url: str | None = None
    content_url_template: str | None = None
    rate_limits: RateLimitSettings = Field(default_factory=RateLimitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    loop: LoopSettings = Field(default_factory=LoopSettings)
    dedup: DedupSettings = Field(default_factory=DedupSettings)


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    """Map SCHEDULER_FOO=1 to {"foo": "1"} and SCHEDULER_RETRY__RETRY_INTERVAL_HOURS=2
    to {"retry": {"retry_interval_hours": "2"}}."""
    overrides: dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        path = key[len(ENV_PREFIX):].lower().split("__")
        target = overrides
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value
    return overrides


def _merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> Settings:
    """Build Settings from *path* (or ``scheduler.yaml`` when present) and the environment."""
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    target = Path(path or environ.get(f"{ENV_PREFIX}CONFIG") or DEFAULT_CONFIG_FILE)
    data: dict[str, Any] = {}
    if target.exists():
        try:
            data = yaml.safe_load(target.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {target}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{target} must contain a mapping at the top level")
    elif path is not None:
        raise ConfigError(f"Config file not found: {target}")

    overrides = _env_overrides(environ)
    overrides.pop("config", None)
    try:
        return Settings.model_validate(_merge(data, overrides))
    except ValidationError as e:
        raise ConfigError(str(e)) from e
