"""
Configuration loader for the outreach scheduling engine.
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
class DatabaseConfig:
    url: str = "sqlite:///./outreach.db"        # postgresql:// | mysql:// | sqlite://
    echo: bool = False


@dataclass
class QueueConfig:
    backend: str = "memory"                      # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    prefix: str = "outreach-action"              # queue name = f"{prefix}-{tenant_id}"
    attempts: int = 3
    backoff_delay_ms: int = 2000                 # base delay for exponential backoff
    remove_on_complete_age_s: int = 3600
    remove_on_complete_count: int = 100
    remove_on_fail_age_s: int = 24 * 3600
    remove_on_fail_count: int = 500


@dataclass
class WorkerConfig:
    concurrency: int = 2                         # concurrent jobs per tenant
    limiter_max: int = 100                       # jobs per limiter window
    limiter_duration_s: float = 60.0
    idle_minutes: int = 5
    poll_timeout_s: float = 2.0                  # blocking dequeue timeout
    stalled_after_s: float = 900.0               # active jobs older than this are requeued on start
    claim_wait_s: float = 5.0                    # how long a job waits for its claim to commit


@dataclass
class SchedulerConfig:
    enabled: bool = True
    poll_interval_s: int = 60
    reclaim_interval_s: int = 600
    stale_after_minutes: int = 30
    housekeeping_interval_s: int = 300           # idle queue / worker eviction


@dataclass
class DeliveryConfig:
    provider: str = "dry_run"                    # "sendgrid" | "dry_run"
    api_key: str = ""
    base_url: str = "https://api.sendgrid.com"
    default_from_email: str = ""
    timeout_seconds: float = 30.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "OutreachEngine"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


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


def _section(cls, raw: dict[str, Any], current):
    """Build a config dataclass from a raw dict, keeping defaults for missing keys."""
    values = {
        name: raw.get(name, getattr(current, name))
        for name in cls.__dataclass_fields__
    }
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "OUTREACH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)
        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"], settings.queue)
        if "worker" in raw:
            settings.worker = _section(WorkerConfig, raw["worker"], settings.worker)
        if "scheduler" in raw:
            settings.scheduler = _section(SchedulerConfig, raw["scheduler"], settings.scheduler)
        if "delivery" in raw:
            settings.delivery = _section(DeliveryConfig, raw["delivery"], settings.delivery)
        if "logging" in raw:
            settings.logging = _section(LoggingConfig, raw["logging"], settings.logging)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
