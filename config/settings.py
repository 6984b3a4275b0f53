"""
Configuration loader for the automation engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./converse_flows.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "flow-workers"
    consumer_concurrency: int = 5       # max concurrent session advances per worker
    delayed_promote_interval: int = 5   # seconds between delayed-queue scans
    retry_backoff_base: int = 30        # base seconds for exponential retry backoff


@dataclass
class GatewayConfig:
    """Platform-level gateway settings; the last stop of credential resolution."""
    evolution_base_url: str = ""
    evolution_api_key: str = ""
    uazapi_base_url: str = ""
    timeout_seconds: float = 30.0
    webhook_url: str = ""
    webhook_events: list[str] = field(default_factory=lambda: [
        "MESSAGES_UPSERT", "MESSAGES_UPDATE", "CONNECTION_UPDATE", "SEND_MESSAGE",
    ])
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 60.0


@dataclass
class FlowConfig:
    stale_lock_seconds: int = 60
    max_steps_per_advance: int = 25
    retry_ceiling: int = 3
    retry_delay_seconds: int = 30
    resume_tolerance_seconds: int = 5
    sweep_interval_seconds: int = 5
    sweep_batch_size: int = 50
    locked_reschedule_seconds: int = 15
    error_reschedule_seconds: int = 5
    max_job_attempts: int = 2
    stuck_session_minutes: int = 5


@dataclass
class MaturationConfig:
    default_min_delay_seconds: int = 30
    default_max_delay_seconds: int = 120
    max_alerts: int = 100


@dataclass
class StorageConfig:
    blob_dir: str = "./data/blobs"
    public_base_url: str = "/media"


@dataclass
class Settings:
    app_name: str = "ConverseFlows"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    flow: FlowConfig = field(default_factory=FlowConfig)
    maturation: MaturationConfig = field(default_factory=MaturationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


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


def _build_section(cls, raw: dict[str, Any]):
    """Instantiate a config dataclass from a YAML mapping, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known})


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
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            settings.database = _build_section(DatabaseConfig, raw["database"])
        if "queue" in raw:
            settings.queue = _build_section(QueueConfig, raw["queue"])
        if "gateway" in raw:
            settings.gateway = _build_section(GatewayConfig, raw["gateway"])
        if "flow" in raw:
            settings.flow = _build_section(FlowConfig, raw["flow"])
        if "maturation" in raw:
            settings.maturation = _build_section(MaturationConfig, raw["maturation"])
        if "storage" in raw:
            settings.storage = _build_section(StorageConfig, raw["storage"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
