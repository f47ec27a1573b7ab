from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for the Redis notification sink."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    queue: str = "procession:notifications"


class NotificationConfig(BaseModel):
    """Notification sink settings."""

    backend: Literal["inmemory", "log", "redis"] = "log"
    redis: RedisConfig = RedisConfig()


class EngineSettings(BaseModel):
    """Execution engine timing settings."""

    automated_settle_seconds: float = 2.0
    integration_settle_seconds: float = 3.0
    # Wall-clock seconds that make up one SLA hour; lowered in tests and demos.
    seconds_per_hour: float = 3600.0
    default_sla_hours: float = 24.0
    integration_timeout_seconds: float = 10.0


class AutomationSettings(BaseModel):
    """Process automation layer settings."""

    enable_ai_decisions: bool = True
    enable_auto_recovery: bool = True
    enable_realtime_monitoring: bool = True
    max_retry_attempts: int = Field(default=3, ge=0)
    escalation_threshold_hours: float = 24.0
    high_value_amount: float = 10000.0
    routing_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    notification_interval_seconds: float = 5.0
    recovery_interval_seconds: float = 10.0
    metrics_interval_seconds: float = 60.0


class MonitorSettings(BaseModel):
    """Process monitor alerting settings."""

    alert_buffer_size: int = 100
    sla_breach_hours: float = 24.0
    failure_spike_threshold: int = 5
    efficiency_floor: float = 0.5
    tenant_failure_rate: float = 0.2
    check_interval_seconds: float = 30.0


class AdvisorSettings(BaseModel):
    """AI decision advisor settings. No model means no AI advisor."""

    model: Optional[str] = None
    timeout_seconds: float = 10.0


class ProcessionConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineSettings = EngineSettings()
    automation: AutomationSettings = AutomationSettings()
    monitor: MonitorSettings = MonitorSettings()
    advisor: AdvisorSettings = AdvisorSettings()
    notifications: NotificationConfig = NotificationConfig()
    database_url: Optional[str] = None
    patterns_path: str = "patterns"


def load_config(path: Optional[str] = None) -> ProcessionConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PROCESSION_CONFIG env
            variable or 'procession.yaml' in the current directory.
    """

    config_path = path or os.getenv("PROCESSION_CONFIG", "procession.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ProcessionConfig(**data)
    else:
        config = ProcessionConfig()

    env_db_url = os.getenv("PROCESSION_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
