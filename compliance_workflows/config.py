"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WorkflowSettings(BaseSettings):
    """Compliance workflow engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///workflows.db"  # memory://, sqlite:///path, postgresql://...

    # SLA configuration
    sla_sweep_interval_seconds: int = 300
    default_warning_threshold_pct: float = 0.8
    default_critical_threshold_hours: float = 24.0

    # Template publishing
    publish_max_retries: int = 5

    # Event delivery
    outbox_max_size: int = 10000
    enable_kafka_events: bool = False
    kafka_bootstrap_servers: str = ""
    kafka_topic_prefix: str = "cwf"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "CWF_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WorkflowSettings()


def get_config() -> WorkflowSettings:
    """Get global configuration instance"""
    return config


def reload_config() -> WorkflowSettings:
    """Reload configuration from environment"""
    global config
    config = WorkflowSettings()
    return config
