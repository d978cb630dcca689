"""
Configuration Management Module

Centralized configuration using pydantic-settings for environment-based
configuration. Every value can be overridden with a SERVICING_* variable.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "loan_servicing.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"

    # Business rules configuration
    currency: str = "MXN"
    payment_frequency: str = "weekly"  # weekly, bi_weekly, monthly

    # Penalty policy (external input, never derived by the engine)
    penalty_kind: str = "tiered"  # percentage, flat, tiered
    penalty_rate: str = "0.10"
    penalty_flat_fee: str = "50.00"
    penalty_threshold: str = "500.00"  # tiered: flat below, percentage at/above

    # Concurrency configuration
    lock_timeout_seconds: float = 5.0

    class Config:
        env_prefix = "SERVICING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ServicingConfig()


def get_config() -> ServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ServicingConfig:
    """Reload configuration from environment"""
    global config
    config = ServicingConfig()
    return config
