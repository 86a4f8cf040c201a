"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanEngineConfig(BaseSettings):
    """Loan engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///loan_engine.db"  # Default SQLite

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Calendar and currency
    local_utc_offset_hours: int = -4  # Santo Domingo, no DST
    currency: str = "DOP"

    # Business rules configuration
    paid_tolerance_ratio: str = "0.01"  # Installment counts as paid within 1%
    payment_sum_tolerance: str = "0.01"  # amount == principal + interest + late_fee

    # Authoritative aggregate reads after deletions
    aggregate_source_url: Optional[str] = None  # If None, no authoritative source
    aggregate_api_key: Optional[str] = None
    aggregate_timeout_seconds: float = 2.0
    aggregate_settle_delay_seconds: float = 0.25
    aggregate_read_attempts: int = 3
    aggregate_read_backoff_seconds: float = 0.2
    require_authoritative_aggregates: bool = False  # Fail instead of falling back

    # Global default late-fee policy (applied at origination when omitted)
    default_late_fee_enabled: bool = True
    default_late_fee_rate: str = "2"
    default_grace_period_days: int = 3
    default_max_late_fee: str = "0"  # 0 = no cap
    default_late_fee_calculation_type: str = "daily"

    # Feature flags
    enable_history: bool = True

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanEngineConfig()


def get_config() -> LoanEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanEngineConfig:
    """Reload configuration from environment"""
    global config
    config = LoanEngineConfig()
    return config
