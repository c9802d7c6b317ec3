"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class LendingConfig(BaseSettings):
    """Lending core configuration"""

    # Database configuration
    database_url: str = "sqlite:///lending.db"  # Default SQLite
    transaction_timeout_seconds: int = 15  # Bounded unit of work, retryable on expiry

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Money configuration (amounts are always kept to two places)
    balance_epsilon: str = "0.01"  # Residues at or below this are negligible

    # Business rules configuration
    min_days_before_first_collection: int = 7
    default_day_count_convention: str = "thirty_360"
    payment_active_statuses: List[str] = ["active", "accounted"]
    payment_number_attempts: int = 10

    # Performance configuration
    summary_cache_ttl_seconds: int = 300  # 5 minutes default

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
