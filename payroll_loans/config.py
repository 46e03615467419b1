"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional


class LoanEngineConfig(BaseSettings):
    """Payroll loan engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="PAYROLL_LOANS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage configuration
    storage_backend: Literal["memory", "sqlite"] = "sqlite"
    sqlite_path: str = "payroll_loans.db"
    sqlite_timeout_seconds: float = 5.0

    # Transaction configuration
    max_transaction_retries: int = 3
    retry_backoff_seconds: float = 0.05

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    api_page_size: int = 50

    # Logging configuration
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_auto_deduct: bool = True
    default_preferred_deduction_day: Literal["due_date", "month_start", "month_end"] = "month_end"
    require_known_employee: bool = False

    # Feature flags
    enable_audit_logging: bool = True


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
