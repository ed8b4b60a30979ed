"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanServicingConfig(BaseSettings):
    """Loan servicing core configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"  # memory:// for in-process storage
    lock_wait_timeout_seconds: float = 10.0  # Per-key lock wait and SQLite busy timeout
    
    # Identifier issuance
    branch_code: str = "00"
    loan_prefix: str = "LN"
    payment_prefix: str = "PM"
    
    # Business rules configuration
    default_currency: str = "UGX"
    default_after_days: int = 180  # Days past loan duration before an unpaid loan is defaulted
    
    # Batch jobs
    sweeper_refresh_tracking: bool = True
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    
    class Config:
        env_prefix = "LOANSVC_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
