"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings

from .currency import Currency


class EngineConfig(BaseSettings):
    """Loan engine configuration"""

    # Storage configuration
    database_url: str = "sqlite:///loan_engine.db"

    # Loan term limits
    max_annual_rate_percent: str = "30"
    max_term_months: int = 480
    default_currency: str = "USD"

    # Payment application rules
    payoff_tolerance: str = "0.01"  # Outstanding balance treated as fully repaid
    balloon_offset_days: int = 30
    prepayment_reference: str = "PRINCIPAL_PREPAYMENT"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # stderr when unset

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False

    @property
    def payoff_tolerance_amount(self) -> Decimal:
        return Decimal(self.payoff_tolerance)

    @property
    def max_annual_rate(self) -> Decimal:
        return Decimal(self.max_annual_rate_percent)

    @property
    def currency(self) -> Currency:
        return Currency[self.default_currency.upper()]


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
