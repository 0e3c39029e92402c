"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


class LedgerConfig(BaseSettings):
    """Retail ledger configuration"""

    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///ledger.db
    default_currency: str = "USD"

    # Concurrency
    lock_timeout_seconds: float = 5.0

    # Account opening rules
    min_opening_balance_savings: str = "0.00"
    min_opening_balance_current: str = "0.00"
    min_opening_balance_investment: str = "0.00"
    one_active_account_per_type: bool = True

    # Analytics
    analytics_top_categories: int = 5

    # Notifications
    notification_webhook_url: str = ""  # Empty = log channel only
    notification_timeout: float = 2.0
    notification_workers: int = 2

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False

    def opening_minimums(self) -> Dict[str, str]:
        """Minimum opening balance per account type value"""
        return {
            "savings": self.min_opening_balance_savings,
            "current": self.min_opening_balance_current,
            "investment": self.min_opening_balance_investment,
        }


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
