"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Dict, Literal, Optional


class LedgerConfig(BaseSettings):
    """Loan ledger configuration"""

    # Storage configuration
    storage_backend: Literal["sqlite", "memory"] = "sqlite"
    database_url: str = "sqlite:///loan_ledger.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "MYR"
    currency_precision: Dict[str, int] = {}  # Overrides, e.g. {"KWD": 3}
    loan_id_max_retries: int = 5
    installment_overpayment: Literal["allow", "reject"] = "allow"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False

    @property
    def sqlite_path(self) -> str:
        """Filesystem path of the SQLite database"""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[len("sqlite:///"):] or ":memory:"
        return self.database_url


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
