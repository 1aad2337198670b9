"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class TokenTransferConfig(BaseSettings):
    """Token transfer service configuration"""

    model_config = SettingsConfigDict(
        env_prefix="TOKEN_TRANSFER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///token_transfer.db"  # memory://, sqlite:///path, postgresql://...
    wallet_table: str = "wallets"  # test runs point this at test_wallets

    # Seed wallet created on first start
    seed_address: str = "0x0000000000000000000000000000000000000000"
    seed_balance: str = "1000000"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Seconds between cancellation checks while waiting for an account lock
    lock_poll_interval: float = 0.05


# Global configuration instance
config = TokenTransferConfig()


def get_config() -> TokenTransferConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> TokenTransferConfig:
    """Reload configuration from environment"""
    global config
    config = TokenTransferConfig()
    return config
