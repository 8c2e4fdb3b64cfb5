"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup, so a malformed value fails fast with a clear error message.

Usage:
    from escrow_sync.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_PACKAGE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    """Central configuration for the escrow sync engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://escrow_sync:escrow_sync_dev"
        "@localhost:5432/escrow_sync"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False
    db_query_max_attempts: int = 3

    # --- Networks ---
    network_cache_ttl_seconds: int = 300  # 5 minutes
    default_testnet_network: str = "solana-devnet"
    default_mainnet_network: str = "solana-mainnet"

    # --- Chain credentials & artefacts ---
    evm_arbitrator_private_key: str = ""
    # JSON array of the 64 secret key bytes, or a path to a keypair file
    solana_arbitrator_keypair: str = ""
    solana_idl_path: str = ""
    evm_abi_path: str = str(_PACKAGE_DIR / "contracts" / "escrow_abi.json")
    evm_receipt_timeout_seconds: int = 120

    # --- Listeners ---
    run_listeners_in_api: bool = True
    listener_reconnect_delay_seconds: float = 5.0
    listener_startup_timeout_seconds: float = 10.0

    # --- Deadline Monitor ---
    escrow_monitor_enabled: bool = False
    escrow_monitor_interval_seconds: int = 60
    escrow_monitor_batch_size: int = 50
    auto_cancel_delay_seconds: int = 0
    auto_cancel_eligibility_check: bool = True
    auto_cancel_balance_check: bool = True

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def default_network_name(self) -> str:
        """Network used when a caller does not name one."""
        if self.is_production:
            return self.default_mainnet_network
        return self.default_testnet_network


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
