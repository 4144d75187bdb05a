"""x402guard service configuration."""

from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Configuration for the payment policy engine and its API."""

    model_config = ConfigDict(
        env_prefix="X402_",
        env_file=".env",
        extra="ignore",  # Ignore extra fields from .env
    )

    # API server
    host: str = "127.0.0.1"
    port: int = 8402
    log_level: str = "INFO"

    # Agent signer (hex private key)
    signer_private_key: Optional[str] = None

    # Chain
    rpc_url: str = "https://data-seed-prebsc-1-s1.binance.org:8545"
    chain_id: int = 97
    native_symbol: str = "BNB"
    rpc_max_retries: int = 3
    rpc_retry_base_delay_ms: int = 200
    swap_router_address: Optional[str] = None
    wrapped_native_address: Optional[str] = None
    # Receipt polling; the full budget must stay under execution_timeout_seconds
    confirmation_poll_interval_seconds: float = 3.0
    confirmation_max_attempts: int = 30

    # Ledger store
    ledger_url: Optional[str] = None
    ledger_db_path: Optional[str] = None
    ledger_timeout: float = 5.0

    # Payment lifecycle
    session_ttl_minutes: int = 30
    intent_ttl_seconds: int = 3600
    execution_timeout_seconds: float = 120.0
    preview_high_value_threshold: str = "0.5"


settings = Settings()
