"""Settings for the escrow bridge, loaded with pydantic-settings.

Values come from the environment or a local .env file. A malformed value
fails validation the first time settings are read, so a bad deploy stops
at startup.

HEDERA_OPERATOR_ID and HEDERA_OPERATOR_KEY are server-only. Nothing outside
this module and the consensus client factory reads them.

    from tagchain_escrow.config import get_settings
    topic = get_settings().consensus_topic_escrow
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Tag Chain escrow bridge."""

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
    cors_allow_origins: list[str] = ["*"]

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://tagchain:tagchain_dev"
        "@localhost:5432/tagchain_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours
    redis_reconcile_claim_ttl_seconds: int = 120

    # --- Consensus ledger ---
    # Master switch for ledger submissions. When off, transitions are still
    # committed and logged, but nothing is submitted.
    feature_onchain: bool = False
    consensus_backend: Literal["hedera", "simulated"] = "hedera"
    # Single canonical variable; no fallback to client-side VITE_* names.
    hedera_network: Literal["testnet", "mainnet", "previewnet"] = "testnet"
    hedera_operator_id: str = ""
    hedera_operator_key: str = ""
    consensus_gateway_url: str = "http://localhost:5551"
    consensus_topic_escrow: str = ""
    consensus_topic_verification: str = ""
    consensus_submit_timeout_seconds: float = 30.0
    consensus_request_timeout_seconds: float = 10.0
    consensus_receipt_poll_interval_seconds: float = 0.5
    consensus_receipt_timeout_seconds: float = 25.0

    # --- Escrow contract (optional side channel) ---
    contract_enabled: bool = False
    contract_simulate: bool = True
    escrow_contract_id: str = ""
    contract_call_timeout_seconds: float = 15.0

    # --- Reconciliation ---
    reconcile_batch_size: int = 50
    reconcile_interval_seconds: float = 60.0
    # Unset: consensus_submit_timeout_seconds plus a margin.
    reconcile_min_age_seconds: float | None = None

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def verification_topic(self) -> str:
        """Topic for verification attestations (defaults to the escrow topic)."""
        return self.consensus_topic_verification or self.consensus_topic_escrow


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings are read once per process; tests call get_settings.cache_clear()."""
    return Settings()
