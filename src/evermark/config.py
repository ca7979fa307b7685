"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

import pathlib
from datetime import UTC, datetime

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent.parent

# Platform launch. A Monday, so season 1 starts exactly on the epoch.
DEFAULT_SEASON_EPOCH = datetime(2024, 1, 1, tzinfo=UTC)


class Settings(BaseSettings):
    """Evermark season engine configuration.

    All values can be overridden via environment variables or .env file.
    """

    # Database
    database_url: str = "sqlite+aiosqlite:///evermark.db"

    # Environment
    evermark_env: str = "development"

    # Season clock
    season_epoch: datetime = DEFAULT_SEASON_EPOCH
    season_cache_ttl_seconds: float = 30.0

    # Transitions
    transition_cron: str = "* * * * *"
    transition_lead_seconds: int = 3600
    auto_transition: bool = True
    maintenance_mode: bool = False
    lock_timeout_seconds: int = 300

    # On-chain season source (voting contract)
    chain_enabled: bool = False
    chain_rpc_url: str = ""
    voting_contract_address: str = ""
    chain_timeout_seconds: float = 10.0

    # Permanent storage
    storage_root: str = str(PROJECT_ROOT / "storage")

    # Alerting
    alert_webhook_url: str = ""
    alert_timeout_seconds: float = 5.0

    # Admin endpoints
    admin_token: str = ""

    # Logging
    evermark_log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @field_validator("season_epoch")
    @classmethod
    def _epoch_is_utc(cls, value: datetime) -> datetime:
        """Naive epochs are read as UTC; aware ones are converted."""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @model_validator(mode="after")
    def _require_admin_token_in_production(self) -> Settings:
        """Admin endpoints are open in development; production must set a token."""
        if self.evermark_env == "production" and not self.admin_token:
            msg = "ADMIN_TOKEN must be set in production."
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def _require_chain_target(self) -> Settings:
        """An enabled chain source needs both an RPC endpoint and a contract address."""
        if self.chain_enabled and not (self.chain_rpc_url and self.voting_contract_address):
            msg = (
                "CHAIN_ENABLED requires CHAIN_RPC_URL and VOTING_CONTRACT_ADDRESS. "
                "Disable the chain source to run on calculated seasons only."
            )
            raise ValueError(msg)
        return self
