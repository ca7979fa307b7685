"""Tests for application configuration."""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from evermark.config import DEFAULT_SEASON_EPOCH, Settings


class TestAdminToken:
    def test_production_requires_admin_token(self) -> None:
        with pytest.raises(ValidationError, match="ADMIN_TOKEN"):
            Settings(evermark_env="production", admin_token="")

    def test_production_with_token(self) -> None:
        settings = Settings(evermark_env="production", admin_token="s3cret")
        assert settings.admin_token == "s3cret"

    def test_development_allows_missing_token(self) -> None:
        settings = Settings(evermark_env="development", admin_token="")
        assert settings.admin_token == ""


class TestChainSettings:
    def test_chain_disabled_by_default(self) -> None:
        assert Settings().chain_enabled is False

    def test_chain_enabled_requires_rpc_and_contract(self) -> None:
        with pytest.raises(ValidationError, match="CHAIN_RPC_URL"):
            Settings(chain_enabled=True, chain_rpc_url="https://rpc.example")

    def test_chain_enabled_with_target(self) -> None:
        settings = Settings(
            chain_enabled=True,
            chain_rpc_url="https://rpc.example",
            voting_contract_address="0x0000000000000000000000000000000000000001",
        )
        assert settings.chain_enabled is True


class TestSeasonEpoch:
    def test_default_epoch_is_monday_utc(self) -> None:
        assert Settings().season_epoch == DEFAULT_SEASON_EPOCH
        assert DEFAULT_SEASON_EPOCH.weekday() == 0

    def test_naive_epoch_read_as_utc(self) -> None:
        settings = Settings(season_epoch=datetime(2024, 3, 4))
        assert settings.season_epoch == datetime(2024, 3, 4, tzinfo=UTC)

    def test_aware_epoch_converted_to_utc(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        settings = Settings(season_epoch=datetime(2024, 3, 4, 2, 0, tzinfo=plus_two))
        assert settings.season_epoch == datetime(2024, 3, 4, 0, 0, tzinfo=UTC)
        assert settings.season_epoch.utcoffset() == timedelta(0)

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TRANSITION_LEAD_SECONDS", "0")
        monkeypatch.setenv("SEASON_CACHE_TTL_SECONDS", "5")
        settings = Settings()
        assert settings.transition_lead_seconds == 0
        assert settings.season_cache_ttl_seconds == 5.0
