"""Authoritative season lookup against the Evermark voting contract.

The contract is the economic source of truth for seasons and votes, but RPC
endpoints are flaky. Every read here is bounded by a timeout and reports
absence or failure as ``None`` and callers fall back to the calculated clock.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from evermark.models.season import AuthoritativeSeason

if TYPE_CHECKING:
    from web3 import AsyncWeb3

    from evermark.config import Settings

logger = logging.getLogger(__name__)

VOTING_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "getCurrentSeason",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "season", "type": "uint256"}],
        "name": "getSeasonInfo",
        "outputs": [
            {"name": "startTime", "type": "uint256"},
            {"name": "endTime", "type": "uint256"},
            {"name": "active", "type": "bool"},
            {"name": "totalVotes", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


def _from_unix(seconds: int) -> datetime:
    return datetime.fromtimestamp(int(seconds), tz=UTC)


class ContractSeasonSource:
    """Reads the current season from the voting contract over JSON-RPC."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        timeout_seconds: float = 10.0,
        web3: AsyncWeb3 | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._web3 = web3 or self._build_client(rpc_url, timeout_seconds)
        self._contract = self._web3.eth.contract(
            address=self._web3.to_checksum_address(contract_address),
            abi=VOTING_ABI,
        )

    @staticmethod
    def _build_client(rpc_url: str, timeout_seconds: float) -> AsyncWeb3:
        from web3 import AsyncHTTPProvider, AsyncWeb3

        return AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds})
        )

    async def _call(self, fn: Any) -> Any:
        return await asyncio.wait_for(fn.call(), timeout=self.timeout_seconds)

    async def current_season_number(self) -> int | None:
        """Season number the contract considers current, or None."""
        try:
            number = await self._call(self._contract.functions.getCurrentSeason())
        except Exception:  # RPC, ABI decode, and timeout errors all mean "unavailable"
            logger.warning("chain_current_season_failed", exc_info=True)
            return None
        return int(number) if number else None

    async def season_info(self, number: int) -> AuthoritativeSeason | None:
        """Start, end, active flag and vote total for *number*, or None."""
        try:
            raw = await self._call(self._contract.functions.getSeasonInfo(number))
        except Exception:  # RPC, ABI decode, and timeout errors all mean "unavailable"
            logger.warning("chain_season_info_failed season=%d", number, exc_info=True)
            return None
        if not raw:
            return None
        start_time, end_time, active, total_votes = raw
        if not start_time and not end_time:
            return None
        return AuthoritativeSeason(
            number=number,
            start_time=_from_unix(start_time),
            end_time=_from_unix(end_time),
            active=bool(active),
            total_votes=int(total_votes),
        )

    async def current_season(self) -> AuthoritativeSeason | None:
        number = await self.current_season_number()
        if number is None:
            return None
        return await self.season_info(number)


def build_contract_source(settings: Settings) -> ContractSeasonSource | None:
    """Return a contract source when the chain is enabled, otherwise None."""
    if not settings.chain_enabled:
        logger.info("chain_source_disabled")
        return None
    logger.info("chain_source_enabled contract=%s", settings.voting_contract_address)
    return ContractSeasonSource(
        rpc_url=settings.chain_rpc_url,
        contract_address=settings.voting_contract_address,
        timeout_seconds=settings.chain_timeout_seconds,
    )
