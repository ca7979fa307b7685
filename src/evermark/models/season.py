"""Season models: season info, resolved state, sync status, comparison."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

SeasonStatus = Literal["preparing", "active", "finalizing", "completed"]

SeasonPhaseName = Literal["idle", "voting", "tallying", "rewarding"]

SeasonSource = Literal["contract", "calculated"]

VALID_SEASON_STATUSES: frozenset[str] = frozenset(
    ("preparing", "active", "finalizing", "completed")
)


class SeasonInfo(BaseModel):
    """One weekly season. Immutable; start inclusive, end inclusive to the millisecond."""

    model_config = ConfigDict(frozen=True)

    number: int
    year: int
    week: str
    start_timestamp: datetime
    end_timestamp: datetime
    status: str
    phase: SeasonPhaseName | None = None


class AuthoritativeSeason(BaseModel):
    """Season record as read from the voting contract."""

    model_config = ConfigDict(frozen=True)

    number: int
    start_time: datetime
    end_time: datetime
    active: bool = False
    total_votes: int = 0


class SystemStatus(BaseModel):
    last_checked: datetime
    last_transition: datetime
    auto_transition: bool = True
    maintenance_mode: bool = False


class ContractSync(BaseModel):
    available: bool = False
    season_number: int = 0
    aligned: bool = False


class StorageSync(BaseModel):
    current_folder_ready: bool = False
    previous_folder_finalized: bool = False


class DatabaseSync(BaseModel):
    in_sync: bool = False
    current_status: str | None = None


class SyncStatus(BaseModel):
    """Agreement across the three sources of truth: chain, storage, database."""

    smart_contracts: ContractSync = Field(default_factory=ContractSync)
    storage: StorageSync = Field(default_factory=StorageSync)
    database: DatabaseSync = Field(default_factory=DatabaseSync)


class SeasonState(BaseModel):
    """Canonical season context: current/previous/next plus system and sync blocks."""

    current: SeasonInfo
    previous: SeasonInfo
    next: SeasonInfo
    source: SeasonSource = "calculated"
    system: SystemStatus
    sync: SyncStatus = Field(default_factory=SyncStatus)


class SeasonComparison(BaseModel):
    """Diagnostic only, never changes how the state is resolved."""

    contract_season: int = 0
    contract_available: bool = False
    calculated_season: int
    aligned: bool = False
