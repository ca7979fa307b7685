"""Season transition models: transition records, outcomes, and alerts."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

TransitionStatus = Literal["in_progress", "failed", "completed"]

OutcomeStatus = Literal[
    "not_in_window",
    "not_needed",
    "idle",
    "already_completed",
    "locked",
    "phase_completed",
    "phase_failed",
]

AlertType = Literal[
    "phase_failure",
    "tally_failure",
    "archive_failure",
    "leaderboard_failure",
    "critical_failure",
]


class TransitionRecord(BaseModel):
    """Progress of one (from-season, to-season) rollover."""

    id: str
    from_season: int
    to_season: int
    phases_completed: list[str] = Field(default_factory=list)
    current_phase: str | None = None
    status: TransitionStatus = "in_progress"
    error_message: str | None = None
    transition_type: str = "automatic"
    initiated_by: str = "system"
    started_at: datetime | None = None
    completed_at: datetime | None = None


class TransitionOutcome(BaseModel):
    """What a single trigger did. Serialised as the trigger's JSON response."""

    status: OutcomeStatus
    timestamp: datetime
    phase: str | None = None
    description: str = ""
    transition_id: str | None = None
    current_season: int
    next_season: int
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status == "phase_failed"

    @property
    def status_code(self) -> int:
        return 500 if self.failed else 200

    def to_response(self) -> dict[str, Any]:
        """Machine-parsable body for the periodic-trigger caller."""
        if self.failed:
            return {
                "error": "Transition phase failed",
                "phase": self.phase,
                "message": self.message,
                "transitionId": self.transition_id,
                "timestamp": self.timestamp.isoformat(),
            }
        body: dict[str, Any] = {
            "success": True,
            "status": self.status,
            "phase": self.phase,
            "description": self.description,
            "transitionId": self.transition_id,
            "currentSeason": self.current_season,
            "nextSeason": self.next_season,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.message:
            body["message"] = self.message
        body.update(self.details)
        return body


class AlertEvent(BaseModel):
    """An operator-facing alert. Delivery is best-effort."""

    type: AlertType
    message: str
    phase: str | None = None
    transition_id: str | None = None
    season: int | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
