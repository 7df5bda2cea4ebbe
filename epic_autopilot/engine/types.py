"""Typed schema of the persisted orchestrator state.

The whole run is described by a single ``OrchestratorState`` record stored at
``.autopilot/state.json``. Models are validated on load so a corrupted or
incompatible file fails fast instead of driving the state machine with
half-understood data. Unknown top-level fields are kept and written back
unchanged.

Example:
    A run that is developing item 9 while 7A waits for review::

        {
            "phase": "DEVELOP",
            "active_item": "9",
            "completed_items": ["1", "2A"],
            "pending_queue": [
                {"item_id": "7A", "request_ref": 41, "status": "awaiting_review", ...}
            ],
            "saved_context": null,
            "blocked": null,
            "updated_at": "2026-03-02T10:12:44+00:00"
        }
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from epic_autopilot.enums import PendingStatus, Phase


def utc_now() -> str:
    """Current time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


class PendingEntry(BaseModel):
    """A submitted item handed to the pending-review queue."""

    model_config = ConfigDict(extra="allow")

    item_id: str
    request_ref: int
    workspace_ref: str | None = None
    status: PendingStatus = PendingStatus.AWAITING_REVIEW
    last_checked_at: str = Field(default_factory=utc_now)
    last_seen_feedback_ref: str | None = None
    attempts: int = 0
    last_error: str | None = None


class SavedContext(BaseModel):
    """Snapshot of the active pipeline taken while a pending item is fixed."""

    phase: Phase
    active_item: str | None = None
    active_request: int | None = None
    active_feedback_ref: str | None = None


class BlockedRecord(BaseModel):
    """Why the run stopped in BLOCKED."""

    item_id: str | None = None
    phase: Phase
    reason: str
    error_kind: str = "phase_error"
    blocked_at: str = Field(default_factory=utc_now)


class OrchestratorState(BaseModel):
    """Single persisted record driving the orchestration loop."""

    model_config = ConfigDict(extra="allow", validate_assignment=True)

    phase: Phase
    active_item: str | None = None
    active_request: int | None = None
    active_feedback_ref: str | None = None
    completed_items: list[str] = Field(default_factory=list)
    pending_queue: list[PendingEntry] = Field(default_factory=list)
    saved_context: SavedContext | None = None
    blocked: BlockedRecord | None = None
    updated_at: str = Field(default_factory=utc_now)

    @field_validator("completed_items")
    @classmethod
    def _dedupe_completed(cls, value: list[str]) -> list[str]:
        # Keep first occurrence order
        return list(dict.fromkeys(value))

    @classmethod
    def initial(cls) -> OrchestratorState:
        """State of a fresh run."""
        return cls(phase=Phase.CHECK_PENDING)

    @property
    def pending_ids(self) -> list[str]:
        return [entry.item_id for entry in self.pending_queue]

    def get_pending(self, item_id: str) -> PendingEntry | None:
        for entry in self.pending_queue:
            if entry.item_id == item_id:
                return entry
        return None

    def is_completed(self, item_id: str) -> bool:
        return item_id in self.completed_items

    def violations(self) -> list[str]:
        """List every invariant this state breaks (empty when consistent)."""
        problems: list[str] = []
        pending_ids = self.pending_ids

        if self.active_item is not None:
            if self.active_item in self.completed_items:
                problems.append(f"active item {self.active_item} is already completed")
            if self.active_item in pending_ids:
                problems.append(f"active item {self.active_item} is also in the pending queue")

        if len(set(pending_ids)) != len(pending_ids):
            problems.append("pending queue contains duplicate items")

        completed_in_queue = sorted(set(pending_ids) & set(self.completed_items))
        if completed_in_queue:
            problems.append(f"completed items still pending: {', '.join(completed_in_queue)}")

        if self.phase == Phase.BLOCKED and self.blocked is None:
            problems.append("phase is BLOCKED but no blocked record is present")

        return problems
