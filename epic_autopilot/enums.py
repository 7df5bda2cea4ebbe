"""Enumerations for orchestrator phases and external verdicts."""

from enum import Enum


class Phase(str, Enum):
    """Phases of the orchestration state machine.

    The happy path in sequential mode is:
    CHECK_PENDING -> FIND_WORK -> CREATE_WORKSPACE -> DEVELOP -> REVIEW_LOCAL
    -> SUBMIT -> WAIT_EXTERNAL_REVIEW -> WAIT_CHECKS -> MERGE -> CHECK_PENDING
    """

    CHECK_PENDING = "CHECK_PENDING"
    FIND_WORK = "FIND_WORK"
    CREATE_WORKSPACE = "CREATE_WORKSPACE"
    DEVELOP = "DEVELOP"
    REVIEW_LOCAL = "REVIEW_LOCAL"
    SUBMIT = "SUBMIT"
    WAIT_EXTERNAL_REVIEW = "WAIT_EXTERNAL_REVIEW"
    WAIT_CHECKS = "WAIT_CHECKS"
    FIX_ISSUES = "FIX_ISSUES"
    MERGE = "MERGE"
    BLOCKED = "BLOCKED"
    DONE = "DONE"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if the run stops when this phase is reached."""
        return self in (Phase.BLOCKED, Phase.DONE)

    @property
    def requires_item(self) -> bool:
        """Check if an active item must be set while in this phase."""
        return self not in (Phase.CHECK_PENDING, Phase.FIND_WORK, Phase.DONE, Phase.BLOCKED)


class PendingStatus(str, Enum):
    """Status of a submitted item tracked by the pending-review queue."""

    AWAITING_REVIEW = "awaiting_review"
    AWAITING_CHECKS = "awaiting_checks"
    NEEDS_FIXES = "needs_fixes"
    MERGE_FAILED = "merge_failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_active(self) -> bool:
        """Check if the entry is still expected to resolve without an operator."""
        return self != PendingStatus.MERGE_FAILED


class PendingClassification(str, Enum):
    """Outcome of polling one pending entry."""

    APPROVED = "approved"
    MERGED = "merged"
    CLOSED = "closed"
    NEEDS_FIXES = "needs_fixes"
    WAITING = "waiting"

    def __str__(self) -> str:
        return self.value


class ReviewVerdict(str, Enum):
    """Latest verdict of the external review on a request."""

    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"
    NONE = "none"

    def __str__(self) -> str:
        return self.value


class CheckConclusion(str, Enum):
    """Normalized conclusion of one CI check run."""

    PASS = "pass"
    FAIL = "fail"
    PENDING = "pending"

    def __str__(self) -> str:
        return self.value


class RequestState(str, Enum):
    """State of a review request (pull request) on the hosting service."""

    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


class AgentStatus(str, Enum):
    """Self-reported outcome of a development agent run."""

    COMPLETE = "complete"
    FIXED = "fixed"
    BLOCKED = "blocked"

    def __str__(self) -> str:
        return self.value
