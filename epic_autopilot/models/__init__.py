"""Domain models for epic-autopilot."""

from epic_autopilot.models.domain import (
    AgentResult,
    CheckFailure,
    CheckReport,
    CheckRun,
    MergeResult,
    PollResult,
    PullRequest,
    ReviewSummary,
)

__all__ = [
    "AgentResult",
    "CheckFailure",
    "CheckReport",
    "CheckRun",
    "MergeResult",
    "PollResult",
    "PullRequest",
    "ReviewSummary",
]
