"""
Domain models exchanged with external collaborators.

These dataclasses are the normalized internal representation of what the
review service, CI, version control and development agent report back.
Provider bindings convert their native payloads into these types so the
state machine never touches a library object directly.

Example:
    Building a pull request snapshot from provider data::

        request = PullRequest(
            number=17,
            title="Epic 7A: Tenant onboarding",
            head="feature/epic-7A",
            base="main",
            state=RequestState.OPEN,
            url="https://github.com/org/repo/pull/17",
        )
"""

from dataclasses import dataclass, field
from datetime import datetime

from epic_autopilot.enums import AgentStatus, CheckConclusion, RequestState, ReviewVerdict


@dataclass
class PullRequest:
    """Review request on the hosting service."""

    number: int
    title: str
    head: str
    base: str
    state: RequestState = RequestState.OPEN
    url: str = ""
    body: str = ""
    mergeable: bool | None = None
    created_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.state == RequestState.OPEN


@dataclass
class CheckRun:
    """One CI check reported against the head commit of a request."""

    name: str
    conclusion: CheckConclusion
    details_url: str = ""
    summary: str = ""


@dataclass
class ReviewSummary:
    """Latest review verdict on a request.

    ``review_id`` identifies the review that produced the verdict. It is
    compared against the last review already acted on so the same
    changes-requested review never triggers two fixes.
    """

    verdict: ReviewVerdict = ReviewVerdict.NONE
    review_id: str | None = None
    body: str = ""
    author: str = ""


@dataclass
class MergeResult:
    """Outcome of a merge attempt."""

    merged: bool
    sha: str | None = None
    message: str = ""
    already_merged: bool = False
    conflict: bool = False


@dataclass
class AgentResult:
    """Outcome of one development agent run.

    Attributes:
        status: Self-reported status parsed from the agent output
        reason: Why the agent is blocked (only meaningful when blocked)
        reply: Text to post back to the reviewer after a fix
        output: Raw agent output, kept for debugging
    """

    status: AgentStatus
    reason: str = ""
    reply: str | None = None
    output: str = ""

    @property
    def blocked(self) -> bool:
        return self.status == AgentStatus.BLOCKED


@dataclass
class CheckFailure:
    """A local check command that did not pass."""

    command: str
    exit_code: int
    output: str = ""


@dataclass
class CheckReport:
    """Result of running the local check suite."""

    passed: bool
    failures: list[CheckFailure] = field(default_factory=list)
    commands_run: list[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.passed:
            return "all checks passed"
        return "; ".join(f"{f.command} (exit {f.exit_code})" for f in self.failures)


@dataclass
class PollResult:
    """Outcome of one pending-queue servicing round.

    ``item_needing_fix`` is a single value: at most one pending item is
    fixed per round.
    """

    merged_items: list[str] = field(default_factory=list)
    closed_items: list[str] = field(default_factory=list)
    merge_failures: list[str] = field(default_factory=list)
    item_needing_fix: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.merged_items or self.closed_items or self.merge_failures or self.item_needing_fix)
