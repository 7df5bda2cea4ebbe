"""
Abstract base classes for external collaborators.

The state machine talks to the outside world only through these interfaces:
version control, the review service, CI status, the development agent, the
work catalog and the local check suite. Concrete bindings live next to this
module; tests use in-memory fakes.

Idempotence is part of every contract below that creates something:
creating a branch or workspace that already exists is a no-op, and merging
an already-merged request reports success.
"""

from abc import ABC, abstractmethod
from pathlib import Path

from epic_autopilot.enums import CheckConclusion
from epic_autopilot.models.domain import (
    AgentResult,
    CheckReport,
    CheckRun,
    MergeResult,
    PullRequest,
    ReviewSummary,
)


class VersionControl(ABC):
    """Local repository operations: branches, workspaces, commits, pushes."""

    @abstractmethod
    def branch_name(self, item_id: str) -> str:
        """Name of the feature branch for an item."""
        pass

    @abstractmethod
    async def ensure_branch(self, item_id: str) -> str:
        """Create the item's branch from the up-to-date base, or check it out.

        Returns:
            The branch name.

        Raises:
            GitOperationError: If git fails.
        """
        pass

    @abstractmethod
    async def push(self, branch: str, cwd: Path | None = None) -> None:
        """Push a branch to the remote, setting upstream."""
        pass

    @abstractmethod
    async def merge_and_delete_branch(self, request_ref: int) -> MergeResult:
        """Merge a review request, sync the base branch, delete the local branch."""
        pass

    @abstractmethod
    def workspace_path(self, item_id: str) -> Path:
        """Location of the isolated workspace for an item."""
        pass

    @abstractmethod
    async def create_workspace(self, item_id: str) -> Path:
        """Create the item's isolated workspace. No-op if it exists.

        Returns:
            Path of the workspace.
        """
        pass

    @abstractmethod
    async def remove_workspace(self, item_id: str) -> None:
        """Remove the item's workspace. No-op if it does not exist."""
        pass

    @abstractmethod
    async def prune_workspaces(self) -> None:
        """Drop bookkeeping for workspaces deleted outside version control."""
        pass

    @abstractmethod
    async def is_dirty(self, cwd: Path | None = None) -> bool:
        """Check for uncommitted changes."""
        pass

    @abstractmethod
    async def commit_all(self, message: str, cwd: Path | None = None) -> bool:
        """Stage and commit every change.

        Returns:
            True if a commit was created, False if there was nothing to commit.
        """
        pass

    @abstractmethod
    async def checkout_base(self) -> None:
        """Check out the base branch and bring it up to date."""
        pass


class ReviewService(ABC):
    """Code-hosting review operations (pull requests, reviews, threads)."""

    @abstractmethod
    async def find_open_request(self, branch: str) -> PullRequest | None:
        """Return the open request whose head is ``branch``, if any."""
        pass

    @abstractmethod
    async def list_open_requests(self, branch_prefix: str) -> list[PullRequest]:
        """Return open requests whose head branch starts with ``branch_prefix``."""
        pass

    @abstractmethod
    async def create_request(self, item_id: str, branch: str) -> PullRequest:
        """Open a review request for an item's branch against the base branch."""
        pass

    @abstractmethod
    async def get_request(self, ref: int) -> PullRequest:
        """Fetch a request by number.

        Raises:
            ExternalServiceError: If the service cannot be reached.
        """
        pass

    @abstractmethod
    async def latest_review(self, ref: int) -> ReviewSummary:
        """Return the most recent decisive review on a request."""
        pass

    @abstractmethod
    async def unresolved_thread_count(self, ref: int) -> int:
        """Number of review threads that are not resolved."""
        pass

    @abstractmethod
    async def unresolved_thread_comments(self, ref: int) -> list[str]:
        """Comment bodies of the unresolved review threads."""
        pass

    @abstractmethod
    async def resolve_all_threads(self, ref: int) -> int:
        """Resolve every open review thread. Returns the number resolved."""
        pass

    @abstractmethod
    async def post_reply(self, ref: int, text: str) -> None:
        """Post a top-level comment on the request."""
        pass

    @abstractmethod
    async def merge(self, ref: int) -> MergeResult:
        """Squash-merge a request. An already-merged request is a success."""
        pass


class ContinuousIntegration(ABC):
    """CI status for a review request."""

    @abstractmethod
    async def check_runs(self, ref: int) -> list[CheckRun]:
        """Check runs reported against the request's head commit."""
        pass

    async def check_conclusions(self, ref: int) -> list[CheckConclusion]:
        return [run.conclusion for run in await self.check_runs(ref)]


class DevelopmentAgent(ABC):
    """Automated implementer that edits a workspace."""

    @abstractmethod
    async def develop(self, item_id: str, instructions: str, workspace: Path, max_turns: int) -> AgentResult:
        """Implement an item. Returns ``complete`` or ``blocked``."""
        pass

    @abstractmethod
    async def review(self, item_id: str, instructions: str, workspace: Path, max_turns: int) -> AgentResult:
        """Review and correct the item's changes locally."""
        pass

    @abstractmethod
    async def fix(self, item_id: str, feedback: str, workspace: Path, max_turns: int) -> AgentResult:
        """Address review feedback and CI failures.

        Returns ``fixed`` (with an optional reply for the reviewer) or
        ``blocked``.
        """
        pass


class WorkCatalog(ABC):
    """Source of candidate work items."""

    @abstractmethod
    async def list_candidates(self) -> list[str]:
        """Item identifiers in catalog-declared order."""
        pass


class LocalChecks(ABC):
    """Project check suite run before submission."""

    @abstractmethod
    async def run(self, cwd: Path) -> CheckReport:
        """Run every check in ``cwd`` and collect failures."""
        pass
