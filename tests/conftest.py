"""Pytest configuration and shared fixtures.

The fakes below implement the provider interfaces in memory. They follow the
same idempotence contracts as the real bindings: creating a branch or
workspace twice is a no-op and merging a merged request reports success.
"""

from pathlib import Path

import pytest

from epic_autopilot.config.settings import AutopilotSettings
from epic_autopilot.engine.context import RunContext
from epic_autopilot.engine.state_manager import StateManager
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import AgentStatus, CheckConclusion, RequestState, ReviewVerdict
from epic_autopilot.exceptions import ExternalServiceError
from epic_autopilot.models.domain import (
    AgentResult,
    CheckFailure,
    CheckReport,
    CheckRun,
    MergeResult,
    PullRequest,
    ReviewSummary,
)
from epic_autopilot.providers.base import (
    ContinuousIntegration,
    DevelopmentAgent,
    LocalChecks,
    ReviewService,
    VersionControl,
    WorkCatalog,
)

BRANCH_PREFIX = "feature/epic-"


class FakeVersionControl(VersionControl):
    """In-memory git: branches, worktrees and commits are only recorded."""

    def __init__(self, root: Path, worktrees_dir: Path, review: "FakeReviewService | None" = None) -> None:
        self.root = root
        self.worktrees_dir = worktrees_dir
        self.review = review
        self.branches: set[str] = set()
        self.workspaces: set[str] = set()
        self.dirty: dict[Path, bool] = {}
        self.commits: list[tuple[str, Path]] = []
        self.pushes: list[tuple[str, Path]] = []
        self.calls: list[str] = []
        self.pruned = False

    def branch_name(self, item_id: str) -> str:
        return f"{BRANCH_PREFIX}{item_id}"

    async def ensure_branch(self, item_id: str) -> str:
        branch = self.branch_name(item_id)
        self.calls.append(f"ensure_branch:{item_id}")
        self.branches.add(branch)
        return branch

    async def push(self, branch: str, cwd: Path | None = None) -> None:
        self.pushes.append((branch, cwd or self.root))

    async def merge_and_delete_branch(self, request_ref: int) -> MergeResult:
        self.calls.append(f"merge:{request_ref}")
        if self.review is None:
            return MergeResult(merged=True, sha="deadbeef")
        result = await self.review.merge(request_ref)
        if result.merged:
            self.branches.discard(self.review.requests[request_ref].head)
        return result

    def workspace_path(self, item_id: str) -> Path:
        return self.worktrees_dir / item_id

    async def create_workspace(self, item_id: str) -> Path:
        self.calls.append(f"create_workspace:{item_id}")
        self.workspaces.add(item_id)
        return self.workspace_path(item_id)

    async def remove_workspace(self, item_id: str) -> None:
        self.calls.append(f"remove_workspace:{item_id}")
        self.workspaces.discard(item_id)

    async def prune_workspaces(self) -> None:
        self.pruned = True

    async def is_dirty(self, cwd: Path | None = None) -> bool:
        return self.dirty.get(cwd or self.root, False)

    async def commit_all(self, message: str, cwd: Path | None = None) -> bool:
        target = cwd or self.root
        if not self.dirty.get(target, False):
            return False
        self.dirty[target] = False
        self.commits.append((message, target))
        return True

    async def checkout_base(self) -> None:
        self.calls.append("checkout_base")


class FakeReviewService(ReviewService, ContinuousIntegration):
    """In-memory pull requests, reviews, threads and check runs."""

    def __init__(self) -> None:
        self.requests: dict[int, PullRequest] = {}
        self.reviews: dict[int, ReviewSummary] = {}
        self.threads: dict[int, list[str]] = {}
        self.checks: dict[int, list[CheckRun]] = {}
        self.merge_results: dict[int, MergeResult] = {}
        self.replies: list[tuple[int, str]] = []
        self.unavailable: set[int] = set()
        self.merged: list[int] = []
        self._next_number = 100

    def add_request(self, item_id: str, number: int | None = None, state: RequestState = RequestState.OPEN) -> int:
        if number is None:
            number = self._next_number
            self._next_number += 1
        self.requests[number] = PullRequest(
            number=number,
            title=f"Epic {item_id}",
            head=f"{BRANCH_PREFIX}{item_id}",
            base="main",
            state=state,
            url=f"https://github.com/acme/shop/pull/{number}",
        )
        return number

    def _check_available(self, ref: int) -> None:
        if ref in self.unavailable:
            raise ExternalServiceError("service unavailable", status_code=502)

    async def find_open_request(self, branch: str) -> PullRequest | None:
        for request in self.requests.values():
            if request.head == branch and request.is_open:
                return request
        return None

    async def list_open_requests(self, branch_prefix: str) -> list[PullRequest]:
        return [r for r in self.requests.values() if r.is_open and r.head.startswith(branch_prefix)]

    async def create_request(self, item_id: str, branch: str) -> PullRequest:
        number = self.add_request(item_id)
        return self.requests[number]

    async def get_request(self, ref: int) -> PullRequest:
        self._check_available(ref)
        if ref not in self.requests:
            raise ExternalServiceError(f"request {ref} not found", status_code=404)
        return self.requests[ref]

    async def latest_review(self, ref: int) -> ReviewSummary:
        self._check_available(ref)
        return self.reviews.get(ref, ReviewSummary())

    async def unresolved_thread_count(self, ref: int) -> int:
        self._check_available(ref)
        return len(self.threads.get(ref, []))

    async def unresolved_thread_comments(self, ref: int) -> list[str]:
        self._check_available(ref)
        return list(self.threads.get(ref, []))

    async def resolve_all_threads(self, ref: int) -> int:
        resolved = len(self.threads.get(ref, []))
        self.threads[ref] = []
        return resolved

    async def post_reply(self, ref: int, text: str) -> None:
        self.replies.append((ref, text))

    async def merge(self, ref: int) -> MergeResult:
        request = self.requests[ref]
        if request.state == RequestState.MERGED:
            return MergeResult(merged=True, sha="deadbeef", already_merged=True)

        result = self.merge_results.get(ref, MergeResult(merged=True, sha="deadbeef"))
        if result.merged:
            request.state = RequestState.MERGED
            self.merged.append(ref)
        return result

    async def check_runs(self, ref: int) -> list[CheckRun]:
        self._check_available(ref)
        return list(self.checks.get(ref, []))

    # Test helpers

    def approve(self, ref: int, review_id: str = "r-approve") -> None:
        self.reviews[ref] = ReviewSummary(verdict=ReviewVerdict.APPROVED, review_id=review_id, author="alice")

    def request_changes(self, ref: int, body: str = "Please add tests", review_id: str = "r-changes") -> None:
        self.reviews[ref] = ReviewSummary(
            verdict=ReviewVerdict.CHANGES_REQUESTED, review_id=review_id, body=body, author="alice"
        )

    def set_checks(self, ref: int, *conclusions: CheckConclusion) -> None:
        self.checks[ref] = [CheckRun(name=f"check-{i}", conclusion=c) for i, c in enumerate(conclusions)]


class FakeAgent(DevelopmentAgent):
    """Agent returning queued results; defaults to success."""

    def __init__(self) -> None:
        self.develop_results: list[AgentResult] = []
        self.review_results: list[AgentResult] = []
        self.fix_results: list[AgentResult] = []
        self.calls: list[tuple[str, str, str, Path, int]] = []
        self.on_call = None

    def _next(self, queue: list[AgentResult], default: AgentStatus) -> AgentResult:
        if queue:
            return queue.pop(0)
        return AgentResult(status=default)

    async def develop(self, item_id: str, instructions: str, workspace: Path, max_turns: int) -> AgentResult:
        self.calls.append(("develop", item_id, instructions, workspace, max_turns))
        if self.on_call:
            await self.on_call("develop", item_id, workspace)
        return self._next(self.develop_results, AgentStatus.COMPLETE)

    async def review(self, item_id: str, instructions: str, workspace: Path, max_turns: int) -> AgentResult:
        self.calls.append(("review", item_id, instructions, workspace, max_turns))
        if self.on_call:
            await self.on_call("review", item_id, workspace)
        return self._next(self.review_results, AgentStatus.COMPLETE)

    async def fix(self, item_id: str, feedback: str, workspace: Path, max_turns: int) -> AgentResult:
        self.calls.append(("fix", item_id, feedback, workspace, max_turns))
        if self.on_call:
            await self.on_call("fix", item_id, workspace)
        return self._next(self.fix_results, AgentStatus.FIXED)


class FakeCatalog(WorkCatalog):
    def __init__(self, items: list[str] | None = None) -> None:
        self.items = list(items or [])

    async def list_candidates(self) -> list[str]:
        return list(self.items)


class FakeChecks(LocalChecks):
    """Local checks returning queued pass/fail outcomes; defaults to pass."""

    def __init__(self) -> None:
        self.outcomes: list[bool] = []
        self.runs: list[Path] = []

    async def run(self, cwd: Path) -> CheckReport:
        self.runs.append(cwd)
        passed = self.outcomes.pop(0) if self.outcomes else True
        if passed:
            return CheckReport(passed=True, commands_run=["make check"])
        return CheckReport(
            passed=False,
            failures=[CheckFailure(command="make check", exit_code=1, output="test_login FAILED")],
            commands_run=["make check"],
        )


class RecordingSleep:
    """Sleep replacement that only records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def repo_root(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def settings(repo_root: Path) -> AutopilotSettings:
    """Settings with zero delays and small wait caps."""
    return AutopilotSettings(
        repository={"root": repo_root, "owner": "acme", "name": "shop", "base_branch": "main"},
        workflow={
            "check_interval": 0,
            "pending_check_interval": 0,
            "loop_delay": 0,
            "max_check_wait": 3,
            "review_retries": 3,
        },
    )


@pytest.fixture
def review() -> FakeReviewService:
    return FakeReviewService()


@pytest.fixture
def vcs(settings: AutopilotSettings, review: FakeReviewService) -> FakeVersionControl:
    return FakeVersionControl(settings.root, settings.worktrees_dir, review=review)


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog(["1", "2A", "3"])


@pytest.fixture
def checks() -> FakeChecks:
    return FakeChecks()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def ctx(
    settings: AutopilotSettings,
    vcs: FakeVersionControl,
    review: FakeReviewService,
    agent: FakeAgent,
    catalog: FakeCatalog,
    checks: FakeChecks,
    sleep: RecordingSleep,
) -> RunContext:
    return RunContext(
        settings=settings,
        vcs=vcs,
        review=review,
        ci=review,
        agent=agent,
        catalog=catalog,
        checks=checks,
        sleep=sleep,
    )


@pytest.fixture
def concurrent_ctx(ctx: RunContext) -> RunContext:
    ctx.settings.workflow = ctx.settings.workflow.model_copy(update={"concurrent": True, "max_pending": 2})
    return ctx


@pytest.fixture
def store(settings: AutopilotSettings) -> StateManager:
    return StateManager(settings.state_file)


@pytest.fixture
def seed(store: StateManager):
    """Write an initial state record built from keyword arguments."""

    async def _seed(**fields) -> OrchestratorState:
        state = OrchestratorState(**fields)
        await store.write(state)
        return state

    return _seed
