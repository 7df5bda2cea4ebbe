"""Unit tests for the phase stages.

Each stage is tested for:
1. The transition it commits on the happy path
2. Idempotent re-entry where it applies
3. Escalation to BLOCKED with the active item preserved
"""

from unittest.mock import AsyncMock

import pytest

from epic_autopilot.engine.context import RunContext
from epic_autopilot.engine.stages import (
    CheckPendingStage,
    CreateWorkspaceStage,
    DevelopStage,
    FindWorkStage,
    FixIssuesStage,
    MergeStage,
    ReviewLocalStage,
    SubmitStage,
    WaitChecksStage,
    WaitReviewStage,
)
from epic_autopilot.engine.state_manager import StateManager
from epic_autopilot.engine.types import OrchestratorState, PendingEntry
from epic_autopilot.enums import AgentStatus, CheckConclusion, Phase, RequestState, ReviewVerdict
from epic_autopilot.exceptions import ExternalServiceError
from epic_autopilot.models.domain import AgentResult, CheckRun, MergeResult, ReviewSummary

# ==============================================================================
# Helpers
# ==============================================================================


async def run_stage(stage_cls, ctx: RunContext, store: StateManager) -> OrchestratorState:
    """Run one stage against the committed state and return the new state."""
    snapshot = await store.read()
    await stage_cls(ctx, store).run(snapshot)
    return await store.read()


# ==============================================================================
# CHECK_PENDING
# ==============================================================================


class TestCheckPendingStage:
    @pytest.mark.asyncio
    async def test_resumes_untracked_open_request(self, ctx, store, seed, review, vcs):
        await seed(phase=Phase.CHECK_PENDING, completed_items=["1"])
        number = review.add_request("2A")

        state = await run_stage(CheckPendingStage, ctx, store)

        assert state.phase == Phase.WAIT_EXTERNAL_REVIEW
        assert state.active_item == "2A"
        assert state.active_request == number
        assert "ensure_branch:2A" in vcs.calls

    @pytest.mark.asyncio
    async def test_lowest_request_number_first(self, ctx, store, seed, review):
        await seed(phase=Phase.CHECK_PENDING)
        review.add_request("5", number=210)
        review.add_request("4", number=205)

        state = await run_stage(CheckPendingStage, ctx, store)

        assert state.active_item == "4"
        assert state.active_request == 205

    @pytest.mark.asyncio
    async def test_ignores_completed_and_pending_items(self, ctx, store, seed, review):
        await seed(
            phase=Phase.CHECK_PENDING,
            completed_items=["1"],
            pending_queue=[PendingEntry(item_id="7A", request_ref=41)],
        )
        review.add_request("1")
        review.add_request("7A", number=41)

        state = await run_stage(CheckPendingStage, ctx, store)

        assert state.phase == Phase.FIND_WORK
        assert state.active_item is None

    @pytest.mark.asyncio
    async def test_active_item_without_request_restarts_workspace(self, ctx, store, seed):
        """After an operator resume the active item is picked up again."""
        await seed(phase=Phase.CHECK_PENDING, active_item="9")

        state = await run_stage(CheckPendingStage, ctx, store)

        assert state.phase == Phase.CREATE_WORKSPACE
        assert state.active_item == "9"

    @pytest.mark.asyncio
    async def test_service_error_means_nothing_found(self, ctx, store, seed, review):
        await seed(phase=Phase.CHECK_PENDING)
        review.list_open_requests = AsyncMock(side_effect=ExternalServiceError("down", status_code=503))

        state = await run_stage(CheckPendingStage, ctx, store)

        assert state.phase == Phase.FIND_WORK


# ==============================================================================
# FIND_WORK
# ==============================================================================


class TestFindWorkStage:
    @pytest.mark.asyncio
    async def test_selects_next_item(self, ctx, store, seed):
        await seed(phase=Phase.FIND_WORK, completed_items=["1"])

        state = await run_stage(FindWorkStage, ctx, store)

        assert state.phase == Phase.CREATE_WORKSPACE
        assert state.active_item == "2A"

    @pytest.mark.asyncio
    async def test_applies_patterns(self, ctx, store, seed):
        ctx.patterns = ["^3$"]
        await seed(phase=Phase.FIND_WORK)

        state = await run_stage(FindWorkStage, ctx, store)

        assert state.active_item == "3"

    @pytest.mark.asyncio
    async def test_done_when_nothing_left(self, ctx, store, seed):
        await seed(phase=Phase.FIND_WORK, completed_items=["1", "2A", "3"])

        state = await run_stage(FindWorkStage, ctx, store)

        assert state.phase == Phase.DONE
        assert state.active_item is None

    @pytest.mark.asyncio
    async def test_concurrent_skips_pending(self, concurrent_ctx, store, seed, catalog):
        """Pending 7A with max_pending=1 and catalog [7A, 8A] selects 8A."""
        catalog.items = ["7A", "8A"]
        concurrent_ctx.settings.workflow = concurrent_ctx.settings.workflow.model_copy(update={"max_pending": 1})
        await seed(phase=Phase.FIND_WORK, pending_queue=[PendingEntry(item_id="7A", request_ref=41)])

        state = await run_stage(FindWorkStage, concurrent_ctx, store)

        assert state.active_item == "8A"
        assert state.pending_ids == ["7A"]


# ==============================================================================
# CREATE_WORKSPACE
# ==============================================================================


class TestCreateWorkspaceStage:
    @pytest.mark.asyncio
    async def test_creates_branch_and_moves_to_develop(self, ctx, store, seed, vcs):
        await seed(phase=Phase.CREATE_WORKSPACE, active_item="2A")

        state = await run_stage(CreateWorkspaceStage, ctx, store)

        assert state.phase == Phase.DEVELOP
        assert "feature/epic-2A" in vcs.branches

    @pytest.mark.asyncio
    async def test_reentry_is_idempotent(self, ctx, store, seed, vcs):
        await seed(phase=Phase.CREATE_WORKSPACE, active_item="2A")
        await run_stage(CreateWorkspaceStage, ctx, store)
        await store.set_phase(Phase.CREATE_WORKSPACE)

        state = await run_stage(CreateWorkspaceStage, ctx, store)

        assert state.phase == Phase.DEVELOP
        assert vcs.branches == {"feature/epic-2A"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("item_id", ["bad id", "-flag", "a..b", "x.lock"])
    async def test_invalid_identifier_blocks(self, ctx, store, seed, vcs, item_id):
        await seed(phase=Phase.CREATE_WORKSPACE, active_item=item_id)

        state = await run_stage(CreateWorkspaceStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.blocked.phase == Phase.CREATE_WORKSPACE
        assert state.blocked.error_kind == "phase_error"
        assert state.active_item == item_id
        assert vcs.branches == set()

    @pytest.mark.asyncio
    async def test_missing_identifier_blocks(self, ctx, store, seed):
        await seed(phase=Phase.CREATE_WORKSPACE)

        state = await run_stage(CreateWorkspaceStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert "No active item" in state.blocked.reason


# ==============================================================================
# DEVELOP
# ==============================================================================


class TestDevelopStage:
    @pytest.mark.asyncio
    async def test_develops_and_moves_to_review(self, ctx, store, seed, agent, vcs):
        await seed(phase=Phase.DEVELOP, active_item="2A")
        vcs.dirty[ctx.root] = True

        state = await run_stage(DevelopStage, ctx, store)

        assert state.phase == Phase.REVIEW_LOCAL
        assert agent.calls[0][:2] == ("develop", "2A")
        assert agent.calls[0][4] == ctx.settings.agent.max_turns
        assert vcs.commits[0][0] == "chore: auto-commit before story development"

    @pytest.mark.asyncio
    async def test_check_failures_are_tolerated(self, ctx, store, seed, checks):
        await seed(phase=Phase.DEVELOP, active_item="2A")
        checks.outcomes = [False]

        state = await run_stage(DevelopStage, ctx, store)

        assert state.phase == Phase.REVIEW_LOCAL
        assert len(checks.runs) == 1

    @pytest.mark.asyncio
    async def test_agent_blocked(self, ctx, store, seed, agent):
        await seed(phase=Phase.DEVELOP, active_item="2A")
        agent.develop_results = [AgentResult(status=AgentStatus.BLOCKED, reason="missing API credentials")]

        state = await run_stage(DevelopStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.active_item == "2A"
        assert state.blocked.error_kind == "agent_blocked"
        assert state.blocked.reason == "missing API credentials"

    @pytest.mark.asyncio
    async def test_unexpected_error_blocks(self, ctx, store, seed, agent):
        await seed(phase=Phase.DEVELOP, active_item="2A")
        agent.develop = AsyncMock(side_effect=RuntimeError("kaboom"))

        state = await run_stage(DevelopStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.blocked.error_kind == "unexpected"
        assert "kaboom" in state.blocked.reason


# ==============================================================================
# REVIEW_LOCAL
# ==============================================================================


class TestReviewLocalStage:
    @pytest.mark.asyncio
    async def test_passing_checks_push_and_submit(self, ctx, store, seed, vcs):
        await seed(phase=Phase.REVIEW_LOCAL, active_item="2A")

        state = await run_stage(ReviewLocalStage, ctx, store)

        assert state.phase == Phase.SUBMIT
        assert vcs.pushes == [("feature/epic-2A", ctx.root)]

    @pytest.mark.asyncio
    async def test_retries_with_previous_failures(self, ctx, store, seed, agent, checks):
        await seed(phase=Phase.REVIEW_LOCAL, active_item="2A")
        checks.outcomes = [False, True]

        state = await run_stage(ReviewLocalStage, ctx, store)

        reviews = [call for call in agent.calls if call[0] == "review"]
        assert state.phase == Phase.SUBMIT
        assert len(reviews) == 2
        assert reviews[0][2] == ""
        assert "make check" in reviews[1][2]
        assert "test_login FAILED" in reviews[1][2]

    @pytest.mark.asyncio
    async def test_blocks_after_three_failures(self, ctx, store, seed, agent, checks, vcs):
        """Three failed verifications block the run with the item kept."""
        await seed(phase=Phase.REVIEW_LOCAL, active_item="9")
        checks.outcomes = [False, False, False]

        state = await run_stage(ReviewLocalStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.active_item == "9"
        assert state.blocked.phase == Phase.REVIEW_LOCAL
        assert state.blocked.error_kind == "verification_failure"
        assert len([c for c in agent.calls if c[0] == "review"]) == 3
        assert vcs.pushes == []

    @pytest.mark.asyncio
    async def test_agent_blocked(self, ctx, store, seed, agent):
        await seed(phase=Phase.REVIEW_LOCAL, active_item="9")
        agent.review_results = [AgentResult(status=AgentStatus.BLOCKED, reason="cannot build")]

        state = await run_stage(ReviewLocalStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.blocked.error_kind == "agent_blocked"


# ==============================================================================
# SUBMIT
# ==============================================================================


class TestSubmitStage:
    @pytest.mark.asyncio
    async def test_sequential_creates_request_and_waits(self, ctx, store, seed, review):
        await seed(phase=Phase.SUBMIT, active_item="2A")

        state = await run_stage(SubmitStage, ctx, store)

        assert state.phase == Phase.WAIT_EXTERNAL_REVIEW
        assert state.active_request == 100
        assert review.requests[100].head == "feature/epic-2A"

    @pytest.mark.asyncio
    async def test_reuses_open_request(self, ctx, store, seed, review):
        await seed(phase=Phase.SUBMIT, active_item="2A")
        number = review.add_request("2A", number=77)

        state = await run_stage(SubmitStage, ctx, store)

        assert state.active_request == number
        assert list(review.requests) == [77]

    @pytest.mark.asyncio
    async def test_concurrent_hands_off_when_room(self, concurrent_ctx, store, seed, vcs):
        await seed(phase=Phase.SUBMIT, active_item="2A")

        state = await run_stage(SubmitStage, concurrent_ctx, store)

        assert state.phase == Phase.FIND_WORK
        assert state.active_item is None
        entry = state.get_pending("2A")
        assert entry.request_ref == 100
        assert entry.workspace_ref == str(vcs.workspace_path("2A"))
        assert "checkout_base" in vcs.calls
        assert "create_workspace:2A" not in vcs.calls

    @pytest.mark.asyncio
    async def test_eager_workspace_on_hand_off(self, concurrent_ctx, store, seed, vcs):
        concurrent_ctx.settings.workflow = concurrent_ctx.settings.workflow.model_copy(
            update={"eager_workspaces": True}
        )
        await seed(phase=Phase.SUBMIT, active_item="2A")

        await run_stage(SubmitStage, concurrent_ctx, store)

        assert "create_workspace:2A" in vcs.calls

    @pytest.mark.asyncio
    async def test_concurrent_full_queue_waits_sequentially(self, concurrent_ctx, store, seed):
        concurrent_ctx.settings.workflow = concurrent_ctx.settings.workflow.model_copy(update={"max_pending": 1})
        await seed(
            phase=Phase.SUBMIT,
            active_item="8A",
            pending_queue=[PendingEntry(item_id="7A", request_ref=41)],
        )

        state = await run_stage(SubmitStage, concurrent_ctx, store)

        assert state.phase == Phase.WAIT_EXTERNAL_REVIEW
        assert state.active_item == "8A"
        assert state.pending_ids == ["7A"]


# ==============================================================================
# WAIT_EXTERNAL_REVIEW
# ==============================================================================


class TestWaitReviewStage:
    @pytest.mark.asyncio
    async def test_approved_without_threads_waits_for_checks(self, ctx, store, seed, review):
        """Sequential, approved with 0 unresolved threads goes to WAIT_CHECKS."""
        number = review.add_request("2A")
        review.approve(number)
        await seed(phase=Phase.WAIT_EXTERNAL_REVIEW, active_item="2A", active_request=number)

        state = await run_stage(WaitReviewStage, ctx, store)

        assert state.phase == Phase.WAIT_CHECKS
        assert state.active_request == number
        assert state.active_feedback_ref == "r-approve"

    @pytest.mark.asyncio
    async def test_changes_requested_goes_to_fix(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.request_changes(number)
        await seed(phase=Phase.WAIT_EXTERNAL_REVIEW, active_item="2A", active_request=number)

        state = await run_stage(WaitReviewStage, ctx, store)

        assert state.phase == Phase.FIX_ISSUES

    @pytest.mark.asyncio
    async def test_unresolved_threads_go_to_fix(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.approve(number)
        review.threads[number] = ["src/api.rs: handle the error"]
        await seed(phase=Phase.WAIT_EXTERNAL_REVIEW, active_item="2A", active_request=number)

        state = await run_stage(WaitReviewStage, ctx, store)

        assert state.phase == Phase.FIX_ISSUES

    @pytest.mark.asyncio
    async def test_looks_up_request_by_branch(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.approve(number)
        await seed(phase=Phase.WAIT_EXTERNAL_REVIEW, active_item="2A")

        state = await run_stage(WaitReviewStage, ctx, store)

        assert state.active_request == number

    @pytest.mark.asyncio
    async def test_timeout_blocks_once(self, ctx, store, seed, review, sleep):
        """No verdict within the cap blocks the run exactly once."""
        number = review.add_request("2A")
        await seed(phase=Phase.WAIT_EXTERNAL_REVIEW, active_item="2A", active_request=number)

        state = await run_stage(WaitReviewStage, ctx, store)

        iterations = ctx.settings.workflow.review_wait_iterations
        assert state.phase == Phase.BLOCKED
        assert state.blocked.error_kind == "external_timeout"
        assert f"after {iterations} iterations" in state.blocked.reason
        assert len(sleep.delays) == iterations - 1
        assert state.active_item == "2A"

    @pytest.mark.asyncio
    async def test_review_already_acted_on_is_not_fixed_again(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.request_changes(number, review_id="r-1")
        await seed(
            phase=Phase.WAIT_EXTERNAL_REVIEW,
            active_item="2A",
            active_request=number,
            active_feedback_ref="r-1",
        )

        state = await run_stage(WaitReviewStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.blocked.error_kind == "external_timeout"

    @pytest.mark.asyncio
    async def test_service_errors_count_as_waiting(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.unavailable.add(number)
        await seed(phase=Phase.WAIT_EXTERNAL_REVIEW, active_item="2A", active_request=number)

        state = await run_stage(WaitReviewStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.blocked.error_kind == "external_timeout"

    @pytest.mark.asyncio
    async def test_merged_request_goes_to_merge(self, ctx, store, seed, review):
        number = review.add_request("2A", state=RequestState.MERGED)
        await seed(phase=Phase.WAIT_EXTERNAL_REVIEW, active_item="2A", active_request=number)

        state = await run_stage(WaitReviewStage, ctx, store)

        assert state.phase == Phase.MERGE

    @pytest.mark.asyncio
    async def test_closed_request_blocks(self, ctx, store, seed, review):
        number = review.add_request("2A", state=RequestState.CLOSED)
        await seed(phase=Phase.WAIT_EXTERNAL_REVIEW, active_item="2A", active_request=number)

        state = await run_stage(WaitReviewStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert "closed" in state.blocked.reason

    @pytest.mark.asyncio
    async def test_concurrent_approval_hands_off(self, concurrent_ctx, store, seed, review):
        number = review.add_request("2A")
        review.approve(number, review_id="r-9")
        await seed(phase=Phase.WAIT_EXTERNAL_REVIEW, active_item="2A", active_request=number)

        state = await run_stage(WaitReviewStage, concurrent_ctx, store)

        assert state.phase == Phase.FIND_WORK
        assert state.get_pending("2A").last_seen_feedback_ref == "r-9"


# ==============================================================================
# WAIT_CHECKS
# ==============================================================================


class TestWaitChecksStage:
    @pytest.mark.asyncio
    async def test_passing_and_approved_goes_to_merge(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.approve(number)
        review.set_checks(number, CheckConclusion.PASS, CheckConclusion.PASS)
        await seed(phase=Phase.WAIT_CHECKS, active_item="2A", active_request=number)

        state = await run_stage(WaitChecksStage, ctx, store)

        assert state.phase == Phase.MERGE

    @pytest.mark.asyncio
    async def test_no_checks_counts_as_passing(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.approve(number)
        await seed(phase=Phase.WAIT_CHECKS, active_item="2A", active_request=number)

        state = await run_stage(WaitChecksStage, ctx, store)

        assert state.phase == Phase.MERGE

    @pytest.mark.asyncio
    async def test_failure_wins_over_pending(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.approve(number)
        review.set_checks(number, CheckConclusion.PENDING, CheckConclusion.FAIL)
        await seed(phase=Phase.WAIT_CHECKS, active_item="2A", active_request=number)

        state = await run_stage(WaitChecksStage, ctx, store)

        assert state.phase == Phase.FIX_ISSUES

    @pytest.mark.asyncio
    async def test_withdrawn_approval_goes_to_fix(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.request_changes(number, review_id="r-2")
        review.set_checks(number, CheckConclusion.PASS)
        await seed(phase=Phase.WAIT_CHECKS, active_item="2A", active_request=number, active_feedback_ref="r-1")

        state = await run_stage(WaitChecksStage, ctx, store)

        assert state.phase == Phase.FIX_ISSUES

    @pytest.mark.asyncio
    async def test_dismissed_approval_goes_to_fix(self, ctx, store, seed, review):
        """Approval dismissed after WAIT_CHECKS was entered sends the item back to FIX_ISSUES."""
        number = review.add_request("2A")
        review.set_checks(number, CheckConclusion.PASS)
        await seed(phase=Phase.WAIT_CHECKS, active_item="2A", active_request=number, active_feedback_ref="r-approve")

        state = await run_stage(WaitChecksStage, ctx, store)

        assert state.phase == Phase.FIX_ISSUES
        assert state.blocked is None

    @pytest.mark.asyncio
    async def test_dismissed_approval_wins_over_pending_checks(self, ctx, store, seed, review, sleep):
        number = review.add_request("2A")
        review.set_checks(number, CheckConclusion.PENDING)
        await seed(phase=Phase.WAIT_CHECKS, active_item="2A", active_request=number, active_feedback_ref="r-approve")

        state = await run_stage(WaitChecksStage, ctx, store)

        assert state.phase == Phase.FIX_ISSUES
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_comment_admission_waits_for_approval(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.reviews[number] = ReviewSummary(verdict=ReviewVerdict.COMMENTED, review_id="r-c", author="alice")
        review.set_checks(number, CheckConclusion.PASS)
        await seed(phase=Phase.WAIT_CHECKS, active_item="2A", active_request=number, active_feedback_ref="r-c")

        state = await run_stage(WaitChecksStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.blocked.error_kind == "external_timeout"

    @pytest.mark.asyncio
    async def test_pending_checks_time_out(self, ctx, store, seed, review, sleep):
        number = review.add_request("2A")
        review.approve(number)
        review.set_checks(number, CheckConclusion.PENDING)
        await seed(phase=Phase.WAIT_CHECKS, active_item="2A", active_request=number)

        state = await run_stage(WaitChecksStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.blocked.phase == Phase.WAIT_CHECKS
        assert len(sleep.delays) == ctx.settings.workflow.max_check_wait - 1

    @pytest.mark.asyncio
    async def test_approval_not_required(self, ctx, store, seed, review):
        ctx.settings.workflow = ctx.settings.workflow.model_copy(update={"require_approval": False})
        number = review.add_request("2A")
        review.set_checks(number, CheckConclusion.PASS)
        await seed(phase=Phase.WAIT_CHECKS, active_item="2A", active_request=number)

        state = await run_stage(WaitChecksStage, ctx, store)

        assert state.phase == Phase.MERGE


# ==============================================================================
# FIX_ISSUES
# ==============================================================================


class TestFixIssuesStage:
    @pytest.mark.asyncio
    async def test_fixes_replies_and_resubmits(self, ctx, store, seed, review, agent, vcs):
        number = review.add_request("2A")
        review.request_changes(number, body="Handle the empty cart", review_id="r-5")
        review.threads[number] = ["src/cart.rs: off by one"]
        review.checks[number] = [CheckRun(name="lint", conclusion=CheckConclusion.FAIL, summary="clippy")]
        agent.fix_results = [AgentResult(status=AgentStatus.FIXED, reply="Fixed the cart edge cases as requested")]

        async def edit(method, item_id, workspace):
            vcs.dirty[workspace] = True

        agent.on_call = edit
        await seed(phase=Phase.FIX_ISSUES, active_item="2A", active_request=number)

        state = await run_stage(FixIssuesStage, ctx, store)

        feedback = agent.calls[0][2]
        assert "Handle the empty cart" in feedback
        assert "src/cart.rs: off by one" in feedback
        assert "lint" in feedback
        assert agent.calls[0][4] == ctx.settings.agent.fix_max_turns
        assert vcs.commits == [("fix: address ci/review", ctx.root)]
        assert vcs.pushes == [("feature/epic-2A", ctx.root)]
        assert review.replies == [(number, "Fixed the cart edge cases as requested")]
        assert review.threads[number] == []
        assert state.phase == Phase.WAIT_EXTERNAL_REVIEW
        assert state.active_feedback_ref == "r-5"

    @pytest.mark.asyncio
    async def test_ci_only_failure_posts_no_reply(self, ctx, store, seed, review, agent):
        number = review.add_request("2A")
        review.set_checks(number, CheckConclusion.FAIL)
        agent.fix_results = [AgentResult(status=AgentStatus.FIXED, reply="Some reply text for the reviewer")]
        await seed(phase=Phase.FIX_ISSUES, active_item="2A", active_request=number)

        state = await run_stage(FixIssuesStage, ctx, store)

        assert review.replies == []
        assert state.phase == Phase.WAIT_EXTERNAL_REVIEW

    @pytest.mark.asyncio
    async def test_agent_blocked(self, ctx, store, seed, review, agent, vcs):
        number = review.add_request("2A")
        review.request_changes(number)
        agent.fix_results = [AgentResult(status=AgentStatus.BLOCKED, reason="needs product decision")]
        await seed(phase=Phase.FIX_ISSUES, active_item="2A", active_request=number)

        state = await run_stage(FixIssuesStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.blocked.error_kind == "agent_blocked"
        assert vcs.pushes == []


# ==============================================================================
# MERGE
# ==============================================================================


class TestMergeStage:
    @pytest.mark.asyncio
    async def test_merge_completes_item(self, ctx, store, seed, review, vcs, checks):
        number = review.add_request("2A")
        await seed(phase=Phase.MERGE, active_item="2A", active_request=number, completed_items=["1"])

        state = await run_stage(MergeStage, ctx, store)

        assert state.phase == Phase.CHECK_PENDING
        assert state.completed_items == ["1", "2A"]
        assert state.active_item is None
        assert review.merged == [number]
        assert "remove_workspace:2A" in vcs.calls
        assert checks.runs == [ctx.root]

    @pytest.mark.asyncio
    async def test_already_merged_is_success(self, ctx, store, seed, review):
        number = review.add_request("2A", state=RequestState.MERGED)
        await seed(phase=Phase.MERGE, active_item="2A", active_request=number)

        state = await run_stage(MergeStage, ctx, store)

        assert state.phase == Phase.CHECK_PENDING
        assert state.completed_items == ["2A"]

    @pytest.mark.asyncio
    async def test_post_merge_check_failure_does_not_block(self, ctx, store, seed, review, checks):
        number = review.add_request("2A")
        checks.outcomes = [False]
        await seed(phase=Phase.MERGE, active_item="2A", active_request=number)

        state = await run_stage(MergeStage, ctx, store)

        assert state.phase == Phase.CHECK_PENDING

    @pytest.mark.asyncio
    async def test_conflict_blocks(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.merge_results[number] = MergeResult(merged=False, message="conflict", conflict=True)
        await seed(phase=Phase.MERGE, active_item="2A", active_request=number)

        state = await run_stage(MergeStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.blocked.error_kind == "merge_conflict"
        assert state.active_item == "2A"
        assert state.completed_items == []

    @pytest.mark.asyncio
    async def test_refused_merge_blocks(self, ctx, store, seed, review):
        number = review.add_request("2A")
        review.merge_results[number] = MergeResult(merged=False, message="required checks missing")
        await seed(phase=Phase.MERGE, active_item="2A", active_request=number)

        state = await run_stage(MergeStage, ctx, store)

        assert state.phase == Phase.BLOCKED
        assert state.blocked.error_kind == "merge_failure"
        assert "required checks missing" in state.blocked.reason
