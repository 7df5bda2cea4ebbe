"""WAIT_EXTERNAL_REVIEW: wait for the reviewer's verdict."""

import structlog

from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import Phase, RequestState, ReviewVerdict
from epic_autopilot.exceptions import PhaseError
from epic_autopilot.utils.polling import poll_until

log = structlog.get_logger(__name__)

# Probe verdicts
_MERGED = "merged"
_FIX = "fix"
_PROCEED = "proceed"


class WaitReviewStage(WorkflowStage):
    """Poll the review service until the request has a usable verdict.

    A new changes-requested review or any unresolved thread sends the item
    to FIX_ISSUES. An approval (or a new plain comment review with nothing
    unresolved) lets it proceed: to the pending queue when concurrent mode
    has room, otherwise to WAIT_CHECKS. A request merged behind our back
    goes straight to MERGE for cleanup.
    """

    phase = Phase.WAIT_EXTERNAL_REVIEW

    async def execute(self, state: OrchestratorState) -> None:
        item_id = self.require_item(state)
        ref = await self.require_request(state, item_id)
        acted_on = state.active_feedback_ref
        review_id: str | None = None

        async def attempt() -> str | None:
            nonlocal review_id

            request = await self.ctx.review.get_request(ref)
            if request.state == RequestState.MERGED:
                return _MERGED
            if request.state == RequestState.CLOSED:
                raise PhaseError(f"Request #{ref} was closed without merging", item_id=item_id, phase=str(self.phase))

            review = await self.ctx.review.latest_review(ref)
            is_new = review.review_id is not None and review.review_id != acted_on
            if review.verdict == ReviewVerdict.CHANGES_REQUESTED and is_new:
                return _FIX
            if review.verdict == ReviewVerdict.NONE:
                return None

            if await self.ctx.review.unresolved_thread_count(ref) > 0:
                return _FIX

            if review.verdict == ReviewVerdict.APPROVED or (review.verdict == ReviewVerdict.COMMENTED and is_new):
                review_id = review.review_id
                return _PROCEED
            return None

        verdict = await poll_until(
            attempt,
            max_iterations=self.settings.workflow.review_wait_iterations,
            interval=self.settings.workflow.check_interval,
            sleep=self.ctx.sleep,
            description=f"review of request #{ref}",
            item_id=item_id,
            phase=str(self.phase),
        )
        log.info("review_verdict", item=item_id, pr=ref, verdict=verdict)

        if verdict == _MERGED:
            await self.state.set_phase(Phase.MERGE, active_request=ref)
        elif verdict == _FIX:
            await self.state.set_phase(Phase.FIX_ISSUES, active_request=ref)
        elif self.queue_has_room(state):
            await self.hand_off(item_id, ref, feedback_ref=review_id)
        else:
            await self.state.set_phase(Phase.WAIT_CHECKS, active_request=ref, active_feedback_ref=review_id)
