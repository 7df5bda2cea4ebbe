"""WAIT_CHECKS: wait for CI and a standing approval before merging."""

import structlog

from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import CheckConclusion, Phase, RequestState, ReviewVerdict
from epic_autopilot.exceptions import PhaseError
from epic_autopilot.utils.polling import poll_until

log = structlog.get_logger(__name__)


class WaitChecksStage(WorkflowStage):
    """Poll CI until every check has concluded.

    A failed check wins over everything else and sends the item to
    FIX_ISSUES, as does a new changes-requested review. With
    ``require_approval`` the latest verdict must still be an approval; when
    the review that let the item through is gone (dismissed or superseded)
    the item goes back to FIX_ISSUES instead of waiting for the cap.
    A request without any check runs counts as passing.
    """

    phase = Phase.WAIT_CHECKS

    async def execute(self, state: OrchestratorState) -> None:
        item_id = self.require_item(state)
        ref = await self.require_request(state, item_id)
        require_approval = self.settings.workflow.require_approval
        admitted_by = state.active_feedback_ref

        async def attempt() -> Phase | None:
            request = await self.ctx.review.get_request(ref)
            if request.state == RequestState.MERGED:
                return Phase.MERGE
            if request.state == RequestState.CLOSED:
                raise PhaseError(f"Request #{ref} was closed without merging", item_id=item_id, phase=str(self.phase))

            conclusions = await self.ctx.ci.check_conclusions(ref)
            if CheckConclusion.FAIL in conclusions:
                return Phase.FIX_ISSUES

            review = await self.ctx.review.latest_review(ref)
            if review.verdict == ReviewVerdict.CHANGES_REQUESTED and review.review_id != admitted_by:
                return Phase.FIX_ISSUES

            approved = review.verdict == ReviewVerdict.APPROVED
            if require_approval and not approved:
                if review.verdict == ReviewVerdict.NONE or review.review_id != admitted_by:
                    log.info("review_withdrawn", item=item_id, pr=ref, verdict=str(review.verdict))
                    return Phase.FIX_ISSUES

            if CheckConclusion.PENDING in conclusions:
                return None
            if require_approval and not approved:
                return None
            return Phase.MERGE

        next_phase = await poll_until(
            attempt,
            max_iterations=self.settings.workflow.max_check_wait,
            interval=self.settings.workflow.check_interval,
            sleep=self.ctx.sleep,
            description=f"checks of request #{ref}",
            item_id=item_id,
            phase=str(self.phase),
        )
        log.info("checks_resolved", item=item_id, pr=ref, next_phase=str(next_phase))
        await self.state.set_phase(next_phase, active_request=ref)
