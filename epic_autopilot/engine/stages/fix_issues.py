"""FIX_ISSUES: address review feedback and CI failures on the active item."""

import structlog

from epic_autopilot.engine.feedback import collect_feedback
from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import Phase
from epic_autopilot.exceptions import AgentBlockedError, ExternalServiceError

log = structlog.get_logger(__name__)


class FixIssuesStage(WorkflowStage):
    """Run one fix pass in the main checkout and resubmit.

    The review id the fix answered is remembered as the active feedback
    reference so the same review does not trigger a second fix.
    """

    phase = Phase.FIX_ISSUES

    async def execute(self, state: OrchestratorState) -> None:
        item_id = self.require_item(state)
        ref = await self.require_request(state, item_id)
        workspace = self.ctx.root

        feedback = await collect_feedback(self.ctx.review, self.ctx.ci, ref)
        log.info("fixing_issues", item=item_id, pr=ref, review_feedback=feedback.has_review_feedback)

        result = await self.ctx.agent.fix(item_id, feedback.text, workspace, self.settings.agent.fix_max_turns)
        if result.blocked:
            raise AgentBlockedError(result.reason, item_id=item_id, phase=str(self.phase))

        await self.ctx.vcs.commit_all("fix: address ci/review", cwd=workspace)
        await self.ctx.vcs.push(self.ctx.vcs.branch_name(item_id), cwd=workspace)

        if feedback.has_review_feedback:
            try:
                if result.reply:
                    await self.ctx.review.post_reply(ref, result.reply)
                resolved = await self.ctx.review.resolve_all_threads(ref)
                log.info("threads_resolved", item=item_id, pr=ref, count=resolved)
            except ExternalServiceError as e:
                log.warning("reply_failed", item=item_id, pr=ref, error=str(e))

        await self.state.set_phase(
            Phase.WAIT_EXTERNAL_REVIEW,
            active_request=ref,
            active_feedback_ref=feedback.review_id,
        )
