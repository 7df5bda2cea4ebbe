"""CHECK_PENDING: finish unfinished submissions before starting new work."""

import structlog

from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import Phase
from epic_autopilot.exceptions import ExternalServiceError

log = structlog.get_logger(__name__)


class CheckPendingStage(WorkflowStage):
    """Resume an open request that nothing is tracking yet.

    Open requests whose branch carries the item prefix and whose item is
    neither completed nor in the pending queue are resumed at
    WAIT_EXTERNAL_REVIEW, lowest request number first. An item still active
    after an operator resume, without an open request, goes back to
    CREATE_WORKSPACE. Otherwise the run moves on to FIND_WORK.
    """

    phase = Phase.CHECK_PENDING

    async def execute(self, state: OrchestratorState) -> None:
        prefix = self.settings.repository.branch_prefix

        try:
            requests = await self.ctx.review.list_open_requests(prefix)
        except ExternalServiceError as e:
            log.warning("open_requests_unavailable", error=str(e))
            requests = []

        tracked = set(state.completed_items) | set(state.pending_ids)
        for request in sorted(requests, key=lambda r: r.number):
            item_id = request.head[len(prefix) :]
            if not item_id or item_id in tracked:
                continue

            log.info("resuming_open_request", item=item_id, pr=request.number)
            await self.ctx.vcs.ensure_branch(item_id)
            await self.state.set_phase(
                Phase.WAIT_EXTERNAL_REVIEW,
                active_item=item_id,
                active_request=request.number,
                active_feedback_ref=None if item_id != state.active_item else state.active_feedback_ref,
            )
            return

        if state.active_item and state.active_item not in tracked:
            log.info("resuming_active_item", item=state.active_item)
            await self.state.set_phase(Phase.CREATE_WORKSPACE, active_request=None)
            return

        log.info("no_open_requests")
        await self.state.set_phase(Phase.FIND_WORK, active_item=None, active_request=None, active_feedback_ref=None)
