"""SUBMIT: open (or reuse) the review request."""

import structlog

from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import Phase

log = structlog.get_logger(__name__)


class SubmitStage(WorkflowStage):
    """Submit the item for external review.

    An open request for the item's branch is reused. In concurrent mode the
    item is handed to the pending queue when it has room, and the run looks
    for new work; otherwise the run waits for the review itself.
    """

    phase = Phase.SUBMIT

    async def execute(self, state: OrchestratorState) -> None:
        item_id = self.require_item(state)
        branch = self.ctx.vcs.branch_name(item_id)

        request = await self.ctx.review.find_open_request(branch)
        if request is None:
            request = await self.ctx.review.create_request(item_id, branch)
            log.info("request_created", item=item_id, pr=request.number, url=request.url)
        else:
            log.info("request_reused", item=item_id, pr=request.number)

        if self.queue_has_room(state):
            await self.hand_off(item_id, request.number)
            return

        await self.state.set_phase(Phase.WAIT_EXTERNAL_REVIEW, active_request=request.number)
