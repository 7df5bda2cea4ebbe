"""FIND_WORK: pick the next catalog item."""

import structlog

from epic_autopilot.engine.catalog import find_next
from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import Phase

log = structlog.get_logger(__name__)


class FindWorkStage(WorkflowStage):
    phase = Phase.FIND_WORK

    async def execute(self, state: OrchestratorState) -> None:
        candidates = await self.ctx.catalog.list_candidates()
        # Entries left over from a concurrent run are never picked up as new work.
        skip_pending = self.ctx.concurrent or bool(state.pending_queue)
        item_id = find_next(candidates, state, self.ctx.patterns, concurrent=skip_pending)

        if item_id is None:
            log.info("no_more_work", completed=len(state.completed_items), pending=len(state.pending_queue))
            await self.state.set_phase(Phase.DONE, active_item=None, active_request=None, active_feedback_ref=None)
            return

        log.info("work_selected", item=item_id)
        await self.state.set_phase(
            Phase.CREATE_WORKSPACE,
            active_item=item_id,
            active_request=None,
            active_feedback_ref=None,
        )
