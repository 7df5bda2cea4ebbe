"""MERGE: merge the active item and record it as completed."""

import structlog

from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import Phase
from epic_autopilot.exceptions import AutopilotError, MergeConflictError, MergeFailureError

log = structlog.get_logger(__name__)


class MergeStage(WorkflowStage):
    phase = Phase.MERGE

    async def execute(self, state: OrchestratorState) -> None:
        item_id = self.require_item(state)
        ref = await self.require_request(state, item_id)

        result = await self.ctx.vcs.merge_and_delete_branch(ref)
        if not result.merged:
            error_cls = MergeConflictError if result.conflict else MergeFailureError
            raise error_cls(
                f"Merge of request #{ref} failed: {result.message or 'unknown reason'}",
                item_id=item_id,
                phase=str(self.phase),
            )
        log.info("request_merged", item=item_id, pr=ref, sha=result.sha, already_merged=result.already_merged)

        # The base branch now carries the item; a failure here is for a human to look at
        report = await self.ctx.checks.run(self.ctx.root)
        if not report.passed:
            log.warning("post_merge_checks_failed", item=item_id, failures=report.summary())

        try:
            await self.ctx.vcs.remove_workspace(item_id)
        except AutopilotError as e:
            log.warning("workspace_cleanup_failed", item=item_id, error=e.message)

        await self.state.mark_completed(item_id, next_phase=Phase.CHECK_PENDING)
