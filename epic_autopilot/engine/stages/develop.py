"""DEVELOP: let the agent implement the item."""

import structlog

from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import Phase
from epic_autopilot.exceptions import AgentBlockedError

log = structlog.get_logger(__name__)


class DevelopStage(WorkflowStage):
    """Run the development agent in the main checkout.

    Uncommitted changes are committed first so the agent starts clean.
    Local check failures after development are tolerated; REVIEW_LOCAL is
    where they have to be fixed.
    """

    phase = Phase.DEVELOP

    async def execute(self, state: OrchestratorState) -> None:
        item_id = self.require_item(state)
        workspace = self.ctx.root

        if await self.ctx.vcs.commit_all("chore: auto-commit before story development", cwd=workspace):
            log.warning("dirty_tree_committed", item=item_id)

        result = await self.ctx.agent.develop(item_id, "", workspace, self.settings.agent.max_turns)
        if result.blocked:
            raise AgentBlockedError(result.reason, item_id=item_id, phase=str(self.phase))

        await self.ctx.vcs.commit_all(f"feat({item_id}): implement epic stories", cwd=workspace)

        report = await self.ctx.checks.run(workspace)
        if not report.passed:
            log.warning("checks_failed_after_develop", item=item_id, failures=report.summary())

        await self.state.set_phase(Phase.REVIEW_LOCAL)
