"""CREATE_WORKSPACE: put the main checkout on the item's branch."""

import re

from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import Phase
from epic_autopilot.exceptions import PhaseError

# Must be usable as the tail of a branch name
VALID_ITEM_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class CreateWorkspaceStage(WorkflowStage):
    phase = Phase.CREATE_WORKSPACE

    async def execute(self, state: OrchestratorState) -> None:
        item_id = self.require_item(state)
        if not VALID_ITEM_ID.match(item_id) or ".." in item_id or item_id.endswith((".", ".lock")):
            raise PhaseError(f"Invalid item identifier {item_id!r}", item_id=item_id, phase=str(self.phase))

        await self.ctx.vcs.ensure_branch(item_id)
        await self.state.set_phase(Phase.DEVELOP)
