"""
Base class for phase stages.

Each phase of the state machine has one stage. The orchestration loop reads
the committed state, picks the stage for ``state.phase`` and calls ``run``.
A stage does its work through the collaborators in the ``RunContext``,
decides the next phase and commits it through the ``StateManager`` before
returning. Committing the transition is always the stage's last action, so
an interrupted stage is simply re-entered on the next run.

Stage Lifecycle:
    1. Instantiation: the orchestrator builds one stage per phase
    2. Execution: ``run()`` calls ``execute()`` with a state snapshot
    3. Transition: ``execute()`` commits the next phase
    4. Escalation: ``_handle_stage_error()`` moves the run to BLOCKED

Creating New Stages:
    Subclass ``WorkflowStage``, set ``phase`` and implement ``execute()``.
    Raise a ``PhaseError`` subclass to escalate; never write BLOCKED directly.
"""

from abc import ABC, abstractmethod

import structlog

from epic_autopilot.config.settings import AutopilotSettings
from epic_autopilot.engine.context import RunContext
from epic_autopilot.engine.state_manager import StateManager
from epic_autopilot.engine.types import OrchestratorState, PendingEntry
from epic_autopilot.enums import Phase
from epic_autopilot.exceptions import (
    AutopilotError,
    PhaseError,
    StateInvariantError,
    StateSchemaError,
)

log = structlog.get_logger(__name__)


class WorkflowStage(ABC):
    """Abstract base class for phase stages.

    Attributes:
        ctx: Collaborators and run options
        state: Durable state store
        phase: Phase this stage handles
    """

    phase: Phase

    def __init__(self, ctx: RunContext, state: StateManager) -> None:
        self.ctx = ctx
        self.state = state

    @property
    def settings(self) -> AutopilotSettings:
        return self.ctx.settings

    @abstractmethod
    async def execute(self, state: OrchestratorState) -> None:
        """Do the phase's work and commit the next phase.

        Args:
            state: Snapshot of the committed state when the phase started

        Raises:
            PhaseError: To move the run to BLOCKED.
        """
        pass

    async def run(self, state: OrchestratorState) -> None:
        """Execute the stage, converting failures into a BLOCKED record.

        State store failures are not converted: if the store cannot be
        read or would be left inconsistent there is nothing safe to write.
        """
        try:
            await self.execute(state)
        except (StateSchemaError, StateInvariantError):
            raise
        except AutopilotError as e:
            await self._handle_stage_error(state, e)
        except Exception as e:
            log.error("stage_unexpected_error", phase=str(self.phase), error=str(e), exc_info=True)
            await self.state.block(
                self.phase,
                state.active_item,
                f"Unexpected error: {e}",
                error_kind="unexpected",
            )

    async def _handle_stage_error(self, state: OrchestratorState, error: AutopilotError) -> None:
        """Record the failure and move the run to BLOCKED.

        The active item is kept so ``run --continue`` can pick it up again.
        """
        item_id = state.active_item
        if isinstance(error, PhaseError) and error.item_id:
            item_id = error.item_id

        log.error(
            "stage_error",
            phase=str(self.phase),
            item=item_id,
            error=error.message,
            error_kind=error.error_kind,
        )
        await self.state.block(self.phase, item_id, error.message, error_kind=error.error_kind)

    def require_item(self, state: OrchestratorState) -> str:
        """Active item of the snapshot.

        Raises:
            PhaseError: If no item is active.
        """
        if not state.active_item:
            raise PhaseError("No active item", phase=str(self.phase))
        return state.active_item

    async def require_request(self, state: OrchestratorState, item_id: str) -> int:
        """Review request of the active item, looked up by branch if unknown.

        Raises:
            PhaseError: If the item has no open request.
        """
        if state.active_request is not None:
            return state.active_request

        branch = self.ctx.vcs.branch_name(item_id)
        request = await self.ctx.review.find_open_request(branch)
        if request is None:
            raise PhaseError(f"No open review request for branch {branch}", item_id=item_id, phase=str(self.phase))
        return request.number

    def queue_has_room(self, state: OrchestratorState) -> bool:
        """Check if a submitted item may be handed to the pending queue."""
        return self.ctx.concurrent and len(state.pending_queue) < self.ctx.max_pending

    async def hand_off(self, item_id: str, request_ref: int, feedback_ref: str | None = None) -> None:
        """Give the active item to the pending queue and look for new work.

        The main checkout goes back to the base branch first so the next
        item starts from a clean base.
        """
        await self.ctx.vcs.checkout_base()

        if self.settings.workflow.eager_workspaces:
            workspace = await self.ctx.vcs.create_workspace(item_id)
        else:
            workspace = self.ctx.vcs.workspace_path(item_id)

        entry = PendingEntry(
            item_id=item_id,
            request_ref=request_ref,
            workspace_ref=str(workspace),
            last_seen_feedback_ref=feedback_ref,
        )
        await self.state.hand_off(entry, next_phase=Phase.FIND_WORK)
