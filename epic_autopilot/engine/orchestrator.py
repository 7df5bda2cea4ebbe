"""
Orchestration loop driving the phase state machine.

The ``Orchestrator`` is the central coordination point of a run. Each loop
iteration:

- reads the committed state,
- stops on BLOCKED (exit code 1) or DONE (exit code 0, after draining the
  pending queue),
- services the pending-review queue when its interval is due,
- dispatches the stage registered for the current phase.

Background servicing only ever happens between two phase dispatches, never
in the middle of one.

Resume Semantics:
    A plain run starts from CHECK_PENDING with no active item, keeping
    completed items and the pending queue. ``resume=True`` continues from
    the committed phase; a BLOCKED run resumes at CHECK_PENDING with its
    active item intact.

Example:
    >>> orchestrator = Orchestrator(ctx, StateManager(settings.state_file))
    >>> exit_code = await orchestrator.run(resume=True)
"""

import time
from collections.abc import Callable

import structlog

from epic_autopilot.engine.context import RunContext
from epic_autopilot.engine.pending_queue import PendingReviewQueue
from epic_autopilot.engine.stages import (
    CheckPendingStage,
    CreateWorkspaceStage,
    DevelopStage,
    FindWorkStage,
    FixIssuesStage,
    MergeStage,
    ReviewLocalStage,
    SubmitStage,
    WaitChecksStage,
    WaitReviewStage,
    WorkflowStage,
)
from epic_autopilot.engine.state_manager import StateManager
from epic_autopilot.enums import Phase
from epic_autopilot.utils.polling import IntervalTimer

log = structlog.get_logger(__name__)

EXIT_DONE = 0
EXIT_BLOCKED = 1


class Orchestrator:
    """Run the state machine until DONE or BLOCKED.

    Attributes:
        ctx: Collaborators and run options
        store: Durable state store
        queue: Pending-review queue serviced between dispatches
        stages: Registry mapping each working phase to its stage
    """

    def __init__(
        self,
        ctx: RunContext,
        store: StateManager,
        queue: PendingReviewQueue | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ctx = ctx
        self.store = store
        self.queue = queue or PendingReviewQueue(ctx, store)
        self.timer = IntervalTimer(ctx.settings.workflow.pending_check_interval, clock=clock)

        stage_classes: list[type[WorkflowStage]] = [
            CheckPendingStage,
            FindWorkStage,
            CreateWorkspaceStage,
            DevelopStage,
            ReviewLocalStage,
            SubmitStage,
            WaitReviewStage,
            WaitChecksStage,
            FixIssuesStage,
            MergeStage,
        ]
        self.stages: dict[Phase, WorkflowStage] = {cls.phase: cls(ctx, store) for cls in stage_classes}

    async def prepare(self, resume: bool) -> None:
        """Create or recover the state before the first dispatch."""
        created = await self.store.initialize_if_absent()

        # A crash while fixing a pending item leaves the pipeline suspended
        if await self.store.restore_context():
            log.warning("saved_context_restored")

        state = await self.store.read()
        if created:
            return

        if not resume:
            log.info("fresh_run", previous_phase=str(state.phase), completed=len(state.completed_items))
            await self.store.set_phase(
                Phase.CHECK_PENDING,
                active_item=None,
                active_request=None,
                active_feedback_ref=None,
            )
        elif state.phase == Phase.BLOCKED:
            await self.store.clear_blocked(Phase.CHECK_PENDING)
        elif state.phase == Phase.DONE:
            await self.store.set_phase(Phase.CHECK_PENDING)
        else:
            log.info("resuming_run", phase=str(state.phase), item=state.active_item)

    async def service_pending(self) -> None:
        """Service the pending queue if the interval is due."""
        state = await self.store.read()
        if not (self.ctx.concurrent or state.pending_queue):
            return
        if not self.timer.due():
            return

        self.timer.mark()
        await self.queue.service()

    async def drain(self) -> None:
        """Keep servicing the queue until nothing is expected to resolve.

        Bounded by ``max_check_wait`` rounds; whatever is left stays
        persisted for the next run.
        """
        rounds = self.ctx.settings.workflow.max_check_wait
        interval = self.ctx.settings.workflow.pending_check_interval

        for round_number in range(1, rounds + 1):
            if not await self.queue.has_active_entries():
                return
            log.info("draining_pending_queue", round=round_number, max_rounds=rounds)
            await self.queue.service()
            if round_number < rounds and await self.queue.has_active_entries():
                await self.ctx.sleep(interval)

        state = await self.store.read()
        if state.pending_queue:
            log.warning("pending_items_remaining", items=state.pending_ids)

    async def run(self, resume: bool = False) -> int:
        """Drive the loop.

        Returns:
            0 when the run reached DONE, 1 when it stopped in BLOCKED.
        """
        await self.prepare(resume)

        while True:
            state = await self.store.read()

            if state.phase == Phase.BLOCKED:
                blocked = state.blocked
                log.error(
                    "run_stopped_blocked",
                    item=blocked.item_id if blocked else state.active_item,
                    phase=str(blocked.phase) if blocked else None,
                    reason=blocked.reason if blocked else None,
                )
                return EXIT_BLOCKED

            if state.phase == Phase.DONE:
                await self.drain()
                await self.ctx.vcs.prune_workspaces()
                final = await self.store.read()
                log.info("run_complete", completed=len(final.completed_items), pending=final.pending_ids)
                return EXIT_DONE

            await self.service_pending()
            # Servicing never changes the phase, but re-read the committed record anyway
            state = await self.store.read()

            stage = self.stages[state.phase]
            structlog.contextvars.bind_contextvars(item=state.active_item, phase=str(state.phase))
            try:
                await stage.run(state)
            finally:
                structlog.contextvars.unbind_contextvars("item", "phase")

            await self.ctx.sleep(self.ctx.settings.workflow.loop_delay)
