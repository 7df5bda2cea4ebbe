"""Orchestration engine.

Key Components:
    - Orchestrator: Phase loop with background pending-queue servicing
    - StateManager: Durable state with atomic read-modify-write transactions
    - PendingReviewQueue: Submitted items waiting for review, CI and merge
    - WorkflowStage: Base class of the per-phase stages

Example:
    >>> from epic_autopilot.engine import Orchestrator, StateManager
    >>> orchestrator = Orchestrator(ctx, StateManager(settings.state_file))
    >>> exit_code = await orchestrator.run(resume=False)
"""

from epic_autopilot.engine.orchestrator import Orchestrator
from epic_autopilot.engine.pending_queue import PendingReviewQueue
from epic_autopilot.engine.state_manager import StateManager
from epic_autopilot.engine.types import OrchestratorState, PendingEntry

__all__ = [
    "Orchestrator",
    "OrchestratorState",
    "PendingEntry",
    "PendingReviewQueue",
    "StateManager",
]
