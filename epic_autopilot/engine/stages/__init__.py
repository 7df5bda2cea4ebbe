"""One stage per phase of the orchestration state machine."""

from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.stages.check_pending import CheckPendingStage
from epic_autopilot.engine.stages.create_workspace import CreateWorkspaceStage
from epic_autopilot.engine.stages.develop import DevelopStage
from epic_autopilot.engine.stages.find_work import FindWorkStage
from epic_autopilot.engine.stages.fix_issues import FixIssuesStage
from epic_autopilot.engine.stages.merge import MergeStage
from epic_autopilot.engine.stages.review_local import ReviewLocalStage
from epic_autopilot.engine.stages.submit import SubmitStage
from epic_autopilot.engine.stages.wait_checks import WaitChecksStage
from epic_autopilot.engine.stages.wait_review import WaitReviewStage

__all__ = [
    "WorkflowStage",
    "CheckPendingStage",
    "CreateWorkspaceStage",
    "DevelopStage",
    "FindWorkStage",
    "FixIssuesStage",
    "MergeStage",
    "ReviewLocalStage",
    "SubmitStage",
    "WaitChecksStage",
    "WaitReviewStage",
]
