"""Run context shared by the stages, the pending queue and the loop."""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from epic_autopilot.config.settings import AutopilotSettings
from epic_autopilot.providers.base import (
    ContinuousIntegration,
    DevelopmentAgent,
    LocalChecks,
    ReviewService,
    VersionControl,
    WorkCatalog,
)
from epic_autopilot.utils.polling import Sleep


@dataclass
class RunContext:
    """Collaborators and options for one orchestrator run.

    Attributes:
        settings: Effective settings (CLI overrides already applied)
        vcs: Version control binding
        review: Review service binding
        ci: CI status binding
        agent: Development agent binding
        catalog: Work catalog
        checks: Local check suite
        patterns: Item patterns selected by the operator
        sleep: Sleep coroutine used between polls and loop iterations
    """

    settings: AutopilotSettings
    vcs: VersionControl
    review: ReviewService
    ci: ContinuousIntegration
    agent: DevelopmentAgent
    catalog: WorkCatalog
    checks: LocalChecks
    patterns: list[str] = field(default_factory=list)
    sleep: Sleep = asyncio.sleep

    @property
    def root(self) -> Path:
        return self.settings.root

    @property
    def concurrent(self) -> bool:
        return self.settings.workflow.concurrent

    @property
    def max_pending(self) -> int:
        return self.settings.workflow.max_pending
