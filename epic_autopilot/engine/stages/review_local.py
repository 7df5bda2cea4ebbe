"""REVIEW_LOCAL: automated review gated by the local checks."""

import structlog

from epic_autopilot.engine.stages.base import WorkflowStage
from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.enums import Phase
from epic_autopilot.exceptions import AgentBlockedError, VerificationFailureError
from epic_autopilot.models.domain import CheckReport

log = structlog.get_logger(__name__)


def describe_failures(report: CheckReport) -> str:
    lines = []
    for failure in report.failures:
        lines.append(f"- `{failure.command}` exited with {failure.exit_code}")
        if failure.output.strip():
            lines.append(failure.output.strip()[-1500:])
    return "\n".join(lines)


class ReviewLocalStage(WorkflowStage):
    """Review, fix and verify locally, up to ``review_retries`` attempts.

    Each attempt runs the agent review and then the local checks. The
    failures of one attempt are handed to the next. When the checks pass
    the branch is pushed and the run moves to SUBMIT.
    """

    phase = Phase.REVIEW_LOCAL

    async def execute(self, state: OrchestratorState) -> None:
        item_id = self.require_item(state)
        workspace = self.ctx.root
        attempts = self.settings.workflow.review_retries
        previous_failures = ""

        for attempt in range(1, attempts + 1):
            log.info("local_review_attempt", item=item_id, attempt=attempt, max_attempts=attempts)

            result = await self.ctx.agent.review(item_id, previous_failures, workspace, self.settings.agent.max_turns)
            if result.blocked:
                raise AgentBlockedError(result.reason, item_id=item_id, phase=str(self.phase))

            await self.ctx.vcs.commit_all("fix: address code review feedback", cwd=workspace)

            report = await self.ctx.checks.run(workspace)
            if report.passed:
                branch = self.ctx.vcs.branch_name(item_id)
                await self.ctx.vcs.push(branch, cwd=workspace)
                await self.state.set_phase(Phase.SUBMIT)
                return

            previous_failures = describe_failures(report)
            log.warning("local_review_checks_failed", item=item_id, attempt=attempt, failures=report.summary())

        raise VerificationFailureError(
            f"Local checks still failing after {attempts} review attempts",
            item_id=item_id,
            phase=str(self.phase),
            attempts=attempts,
        )
