"""Development agent binding for the Claude CLI.

The CLI runs headless in the item's workspace. Its outcome is read from
status markers the prompts ask it to print::

    STATUS: STORIES_COMPLETE
    STATUS: STORIES_BLOCKED - <reason>
    STATUS: CODE_REVIEW_DONE
    STATUS: FIXED
    STATUS: BLOCKED - <reason>

A fix run may also print a reply for the reviewer between
``REPLY_TO_REVIEWER:`` and ``END_REPLY``.
"""

import re
import subprocess
from pathlib import Path

import structlog

from epic_autopilot.enums import AgentStatus
from epic_autopilot.exceptions import AutopilotError
from epic_autopilot.models.domain import AgentResult
from epic_autopilot.prompts import render_prompt
from epic_autopilot.providers.base import DevelopmentAgent
from epic_autopilot.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

_BLOCKED = re.compile(r"STATUS:\s*(?:STORIES_)?BLOCKED\s*(?:-\s*(?P<reason>.*))?", re.IGNORECASE)
_REPLY = re.compile(
    r"REPLY_TO_(?:REVIEWER|COPILOT):\s*\n(?P<reply>.*?)(?:^\s*END_REPLY|^\s*STATUS:\s*FIXED|\Z)",
    re.DOTALL | re.MULTILINE,
)

MIN_REPLY_WORDS = 5
MAX_REPLY_LINES = 50

DEFAULT_REPLY = """## Addressed Review Feedback

Thank you for the review! The suggestions are addressed in the latest commit(s).

**Summary of changes:**
- Reviewed and fixed all actionable items from the feedback
- Ran local checks to verify the fixes

Please re-review when ready."""

REPLY_HEADER = """## Addressed Review Feedback

Thank you for the review! Here's what was fixed:

"""


def parse_status(output: str, success: AgentStatus = AgentStatus.COMPLETE) -> AgentResult:
    """Derive an ``AgentResult`` from agent output.

    A blocked marker anywhere in the output wins. Otherwise the run counts as
    ``success``: an agent that stops without a marker has still edited the
    workspace, and the local checks decide what happens next.
    """
    match = _BLOCKED.search(output)
    if match:
        reason = (match.group("reason") or "").strip() or "agent reported blocked without a reason"
        return AgentResult(status=AgentStatus.BLOCKED, reason=reason, output=output)
    return AgentResult(status=success, output=output)


def extract_reply(output: str) -> str:
    """Reply text for the reviewer, or a default acknowledgement."""
    match = _REPLY.search(output)
    reply = ""
    if match:
        lines = [line for line in match.group("reply").splitlines() if line.strip()]
        reply = "\n".join(lines[:MAX_REPLY_LINES]).strip()

    if len(reply.split()) < MIN_REPLY_WORDS:
        return DEFAULT_REPLY
    return REPLY_HEADER + reply


class ClaudeCliAgent(DevelopmentAgent):
    """Run the agent CLI headless and parse its status markers.

    Args:
        command: Agent executable
        base_branch: Branch the review prompt diffs against
        allowed_tools: Tools passed to ``--allowedTools``
        permission_mode: Value of ``--permission-mode``
        timeout: Seconds before a run is killed
    """

    def __init__(
        self,
        command: str = "claude",
        base_branch: str = "main",
        allowed_tools: list[str] | None = None,
        permission_mode: str = "acceptEdits",
        timeout: float | None = None,
    ) -> None:
        self.command = command
        self.base_branch = base_branch
        self.allowed_tools = allowed_tools or ["Bash", "Read", "Write", "Edit", "Grep"]
        self.permission_mode = permission_mode
        self.timeout = timeout

    def build_command(self, prompt: str, max_turns: int) -> list[str]:
        return [
            self.command,
            "-p",
            prompt,
            "--permission-mode",
            self.permission_mode,
            "--allowedTools",
            ",".join(self.allowed_tools),
            "--max-turns",
            str(max_turns),
        ]

    async def _run(self, prompt: str, workspace: Path, max_turns: int, purpose: str, item_id: str) -> str:
        log.info("agent_run_started", purpose=purpose, item=item_id, max_turns=max_turns, cwd=str(workspace))
        try:
            stdout, stderr, code = await run_command(
                *self.build_command(prompt, max_turns),
                cwd=workspace,
                check=False,
                timeout=self.timeout,
            )
        except TimeoutError as e:
            raise AutopilotError(f"Agent {purpose} run timed out after {self.timeout}s") from e
        except (FileNotFoundError, subprocess.SubprocessError) as e:
            raise AutopilotError(f"Agent command failed to start: {e}") from e

        if code != 0:
            log.warning("agent_nonzero_exit", purpose=purpose, item=item_id, code=code, stderr=stderr[-500:])
        log.info("agent_run_finished", purpose=purpose, item=item_id, output_length=len(stdout))
        return stdout + ("\n" + stderr if stderr else "")

    async def develop(self, item_id: str, instructions: str, workspace: Path, max_turns: int) -> AgentResult:
        prompt = render_prompt("develop.md.j2", item_id=item_id)
        if instructions:
            prompt = f"{prompt}\n{instructions}"
        output = await self._run(prompt, workspace, max_turns, "develop", item_id)
        return parse_status(output, AgentStatus.COMPLETE)

    async def review(self, item_id: str, instructions: str, workspace: Path, max_turns: int) -> AgentResult:
        prompt = render_prompt(
            "review.md.j2", item_id=item_id, base_branch=self.base_branch, previous_failures=instructions
        )
        output = await self._run(prompt, workspace, max_turns, "review", item_id)
        return parse_status(output, AgentStatus.COMPLETE)

    async def fix(self, item_id: str, feedback: str, workspace: Path, max_turns: int) -> AgentResult:
        prompt = render_prompt("fix.md.j2", item_id=item_id, feedback=feedback)
        output = await self._run(prompt, workspace, max_turns, "fix", item_id)
        result = parse_status(output, AgentStatus.FIXED)
        if not result.blocked:
            result.reply = extract_reply(output)
        return result
