"""Start-up detection of required external commands."""

import shutil
from collections.abc import Iterable

import structlog

from epic_autopilot.exceptions import ToolingMissingError

log = structlog.get_logger(__name__)

INSTALL_HINTS = {
    "git": "Install git from https://git-scm.com/downloads",
    "claude": "Install the Claude CLI: npm install -g @anthropic-ai/claude-code",
}


def is_tool_available(tool: str) -> bool:
    return shutil.which(tool) is not None


def require_tooling(tools: Iterable[str]) -> None:
    """Fail fast if any command is missing from PATH.

    Raises:
        ToolingMissingError: For the first missing command.
    """
    for tool in tools:
        if not is_tool_available(tool):
            raise ToolingMissingError(tool, hint=INSTALL_HINTS.get(tool))
        log.debug("tool_found", tool=tool)
