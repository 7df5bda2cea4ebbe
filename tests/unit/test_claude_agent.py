"""Tests for the Claude CLI development agent binding."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from epic_autopilot.enums import AgentStatus
from epic_autopilot.exceptions import AutopilotError
from epic_autopilot.providers.claude_agent import (
    DEFAULT_REPLY,
    REPLY_HEADER,
    ClaudeCliAgent,
    extract_reply,
    parse_status,
)


class TestParseStatus:
    def test_complete_marker(self):
        result = parse_status("did things\nSTATUS: STORIES_COMPLETE\n")

        assert result.status == AgentStatus.COMPLETE
        assert not result.blocked

    def test_blocked_with_reason(self):
        result = parse_status("STATUS: STORIES_BLOCKED - missing API credentials\n")

        assert result.blocked
        assert result.reason == "missing API credentials"

    def test_fix_blocked_marker(self):
        result = parse_status("STATUS: BLOCKED - reviewer asks for a redesign", AgentStatus.FIXED)

        assert result.status == AgentStatus.BLOCKED
        assert result.reason == "reviewer asks for a redesign"

    def test_blocked_without_reason(self):
        result = parse_status("status: blocked")

        assert result.blocked
        assert result.reason

    def test_no_marker_counts_as_success(self):
        """An agent that stops without a marker leaves the decision to the checks."""
        result = parse_status("ran out of turns", AgentStatus.FIXED)

        assert result.status == AgentStatus.FIXED


class TestExtractReply:
    def test_reply_block(self):
        output = (
            "Fixed things.\n"
            "REPLY_TO_REVIEWER:\n"
            "- Added tests for the cart total rounding\n"
            "\n"
            "- Renamed the helper as suggested\n"
            "END_REPLY\n"
            "STATUS: FIXED\n"
        )

        reply = extract_reply(output)

        assert reply.startswith(REPLY_HEADER)
        assert "- Added tests for the cart total rounding\n- Renamed the helper as suggested" in reply
        assert "END_REPLY" not in reply

    def test_reply_terminated_by_status(self):
        output = "REPLY_TO_REVIEWER:\nSwitched every call site to the shared client\nSTATUS: FIXED\n"

        assert "shared client" in extract_reply(output)

    def test_short_reply_falls_back_to_default(self):
        assert extract_reply("REPLY_TO_REVIEWER:\nDone\nEND_REPLY") == DEFAULT_REPLY

    def test_missing_reply(self):
        assert extract_reply("STATUS: FIXED") == DEFAULT_REPLY


class TestClaudeCliAgent:
    @pytest.fixture
    def agent(self) -> ClaudeCliAgent:
        return ClaudeCliAgent(command="claude", base_branch="develop", allowed_tools=["Bash", "Read"], timeout=60)

    def test_build_command(self, agent):
        command = agent.build_command("do it", 25)

        assert command == [
            "claude",
            "-p",
            "do it",
            "--permission-mode",
            "acceptEdits",
            "--allowedTools",
            "Bash,Read",
            "--max-turns",
            "25",
        ]

    @pytest.mark.asyncio
    async def test_develop_renders_prompt(self, agent, tmp_path: Path):
        with patch(
            "epic_autopilot.providers.claude_agent.run_command",
            new_callable=AsyncMock,
            return_value=("STATUS: STORIES_COMPLETE", "", 0),
        ) as run:
            result = await agent.develop("7A", "", tmp_path, 80)

        args = run.await_args.args
        prompt = args[2]
        assert result.status == AgentStatus.COMPLETE
        assert "7A" in prompt
        assert args[-1] == "80"
        assert run.await_args.kwargs["cwd"] == tmp_path
        assert run.await_args.kwargs["timeout"] == 60

    @pytest.mark.asyncio
    async def test_review_includes_previous_failures(self, agent, tmp_path: Path):
        with patch(
            "epic_autopilot.providers.claude_agent.run_command",
            new_callable=AsyncMock,
            return_value=("STATUS: CODE_REVIEW_DONE", "", 0),
        ) as run:
            await agent.review("7A", "- `make check` exited with 1", tmp_path, 80)

        prompt = run.await_args.args[2]
        assert "git diff develop...HEAD" in prompt
        assert "`make check` exited with 1" in prompt

    @pytest.mark.asyncio
    async def test_fix_returns_reply(self, agent, tmp_path: Path):
        output = "REPLY_TO_REVIEWER:\nAdded the missing null check in checkout\nEND_REPLY\nSTATUS: FIXED"
        with patch(
            "epic_autopilot.providers.claude_agent.run_command",
            new_callable=AsyncMock,
            return_value=(output, "", 0),
        ) as run:
            result = await agent.fix("7A", "REVIEW (changes_requested):\nAdd a null check", tmp_path, 30)

        assert "Add a null check" in run.await_args.args[2]
        assert result.status == AgentStatus.FIXED
        assert "missing null check" in result.reply

    @pytest.mark.asyncio
    async def test_blocked_fix_has_no_reply(self, agent, tmp_path: Path):
        with patch(
            "epic_autopilot.providers.claude_agent.run_command",
            new_callable=AsyncMock,
            return_value=("STATUS: BLOCKED - needs a product decision", "", 1),
        ):
            result = await agent.fix("7A", "feedback", tmp_path, 30)

        assert result.blocked
        assert result.reply is None

    @pytest.mark.asyncio
    async def test_timeout(self, agent, tmp_path: Path):
        with patch(
            "epic_autopilot.providers.claude_agent.run_command",
            new_callable=AsyncMock,
            side_effect=TimeoutError,
        ):
            with pytest.raises(AutopilotError, match="timed out"):
                await agent.develop("7A", "", tmp_path, 80)

    @pytest.mark.asyncio
    async def test_missing_executable(self, agent, tmp_path: Path):
        with patch(
            "epic_autopilot.providers.claude_agent.run_command",
            new_callable=AsyncMock,
            side_effect=FileNotFoundError("claude"),
        ):
            with pytest.raises(AutopilotError, match="failed to start"):
                await agent.develop("7A", "", tmp_path, 80)
