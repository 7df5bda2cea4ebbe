"""Local check suite run before submission and after merges."""

import subprocess
from pathlib import Path

import structlog

from epic_autopilot.models.domain import CheckFailure, CheckReport
from epic_autopilot.providers.base import LocalChecks
from epic_autopilot.utils.async_subprocess import run_shell_command

log = structlog.get_logger(__name__)

MAX_FAILURE_OUTPUT = 4000


def detect_commands(cwd: Path) -> list[str]:
    """Infer check commands from the project layout.

    A Rust backend gets format, lint and test steps; a pnpm frontend gets its
    ``check``, ``typecheck`` and ``test`` scripts.
    """
    commands: list[str] = []
    if (cwd / "backend" / "Cargo.toml").is_file():
        commands.extend(
            [
                "cd backend && cargo fmt --check",
                "cd backend && cargo clippy --workspace --all-targets -- -D warnings",
                "cd backend && cargo test --workspace",
            ]
        )
    if (cwd / "frontend" / "package.json").is_file():
        commands.extend(
            [
                "cd frontend && pnpm run check",
                "cd frontend && pnpm run --if-present typecheck",
                "cd frontend && pnpm -r --if-present run test",
            ]
        )
    return commands


class ShellChecks(LocalChecks):
    """Run shell check commands, collecting every failure.

    Args:
        commands: Commands to run; empty means auto-detect per workspace
        timeout: Seconds allowed per command
    """

    def __init__(self, commands: list[str] | None = None, timeout: float | None = None) -> None:
        self.commands = list(commands or [])
        self.timeout = timeout

    async def run(self, cwd: Path) -> CheckReport:
        commands = self.commands or detect_commands(cwd)
        if not commands:
            log.info("no_local_checks", cwd=str(cwd))
            return CheckReport(passed=True)

        failures: list[CheckFailure] = []
        for command in commands:
            try:
                stdout, stderr, code = await run_shell_command(command, cwd=cwd, check=False, timeout=self.timeout)
            except TimeoutError:
                failures.append(CheckFailure(command=command, exit_code=-1, output=f"timed out after {self.timeout}s"))
                log.warning("local_check_timeout", command=command)
                continue
            except (OSError, subprocess.SubprocessError) as e:
                failures.append(CheckFailure(command=command, exit_code=-1, output=str(e)))
                log.warning("local_check_error", command=command, error=str(e))
                continue

            if code != 0:
                output = (stdout + stderr)[-MAX_FAILURE_OUTPUT:]
                failures.append(CheckFailure(command=command, exit_code=code, output=output))
                log.warning("local_check_failed", command=command, exit_code=code)
            else:
                log.debug("local_check_passed", command=command)

        report = CheckReport(passed=not failures, failures=failures, commands_run=commands)
        log.info("local_checks_finished", passed=report.passed, failed=len(failures), total=len(commands))
        return report
