"""Async subprocess helpers.

Every external command the orchestrator runs (git, the agent CLI, project
checks) goes through these two functions so the event loop is never blocked
and output is decoded the same way everywhere.

Example:
    >>> stdout, stderr, code = await run_command("git", "status", "--porcelain", cwd="/repo")
"""

import asyncio
import subprocess
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)


async def _communicate(process: asyncio.subprocess.Process, timeout: float | None) -> tuple[str, str]:
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")
    return stdout, stderr


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a command without shell interpolation.

    Args:
        *args: Executable followed by its arguments
        cwd: Working directory (defaults to the current one)
        check: Raise ``CalledProcessError`` on a non-zero exit code
        timeout: Seconds before the process is killed and ``TimeoutError``
            is raised
        env: Environment for the child process

    Returns:
        Tuple of (stdout, stderr, return_code).

    Raises:
        subprocess.CalledProcessError: If ``check`` is set and the command fails.
        TimeoutError: If ``timeout`` is exceeded.
        FileNotFoundError: If the executable does not exist.
    """
    log.debug("command_started", command=args[0], args=list(args[1:]), cwd=str(cwd) if cwd else None)
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await _communicate(process, timeout)

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode or 1, args, stdout, stderr)

    return stdout, stderr, process.returncode or 0


async def run_shell_command(
    command: str,
    *,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a command string through the system shell.

    Used for configured check commands, which may contain pipes or ``&&``.
    Same return value and exceptions as ``run_command``.
    """
    log.debug("shell_command_started", command=command, cwd=str(cwd) if cwd else None)
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await _communicate(process, timeout)

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode or 1, command, stdout, stderr)

    return stdout, stderr, process.returncode or 0
