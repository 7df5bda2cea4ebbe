"""Version control binding driving the ``git`` command line.

Sequential development happens in the main checkout on the item's branch.
Items handed to the pending queue get their own worktree under
``<autopilot_dir>/worktrees/<item>``, created only when a fix is needed.
"""

import re
import subprocess
from pathlib import Path

import structlog

from epic_autopilot.exceptions import GitOperationError
from epic_autopilot.models.domain import MergeResult
from epic_autopilot.providers.base import ReviewService, VersionControl
from epic_autopilot.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

_REMOTE_URL = re.compile(r"(?:github\.com[:/])(?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$")


async def git(*args: str, cwd: Path | str, check: bool = True) -> str:
    """Run a git command and return its stripped stdout.

    Raises:
        GitOperationError: If ``check`` is set and git exits non-zero.
    """
    try:
        stdout, _, _ = await run_command("git", *args, cwd=cwd, check=check)
    except subprocess.CalledProcessError as e:
        raise GitOperationError(f"git {args[0]} failed", command=["git", *args], stderr=e.stderr) from e
    return stdout.strip()


async def detect_base_branch(root: Path) -> str:
    """Base branch from ``origin/HEAD``, falling back to main, then master."""
    head = await git("symbolic-ref", "-q", "--short", "refs/remotes/origin/HEAD", cwd=root, check=False)
    if head:
        return head.removeprefix("origin/")

    for candidate in ("main", "master"):
        _, _, code = await run_command(
            "git", "show-ref", "--verify", "--quiet", f"refs/heads/{candidate}", cwd=root, check=False
        )
        if code == 0:
            return candidate

    log.warning("base_branch_not_detected", fallback="main")
    return "main"


async def detect_remote_repository(root: Path) -> tuple[str, str] | None:
    """Owner and name of the ``origin`` remote, if it points at GitHub."""
    url = await git("remote", "get-url", "origin", cwd=root, check=False)
    match = _REMOTE_URL.search(url)
    if not match:
        return None
    return match.group("owner"), match.group("name")


async def exclude_locally(root: Path, path: Path) -> bool:
    """Add ``path`` to the repository's ``info/exclude`` file.

    Keeps orchestrator files out of ``status`` and ``add -A`` without
    touching the tracked ``.gitignore``.

    Returns:
        True if the exclude file was changed.
    """
    try:
        relative = Path(path).resolve().relative_to(Path(root).resolve())
    except ValueError:
        # Outside the checkout, nothing to hide
        return False

    pattern = f"/{relative.as_posix()}/"
    exclude_file = Path(await git("rev-parse", "--git-path", "info/exclude", cwd=root))
    if not exclude_file.is_absolute():
        exclude_file = Path(root) / exclude_file

    existing = exclude_file.read_text().splitlines() if exclude_file.exists() else []
    if pattern in existing:
        return False

    exclude_file.parent.mkdir(parents=True, exist_ok=True)
    with open(exclude_file, "a") as f:
        f.write(f"\n{pattern}\n")
    log.info("path_excluded_from_git", pattern=pattern)
    return True


class GitCliProvider(VersionControl):
    """``VersionControl`` implemented with git subprocesses.

    Args:
        root: Main checkout
        base_branch: Branch requests target
        branch_prefix: Prefix of per-item branches
        worktrees_dir: Directory holding per-item worktrees
        review: Review service used for merges
        remote: Name of the remote to fetch from and push to
    """

    def __init__(
        self,
        root: Path,
        base_branch: str,
        branch_prefix: str,
        worktrees_dir: Path,
        review: ReviewService | None = None,
        remote: str = "origin",
    ) -> None:
        self.root = Path(root)
        self.base_branch = base_branch
        self.branch_prefix = branch_prefix
        self.worktrees_dir = Path(worktrees_dir)
        self.review = review
        self.remote = remote

    def branch_name(self, item_id: str) -> str:
        return f"{self.branch_prefix}{item_id}"

    def workspace_path(self, item_id: str) -> Path:
        return self.worktrees_dir / item_id

    async def _branch_exists(self, branch: str) -> bool:
        _, _, code = await run_command(
            "git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch}", cwd=self.root, check=False
        )
        return code == 0

    async def _remote_branch_exists(self, branch: str) -> bool:
        _, _, code = await run_command(
            "git",
            "show-ref",
            "--verify",
            "--quiet",
            f"refs/remotes/{self.remote}/{branch}",
            cwd=self.root,
            check=False,
        )
        return code == 0

    async def checkout_base(self) -> None:
        await git("fetch", self.remote, cwd=self.root, check=False)
        await git("checkout", self.base_branch, cwd=self.root)
        await git("pull", self.remote, self.base_branch, cwd=self.root)
        log.debug("base_checked_out", branch=self.base_branch)

    async def ensure_branch(self, item_id: str) -> str:
        branch = self.branch_name(item_id)
        await self.checkout_base()

        if await self._branch_exists(branch):
            await git("checkout", branch, cwd=self.root)
            log.info("branch_reused", branch=branch)
        elif await self._remote_branch_exists(branch):
            await git("checkout", "-b", branch, f"{self.remote}/{branch}", cwd=self.root)
            log.info("branch_tracked", branch=branch)
        else:
            await git("checkout", "-b", branch, cwd=self.root)
            log.info("branch_created", branch=branch)
        return branch

    async def push(self, branch: str, cwd: Path | None = None) -> None:
        await git("push", "-u", self.remote, branch, cwd=cwd or self.root)
        log.info("branch_pushed", branch=branch)

    async def create_workspace(self, item_id: str) -> Path:
        path = self.workspace_path(item_id)
        if path.exists():
            log.debug("workspace_exists", item=item_id, path=str(path))
            return path

        branch = self.branch_name(item_id)
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        await git("fetch", self.remote, branch, cwd=self.root, check=False)

        if await self._branch_exists(branch):
            await git("worktree", "add", str(path), branch, cwd=self.root)
        else:
            await git("worktree", "add", "-b", branch, str(path), f"{self.remote}/{branch}", cwd=self.root)

        log.info("workspace_created", item=item_id, path=str(path))
        return path

    async def remove_workspace(self, item_id: str) -> None:
        path = self.workspace_path(item_id)
        if not path.exists():
            return
        await git("worktree", "remove", str(path), "--force", cwd=self.root)
        log.info("workspace_removed", item=item_id)

    async def prune_workspaces(self) -> None:
        await git("worktree", "prune", cwd=self.root)
        log.info("workspaces_pruned")

    async def is_dirty(self, cwd: Path | None = None) -> bool:
        status = await git("status", "--porcelain", cwd=cwd or self.root)
        return bool(status)

    async def commit_all(self, message: str, cwd: Path | None = None) -> bool:
        target = cwd or self.root
        if not await self.is_dirty(target):
            return False
        await git("add", "-A", cwd=target)
        await git("commit", "-m", message, cwd=target)
        log.info("changes_committed", cwd=str(target), message=message)
        return True

    async def merge_and_delete_branch(self, request_ref: int) -> MergeResult:
        """Squash-merge through the review service, then sync the base branch.

        Raises:
            GitOperationError: If no review service is configured.
        """
        if self.review is None:
            raise GitOperationError("No review service configured for merging")

        request = await self.review.get_request(request_ref)
        result = await self.review.merge(request_ref)
        if not result.merged:
            return result

        await self.checkout_base()
        if request.head and await self._branch_exists(request.head):
            await git("branch", "-D", request.head, cwd=self.root, check=False)
        return result
