"""Git worktree provisioning for isolating a run's file changes.

A planning movement may emit a ``worktree:`` block naming a base branch and a
new branch. The engine hands that to a ``WorktreeProvisioner``; the git
implementation here creates ``<worktrees_dir>/<timestamp>-<branch>`` on a
new branch and later movements run inside it.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path

from cadence.workflow.errors import CadenceError
from cadence.workflow.models import WorktreeInfo

logger = logging.getLogger(__name__)

MAX_BRANCH_SLUG_LENGTH = 50


class WorktreeError(CadenceError):
    """git could not create or remove a worktree."""


def generate_timestamp(now: datetime | None = None) -> str:
    """``YYYYMMDD-HHMMSS`` in local time, used to order worktree directories."""
    return (now or datetime.now()).strftime("%Y%m%d-%H%M%S")


def sanitize_branch_name(branch_name: str) -> str:
    """Make a branch name safe for use as a directory name."""
    slug = re.sub(r"[^a-z0-9-]", "-", branch_name.lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:MAX_BRANCH_SLUG_LENGTH]


class GitWorktreeProvisioner:
    """Creates and removes git worktrees of the repository at ``repo_root``."""

    def __init__(self, repo_root: Path, git_exe: str = "git", timeout: int = 120):
        self.repo_root = Path(repo_root)
        self.git_exe = git_exe
        self.timeout = timeout

    async def _run_git(self, *args: str) -> tuple[int, str, str]:
        """Run a git command in the repo root without blocking the event loop.

        Returns (returncode, stdout, stderr).
        """
        proc = await asyncio.create_subprocess_exec(
            self.git_exe,
            *args,
            cwd=str(self.repo_root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return (
            proc.returncode or 0,
            (stdout_bytes or b"").decode(),
            (stderr_bytes or b"").decode(),
        )

    async def create(self, base_dir: str, branch_name: str, base_branch: str) -> WorktreeInfo:
        """Create a worktree on a new ``branch_name`` forked from ``base_branch``.

        ``origin/<base_branch>`` is preferred; the local branch is the fallback
        when the remote ref is missing or ``git fetch`` fails.

        Raises:
            WorktreeError: If neither ref could be used.
        """
        worktrees_dir = Path(base_dir)
        if not worktrees_dir.is_absolute():
            worktrees_dir = self.repo_root / worktrees_dir
        worktrees_dir.mkdir(parents=True, exist_ok=True)
        path = worktrees_dir / f"{generate_timestamp()}-{sanitize_branch_name(branch_name)}"

        logger.info(
            "Creating worktree %s (branch=%s, base=%s)", path, branch_name, base_branch
        )

        returncode, _, stderr = await self._run_git("fetch", "origin")
        if returncode != 0:
            logger.debug("git fetch origin failed, continuing with local state: %s", stderr.strip())

        returncode, _, stderr = await self._run_git(
            "worktree", "add", "-b", branch_name, str(path), f"origin/{base_branch}"
        )
        if returncode != 0:
            logger.debug("Creating from origin/%s failed, trying local branch: %s", base_branch, stderr.strip())
            returncode, _, stderr = await self._run_git(
                "worktree", "add", "-b", branch_name, str(path), base_branch
            )
            if returncode != 0:
                raise WorktreeError(
                    f"git worktree add failed for branch '{branch_name}' "
                    f"from '{base_branch}': {stderr.strip()}"
                )

        logger.info("Created worktree: %s → %s", branch_name, path)
        return WorktreeInfo(path=str(path), branch=branch_name, base_branch=base_branch)

    async def remove(self, worktree_path: str) -> None:
        path = Path(worktree_path)
        if path.resolve() == self.repo_root.resolve():
            raise WorktreeError(f"Refusing to remove worktree {path} — it is the main repo root")
        logger.info("Removing worktree %s", path)
        returncode, _, stderr = await self._run_git("worktree", "remove", str(path), "--force")
        if returncode != 0:
            raise WorktreeError(f"git worktree remove failed for {path}: {stderr.strip()}")

    async def list_worktrees(self) -> list[str]:
        """Paths of every worktree of the repository, main checkout included."""
        returncode, stdout, stderr = await self._run_git("worktree", "list", "--porcelain")
        if returncode != 0:
            raise WorktreeError(f"git worktree list failed: {stderr.strip()}")
        return [
            line[len("worktree "):]
            for line in stdout.splitlines()
            if line.startswith("worktree ")
        ]
