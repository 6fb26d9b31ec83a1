"""Thin git wrapper: branches, worktrees, commits, merges, pull requests."""

import os
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from ralph_loop.log import get_logger

logger = get_logger(__name__)

FALLBACK_IDENTITY = ["-c", "user.name=Ralph Loop", "-c", "user.email=ralph@localhost"]

# Untranslated messages, so merge output reads the same everywhere
GIT_ENV_OVERRIDES = {"LC_ALL": "C", "LANGUAGE": ""}


class GitError(RuntimeError):
    """A git command failed."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str):
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"git {' '.join(args)} failed ({returncode}): {stderr.strip() or 'no output'}"
        )


class GitRepo:
    """A git working tree at `path`."""

    def __init__(self, path: Path, timeout: float = 60.0):
        self.path = Path(path)
        self.timeout = timeout

    def run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
                env={**os.environ, **GIT_ENV_OVERRIDES},
            )
        except FileNotFoundError:
            raise GitError(args, -1, "git command not found")
        except subprocess.TimeoutExpired:
            raise GitError(args, -1, f"timed out after {self.timeout}s")
        if check and result.returncode != 0:
            raise GitError(args, result.returncode, result.stderr or result.stdout)
        return result

    # --- inspection ---

    def is_repo(self) -> bool:
        try:
            result = self.run("rev-parse", "--is-inside-work-tree", check=False)
        except GitError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def has_uncommitted_changes(self, exclude: Sequence[str] = ()) -> bool:
        result = self.run("status", "--porcelain", "--", ".", *[f":(exclude){p}" for p in exclude])
        return bool(result.stdout.strip())

    def current_branch(self) -> str:
        return self.run("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def branch_exists(self, name: str) -> bool:
        result = self.run("rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False)
        return result.returncode == 0

    def head(self) -> str:
        return self.run("rev-parse", "HEAD").stdout.strip()

    def _identity_args(self) -> List[str]:
        result = self.run("config", "user.email", check=False)
        return [] if result.stdout.strip() else list(FALLBACK_IDENTITY)

    # --- branches ---

    def create_branch(self, name: str, start: str) -> None:
        self.run("branch", name, start)

    def checkout(self, name: str, create_from: Optional[str] = None) -> None:
        if create_from is not None:
            self.run("checkout", "-b", name, create_from)
        else:
            self.run("checkout", name)

    def delete_branch(self, name: str, force: bool = False) -> None:
        self.run("branch", "-D" if force else "-d", name)

    # --- worktrees ---

    def add_worktree(self, path: Path, branch: str, start: str) -> "GitRepo":
        """Create `branch` from `start` checked out at `path`."""
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            self.remove_worktree(path)
        self.run("worktree", "add", "-b", branch, str(path), start)
        return GitRepo(path, timeout=self.timeout)

    def remove_worktree(self, path: Path) -> None:
        result = self.run("worktree", "remove", "--force", str(path), check=False)
        if result.returncode != 0 and path.exists():
            logger.warning(f"git worktree remove failed for {path}; deleting directory")
            shutil.rmtree(path, ignore_errors=True)
        self.run("worktree", "prune", check=False)

    # --- commits and merges ---

    def commit_all(self, message: str, exclude: Sequence[str] = ()) -> bool:
        """Stage everything (minus `exclude`) and commit. Returns False if nothing changed."""
        self.run("add", "-A", "--", ".", *[f":(exclude){p}" for p in exclude])
        staged = self.run("diff", "--cached", "--quiet", check=False)
        if staged.returncode == 0:
            return False
        self.run(*self._identity_args(), "commit", "-m", message)
        return True

    def merge_in_progress(self) -> bool:
        result = self.run("rev-parse", "-q", "--verify", "MERGE_HEAD", check=False)
        return result.returncode == 0

    def unmerged_paths(self) -> List[str]:
        result = self.run("diff", "--name-only", "--diff-filter=U", check=False)
        return result.stdout.splitlines()

    def merge(self, branch: str, message: str) -> bool:
        """
        Merge `branch` into the current branch with a merge commit.

        A failed merge never leaves the tree mid-merge: whenever MERGE_HEAD
        exists afterwards the merge is aborted.

        Returns:
            True on success, False on conflict (the merge is aborted)

        Raises:
            GitError: If the merge failed for any other reason
        """
        result = self.run(*self._identity_args(), "merge", "--no-ff", "-m", message, branch, check=False)
        if result.returncode == 0:
            return True
        conflicted = bool(self.unmerged_paths()) or "CONFLICT" in result.stdout
        if self.merge_in_progress():
            self.run("merge", "--abort", check=False)
            conflicted = True
        if conflicted:
            return False
        raise GitError(["merge", branch], result.returncode, result.stderr or result.stdout)

    # --- remote ---

    def push(self, branch: str, remote: str = "origin") -> None:
        self.run("push", "-u", remote, branch)


def open_pull_request(repo: GitRepo, base: str, head: str, title: Optional[str] = None) -> Optional[str]:
    """
    Open a pull request with the gh CLI.

    Returns:
        The PR URL, or None if gh is unavailable or refused
    """
    if shutil.which("gh") is None:
        logger.warning("gh CLI not found; cannot open a pull request automatically")
        return None
    cmd = ["gh", "pr", "create", "--base", base, "--head", head]
    cmd += ["--title", title, "--body", "Opened by the Ralph loop."] if title else ["--fill"]
    try:
        result = subprocess.run(cmd, cwd=repo.path, capture_output=True, text=True, timeout=120)
    except subprocess.TimeoutExpired:
        logger.warning("gh pr create timed out")
        return None
    if result.returncode != 0:
        logger.warning(f"Could not create PR automatically: {result.stderr.strip()}")
        return None
    return result.stdout.strip().splitlines()[-1] if result.stdout.strip() else None
