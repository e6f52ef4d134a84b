"""
Git Operations
==============

Thin synchronous wrapper over the ``git`` executable.

Every call passes an argument list to ``subprocess.run`` (never a shell) and
identifiers that end up on the git command line are validated first, so an
item id like ``--upload-pack=...`` cannot be smuggled in as an option.

Usage:
    from swarmforge.git_ops import GitRepo

    repo = GitRepo(project_dir)
    base = repo.current_branch()
    repo.add_worktree(path, "swarm/eng-101", base)
"""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

# Conservative subset of what `git check-ref-format` accepts
_REF_CHARS = re.compile(r"^[A-Za-z0-9._/-]+$")
_ITEM_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_COMMIT_SEPARATOR = "\x1e"


class GitError(RuntimeError):
    """A git command exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str = ""):
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        message = f"git {' '.join(args)} failed ({returncode})"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)


class InvalidIdentifierError(ValueError):
    """An identifier is unsafe to pass to git."""


def validate_branch_name(name: str) -> str:
    """
    Check a branch name before handing it to git.

    Returns:
        The name unchanged

    Raises:
        InvalidIdentifierError: On anything outside ``[A-Za-z0-9._/-]``, a
            leading dash, or sequences git itself rejects
    """
    if (
        not name
        or not _REF_CHARS.match(name)
        or name.startswith(("-", "/", "."))
        or name.endswith(("/", ".", ".lock"))
        or ".." in name
        or "//" in name
        or "/." in name
    ):
        raise InvalidIdentifierError(f"Invalid branch name: {name!r}")
    return name


def validate_item_id(item_id: str) -> str:
    """Item ids become branch components, so they get the same treatment."""
    if not item_id or not _ITEM_ID.match(item_id) or ".." in item_id or item_id.endswith((".", ".lock")):
        raise InvalidIdentifierError(f"Invalid item id: {item_id!r}")
    return item_id


@dataclass
class CommitRecord:
    """A commit message with the files it touched."""
    message: str
    files: list[str] = field(default_factory=list)


class GitRepo:
    """Git operations rooted at a single working directory."""

    def __init__(self, repo_dir: Path, timeout: Optional[float] = None):
        """
        Args:
            repo_dir: Working tree to run commands in
            timeout: Seconds before a git call is killed; None waits forever
        """
        self.repo_dir = Path(repo_dir)
        self.timeout = timeout

    def run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """
        Run ``git <args>`` in the repository.

        Raises:
            GitError: If ``check`` is set and git exits non-zero
        """
        cmd = ["git", *args]
        logger.debug("Running %s in %s", " ".join(cmd), self.repo_dir)
        result = subprocess.run(
            cmd,
            cwd=self.repo_dir,
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )
        if check and result.returncode != 0:
            raise GitError(list(args), result.returncode, result.stderr or result.stdout)
        return result

    # -------------------------------------------------------------------------
    # Repository state
    # -------------------------------------------------------------------------

    def is_repo(self) -> bool:
        result = self.run("rev-parse", "--is-inside-work-tree", check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    def current_branch(self) -> str:
        return self.run("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def has_uncommitted_changes(self) -> bool:
        """True if tracked files have staged or unstaged modifications."""
        result = self.run("status", "--porcelain", "--untracked-files=no")
        return bool(result.stdout.strip())

    def branch_exists(self, branch: str) -> bool:
        validate_branch_name(branch)
        result = self.run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
        return result.returncode == 0

    def checkout(self, branch: str) -> None:
        self.run("checkout", validate_branch_name(branch))

    # -------------------------------------------------------------------------
    # Worktrees
    # -------------------------------------------------------------------------

    def add_worktree(self, path: Path, branch: str, base: str) -> None:
        """
        Check out ``branch`` at ``path``.

        The branch is created from ``base`` unless it already exists, in which
        case its current tip is checked out.
        """
        if self.branch_exists(branch):
            self.run("worktree", "add", str(path), validate_branch_name(branch))
            return
        self.run(
            "worktree", "add", "-b", validate_branch_name(branch),
            str(path), validate_branch_name(base),
        )

    def remove_worktree(self, path: Path) -> None:
        self.run("worktree", "remove", str(path), "--force")

    def prune_worktrees(self) -> None:
        self.run("worktree", "prune")

    # -------------------------------------------------------------------------
    # Merging
    # -------------------------------------------------------------------------

    def merge(self, branch: str, message: Optional[str] = None) -> None:
        """
        Merge ``branch`` into the current branch with a merge commit.

        Raises:
            GitError: On conflicts or any other merge failure; the working
                tree is left as git left it
        """
        branch = validate_branch_name(branch)
        self.run("merge", branch, "--no-ff", "-m", message or f"Merge {branch}")

    def abort_merge(self) -> None:
        self.run("merge", "--abort")

    def merge_in_progress(self) -> bool:
        result = self.run("rev-parse", "-q", "--verify", "MERGE_HEAD", check=False)
        return result.returncode == 0

    def conflicted_files(self) -> list[str]:
        """
        Paths git reports as unmerged after a failed merge.

        Covers every unmerged kind (both modified, both added, modify/delete
        and friends), one entry per path in index order.
        """
        result = self.run("ls-files", "--unmerged", "-z")
        files: list[str] = []
        for record in result.stdout.split("\0"):
            # "<mode> <object> <stage>\t<path>", one record per stage
            _, sep, path = record.partition("\t")
            if sep and path not in files:
                files.append(path)
        return files

    def changed_files(self, base: str, branch: str) -> list[str]:
        """Files changed on ``branch`` since it forked from ``base``."""
        result = self.run(
            "diff", "--name-only", "-z",
            f"{validate_branch_name(base)}...{validate_branch_name(branch)}",
        )
        return [path for path in result.stdout.split("\0") if path]

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def commit_history(self, max_commits: int) -> list[CommitRecord]:
        """Subject line and changed files of the last ``max_commits`` commits."""
        result = self.run(
            "log", f"-n{int(max_commits)}", "--name-only", "-z",
            f"--format={_COMMIT_SEPARATOR}%s",
        )
        commits = []
        for chunk in result.stdout.split(_COMMIT_SEPARATOR):
            if not chunk.strip("\n\0"):
                continue
            # with -z paths are NUL terminated and never quoted
            subject_end = min(
                (i for i in (chunk.find("\n"), chunk.find("\0")) if i >= 0),
                default=len(chunk),
            )
            paths = chunk[subject_end:].split("\0")
            files = [p.strip("\n") for p in paths if p.strip("\n")]
            commits.append(CommitRecord(message=chunk[:subject_end], files=files))
        return commits
