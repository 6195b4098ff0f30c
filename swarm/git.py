"""Git command execution.

GitRunner is the capability the core depends on; GitCommandRunner
implements it by invoking the git binary. Every method raises GitError
with the combined output when git exits non-zero, except the explicitly
best-effort ones.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from swarm.errors import GitError
from swarm.shell import run_process

logger = logging.getLogger(__name__)


@dataclass
class WorktreeInfo:
    """One entry of `git worktree list --porcelain`."""

    path: str
    head: str = ""
    branch: str | None = None
    locked: bool = False
    prunable: bool = False


class GitRunner(Protocol):
    """Git operations on one repository (or linked worktree) directory."""

    def at(self, path: str | Path) -> "GitRunner": ...

    # Branches
    async def current_branch(self) -> str: ...
    async def rev_parse(self, ref: str = "HEAD") -> str: ...
    async def git_path(self, name: str) -> Path: ...
    async def branch_exists(self, name: str) -> bool: ...
    async def create_branch(self, name: str, start_point: str | None = None) -> None: ...
    async def checkout_branch(self, name: str) -> None: ...
    async def delete_branch(self, name: str, force: bool = True) -> None: ...

    # Working tree
    async def status_porcelain(self) -> str: ...
    async def has_changes(self) -> bool: ...
    async def add_all(self) -> None: ...
    async def commit(self, message: str) -> None: ...
    async def reset_hard(self, ref: str) -> None: ...
    async def checkout_path(self, ref: str, path: str) -> None: ...

    # Diffs
    async def diff(self, base: str, head: str) -> str: ...
    async def changed_files(self, base: str, head: str) -> list[str]: ...
    async def show_file(self, ref: str, path: str) -> str: ...

    # Merging
    async def merge(self, branch: str) -> None: ...
    async def merge_no_ff(self, branch: str, message: str) -> None: ...
    async def merge_abort(self) -> None: ...
    async def has_conflicts(self) -> bool: ...
    async def conflicted_files(self) -> list[str]: ...
    async def merge_base(self, a: str, b: str) -> str: ...
    async def rebase(self, onto: str) -> None: ...
    async def rebase_abort(self) -> None: ...
    async def checkout_ours(self, path: str) -> None: ...
    async def checkout_theirs(self, path: str) -> None: ...
    async def pull_ff_only(self) -> bool: ...

    # Worktrees
    async def worktree_add(self, path: str | Path, branch: str, start_point: str) -> None: ...
    async def worktree_remove(self, path: str | Path, force: bool = True) -> None: ...
    async def worktree_prune(self) -> None: ...
    async def worktree_list(self) -> list[WorktreeInfo]: ...
    async def worktree_unlock(self, path: str | Path) -> None: ...

    # Tags
    async def tag(self, name: str, commit: str, force: bool = False) -> None: ...
    async def delete_tag(self, name: str) -> None: ...
    async def list_tags(self, pattern: str) -> list[str]: ...


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain` output.

    Entries are separated by blank lines; each starts with a `worktree`
    line followed by attribute lines.
    """
    worktrees: list[WorktreeInfo] = []
    current: WorktreeInfo | None = None
    for line in output.splitlines():
        if not line.strip():
            current = None
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            current = WorktreeInfo(path=value)
            worktrees.append(current)
        elif current is None:
            continue
        elif key == "HEAD":
            current.head = value
        elif key == "branch":
            current.branch = value.removeprefix("refs/heads/")
        elif key == "locked":
            current.locked = True
        elif key == "prunable":
            current.prunable = True
    return worktrees


class GitCommandRunner:
    """GitRunner implemented with the git binary.

    Attributes:
        path: Directory the commands run in
        timeout: Optional per-command timeout in seconds
    """

    def __init__(self, path: str | Path, timeout: float | None = None) -> None:
        self.path = Path(path)
        self.timeout = timeout

    def at(self, path: str | Path) -> "GitCommandRunner":
        """Return a runner bound to another directory (e.g. a worktree)."""
        return GitCommandRunner(path, self.timeout)

    async def run(self, *args: str) -> str:
        """Run `git <args>` and return its combined output.

        Raises:
            GitError: If git exits non-zero or times out
        """
        result = await run_process(["git", *args], self.path, self.timeout)
        if not result.ok:
            raise GitError(list(args), result.output, result.returncode)
        return result.output

    async def current_branch(self) -> str:
        return (await self.run("rev-parse", "--abbrev-ref", "HEAD")).strip()

    async def rev_parse(self, ref: str = "HEAD") -> str:
        return (await self.run("rev-parse", ref)).strip()

    async def git_path(self, name: str) -> Path:
        """Resolve a path inside the git directory, e.g. "info/exclude"."""
        path = Path((await self.run("rev-parse", "--git-path", name)).strip())
        return path if path.is_absolute() else self.path / path

    async def branch_exists(self, name: str) -> bool:
        try:
            await self.run("rev-parse", "--verify", "--quiet", f"refs/heads/{name}")
        except GitError:
            return False
        return True

    async def create_branch(self, name: str, start_point: str | None = None) -> None:
        args = ["branch", name]
        if start_point:
            args.append(start_point)
        await self.run(*args)

    async def checkout_branch(self, name: str) -> None:
        await self.run("checkout", name)

    async def delete_branch(self, name: str, force: bool = True) -> None:
        await self.run("branch", "-D" if force else "-d", name)

    async def status_porcelain(self) -> str:
        return await self.run("status", "--porcelain")

    async def has_changes(self) -> bool:
        return bool((await self.status_porcelain()).strip())

    async def add_all(self) -> None:
        await self.run("add", "-A")

    async def commit(self, message: str) -> None:
        await self.run("commit", "-m", message)

    async def reset_hard(self, ref: str) -> None:
        await self.run("reset", "--hard", ref)

    async def checkout_path(self, ref: str, path: str) -> None:
        await self.run("checkout", ref, "--", path)

    async def diff(self, base: str, head: str) -> str:
        return await self.run("diff", f"{base}...{head}")

    async def changed_files(self, base: str, head: str) -> list[str]:
        output = await self.run("diff", "--name-only", f"{base}...{head}")
        return [line for line in output.splitlines() if line.strip()]

    async def show_file(self, ref: str, path: str) -> str:
        return await self.run("show", f"{ref}:{path}")

    async def merge(self, branch: str) -> None:
        await self.run("merge", "--ff", branch)

    async def merge_no_ff(self, branch: str, message: str) -> None:
        await self.run("merge", "--no-ff", "-m", message, branch)

    async def merge_abort(self) -> None:
        await self.run("merge", "--abort")

    async def has_conflicts(self) -> bool:
        return bool(await self.conflicted_files())

    async def conflicted_files(self) -> list[str]:
        output = await self.run("diff", "--name-only", "--diff-filter=U")
        return [line for line in output.splitlines() if line.strip()]

    async def merge_base(self, a: str, b: str) -> str:
        return (await self.run("merge-base", a, b)).strip()

    async def rebase(self, onto: str) -> None:
        await self.run("rebase", onto)

    async def rebase_abort(self) -> None:
        await self.run("rebase", "--abort")

    async def checkout_ours(self, path: str) -> None:
        await self.run("checkout", "--ours", "--", path)

    async def checkout_theirs(self, path: str) -> None:
        await self.run("checkout", "--theirs", "--", path)

    async def pull_ff_only(self) -> bool:
        """Fast-forward from upstream; failures are logged, not raised."""
        try:
            await self.run("pull", "--ff-only")
        except GitError as e:
            logger.info("Skipping pull: %s", e)
            return False
        return True

    async def worktree_add(
        self, path: str | Path, branch: str, start_point: str
    ) -> None:
        await self.run("worktree", "add", "-b", branch, str(path), start_point)

    async def worktree_remove(self, path: str | Path, force: bool = True) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        await self.run(*args, str(path))

    async def worktree_prune(self) -> None:
        await self.run("worktree", "prune")

    async def worktree_list(self) -> list[WorktreeInfo]:
        return parse_worktree_list(await self.run("worktree", "list", "--porcelain"))

    async def worktree_unlock(self, path: str | Path) -> None:
        await self.run("worktree", "unlock", str(path))

    async def tag(self, name: str, commit: str, force: bool = False) -> None:
        args = ["tag"]
        if force:
            args.append("-f")
        await self.run(*args, name, commit)

    async def delete_tag(self, name: str) -> None:
        await self.run("tag", "-d", name)

    async def list_tags(self, pattern: str) -> list[str]:
        output = await self.run("tag", "--list", pattern)
        return [line.strip() for line in output.splitlines() if line.strip()]
