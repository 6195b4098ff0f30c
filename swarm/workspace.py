"""Per-attempt git worktrees.

Every task attempt runs in its own linked worktree on its own branch,
branched off the session branch's current HEAD. Worktrees live under
`<repo>/<worktree_dir>/<session_id>/<task_id>/`.
"""

import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

from swarm.errors import GitError, WorkspaceError
from swarm.git import GitRunner

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """An allocated worktree.

    Attributes:
        task_id: Task the workspace belongs to
        attempt: Attempt number the branch was created for
        path: Worktree directory
        branch: Worker branch checked out in the worktree
        base_commit: Session-branch commit the worktree started from
    """

    task_id: str
    attempt: int
    path: Path
    branch: str
    base_commit: str


@dataclass
class ChangeSet:
    diff: str
    files: list[str]

    @property
    def empty(self) -> bool:
        return not self.files


def branch_name(session_id: str, task_id: str, attempt: int) -> str:
    return f"session-{session_id}-task-{task_id}-{attempt}"


class WorkspaceAllocator:
    """Creates and destroys worktrees for task attempts.

    Args:
        git: Runner bound to the main repository
        repo_path: Repository root
        session_id: Session identifier used in paths and branch names
        base_branch: Branch new worktrees start from (the session branch)
        worktree_dir: Scratch directory relative to the repository root
    """

    def __init__(
        self,
        git: GitRunner,
        repo_path: str | Path,
        session_id: str,
        base_branch: str = "HEAD",
        worktree_dir: str = ".worktrees",
    ) -> None:
        self.git = git
        self.repo_path = Path(repo_path)
        self.session_id = session_id
        self.base_branch = base_branch
        self.root = self.repo_path / worktree_dir / session_id

    def path_for(self, task_id: str) -> Path:
        return self.root / task_id

    async def allocate(self, task_id: str, attempt: int) -> Workspace:
        """Create a worktree for one attempt of a task.

        A collision with an existing path or branch is retried once with a
        unique suffix.

        Raises:
            WorkspaceError: If the worktree cannot be created or is not clean
        """
        self.root.mkdir(parents=True, exist_ok=True)
        base_commit = await self._base_commit()
        path = self.path_for(task_id)
        branch = branch_name(self.session_id, task_id, attempt)

        try:
            await self.git.worktree_add(path, branch, base_commit)
        except GitError as first_error:
            suffix = uuid.uuid4().hex[:6]
            logger.warning(
                "Worktree for %s collided, retrying with suffix %s: %s",
                task_id,
                suffix,
                first_error,
            )
            path = path.with_name(f"{task_id}-{suffix}")
            branch = f"{branch}-{suffix}"
            try:
                await self.git.worktree_add(path, branch, base_commit)
            except GitError as e:
                raise WorkspaceError(
                    f"Could not create worktree for task {task_id}: {e}"
                ) from e

        workspace = Workspace(
            task_id=task_id,
            attempt=attempt,
            path=path,
            branch=branch,
            base_commit=base_commit,
        )
        if await self.git.at(path).has_changes():
            await self.release(workspace)
            raise WorkspaceError(f"Worktree for task {task_id} is not clean")

        logger.debug("Allocated %s at %s", branch, path)
        return workspace

    async def _base_commit(self) -> str:
        try:
            return await self.git.rev_parse(self.base_branch)
        except GitError as e:
            raise WorkspaceError(f"Cannot resolve {self.base_branch}: {e}") from e

    async def collect_changes(self, workspace: Workspace, message: str) -> ChangeSet:
        """Commit whatever the agent left in the worktree and diff it.

        Returns:
            ChangeSet between the workspace's base commit and its branch
        """
        worktree_git = self.git.at(workspace.path)
        if await worktree_git.has_changes():
            await worktree_git.add_all()
            await worktree_git.commit(message)
        files = await self.git.changed_files(workspace.base_commit, workspace.branch)
        diff = await self.git.diff(workspace.base_commit, workspace.branch)
        return ChangeSet(diff=diff, files=files)

    async def release(self, workspace: Workspace, preserve_branch: bool = False) -> None:
        """Remove a worktree and, unless preserved, its branch.

        Failures are logged; a workspace that cannot be removed is pruned
        on the next cleanup.
        """
        try:
            await self.git.worktree_remove(workspace.path, force=True)
        except GitError as e:
            logger.warning("Could not remove worktree %s: %s", workspace.path, e)
            shutil.rmtree(workspace.path, ignore_errors=True)

        if not preserve_branch:
            try:
                await self.git.delete_branch(workspace.branch, force=True)
            except GitError as e:
                logger.warning("Could not delete branch %s: %s", workspace.branch, e)

        try:
            await self.git.worktree_prune()
        except GitError as e:
            logger.warning("Worktree prune failed: %s", e)

    async def cleanup(self, delete_branches: bool = False) -> list[str]:
        """Remove every worktree left under this session's directory.

        Args:
            delete_branches: Also delete the branches the worktrees had checked out

        Returns:
            Paths of the worktrees that were removed
        """
        removed = []
        try:
            worktrees = await self.git.worktree_list()
        except GitError as e:
            logger.warning("Could not list worktrees: %s", e)
            worktrees = []

        root = self.root.resolve()
        for info in worktrees:
            path = Path(info.path)
            if root != path.resolve() and root not in path.resolve().parents:
                continue
            if info.locked:
                try:
                    await self.git.worktree_unlock(path)
                except GitError as e:
                    logger.warning("Could not unlock worktree %s: %s", path, e)
            try:
                await self.git.worktree_remove(path, force=True)
                removed.append(str(path))
            except GitError as e:
                logger.warning("Could not remove worktree %s: %s", path, e)
                continue
            if delete_branches and info.branch:
                try:
                    await self.git.delete_branch(info.branch, force=True)
                except GitError as e:
                    logger.warning("Could not delete branch %s: %s", info.branch, e)

        try:
            await self.git.worktree_prune()
        except GitError as e:
            logger.warning("Worktree prune failed: %s", e)
        shutil.rmtree(self.root, ignore_errors=True)
        return removed
