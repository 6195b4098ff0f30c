"""Session branch management.

A normal session integrates into its own branch `session-<id>`, created
from whatever branch was checked out when the session started. Greenfield
sessions integrate directly into the current branch. The orchestrator's
scratch directories are excluded from git status via info/exclude.
"""

import logging
from pathlib import Path

from swarm.errors import GitError, SwarmError
from swarm.git import GitRunner

logger = logging.getLogger(__name__)


def session_branch_name(session_id: str) -> str:
    return f"session-{session_id}"


class SessionBranchManager:
    """Prepares and finishes the integration branch of one session.

    Attributes:
        base_branch: Branch checked out when the session started
        branch: Branch worker changes are merged into
        baseline_commit: Integration-branch HEAD at session start
    """

    def __init__(
        self,
        git: GitRunner,
        session_id: str,
        greenfield: bool = False,
        excluded_dirs: list[str] | None = None,
    ) -> None:
        self.git = git
        self.session_id = session_id
        self.greenfield = greenfield
        self.excluded_dirs = excluded_dirs or []
        self.base_branch: str | None = None
        self.branch: str = session_branch_name(session_id)
        self.baseline_commit: str | None = None

    async def setup(self) -> str:
        """Check out the integration branch and record the baseline.

        Returns:
            Name of the integration branch

        Raises:
            SwarmError: If the repository has uncommitted tracked changes
            GitError: If a git operation fails
        """
        await self._exclude_scratch_dirs()
        status = await self.git.status_porcelain()
        dirty = [line for line in status.splitlines() if line and not line.startswith("??")]
        if dirty:
            raise SwarmError(
                "Repository has uncommitted changes; commit or stash them first:\n"
                + "\n".join(dirty[:10])
            )

        self.base_branch = await self.git.current_branch()
        if self.greenfield:
            self.branch = self.base_branch
        elif await self.git.branch_exists(self.branch):
            logger.info("Resuming existing session branch %s", self.branch)
            await self.git.checkout_branch(self.branch)
        else:
            await self.git.create_branch(self.branch)
            await self.git.checkout_branch(self.branch)

        self.baseline_commit = await self.git.rev_parse(self.branch)
        logger.info(
            "Session %s integrating into %s at %s",
            self.session_id,
            self.branch,
            self.baseline_commit[:12],
        )
        return self.branch

    async def _exclude_scratch_dirs(self) -> None:
        if not self.excluded_dirs:
            return
        exclude: Path = await self.git.git_path("info/exclude")
        existing = exclude.read_text().splitlines() if exclude.exists() else []
        missing = [f"/{d.strip('/')}/" for d in self.excluded_dirs]
        missing = [entry for entry in missing if entry not in existing]
        if missing:
            exclude.parent.mkdir(parents=True, exist_ok=True)
            with exclude.open("a") as f:
                for entry in missing:
                    f.write(entry + "\n")

    async def finish(self, success: bool, merge_to_base: bool = False) -> None:
        """Leave the repository on the base branch.

        On success with merge_to_base, the session branch is merged into the
        base branch and deleted. Otherwise it is kept for review.
        """
        if self.greenfield or self.base_branch is None:
            return
        try:
            await self.git.checkout_branch(self.base_branch)
            if success and merge_to_base:
                await self.git.merge_no_ff(
                    self.branch, f"Merge {self.branch} (swarm session {self.session_id})"
                )
                await self.git.delete_branch(self.branch, force=False)
                logger.info("Merged %s into %s", self.branch, self.base_branch)
        except GitError as e:
            logger.error("Could not finish session branch %s: %s", self.branch, e)
