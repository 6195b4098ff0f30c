"""Pre-merge checkpoints.

Before a worker branch is merged, the session-branch HEAD is recorded and
tagged `<prefix>-checkpoint-<session_id>-<task_id>`. A failed merge is
rolled back by hard-resetting to the recorded commit.
"""

import logging
import threading
from datetime import datetime, timezone

from swarm.errors import CheckpointError, GitError
from swarm.git import GitRunner
from swarm.models import Checkpoint, CheckpointStatus

logger = logging.getLogger(__name__)


class CheckpointManager:
    """Owns the checkpoints of one session.

    The internal lock only guards the in-memory table; git calls happen
    outside it. Merges are serialised by the orchestrator, so concurrent
    creation for the same task does not occur.
    """

    def __init__(
        self,
        git: GitRunner,
        session_id: str,
        prefix: str = "swarm",
        ref: str = "HEAD",
    ) -> None:
        self.git = git
        self.session_id = session_id
        self.prefix = prefix
        self.ref = ref
        self._lock = threading.Lock()
        self._checkpoints: dict[str, Checkpoint] = {}

    def tag_name(self, task_id: str) -> str:
        return f"{self.prefix}-checkpoint-{self.session_id}-{task_id}"

    async def create(self, task_id: str) -> Checkpoint:
        """Record and tag the current session HEAD for a task.

        Raises:
            CheckpointError: If HEAD cannot be resolved or the tag not created
        """
        tag = self.tag_name(task_id)
        try:
            commit = await self.git.rev_parse(self.ref)
            await self.git.tag(tag, commit, force=True)
        except GitError as e:
            raise CheckpointError(f"Could not create checkpoint for {task_id}: {e}") from e

        checkpoint = Checkpoint(
            task_id=task_id,
            commit=commit,
            tag=tag,
            created_at=datetime.now(timezone.utc),
        )
        with self._lock:
            # Re-insert so insertion order tracks creation order
            self._checkpoints.pop(task_id, None)
            self._checkpoints[task_id] = checkpoint
        logger.debug("Checkpoint %s at %s", tag, commit[:12])
        return checkpoint

    def get(self, task_id: str) -> Checkpoint | None:
        with self._lock:
            return self._checkpoints.get(task_id)

    def mark_good(self, task_id: str) -> None:
        self._set_status(task_id, CheckpointStatus.GOOD)

    def mark_bad(self, task_id: str) -> None:
        self._set_status(task_id, CheckpointStatus.BAD)

    def _set_status(self, task_id: str, status: CheckpointStatus) -> None:
        with self._lock:
            checkpoint = self._checkpoints.get(task_id)
            if checkpoint is None:
                raise CheckpointError(f"No checkpoint for task {task_id}")
            checkpoint.status = status

    def list_checkpoints(self) -> list[Checkpoint]:
        """All checkpoints, oldest first."""
        with self._lock:
            return list(self._checkpoints.values())

    def get_last_good(self) -> Checkpoint | None:
        """Most recently created checkpoint whose merge succeeded."""
        with self._lock:
            good = [
                (checkpoint.created_at, index, checkpoint)
                for index, checkpoint in enumerate(self._checkpoints.values())
                if checkpoint.status == CheckpointStatus.GOOD
            ]
        if not good:
            return None
        return max(good, key=lambda item: (item[0], item[1]))[2]

    async def rollback(self, task_id: str) -> Checkpoint:
        """Mark a checkpoint bad and hard-reset the session to it.

        Raises:
            CheckpointError: If no checkpoint exists or the reset fails
        """
        checkpoint = self.get(task_id)
        if checkpoint is None:
            raise CheckpointError(f"No checkpoint for task {task_id}")
        self.mark_bad(task_id)
        try:
            await self.git.reset_hard(checkpoint.commit)
        except GitError as e:
            raise CheckpointError(
                f"Rollback to {checkpoint.commit[:12]} failed: {e}"
            ) from e
        logger.info("Rolled back %s to %s", task_id, checkpoint.commit[:12])
        return checkpoint

    async def delete(self, task_id: str) -> None:
        with self._lock:
            checkpoint = self._checkpoints.pop(task_id, None)
        if checkpoint is None:
            return
        try:
            await self.git.delete_tag(checkpoint.tag)
        except GitError as e:
            raise CheckpointError(f"Could not delete tag {checkpoint.tag}: {e}") from e

    async def cleanup(self) -> None:
        """Delete every checkpoint tag of the session.

        All tags are attempted; failures are collected.

        Raises:
            CheckpointError: Listing every tag that could not be deleted
        """
        with self._lock:
            checkpoints = list(self._checkpoints.values())
            self._checkpoints.clear()

        failures = []
        for checkpoint in checkpoints:
            try:
                await self.git.delete_tag(checkpoint.tag)
            except GitError as e:
                failures.append(f"{checkpoint.tag}: {e}")
        if failures:
            raise CheckpointError(
                "Failed to delete checkpoint tags: " + "; ".join(failures)
            )
