"""Session orchestrator.

Ties the components together for one `implement` session:

    decompose -> build graph -> set up session branch
        -> schedule ready tasks onto the worker pool
        -> merge passing attempts one at a time behind checkpoints
        -> clean up and report

The orchestrator is the only writer of the dependency graph. Workers
report back through the TaskOutcomeHandler methods below.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path

from opentelemetry import trace

from swarm import telemetry
from swarm.agent import AgentRunnerFactory
from swarm.checkpoint import CheckpointManager
from swarm.collision import CollisionChecker, find_overlaps
from swarm.config import SwarmConfig
from swarm.contracts import ContractRunner
from swarm.decomposer import Decomposer, Decomposition
from swarm.errors import (
    CheckpointError,
    DecompositionError,
    GitError,
    GraphError,
    SwarmError,
)
from swarm.escalation import EscalationGate, EscalationResponder
from swarm.events import EventBus, EventKind
from swarm.git import GitCommandRunner, GitRunner
from swarm.graph import SKIPPED_DEPENDENCY, DependencyGraph
from swarm.models import Task, TaskStatus, WorkerSlot
from swarm.pool import WorkerPool
from swarm.retry import RetryController
from swarm.review import AgentReviewer
from swarm.session import SessionBranchManager
from swarm.shell import ShellCommandRunner, ShellRunner
from swarm.tasklog import TaskLogs
from swarm.validation import ValidationPipeline
from swarm.workspace import Workspace, WorkspaceAllocator

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit codes of an implement session."""

    SUCCESS = 0
    PARTIAL = 1
    ABORTED = 2
    INVALID_INPUT = 3


@dataclass
class SessionResult:
    """Outcome of one orchestrated session.

    Attributes:
        session_id: Identifier used in branch, tag and worktree names
        success: True when every task was merged
        aborted: True when the session stopped early
        message: Short human-readable summary
        exit_code: Process exit code for the CLI
        completed: Identifiers of merged tasks
        failed: Identifiers of failed tasks with their reasons
        tasks: Final state of every task, epic included
        duration_seconds: Wall-clock time of the session
        total_tokens: Agent tokens across all attempts
        total_cost_usd: Agent cost across all attempts
        session_branch: Branch the merges landed on, if set up
    """

    session_id: str
    success: bool
    aborted: bool
    message: str
    exit_code: ExitCode
    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    tasks: list[Task] = field(default_factory=list)
    duration_seconds: float = 0.0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    session_branch: str | None = None


def new_session_id() -> str:
    return uuid.uuid4().hex[:8]


def _first_line(text: str, limit: int = 80) -> str:
    line = text.strip().splitlines()[0] if text.strip() else ""
    return line if len(line) <= limit else line[: limit - 3] + "..."


class Orchestrator:
    """Runs one implement session end to end.

    Args:
        config: Session configuration
        repo_path: Repository the agents work on
        agent_factory: Creates an AgentRunner per agent invocation
        decomposer: Turns the request into tasks
        git: Git runner at the repository root (created if None)
        shell: Shell runner for validation commands (created if None)
        bus: Event bus observers subscribe to (created if None)
        responder: Answers escalations; without one they time out to abort
        session_id: Reuse an identifier; a fresh one is generated if None
        greenfield: Merge straight into the current branch
        tracer: OpenTelemetry tracer (uses no-op if None)
    """

    def __init__(
        self,
        config: SwarmConfig,
        repo_path: str | Path,
        agent_factory: AgentRunnerFactory,
        decomposer: Decomposer,
        git: GitRunner | None = None,
        shell: ShellRunner | None = None,
        bus: EventBus | None = None,
        responder: EscalationResponder | None = None,
        session_id: str | None = None,
        greenfield: bool = False,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.config = config
        self.repo_path = Path(repo_path)
        self.agent_factory = agent_factory
        self.decomposer = decomposer
        self.git = git or GitCommandRunner(self.repo_path, timeout=config.command_timeout_seconds)
        self.shell = shell or ShellCommandRunner()
        self.bus = bus or EventBus()
        self.session_id = session_id or new_session_id()
        self.tracer = tracer or trace.get_tracer("swarm")

        self.graph = DependencyGraph()
        self.session = SessionBranchManager(
            self.git,
            self.session_id,
            greenfield=greenfield,
            excluded_dirs=[config.worktree_dir, config.log_dir],
        )
        self.gate = EscalationGate(
            self.bus, responder, timeout=config.escalation_timeout_seconds
        )
        self.collisions = CollisionChecker(greenfield) if config.avoid_collisions else None
        self.checkpoints: CheckpointManager | None = None
        self.allocator: WorkspaceAllocator | None = None
        self.pool: WorkerPool | None = None
        self.decomposition: Decomposition | None = None

        self._merge_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._aborted = False
        self._abort_reason = ""

    @property
    def aborted(self) -> bool:
        return self._aborted

    # Session lifecycle

    async def run(self, request: str) -> SessionResult:
        """Decompose, schedule and merge until every task is terminal.

        Returns:
            SessionResult; never raises for task-level failures
        """
        started = time.monotonic()
        with self.tracer.start_as_current_span("swarm.session") as span:
            span.set_attribute("session.id", self.session_id)
            span.set_attribute("session.max_agents", self.config.max_agents)
            result = await self._run(request, started)
            span.set_attribute("session.success", result.success)
            span.set_attribute("session.exit_code", int(result.exit_code))
            span.set_attribute("session.tokens", result.total_tokens)
            span.set_attribute("session.cost_usd", result.total_cost_usd)
            return result

    async def _run(self, request: str, started: float) -> SessionResult:
        root_id = f"request-{self.session_id}"
        self.bus.emit(
            EventKind.TASK_ENTERED,
            task_id=root_id,
            task_title=_first_line(request),
            message=request,
        )

        try:
            decomposition = await self.decomposer.decompose(request)
            self.graph.build(decomposition.all_tasks)
        except (DecompositionError, GraphError) as e:
            logger.error("Invalid task breakdown: %s", e)
            return self._finish(started, ExitCode.INVALID_INPUT, f"invalid input: {e}")
        self.decomposition = decomposition

        if decomposition.epic is not None:
            self.bus.emit(
                EventKind.EPIC_CREATED,
                task_id=decomposition.epic.id,
                task_title=decomposition.epic.title,
                original_task_id=root_id,
                message=f"{len(decomposition.tasks)} task(s)",
                metadata={"subtasks": [t.id for t in decomposition.tasks]},
            )
        self._warn_overlaps(decomposition.tasks)

        try:
            branch = await self.session.setup()
        except SwarmError as e:
            logger.error("Session setup failed: %s", e)
            self._aborted = True
            return self._finish(started, ExitCode.ABORTED, f"session setup failed: {e}")

        self._build_components(branch)
        for task_id in self.graph.topological_sort():
            if self.graph.is_epic(task_id):
                continue
            task = self.graph.get_task(task_id)
            self.bus.emit(
                EventKind.TASK_QUEUED,
                task_id=task.id,
                task_title=task.title,
                parent_id=task.parent_id,
                metadata={"depends_on": list(task.depends_on)},
            )

        cancelled = False
        try:
            await self._schedule()
            if self._aborted:
                await self.pool.cancel_all(self.config.cancel_grace_seconds)
            else:
                await self.pool.join()
        except asyncio.CancelledError:
            cancelled = True
            self._aborted = True
            self._abort_reason = self._abort_reason or "aborted"
            await self.pool.cancel_all(self.config.cancel_grace_seconds)

        self._fail_remaining("aborted" if self._aborted else "unreachable")
        counts = self.graph.status_counts()
        success = (
            not self._aborted
            and counts[TaskStatus.FAILED] == 0
            and counts[TaskStatus.DONE] == len(decomposition.tasks)
        )
        await self._cleanup(success)

        if self._aborted:
            exit_code, message = ExitCode.ABORTED, "aborted"
        elif success:
            exit_code = ExitCode.SUCCESS
            message = f"all {counts[TaskStatus.DONE]} task(s) merged into {branch}"
        else:
            exit_code = ExitCode.PARTIAL
            message = (
                f"{counts[TaskStatus.DONE]} task(s) merged, "
                f"{counts[TaskStatus.FAILED]} failed"
            )
        result = self._finish(started, exit_code, message, success=success)
        if cancelled:
            raise asyncio.CancelledError()
        return result

    def _build_components(self, branch: str) -> None:
        config = self.config
        self.allocator = WorkspaceAllocator(
            self.git,
            self.repo_path,
            self.session_id,
            base_branch=branch,
            worktree_dir=config.worktree_dir,
        )
        self.checkpoints = CheckpointManager(
            self.git, self.session_id, prefix=config.tag_prefix, ref=branch
        )
        reviewer = (
            AgentReviewer(
                self.agent_factory,
                model=config.reviewer_model,
                timeout=config.layer_timeout_seconds,
            )
            if config.review_enabled
            else None
        )
        pipeline = ValidationPipeline(
            self.shell,
            contract_runner=ContractRunner(self.shell, config.command_timeout_seconds),
            reviewer=reviewer,
            stub_patterns=config.stub_patterns,
            build_timeout=config.build_timeout_seconds,
            layer_timeout=config.layer_timeout_seconds,
            enrich_contracts=config.enrich_contracts,
        )
        self.pool = WorkerPool(
            size=config.max_agents,
            handler=self,
            bus=self.bus,
            allocator=self.allocator,
            agent_factory=self.agent_factory,
            pipeline=pipeline,
            retry=RetryController(config.max_attempts, config.retry_delay_seconds),
            gate=self.gate,
            logs=TaskLogs(self.repo_path, self.session_id, config.log_dir),
            agent_model=config.agent_model,
            agent_timeout=config.agent_timeout_seconds,
            preserve_failed_branches=config.preserve_failed_branches,
            baseline_commit=self.session.baseline_commit,
        )

    async def _schedule(self) -> None:
        """Submit ready tasks until the graph drains or the session aborts."""
        while True:
            self._wake.clear()
            if self._aborted:
                return

            batch = self._next_batch()
            if batch:
                for task in batch:
                    if self._aborted or await self.pool.submit(task) is None:
                        return
                continue

            if not self.graph.has_undone():
                return
            if self.pool.active_count == 0:
                # Nothing running and nothing ready: the rest can never start
                return
            await self._wake.wait()

    def _next_batch(self) -> list[Task]:
        """Ready tasks that may start now without colliding with running work."""
        candidates = []
        for task_id in self.graph.get_ready():
            if self.pool.is_running(task_id):
                continue
            task = self.graph.get_task(task_id)
            if task.status != TaskStatus.PENDING or task.assigned_to is not None:
                continue
            candidates.append(task)
        if self.collisions is None or not candidates:
            return candidates
        running = [
            self.graph.get_task(task_id)
            for task_id in self.pool.running_task_ids()
            if task_id in self.graph
        ]
        return self.collisions.schedulable(candidates, running)

    def _warn_overlaps(self, tasks: list[Task]) -> None:
        for overlap in find_overlaps(tasks):
            if overlap.second_id in self.graph.get_transitive_dependents(overlap.first_id):
                continue
            if overlap.first_id in self.graph.get_transitive_dependents(overlap.second_id):
                continue
            logger.warning(
                "Tasks %s and %s both touch %s and may conflict at merge",
                overlap.first_id,
                overlap.second_id,
                overlap.path,
            )

    def _fail_remaining(self, reason: str) -> None:
        for task in self.graph.tasks():
            if self.graph.is_epic(task.id) or task.status.is_terminal:
                continue
            self.graph.mark_failed(task.id, reason)
            self.bus.emit(
                EventKind.TASK_FAILED,
                task_id=task.id,
                task_title=task.title,
                parent_id=task.parent_id,
                error=reason,
                metadata={"retrying": False},
            )

    async def _cleanup(self, success: bool) -> None:
        if self.checkpoints is not None:
            try:
                await self.checkpoints.cleanup()
            except CheckpointError as e:
                logger.warning("Checkpoint cleanup incomplete: %s", e)
        if self.allocator is not None:
            removed = await self.allocator.cleanup()
            if removed:
                logger.debug("Removed %d leftover worktrees", len(removed))
        await self.session.finish(success, merge_to_base=self.config.merge_to_base)

    def _finish(
        self,
        started: float,
        exit_code: ExitCode,
        message: str,
        success: bool = False,
    ) -> SessionResult:
        tasks = self.graph.tasks()
        result = SessionResult(
            session_id=self.session_id,
            success=success,
            aborted=self._aborted,
            message=message,
            exit_code=exit_code,
            completed=[
                t.id for t in tasks
                if t.status == TaskStatus.DONE and not self.graph.is_epic(t.id)
            ],
            failed={
                t.id: t.error or ""
                for t in tasks
                if t.status == TaskStatus.FAILED and not self.graph.is_epic(t.id)
            },
            tasks=tasks,
            duration_seconds=time.monotonic() - started,
            total_tokens=self.pool.total_tokens if self.pool else 0,
            total_cost_usd=self.pool.total_cost_usd if self.pool else 0.0,
            session_branch=self.session.branch if self.session.baseline_commit else None,
        )
        self.bus.emit(
            EventKind.SESSION_DONE,
            task_id=f"request-{self.session_id}",
            message=message,
            tokens=result.total_tokens,
            cost_usd=result.total_cost_usd,
            duration_seconds=result.duration_seconds,
            metadata={"success": success, "exit_code": int(exit_code)},
        )
        logger.info("Session %s finished: %s", self.session_id, message)
        return result

    # Control

    def abort(self, reason: str) -> None:
        """Stop scheduling; running workers are cancelled by run()."""
        if not self._aborted:
            logger.warning("Aborting session %s: %s", self.session_id, reason)
        self._aborted = True
        self._abort_reason = self._abort_reason or reason
        if self.pool is not None:
            self.pool.close()
        self._wake.set()

    def cancel(self) -> None:
        """External cancellation, e.g. Ctrl+C."""
        self.abort("aborted")

    # TaskOutcomeHandler

    def assign(self, task_id: str, worker_id: str) -> None:
        self.graph.mark_in_progress(task_id, worker_id)

    def worker_released(self) -> None:
        self._wake.set()

    def requeue(self, task: Task) -> None:
        logger.info("Re-queueing task %s", task.id)
        self.graph.requeue(task.id)
        self._wake.set()

    def task_failed(self, task: Task, reason: str, skipped: bool = False) -> None:
        """Record a terminal failure and fail everything that depends on it."""
        self.graph.mark_failed(task.id, reason)
        self.bus.emit(
            EventKind.TASK_FAILED,
            task_id=task.id,
            task_title=task.title,
            parent_id=task.parent_id,
            agent_id=task.assigned_to,
            error=reason,
            log_file=self._log_file(task.id),
            metadata={"retrying": False, "skipped": skipped},
        )
        self._count_task("failed")

        dependent_reason = SKIPPED_DEPENDENCY if skipped else f"dependency {task.id} failed"
        for dependent_id in self.graph.fail_dependents(task.id, dependent_reason):
            dependent = self.graph.get_task(dependent_id)
            self.bus.emit(
                EventKind.TASK_FAILED,
                task_id=dependent.id,
                task_title=dependent.title,
                parent_id=dependent.parent_id,
                error=dependent_reason,
                metadata={"retrying": False, "skipped": skipped, "cause": task.id},
            )
            self._count_task("failed")
        self._wake.set()

    async def merge(self, task: Task, slot: WorkerSlot, workspace: Workspace) -> bool:
        """Merge a validated worker branch into the session branch.

        Merges are serialised. A checkpoint is tagged first; a conflict
        aborts the merge and hard-resets the session branch to it.

        Returns:
            True if the task was merged and marked complete
        """
        async with self._merge_lock:
            with self.tracer.start_as_current_span("swarm.merge") as span:
                span.set_attribute("task.id", task.id)
                span.set_attribute("merge.branch", workspace.branch)
                merged = await self._merge(task, slot, workspace)
                span.set_attribute("merge.result", "merged" if merged else "failed")
                return merged

    async def _merge(self, task: Task, slot: WorkerSlot, workspace: Workspace) -> bool:
        self.bus.emit(
            EventKind.MERGE_STARTED,
            task_id=task.id,
            task_title=task.title,
            parent_id=task.parent_id,
            agent_id=slot.id,
            metadata={"branch": workspace.branch},
        )
        try:
            checkpoint = await self.checkpoints.create(task.id)
        except CheckpointError as e:
            self._count_merge("checkpoint_failed")
            self.task_failed(task, str(e))
            return False

        message = (
            f"Merge task {task.id}: {task.title}\n\n"
            f"Session: {self.session_id}\n"
            f"Agent: {slot.id}\n"
            f"Branch: {workspace.branch}"
        )
        try:
            await self.git.merge_no_ff(workspace.branch, message)
        except asyncio.CancelledError:
            await self._rollback_after_cancel(task.id)
            raise
        except GitError as e:
            reason = await self._recover_failed_merge(task.id, e)
            self._count_merge("conflict")
            self.task_failed(task, reason)
            return False

        self.checkpoints.mark_good(task.id)
        self.graph.mark_complete(task.id)
        duration = (
            (datetime.now(timezone.utc) - slot.started_at).total_seconds()
            if slot.started_at
            else None
        )
        self.bus.emit(
            EventKind.MERGE_COMPLETED,
            task_id=task.id,
            task_title=task.title,
            parent_id=task.parent_id,
            agent_id=slot.id,
            metadata={"branch": workspace.branch, "checkpoint": checkpoint.commit},
        )
        self.bus.emit(
            EventKind.TASK_COMPLETED,
            task_id=task.id,
            task_title=task.title,
            parent_id=task.parent_id,
            agent_id=slot.id,
            tokens=slot.tokens,
            cost_usd=slot.cost_usd,
            duration_seconds=duration,
            log_file=self._log_file(task.id),
        )
        self._count_merge("merged")
        self._count_task("completed")
        if duration is not None:
            try:
                telemetry.task_duration.record(duration)
            except (AttributeError, NameError):
                pass  # Metrics not initialized
        self._wake.set()
        return True

    async def _recover_failed_merge(self, task_id: str, error: GitError) -> str:
        """Abort the merge and reset to the checkpoint; returns the failure reason."""
        try:
            conflicts = await self.git.conflicted_files()
        except GitError:
            conflicts = []
        if conflicts:
            try:
                await self.git.merge_abort()
            except GitError as e:
                logger.error("merge --abort failed: %s", e)
                self.abort("repository left mid-merge")
        try:
            await self.checkpoints.rollback(task_id)
        except CheckpointError as e:
            logger.error("Rollback after failed merge of %s failed: %s", task_id, e)
            self.abort("rollback failed")
        if conflicts:
            return f"merge conflict: {', '.join(conflicts)}"
        return f"merge failed: {error}"

    async def _rollback_after_cancel(self, task_id: str) -> None:
        try:
            if await self.git.has_conflicts():
                await self.git.merge_abort()
            await self.checkpoints.rollback(task_id)
        except (GitError, CheckpointError) as e:
            logger.error("Rollback of cancelled merge %s failed: %s", task_id, e)

    # Helpers

    def _log_file(self, task_id: str) -> str | None:
        if self.pool is None or self.pool.logs is None:
            return None
        path = self.pool.logs.path_for(task_id)
        return str(path) if path.exists() else None

    @staticmethod
    def _count_task(status: str) -> None:
        try:
            telemetry.tasks_counter.add(1, {"status": status})
        except (AttributeError, NameError):
            pass  # Metrics not initialized

    @staticmethod
    def _count_merge(result: str) -> None:
        try:
            telemetry.merges_counter.add(1, {"result": result})
        except (AttributeError, NameError):
            pass  # Metrics not initialized
