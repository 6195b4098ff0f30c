"""Bounded pool of task workers.

Each submitted task gets a slot and a worker coroutine that runs the
attempt lifecycle:

    allocate worktree -> run agent -> commit and diff -> validate
        -> pass: hand to the orchestrator for merging
        -> fail: retry with feedback, or escalate when attempts run out

The pool never mutates the dependency graph itself; it reports through a
TaskOutcomeHandler (implemented by the Orchestrator).
"""

import asyncio
import copy
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from swarm import telemetry
from swarm.agent import (
    AgentEvent,
    AgentEventType,
    AgentRunnerFactory,
    AgentStartOptions,
    build_task_prompt,
    format_tool_call,
    run_agent,
)
from swarm.errors import AgentError, EscalationError, GitError, WorkspaceError
from swarm.escalation import EscalationAction, EscalationGate, EscalationRequest
from swarm.events import EventBus, EventKind
from swarm.models import Task, ValidationResult, WorkerSlot, WorkerStatus
from swarm.retry import RetryContext, RetryController, focus_hint_for
from swarm.tasklog import TaskLogs
from swarm.validation import ValidationInput, ValidationPipeline
from swarm.workspace import Workspace, WorkspaceAllocator

logger = logging.getLogger(__name__)


class TaskOutcomeHandler(Protocol):
    """Receives worker results; owns every graph mutation."""

    def assign(self, task_id: str, worker_id: str) -> None: ...

    async def merge(self, task: Task, slot: WorkerSlot, workspace: Workspace) -> bool: ...

    def task_failed(self, task: Task, reason: str, skipped: bool = False) -> None: ...

    def requeue(self, task: Task) -> None: ...

    def abort(self, reason: str) -> None: ...

    def worker_released(self) -> None: ...


@dataclass
class AttemptResult:
    """Outcome of one agent run plus validation."""

    validation: ValidationResult | None
    reason: str

    @property
    def passed(self) -> bool:
        return self.validation is not None and self.validation.passed


class WorkerPool:
    """N slots running task attempts concurrently.

    Args:
        size: Number of slots (max concurrent agents)
        handler: Receives merges, failures, requeues and aborts
        bus: Event bus for task_started, task_progress and retry signals
        allocator: Creates per-attempt worktrees
        agent_factory: Creates one AgentRunner per attempt
        pipeline: Validates attempts
        retry: Retry policy
        gate: Escalation gate used when retries are exhausted
        logs: Per-task log files
        agent_model: Model identifier for coding agents
        agent_timeout: Seconds before an agent is killed
        preserve_failed_branches: Keep worker branches of failed attempts
        baseline_commit: Session-start commit handed to validation
    """

    def __init__(
        self,
        size: int,
        handler: TaskOutcomeHandler,
        bus: EventBus,
        allocator: WorkspaceAllocator,
        agent_factory: AgentRunnerFactory,
        pipeline: ValidationPipeline,
        retry: RetryController,
        gate: EscalationGate,
        logs: TaskLogs | None = None,
        agent_model: str | None = None,
        agent_timeout: float | None = None,
        preserve_failed_branches: bool = False,
        baseline_commit: str | None = None,
    ) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self.handler = handler
        self.bus = bus
        self.allocator = allocator
        self.agent_factory = agent_factory
        self.pipeline = pipeline
        self.retry = retry
        self.gate = gate
        self.logs = logs
        self.agent_model = agent_model
        self.agent_timeout = agent_timeout
        self.preserve_failed_branches = preserve_failed_branches
        self.baseline_commit = baseline_commit

        self._semaphore = asyncio.Semaphore(size)
        self._lock = threading.Lock()
        self._slots = [WorkerSlot(id=f"agent-{i + 1}") for i in range(size)]
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._attempts: dict[str, int] = {}
        self._carry: dict[str, RetryContext] = {}
        self._closed = False
        self._closed_event = asyncio.Event()
        self.peak_active = 0
        self.total_tokens = 0
        self.total_cost_usd = 0.0

    # Observable state

    @property
    def active_count(self) -> int:
        with self._lock:
            return sum(1 for slot in self._slots if slot.task_id is not None)

    @property
    def has_free_slot(self) -> bool:
        return self.active_count < self.size

    @property
    def closed(self) -> bool:
        return self._closed

    def running_task_ids(self) -> list[str]:
        """Ids of tasks that still have a worker, merging included."""
        return list(self._workers)

    def is_running(self, task_id: str) -> bool:
        return task_id in self._workers

    def slots(self) -> list[WorkerSlot]:
        """Copies of every slot's current state."""
        with self._lock:
            return [copy.copy(slot) for slot in self._slots]

    def _update(self, slot: WorkerSlot, **changes: object) -> None:
        with self._lock:
            for name, value in changes.items():
                setattr(slot, name, value)

    # Submission

    async def submit(self, task: Task) -> WorkerSlot | None:
        """Wait for a free slot and start a worker for the task.

        Returns:
            Snapshot of the claimed slot, or None if the pool was shut down
            while waiting
        """
        if self._closed:
            return None
        if not await self._acquire_slot():
            return None

        try:
            with self._lock:
                slot = next(s for s in self._slots if s.task_id is None)
                slot.task_id = task.id
                slot.status = WorkerStatus.RUNNING
                slot.started_at = datetime.now(timezone.utc)
                slot.tokens = 0
                slot.cost_usd = 0.0
                slot.progress = ""
                active = sum(1 for s in self._slots if s.task_id is not None)
                self.peak_active = max(self.peak_active, active)
            self.handler.assign(task.id, slot.id)
        except BaseException:
            self._free(slot_id=None, task_id=task.id)
            raise

        worker = asyncio.create_task(self._run(slot, task), name=f"swarm-worker-{task.id}")
        self._workers[task.id] = worker
        return copy.copy(slot)

    async def _acquire_slot(self) -> bool:
        """Wait for the semaphore unless the pool is closed first."""
        acquire = asyncio.ensure_future(self._semaphore.acquire())
        closed = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({acquire, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not acquire.done():
                acquire.cancel()
        if acquire.done() and not acquire.cancelled():
            if self._closed:
                self._semaphore.release()
                return False
            return True
        return False

    def _free(self, slot_id: str | None, task_id: str) -> None:
        with self._lock:
            for slot in self._slots:
                if slot.task_id == task_id and (slot_id is None or slot.id == slot_id):
                    slot.task_id = None
                    slot.status = WorkerStatus.IDLE
                    slot.workspace_path = None
                    slot.branch = None
                    slot.progress = ""
        self._semaphore.release()

    async def _run(self, slot: WorkerSlot, task: Task) -> None:
        requeue = False
        try:
            requeue = await self._execute(slot, task)
            self._update(slot, status=WorkerStatus.DONE)
        except asyncio.CancelledError:
            logger.info("Worker %s cancelled while running %s", slot.id, task.id)
            self._update(slot, status=WorkerStatus.FAILED)
            raise
        except Exception as e:
            logger.exception("Worker %s crashed on %s", slot.id, task.id)
            self._update(slot, status=WorkerStatus.FAILED)
            self.handler.task_failed(task, f"internal error: {e}")
        finally:
            if self._workers.get(task.id) is asyncio.current_task():
                del self._workers[task.id]
            self._free(slot.id, task.id)
            # Requeue only once the slot and worktree are gone
            if requeue:
                self.handler.requeue(task)
            self.handler.worker_released()

    # Attempt lifecycle

    def _next_attempt(self, task_id: str) -> int:
        self._attempts[task_id] = self._attempts.get(task_id, 0) + 1
        return self._attempts[task_id]

    def _log(self, task_id: str, text: str) -> None:
        if self.logs is not None:
            self.logs.write(task_id, text)

    def _log_file(self, task_id: str) -> str | None:
        return str(self.logs.path_for(task_id)) if self.logs is not None else None

    async def _execute(self, slot: WorkerSlot, task: Task) -> bool:
        """Run attempts until the task merges, fails or is handed back.

        Returns:
            True if the task should be requeued once this worker is gone
        """
        round_attempt = 0
        failures: list[str] = []
        retry_context = self._carry.pop(task.id, None)

        while True:
            if self._closed:
                return False
            round_attempt += 1
            attempt_no = self._next_attempt(task.id)
            try:
                workspace = await self.allocator.allocate(task.id, attempt_no)
            except WorkspaceError as e:
                self._log(task.id, f"Workspace allocation failed: {e}")
                self.handler.task_failed(task, str(e))
                return False

            keep_branch = False
            try:
                self._update(
                    slot,
                    status=WorkerStatus.RUNNING,
                    workspace_path=str(workspace.path),
                    branch=workspace.branch,
                    progress="",
                )
                self.bus.emit(
                    EventKind.TASK_STARTED,
                    task_id=task.id,
                    task_title=task.title,
                    parent_id=task.parent_id,
                    agent_id=slot.id,
                    log_file=self._log_file(task.id),
                    metadata={"attempt": attempt_no, "branch": workspace.branch},
                )
                self._log(task.id, f"Attempt {attempt_no} on {workspace.branch}")

                result = await self._attempt(slot, task, workspace, retry_context)
                if result.passed:
                    self._update(slot, status=WorkerStatus.MERGING)
                    await self.handler.merge(task, copy.copy(slot), workspace)
                    return False

                failures.append(result.reason)
                self._log(task.id, f"Attempt {attempt_no} failed: {result.reason}")
                decision = self.retry.on_failure(round_attempt, failures, result.validation)
                if decision.should_retry:
                    self.bus.emit(
                        EventKind.TASK_FAILED,
                        task_id=task.id,
                        task_title=task.title,
                        parent_id=task.parent_id,
                        agent_id=slot.id,
                        message=f"attempt {round_attempt} failed, retrying",
                        error=result.reason,
                        log_file=self._log_file(task.id),
                        metadata={"retrying": True, "attempt": round_attempt},
                    )
                    retry_context = decision.context
                    keep_branch = self.preserve_failed_branches
                else:
                    keep_branch = self.preserve_failed_branches
                    return await self._escalate(
                        slot, task, workspace, round_attempt, failures, result
                    )
            finally:
                await self.allocator.release(workspace, preserve_branch=keep_branch)

            await self.retry.wait()

    async def _attempt(
        self,
        slot: WorkerSlot,
        task: Task,
        workspace: Workspace,
        retry_context: RetryContext | None,
    ) -> AttemptResult:
        def on_event(event: AgentEvent) -> None:
            if self.logs is not None:
                self.logs.write_agent_event(task.id, event)
            if event.type != AgentEventType.TOOL_USE:
                return
            action = format_tool_call(event.tool_name or "", event.tool_input)
            self._update(slot, progress=action)
            self.bus.emit(
                EventKind.TASK_PROGRESS,
                task_id=task.id,
                agent_id=slot.id,
                current_action=action,
                tokens=slot.tokens,
                cost_usd=slot.cost_usd,
            )

        options = AgentStartOptions(
            prompt=build_task_prompt(task, retry_context),
            workdir=workspace.path,
            model=self.agent_model,
        )
        try:
            agent_result = await run_agent(
                self.agent_factory(), options, timeout=self.agent_timeout, on_event=on_event
            )
        except AgentError as e:
            return AttemptResult(validation=None, reason=f"agent error: {e}")

        self._update(
            slot,
            tokens=slot.tokens + agent_result.tokens,
            cost_usd=slot.cost_usd + agent_result.cost_usd,
        )
        self.total_tokens += agent_result.tokens
        self.total_cost_usd += agent_result.cost_usd
        try:
            telemetry.tokens_counter.add(agent_result.tokens)
            telemetry.cost_counter.add(agent_result.cost_usd)
        except (AttributeError, NameError):
            pass  # Metrics not initialized
        self.bus.emit(
            EventKind.TASK_PROGRESS,
            task_id=task.id,
            agent_id=slot.id,
            message="agent finished",
            tokens=slot.tokens,
            cost_usd=slot.cost_usd,
            duration_seconds=agent_result.duration_seconds,
        )
        return await self._validate(slot, task, workspace)

    async def _validate(self, slot: WorkerSlot, task: Task, workspace: Workspace) -> AttemptResult:
        try:
            changes = await self.allocator.collect_changes(
                workspace, f"{task.id}: {task.title}"
            )
        except GitError as e:
            return AttemptResult(validation=None, reason=f"could not collect changes: {e}")
        if changes.empty:
            return AttemptResult(validation=None, reason="agent produced no changes")

        self._update(slot, status=WorkerStatus.VALIDATING, progress="validating")
        validation = await self.pipeline.validate(
            ValidationInput(
                task=task,
                workspace_path=workspace.path,
                diff=changes.diff,
                files=changes.files,
                baseline_commit=self.baseline_commit,
            )
        )
        self._log(task.id, validation.summary)
        return AttemptResult(validation=validation, reason=validation.failure_reason or "")

    async def _escalate(
        self,
        slot: WorkerSlot,
        task: Task,
        workspace: Workspace,
        attempts: int,
        failures: list[str],
        result: AttemptResult,
    ) -> bool:
        """Hand a task to the escalation gate and act on the answer.

        Returns:
            True if the answer was retry and the task should be requeued
        """
        while True:
            validation = result.validation
            request = EscalationRequest(
                task_id=task.id,
                task_title=task.title,
                reason=result.reason,
                attempts=attempts,
                validation_summary=validation.summary if validation else result.reason,
                worktree_path=str(workspace.path),
                log_file=self._log_file(task.id),
                error=failures[-1] if failures else None,
            )
            self._update(slot, progress="waiting for escalation")
            action = await self.gate.escalate(request)
            self._log(task.id, f"Escalation answered: {action.value}")

            if action == EscalationAction.MANUAL_FIX:
                try:
                    await self.gate.wait_for_resume(request)
                except EscalationError as e:
                    self.handler.task_failed(task, str(e))
                    self.handler.abort("manual fix failed")
                    return False
                result = await self._validate(slot, task, workspace)
                if result.passed:
                    self._update(slot, status=WorkerStatus.MERGING)
                    await self.handler.merge(task, copy.copy(slot), workspace)
                    return False
                failures.append(result.reason)
                continue

            if action == EscalationAction.RETRY:
                self._carry[task.id] = RetryContext(
                    attempt=self._attempts.get(task.id, 0) + 1,
                    previous_failures=list(failures),
                    failure_reason=result.reason,
                    validation_summary=validation.summary if validation else result.reason,
                    focus_hint=focus_hint_for(validation),
                )
                return True
            if action == EscalationAction.SKIP:
                self.handler.task_failed(task, result.reason, skipped=True)
            else:
                self.handler.task_failed(task, result.reason)
                self.handler.abort("aborted by user")
            return False

    # Shutdown

    async def cancel_all(self, grace_seconds: float = 10.0) -> None:
        """Stop accepting work and cancel running workers.

        Cancelled workers kill their agent subprocess and release their
        workspace; the call waits up to grace_seconds for that cleanup.
        """
        self.close()
        workers = [w for w in self._workers.values() if not w.done()]
        for worker in workers:
            worker.cancel()
        if workers:
            _, pending = await asyncio.wait(workers, timeout=grace_seconds)
            if pending:
                logger.warning("%d workers did not stop within %ss", len(pending), grace_seconds)

    async def join(self) -> None:
        """Wait for every running worker to finish."""
        while self._workers:
            await asyncio.wait(list(self._workers.values()))

    def close(self) -> None:
        """Refuse further submissions; running workers continue."""
        self._closed = True
        self._closed_event.set()
