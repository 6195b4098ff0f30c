"""Human escalation when retries are exhausted.

The gate publishes a task_escalation event and suspends the calling worker
until someone answers with respond(). Escalations are handled one at a time;
workers escalating concurrently queue behind the active one. An optional
EscalationResponder answers automatically, e.g. an interactive console
prompt or a fixed policy for unattended runs.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from swarm import telemetry
from swarm.errors import EscalationError
from swarm.events import EventBus, EventKind

logger = logging.getLogger(__name__)


class EscalationAction(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"
    MANUAL_FIX = "manual_fix"

    @classmethod
    def parse(cls, value: str) -> "EscalationAction":
        """Accept action names and the short forms used at the prompt."""
        normalized = value.strip().lower().replace("-", "_")
        aliases = {"r": "retry", "s": "skip", "a": "abort", "m": "manual_fix", "manual": "manual_fix"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise EscalationError(f"Unknown escalation action: {value}") from None


@dataclass
class EscalationRequest:
    """What the human needs to decide about a failing task."""

    task_id: str
    task_title: str
    reason: str
    attempts: int
    validation_summary: str = ""
    worktree_path: str | None = None
    log_file: str | None = None
    error: str | None = None


class EscalationResponder(Protocol):
    """Supplies decisions for escalations."""

    async def decide(self, request: EscalationRequest) -> EscalationAction: ...

    async def manual_fix_done(self, request: EscalationRequest) -> None: ...


class EscalationGate:
    """Suspends workers until an escalation is answered.

    Args:
        bus: Event bus the task_escalation events are published on
        responder: Optional automatic responder
        timeout: Seconds to wait for an answer before aborting; None waits
            forever
    """

    def __init__(
        self,
        bus: EventBus,
        responder: EscalationResponder | None = None,
        timeout: float | None = None,
    ) -> None:
        self.bus = bus
        self.responder = responder
        self.timeout = timeout
        self._serial = asyncio.Lock()
        self._pending: asyncio.Future[EscalationAction] | None = None
        self._resume: dict[str, asyncio.Future[None]] = {}
        self.current: EscalationRequest | None = None

    @property
    def in_progress(self) -> bool:
        return self._pending is not None and not self._pending.done()

    @property
    def awaiting_manual_fix(self) -> list[str]:
        """Ids of tasks whose workers wait for resume()."""
        return [task_id for task_id, f in self._resume.items() if not f.done()]

    async def escalate(self, request: EscalationRequest) -> EscalationAction:
        """Publish the escalation and wait for the answer.

        Returns:
            The chosen action; ABORT if the wait times out
        """
        async with self._serial:
            future: asyncio.Future[EscalationAction] = (
                asyncio.get_running_loop().create_future()
            )
            self._pending = future
            self.current = request
            started = time.monotonic()

            self.bus.emit(
                EventKind.TASK_ESCALATION,
                task_id=request.task_id,
                task_title=request.task_title,
                message=request.reason,
                error=request.error,
                log_file=request.log_file,
                metadata={
                    "attempts": request.attempts,
                    "validation_summary": request.validation_summary,
                    "worktree_path": request.worktree_path,
                },
            )
            try:
                telemetry.escalations_counter.add(1, {"task_id": request.task_id})
            except (AttributeError, NameError):
                pass  # Metrics not initialized

            helper = None
            if self.responder is not None:
                helper = asyncio.create_task(self._consult(request))
            try:
                action = await asyncio.wait_for(future, self.timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Escalation for %s unanswered after %ss, aborting",
                    request.task_id,
                    self.timeout,
                )
                action = EscalationAction.ABORT
            finally:
                self._pending = None
                self.current = None
                if helper is not None and not helper.done():
                    helper.cancel()

            logger.info(
                "Escalation for %s answered with %s after %.0fs",
                request.task_id,
                action.value,
                time.monotonic() - started,
            )
            return action

    async def _consult(self, request: EscalationRequest) -> None:
        try:
            action = await self.responder.decide(request)  # type: ignore[union-attr]
        except Exception:
            logger.exception("Escalation responder failed for %s, aborting", request.task_id)
            action = EscalationAction.ABORT
        if self.in_progress:
            self.respond(action)

    def respond(self, action: EscalationAction) -> None:
        """Answer the active escalation.

        Raises:
            EscalationError: If no escalation is waiting
        """
        pending = self._pending
        if pending is None or pending.done():
            raise EscalationError("no escalation in progress")
        pending.set_result(action)

    async def wait_for_resume(self, request: EscalationRequest) -> None:
        """Block until resume() is called for the task under manual fix.

        Raises:
            EscalationError: If the responder failed while waiting for the fix
        """
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._resume[request.task_id] = future
        helper = None
        if self.responder is not None:
            helper = asyncio.create_task(self._await_manual_fix(request))
        try:
            await future
        finally:
            self._resume.pop(request.task_id, None)
            if helper is not None and not helper.done():
                helper.cancel()

    async def _await_manual_fix(self, request: EscalationRequest) -> None:
        try:
            await self.responder.manual_fix_done(request)  # type: ignore[union-attr]
        except Exception as e:
            logger.exception("Manual fix responder failed for %s", request.task_id)
            future = self._resume.get(request.task_id)
            if future is not None and not future.done():
                future.set_exception(
                    EscalationError(f"manual fix for {request.task_id} failed: {e}")
                )
            return
        if request.task_id in self._resume:
            self.resume(request.task_id)

    def resume(self, task_id: str | None = None) -> None:
        """Signal that a manual fix is in place.

        Args:
            task_id: Task to resume; may be omitted when only one waits

        Raises:
            EscalationError: If no matching manual fix is waiting
        """
        if task_id is None:
            if len(self._resume) != 1:
                raise EscalationError("specify which task to resume")
            task_id = next(iter(self._resume))
        future = self._resume.get(task_id)
        if future is None or future.done():
            raise EscalationError(f"no manual fix in progress for {task_id}")
        future.set_result(None)


class PolicyResponder:
    """Answers every escalation with the same action (unattended runs)."""

    def __init__(self, action: EscalationAction) -> None:
        if action == EscalationAction.MANUAL_FIX:
            raise ValueError("manual_fix needs a human; choose retry, skip or abort")
        self.action = action

    async def decide(self, request: EscalationRequest) -> EscalationAction:
        return self.action

    async def manual_fix_done(self, request: EscalationRequest) -> None:
        return None


class ConsoleResponder:
    """Asks the user at the terminal with rich prompts."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    async def decide(self, request: EscalationRequest) -> EscalationAction:
        self.console.print()
        self.console.print(
            Panel(
                request.validation_summary or request.reason,
                title=f"Task {request.task_id} failed {request.attempts} attempts",
                border_style="yellow",
            )
        )
        if request.worktree_path:
            self.console.print(f"[dim]Worktree: {request.worktree_path}[/dim]")
        if request.log_file:
            self.console.print(f"[dim]Log: {request.log_file}[/dim]")

        answer = await asyncio.to_thread(
            Prompt.ask,
            "[bold]retry[/bold], [bold]skip[/bold], [bold]abort[/bold] or [bold]manual[/bold] fix?",
            choices=["retry", "skip", "abort", "manual"],
            default="skip",
        )
        return EscalationAction.parse(answer)

    async def manual_fix_done(self, request: EscalationRequest) -> None:
        self.console.print(
            f"Edit the files in [bold]{request.worktree_path}[/bold]; "
            "validation re-runs when you continue."
        )
        await asyncio.to_thread(Prompt.ask, "Press Enter when done", default="")
