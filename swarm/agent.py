"""Coding-agent invocation.

The core talks to agents only through AgentRunner: start with options,
consume a finite stream of typed AgentEvents terminated by a result or an
error event, wait, and kill. ClaudeCLIRunner implements it on top of the
`claude` CLI in stream-json mode.
"""

import asyncio
import json
import logging
import shutil
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from swarm.errors import AgentError
from swarm.models import AgentResult, Task
from swarm.retry import RetryContext
from swarm.shell import kill_process_group

logger = logging.getLogger(__name__)

# Cached path to Claude CLI
_claude_cli_path: str | None = None


class AgentEventType(str, Enum):
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    RESULT = "result"
    ERROR = "error"


@dataclass
class AgentEvent:
    """One item of an agent's output stream."""

    type: AgentEventType
    text: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    tokens: int = 0
    cost_usd: float = 0.0
    session_id: str | None = None
    num_turns: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.type in (AgentEventType.RESULT, AgentEventType.ERROR)


@dataclass
class AgentStartOptions:
    prompt: str
    workdir: str | Path
    model: str | None = None


class AgentRunner(Protocol):
    """A single agent subprocess."""

    async def start(self, options: AgentStartOptions) -> None: ...

    def events(self) -> AsyncIterator[AgentEvent]: ...

    async def wait(self) -> int: ...

    async def kill(self) -> None: ...


AgentRunnerFactory = Callable[[], AgentRunner]


def find_claude_cli() -> str | None:
    """Find the Claude CLI executable.

    Checks:
    1. shutil.which("claude") - standard PATH lookup
    2. ~/.claude/local/claude - common installation location

    Returns:
        Path to the Claude CLI, or None if not found.
    """
    global _claude_cli_path

    if _claude_cli_path is not None:
        return _claude_cli_path

    path_result = shutil.which("claude")
    if path_result:
        _claude_cli_path = path_result
        return _claude_cli_path

    local = Path.home() / ".claude" / "local" / "claude"
    if local.exists():
        _claude_cli_path = str(local)
        return _claude_cli_path

    return None


def parse_stream_line(line: str) -> list[AgentEvent]:
    """Translate one stream-json line from the Claude CLI into events.

    Malformed lines and event types that carry nothing of interest yield
    an empty list.
    """
    line = line.strip()
    if not line:
        return []
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return []
    if not isinstance(data, dict):
        return []

    event_type = data.get("type")
    if event_type == "assistant":
        events = []
        for item in data.get("message", {}).get("content", []):
            if item.get("type") == "text" and item.get("text"):
                events.append(AgentEvent(AgentEventType.ASSISTANT, text=item["text"]))
            elif item.get("type") == "tool_use":
                events.append(
                    AgentEvent(
                        AgentEventType.TOOL_USE,
                        tool_name=item.get("name", ""),
                        tool_input=item.get("input", {}) or {},
                    )
                )
        return events

    if event_type == "result":
        usage = data.get("usage", {}) or {}
        tokens = int(usage.get("input_tokens", 0) or 0) + int(
            usage.get("output_tokens", 0) or 0
        )
        kind = AgentEventType.ERROR if data.get("is_error") else AgentEventType.RESULT
        return [
            AgentEvent(
                kind,
                text=data.get("result", "") or "",
                tokens=tokens,
                cost_usd=float(data.get("total_cost_usd", 0.0) or 0.0),
                session_id=data.get("session_id"),
                num_turns=int(data.get("num_turns", 0) or 0),
            )
        ]

    return []


def format_tool_call(tool_name: str, tool_input: dict) -> str:
    """Format a tool call for human-readable display.

    Args:
        tool_name: Name of the tool (Read, Write, Bash, etc.)
        tool_input: Dictionary of tool input parameters

    Returns:
        Formatted string like "→ Reading config.py..."
    """
    file_path = tool_input.get("file_path", "")
    filename = Path(file_path).name if file_path else "file"
    if tool_name == "Read":
        return f"→ Reading {filename}..."
    if tool_name == "Write":
        return f"→ Writing {filename}..."
    if tool_name == "Edit":
        return f"→ Editing {filename}..."
    if tool_name == "Bash":
        command = tool_input.get("command", "")
        if len(command) > 50:
            command = command[:50] + "..."
        return f"→ Running: {command}"
    if tool_name in ("Grep", "Glob"):
        verb = "Searching for" if tool_name == "Grep" else "Finding"
        return f"→ {verb} {tool_input.get('pattern', '')}..."
    return f"→ {tool_name}..."


class ClaudeCLIRunner:
    """AgentRunner backed by `claude -p --output-format stream-json`."""

    def __init__(
        self,
        cli_path: str | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self._cli_path = cli_path
        self._extra_args = extra_args or []
        self._proc: asyncio.subprocess.Process | None = None

    async def start(self, options: AgentStartOptions) -> None:
        """Spawn the CLI in the options' working directory.

        Raises:
            AgentError: If the CLI cannot be found or started
        """
        cli = self._cli_path or find_claude_cli()
        if cli is None:
            raise AgentError(
                "Claude CLI not found. Install it or put `claude` on PATH."
            )

        cmd = [
            cli,
            "-p",
            options.prompt,
            "--output-format",
            "stream-json",
            "--verbose",  # Required for stream-json with -p
            "--dangerously-skip-permissions",
            *self._extra_args,
        ]
        if options.model:
            cmd.extend(["--model", options.model])

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(options.workdir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=16 * 1024 * 1024,
            )
        except OSError as e:
            raise AgentError(f"Failed to start Claude CLI: {e}") from e

    async def events(self) -> AsyncIterator[AgentEvent]:
        if self._proc is None or self._proc.stdout is None:
            raise AgentError("Agent not started")
        async for raw in self._proc.stdout:
            for event in parse_stream_line(raw.decode(errors="replace")):
                yield event
                if event.is_terminal:
                    return

    async def wait(self) -> int:
        if self._proc is None:
            return -1
        return await self._proc.wait()

    async def kill(self) -> None:
        if self._proc is not None and self._proc.returncode is None:
            kill_process_group(self._proc)
            await self._proc.wait()


async def run_agent(
    runner: AgentRunner,
    options: AgentStartOptions,
    timeout: float | None = None,
    on_event: Callable[[AgentEvent], None] | None = None,
) -> AgentResult:
    """Drive an agent to completion and aggregate its output.

    Args:
        runner: Fresh runner from an AgentRunnerFactory
        options: Prompt, working directory and model
        timeout: Seconds before the agent is killed
        on_event: Called for every streamed event (progress relay, logging)

    Returns:
        AgentResult with the final result text, usage and cost

    Raises:
        AgentError: On an error event, a missing result, or a timeout
        asyncio.CancelledError: After the agent subprocess has been killed
    """
    started = time.monotonic()
    transcript: list[str] = []
    final: AgentEvent | None = None

    async def consume() -> None:
        nonlocal final
        async for event in runner.events():
            if on_event is not None:
                on_event(event)
            if event.type == AgentEventType.ASSISTANT:
                transcript.append(event.text)
            elif event.is_terminal:
                final = event
                return

    await runner.start(options)
    try:
        await asyncio.wait_for(consume(), timeout)
        await runner.wait()
    except asyncio.TimeoutError:
        await runner.kill()
        raise AgentError(f"Agent timed out after {timeout:.0f}s") from None
    except BaseException:
        await runner.kill()
        raise

    if final is None:
        raise AgentError("Agent exited without a result event")
    if final.type == AgentEventType.ERROR:
        raise AgentError(f"Agent reported an error: {final.text or 'no details'}")

    output = final.text or "\n".join(transcript)
    return AgentResult(
        output=output,
        tokens=final.tokens,
        cost_usd=final.cost_usd,
        duration_seconds=time.monotonic() - started,
        session_id=final.session_id,
        num_turns=final.num_turns,
    )


def render_retry_context(context: RetryContext) -> str:
    """Serialize a retry context as a supplementary prompt section."""
    lines = [f"## Retry (attempt {context.attempt})", ""]
    if context.failure_reason:
        lines.append(f"Previous attempt failed: {context.failure_reason}")
        lines.append("")
    if context.validation_summary:
        lines.extend([context.validation_summary, ""])
    if len(context.previous_failures) > 1:
        lines.append("Earlier failures:")
        lines.extend(f"- {failure}" for failure in context.previous_failures[:-1])
        lines.append("")
    lines.append("Please address these issues in this attempt.")
    lines.append(f"Focus on: {context.focus_hint}")
    return "\n".join(lines)


def build_task_prompt(task: Task, retry_context: RetryContext | None = None) -> str:
    """Build the prompt sent to a coding agent for one task attempt."""
    sections = [f"# Task: {task.title}", "", task.description or task.title]

    if task.acceptance_criteria:
        sections.extend(["", "## Acceptance Criteria"])
        sections.extend(f"- {criterion}" for criterion in task.acceptance_criteria)

    if task.file_boundaries:
        sections.extend(["", "## Files you may modify"])
        sections.extend(f"- {path}" for path in task.file_boundaries)

    if task.contract and task.contract.commands:
        sections.extend(["", "## Verification", "These commands must succeed:"])
        sections.extend(f"- `{cmd.command}`" for cmd in task.contract.commands)

    sections.extend(
        [
            "",
            "## Instructions",
            "Work only inside the current directory. Implement the task fully;"
            " do not leave placeholders. Do not commit, the orchestrator does.",
        ]
    )

    if retry_context is not None:
        sections.extend(["", render_retry_context(retry_context)])

    return "\n".join(sections)
