"""Turning a user request into task seeds.

Three decomposers share one interface:

- AgentDecomposer asks a coding agent for a JSON task list
- PlanDecomposer reads a markdown plan file
- SingleTaskDecomposer runs the whole request as one task

When a request yields more than one task, the tasks are grouped under an
epic parent.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from swarm.agent import AgentRunnerFactory, AgentStartOptions, run_agent
from swarm.errors import AgentError, DecompositionError
from swarm.models import Task
from swarm.plan_parser import extract_plan_title, parse_plan_text

logger = logging.getLogger(__name__)

EPIC_ID = "epic"
MAX_TITLE_CHARS = 80

DECOMPOSE_PROMPT = """You are planning work for a team of coding agents that run in parallel,
each in its own copy of this repository.

Split the request below into small, independently verifiable subtasks.
Prefer subtasks that touch different files so they can run concurrently;
add a dependency only when a subtask needs another one's result.

Return a JSON array of subtasks. Each subtask has:
- title: short imperative title (unique)
- description: what to implement, precisely enough to work without the other subtasks
- depends_on: titles of subtasks that must be finished first (may be empty)
- acceptance_criteria: list of checkable statements
- files: paths the subtask is expected to touch (may be empty)

Example output:
[
  {{"title": "Add user model", "description": "...", "depends_on": [], "acceptance_criteria": ["..."], "files": ["app/models.py"]}},
  {{"title": "Add login endpoint", "description": "...", "depends_on": ["Add user model"], "acceptance_criteria": ["..."], "files": ["app/auth.py"]}}
]

Return ONLY the JSON array, no other text.

Request:
{request}
"""


@dataclass
class Decomposition:
    """Tasks produced from one request.

    Attributes:
        tasks: Schedulable tasks
        epic: Parent grouping the tasks, when there is more than one
    """

    tasks: list[Task]
    epic: Task | None = None

    @property
    def all_tasks(self) -> list[Task]:
        return [self.epic, *self.tasks] if self.epic else list(self.tasks)


class Decomposer(Protocol):
    async def decompose(self, request: str) -> Decomposition: ...


def _short_title(text: str) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if len(first_line) > MAX_TITLE_CHARS:
        return first_line[: MAX_TITLE_CHARS - 3] + "..."
    return first_line


def _validate_request(request: str) -> str:
    request = request.strip()
    if not request:
        raise DecompositionError("Task description is empty")
    return request


def group_under_epic(tasks: list[Task], title: str, description: str = "") -> Decomposition:
    """Wrap tasks in an epic parent when there is more than one."""
    if len(tasks) <= 1:
        return Decomposition(tasks=tasks)
    epic = Task(id=EPIC_ID, title=_short_title(title), description=description)
    for task in tasks:
        task.parent_id = EPIC_ID
    return Decomposition(tasks=tasks, epic=epic)


def extract_json_array(text: str) -> str | None:
    """Extract a JSON array from text that may contain markdown.

    Handles ```json fenced blocks and bare arrays surrounded by prose.

    Returns:
        The JSON array string if found, None otherwise.
    """
    match = re.search(r"```(?:json)?\s*(\[[\s\S]*?\])\s*```", text)
    if match:
        return match.group(1)

    start = text.find("[")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i, char in enumerate(text[start:], start):
        if in_string:
            if escape_next:
                escape_next = False
            elif char == "\\":
                escape_next = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def parse_task_seeds(response: str) -> list[dict[str, Any]]:
    """Parse an agent response into a list of task dictionaries.

    Raises:
        DecompositionError: If no JSON array of objects can be found
    """
    data: Any = None
    try:
        data = json.loads(response.strip())
    except json.JSONDecodeError:
        json_str = extract_json_array(response)
        if json_str is not None:
            try:
                data = json.loads(json_str)
            except json.JSONDecodeError:
                data = None

    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise DecompositionError(
            f"Could not parse a task list from the agent response: {response[:200]}"
        )
    return data


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (str, int)):
        return [str(value)]
    return [str(item) for item in value]


def build_tasks(seeds: list[dict[str, Any]]) -> list[Task]:
    """Create tasks with generated identifiers from parsed seeds.

    Dependencies may name another seed by title (case-insensitive) or by
    1-based position.

    Raises:
        DecompositionError: On an empty list, a missing title, or an
            unknown dependency
    """
    if not seeds:
        raise DecompositionError("Decomposition produced no tasks")

    by_title: dict[str, str] = {}
    tasks = []
    for index, seed in enumerate(seeds, 1):
        title = str(seed.get("title") or "").strip()
        if not title:
            raise DecompositionError(f"Task {index} has no title")
        task_id = str(index)
        by_title[title.lower()] = task_id
        tasks.append(
            Task(
                id=task_id,
                title=title,
                description=str(seed.get("description") or title),
                acceptance_criteria=_as_list(seed.get("acceptance_criteria")),
                file_boundaries=_as_list(seed.get("files")),
            )
        )

    for task, seed in zip(tasks, seeds):
        for ref in _as_list(seed.get("depends_on")):
            dep_id = by_title.get(ref.strip().lower())
            if dep_id is None and ref.strip().isdigit() and 1 <= int(ref) <= len(tasks):
                dep_id = ref.strip()
            if dep_id is None:
                raise DecompositionError(
                    f"Task '{task.title}' depends on unknown task '{ref}'"
                )
            if dep_id not in task.depends_on:
                task.depends_on.append(dep_id)
    return tasks


class AgentDecomposer:
    """Decomposes requests by asking a coding agent for a JSON plan.

    Args:
        factory: Creates the planning agent
        workdir: Repository the agent may inspect while planning
        model: Model identifier for the planning agent
        timeout: Seconds before the planning agent is killed
    """

    def __init__(
        self,
        factory: AgentRunnerFactory,
        workdir: str | Path,
        model: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.factory = factory
        self.workdir = workdir
        self.model = model
        self.timeout = timeout

    async def decompose(self, request: str) -> Decomposition:
        request = _validate_request(request)
        options = AgentStartOptions(
            prompt=DECOMPOSE_PROMPT.format(request=request),
            workdir=self.workdir,
            model=self.model,
        )
        try:
            result = await run_agent(self.factory(), options, timeout=self.timeout)
        except AgentError as e:
            raise DecompositionError(f"Planning agent failed: {e}") from e

        tasks = build_tasks(parse_task_seeds(result.output))
        logger.info("Decomposed request into %d tasks", len(tasks))
        return group_under_epic(tasks, request, request)


class PlanDecomposer:
    """Reads tasks from a markdown plan file; the request becomes the epic title."""

    def __init__(self, plan_path: str | Path) -> None:
        self.plan_path = Path(plan_path)

    async def decompose(self, request: str) -> Decomposition:
        try:
            content = self.plan_path.read_text()
        except OSError as e:
            raise DecompositionError(f"Cannot read plan {self.plan_path}: {e}") from e

        tasks = parse_plan_text(content)
        if not tasks:
            raise DecompositionError(f"No tasks found in {self.plan_path}")
        title = request.strip() or extract_plan_title(content) or self.plan_path.stem
        return group_under_epic(tasks, title, request)


class SingleTaskDecomposer:
    """Runs the whole request as a single task."""

    async def decompose(self, request: str) -> Decomposition:
        request = _validate_request(request)
        return Decomposition(
            tasks=[Task(id="1", title=_short_title(request), description=request)]
        )
