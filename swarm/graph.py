"""Task dependency graph.

Owns every Task in a session. Edges point from a task to the tasks it
depends on; the graph rejects unknown references and cycles, answers which
tasks are ready to run, and propagates failures to dependents.

All public methods take the graph lock, so the graph can be shared between
the control loop and workers. Callers receive copies of Task objects;
mutation happens only through the mark_* methods.
"""

import copy
import threading
from collections.abc import Iterable
from datetime import datetime, timezone

from swarm.errors import (
    CycleDetectedError,
    GraphError,
    ParentNotFoundError,
    UnknownDependencyError,
)
from swarm.models import Task, TaskStatus

SKIPPED_DEPENDENCY = "skipped dependency"

_WHITE, _GREY, _BLACK = 0, 1, 2


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DependencyGraph:
    """Directed acyclic graph of tasks keyed by identifier.

    Epic (parent) tasks live in the graph for bookkeeping but are never
    returned by get_ready(); their status is derived from their children.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._dependents: dict[str, list[str]] = {}
        self._children: dict[str, list[str]] = {}

    def build(self, tasks: Iterable[Task]) -> None:
        """Replace the graph contents with the given tasks.

        Args:
            tasks: Task seeds; the graph keeps its own copies

        Raises:
            GraphError: Duplicate identifier or nested epics
            UnknownDependencyError: A dependency references a missing task
            ParentNotFoundError: A parent references a missing task
            CycleDetectedError: The dependency edges contain a cycle
        """
        nodes: dict[str, Task] = {}
        for task in tasks:
            if task.id in nodes:
                raise GraphError(f"duplicate task id {task.id}")
            nodes[task.id] = copy.deepcopy(task)

        for task in nodes.values():
            self._validate_references(task, nodes)

        dependents, children = self._index(nodes)
        self._find_cycle(nodes)

        with self._lock:
            self._tasks = nodes
            self._dependents = dependents
            self._children = children
            for parent_id in self._children:
                self._refresh_parent(parent_id)

    def add_task(self, task: Task) -> None:
        """Add a single task to an already built graph.

        Raises:
            GraphError: If the identifier exists or the task would
                introduce an inconsistency or a cycle
        """
        with self._lock:
            if task.id in self._tasks:
                raise GraphError(f"duplicate task id {task.id}")
            self._validate_references(task, self._tasks)
            candidate = dict(self._tasks)
            candidate[task.id] = copy.deepcopy(task)
            self._find_cycle(candidate)

            self._tasks = candidate
            self._dependents, self._children = self._index(candidate)
            if task.parent_id:
                self._refresh_parent(task.parent_id)

    @staticmethod
    def _validate_references(task: Task, nodes: dict[str, Task]) -> None:
        for dep in task.depends_on:
            if dep not in nodes:
                raise UnknownDependencyError(task.id, dep)
        if task.parent_id is not None:
            parent = nodes.get(task.parent_id)
            if parent is None:
                raise ParentNotFoundError(task.id, task.parent_id)
            if parent.parent_id is not None:
                raise GraphError(
                    f"task {task.id} nests under {parent.id}, which already has a parent"
                )

    @staticmethod
    def _index(
        nodes: dict[str, Task],
    ) -> tuple[dict[str, list[str]], dict[str, list[str]]]:
        dependents: dict[str, list[str]] = {task_id: [] for task_id in nodes}
        children: dict[str, list[str]] = {}
        for task in nodes.values():
            for dep in task.depends_on:
                dependents[dep].append(task.id)
            if task.parent_id is not None:
                children.setdefault(task.parent_id, []).append(task.id)
        return dependents, children

    @staticmethod
    def _find_cycle(nodes: dict[str, Task]) -> None:
        """Tri-colour DFS over dependency edges; raises on the first back edge."""
        colour = {task_id: _WHITE for task_id in nodes}
        path: list[str] = []

        def visit(task_id: str) -> None:
            colour[task_id] = _GREY
            path.append(task_id)
            for dep in nodes[task_id].depends_on:
                if colour[dep] == _GREY:
                    start = path.index(dep)
                    raise CycleDetectedError([*path[start:], dep])
                if colour[dep] == _WHITE:
                    visit(dep)
            path.pop()
            colour[task_id] = _BLACK

        for task_id in nodes:
            if colour[task_id] == _WHITE:
                visit(task_id)

    # Queries

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._tasks

    def get_task(self, task_id: str) -> Task:
        """Return a copy of the task.

        Raises:
            GraphError: If the task is unknown
        """
        with self._lock:
            return copy.deepcopy(self._get(task_id))

    def tasks(self) -> list[Task]:
        """Return copies of every task in insertion order."""
        with self._lock:
            return [copy.deepcopy(t) for t in self._tasks.values()]

    def is_epic(self, task_id: str) -> bool:
        with self._lock:
            return bool(self._children.get(task_id))

    def get_children(self, task_id: str) -> list[str]:
        with self._lock:
            return list(self._children.get(task_id, []))

    def get_dependencies(self, task_id: str) -> list[str]:
        with self._lock:
            return list(self._get(task_id).depends_on)

    def get_dependents(self, task_id: str) -> list[str]:
        """Direct dependents of a task."""
        with self._lock:
            self._get(task_id)
            return list(self._dependents.get(task_id, []))

    def get_transitive_dependents(self, task_id: str) -> list[str]:
        """All tasks that depend on task_id directly or indirectly, BFS order."""
        with self._lock:
            return self._transitive_dependents(task_id)

    def get_ready(self) -> list[str]:
        """Identifiers of unassigned pending tasks whose dependencies are all done."""
        with self._lock:
            ready = []
            for task in self._tasks.values():
                if task.status != TaskStatus.PENDING or task.assigned_to is not None:
                    continue
                if self._children.get(task.id):
                    continue
                if all(
                    self._tasks[dep].status == TaskStatus.DONE
                    for dep in task.depends_on
                ):
                    ready.append(task.id)
            return ready

    def has_undone(self) -> bool:
        """True while any schedulable task has not reached Done or Failed."""
        with self._lock:
            return any(
                not task.status.is_terminal
                for task in self._tasks.values()
                if not self._children.get(task.id)
            )

    def status_counts(self) -> dict[TaskStatus, int]:
        with self._lock:
            counts = {status: 0 for status in TaskStatus}
            for task in self._tasks.values():
                if not self._children.get(task.id):
                    counts[task.status] += 1
            return counts

    def topological_sort(self) -> list[str]:
        """Return an execution order where dependencies precede dependents.

        Uses DFS post-order over dependency edges, visiting tasks in
        insertion order.
        """
        with self._lock:
            order: list[str] = []
            seen: set[str] = set()

            def visit(task_id: str) -> None:
                if task_id in seen:
                    return
                seen.add(task_id)
                for dep in self._tasks[task_id].depends_on:
                    visit(dep)
                order.append(task_id)

            for task_id in self._tasks:
                visit(task_id)
            return order

    # Transitions

    def mark_in_progress(self, task_id: str, worker_id: str) -> None:
        """Assign a task to a worker (Pending/Failed -> InProgress).

        Raises:
            GraphError: If the task is held by another worker or already done
        """
        with self._lock:
            task = self._get(task_id)
            if task.assigned_to is not None and task.assigned_to != worker_id:
                raise GraphError(
                    f"task {task_id} is already assigned to {task.assigned_to}"
                )
            if task.status not in (
                TaskStatus.PENDING,
                TaskStatus.FAILED,
                TaskStatus.IN_PROGRESS,
            ):
                raise GraphError(
                    f"task {task_id} cannot start from status {task.status.value}"
                )
            task.status = TaskStatus.IN_PROGRESS
            task.assigned_to = worker_id
            task.error = None
            task.started_at = task.started_at or _now()
            if task.parent_id:
                self._refresh_parent(task.parent_id)

    def mark_complete(self, task_id: str) -> None:
        """Record a successful merge; dependents may become ready."""
        with self._lock:
            task = self._get(task_id)
            task.status = TaskStatus.DONE
            task.assigned_to = None
            task.error = None
            task.completed_at = _now()
            if task.parent_id:
                self._refresh_parent(task.parent_id)

    def mark_failed(self, task_id: str, error: str) -> None:
        with self._lock:
            task = self._get(task_id)
            task.status = TaskStatus.FAILED
            task.assigned_to = None
            task.error = error
            task.completed_at = _now()
            if task.parent_id:
                self._refresh_parent(task.parent_id)

    def requeue(self, task_id: str) -> None:
        """Return a task to Pending so the scheduler picks it up again."""
        with self._lock:
            task = self._get(task_id)
            if task.status == TaskStatus.DONE:
                raise GraphError(f"task {task_id} is already done")
            task.status = TaskStatus.PENDING
            task.assigned_to = None
            if task.parent_id:
                self._refresh_parent(task.parent_id)

    def fail_dependents(self, task_id: str, reason: str = SKIPPED_DEPENDENCY) -> list[str]:
        """Mark every unfinished transitive dependent Blocked, then Failed.

        Returns:
            Identifiers of the tasks that were failed, in BFS order
        """
        with self._lock:
            affected = [
                dep_id
                for dep_id in self._transitive_dependents(task_id)
                if not self._tasks[dep_id].status.is_terminal
            ]
            for dep_id in affected:
                self._tasks[dep_id].status = TaskStatus.BLOCKED
            for dep_id in affected:
                dependent = self._tasks[dep_id]
                dependent.status = TaskStatus.FAILED
                dependent.assigned_to = None
                dependent.error = reason
                dependent.completed_at = _now()
                if dependent.parent_id:
                    self._refresh_parent(dependent.parent_id)
            return affected

    # Internals

    def _get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise GraphError(f"unknown task {task_id}") from None

    def _transitive_dependents(self, task_id: str) -> list[str]:
        self._get(task_id)
        result: list[str] = []
        seen = {task_id}
        frontier = [task_id]
        while frontier:
            next_frontier = []
            for current in frontier:
                for dependent in self._dependents.get(current, []):
                    if dependent not in seen:
                        seen.add(dependent)
                        result.append(dependent)
                        next_frontier.append(dependent)
            frontier = next_frontier
        return result

    def _refresh_parent(self, parent_id: str) -> None:
        parent = self._tasks[parent_id]
        statuses = [self._tasks[c].status for c in self._children.get(parent_id, [])]
        if not statuses:
            return
        if all(s.is_terminal for s in statuses):
            parent.status = (
                TaskStatus.DONE if TaskStatus.DONE in statuses else TaskStatus.FAILED
            )
            parent.completed_at = parent.completed_at or _now()
        elif any(s in (TaskStatus.IN_PROGRESS, TaskStatus.DONE) for s in statuses):
            parent.status = TaskStatus.IN_PROGRESS
        else:
            parent.status = TaskStatus.PENDING
