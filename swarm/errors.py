"""Shared error types for the swarm package."""


class SwarmError(Exception):
    """Base exception for swarm errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class DecompositionError(SwarmError):
    """The user request could not be turned into a task list."""

    pass


class GraphError(SwarmError):
    """The task graph is inconsistent."""

    pass


class UnknownDependencyError(GraphError):
    """A task depends on an identifier that is not in the graph."""

    def __init__(self, task_id: str, dependency_id: str) -> None:
        super().__init__(f"task {task_id} depends on unknown task {dependency_id}")
        self.task_id = task_id
        self.dependency_id = dependency_id


class ParentNotFoundError(GraphError):
    """A task references a parent that is not in the graph."""

    def __init__(self, task_id: str, parent_id: str) -> None:
        super().__init__(f"task {task_id} references unknown parent {parent_id}")
        self.task_id = task_id
        self.parent_id = parent_id


class CycleDetectedError(GraphError):
    """The dependency edges contain a directed cycle.

    Attributes:
        cycle: Task identifiers along the cycle, first element repeated at the end
    """

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"cycle detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class WorkspaceError(SwarmError):
    """A worktree could not be allocated or released."""

    pass


class AgentError(SwarmError):
    """The coding agent failed to start or reported a protocol error."""

    pass


class GitError(SwarmError):
    """A git command exited with a non-zero status.

    Attributes:
        args_: The git arguments that were run
        output: Combined stdout/stderr of the command
        returncode: Process exit code
    """

    def __init__(self, args_: list[str], output: str, returncode: int) -> None:
        command = " ".join(["git", *args_])
        detail = output.strip() or "no output"
        super().__init__(f"{command} failed (exit {returncode}): {detail}")
        self.args_ = args_
        self.output = output
        self.returncode = returncode


class CheckpointError(SwarmError):
    """A checkpoint could not be created or found."""

    pass


class EscalationError(SwarmError):
    """The escalation gate was used out of sequence."""

    pass


class LockError(SwarmError):
    """Another session already holds the repository lock."""

    pass
