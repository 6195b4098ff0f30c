"""Data models for swarm sessions.

Defines dataclasses for tasks, worker slots, checkpoints, verification
contracts and validation results. Status fields use string enums so that
models serialize cleanly via dataclasses.asdict().
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Lifecycle state of a task in the dependency graph."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.FAILED)


class WorkerStatus(str, Enum):
    """Observable state of a worker slot."""

    IDLE = "idle"
    RUNNING = "running"
    VALIDATING = "validating"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


class CheckpointStatus(str, Enum):
    """Whether the merge guarded by a checkpoint succeeded."""

    UNKNOWN = "unknown"
    GOOD = "good"
    BAD = "bad"


@dataclass
class VerificationCommand:
    """One executable check in a verification contract.

    Expectation strings:
        "exit N": exit code must equal N
        "output contains S": combined output must contain S
        anything else: exit code must be zero
    """

    command: str
    expect: str = ""
    description: str = ""
    required: bool = True
    timeout_seconds: float | None = None


@dataclass
class FileConstraints:
    """Path-level checks applied to the workspace after an attempt."""

    must_exist: list[str] = field(default_factory=list)
    must_not_exist: list[str] = field(default_factory=list)
    # Accepted for forward compatibility; not evaluated.
    must_not_change: list[str] = field(default_factory=list)


@dataclass
class VerificationContract:
    """Executable definition of "done" for a task."""

    intent: str = ""
    commands: list[VerificationCommand] = field(default_factory=list)
    file_constraints: FileConstraints = field(default_factory=FileConstraints)


@dataclass
class Task:
    """A unit of work in the dependency graph.

    Tasks are created by a decomposer (or re-added for retries) and owned by
    the DependencyGraph, which is the only component that mutates them.
    """

    id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    parent_id: str | None = None
    assigned_to: str | None = None
    error: str | None = None
    contract: VerificationContract | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    file_boundaries: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class WorkerSlot:
    """A bounded executor in the worker pool.

    Attributes:
        id: Stable slot identifier (e.g. "agent-1")
        task_id: Task currently held by the slot, if any
        tokens: Accumulated tokens for the current task
        cost_usd: Accumulated cost for the current task
        progress: Latest progress string reported by the agent
    """

    id: str
    task_id: str | None = None
    status: WorkerStatus = WorkerStatus.IDLE
    started_at: datetime | None = None
    tokens: int = 0
    cost_usd: float = 0.0
    progress: str = ""
    workspace_path: str | None = None
    branch: str | None = None


@dataclass
class Checkpoint:
    """Session-branch HEAD recorded immediately before a merge."""

    task_id: str
    commit: str
    tag: str
    created_at: datetime
    status: CheckpointStatus = CheckpointStatus.UNKNOWN


STUB_LAYER = "Stub Detection"
CONTRACTS_LAYER = "Verification Contracts"
BUILD_LAYER = "Build + Tests"
SEMANTIC_LAYER = "Semantic Validation"
REVIEW_LAYER = "Code Review"


@dataclass
class LayerResult:
    """Outcome of one validation layer."""

    name: str
    passed: bool
    output: str = ""
    score: float | None = None
    duration_seconds: float = 0.0
    error: str | None = None
    skipped: bool = False


@dataclass
class ValidationResult:
    """Aggregate outcome of the validation pipeline for one attempt."""

    passed: bool
    layers: list[LayerResult] = field(default_factory=list)
    summary: str = ""
    failure_reason: str | None = None
    duration_seconds: float = 0.0

    @property
    def failed_layer(self) -> LayerResult | None:
        """The layer that stopped the pipeline, if any."""
        for layer in self.layers:
            if not layer.passed:
                return layer
        return None


@dataclass
class AgentResult:
    """Aggregated output of one agent invocation."""

    output: str
    tokens: int = 0
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    session_id: str | None = None
    num_turns: int = 0
