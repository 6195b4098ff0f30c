"""File-boundary collision avoidance for scheduling.

Tasks that declare the same critical file (package manifests, lock files,
root configs) almost always conflict at merge time, so they are never run
side by side. In greenfield sessions every task that may touch the
repository root is serialised as well.
"""

import fnmatch
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath

from swarm.models import Task

logger = logging.getLogger(__name__)

CRITICAL_FILES = {
    "package.json",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    ".npmrc",
    "go.mod",
    "go.sum",
    "Cargo.toml",
    "Cargo.lock",
    "pyproject.toml",
    "requirements.txt",
    "setup.py",
    "poetry.lock",
    "Pipfile",
    "Pipfile.lock",
    "Gemfile",
    "Gemfile.lock",
    "pom.xml",
    "build.gradle",
    "build.gradle.kts",
    "packages.config",
    "composer.json",
    "composer.lock",
    "tsconfig.json",
    "jsconfig.json",
    "Makefile",
    "Dockerfile",
    "docker-compose.yml",
    "docker-compose.yaml",
    ".gitignore",
    ".gitattributes",
}

CRITICAL_WILDCARDS = [".eslintrc*", ".prettierrc*", "*.csproj", "*.sln", ".env*"]

# Manifests inside these top-level directories belong to a monorepo package
MONOREPO_DIRS = {
    "client",
    "server",
    "frontend",
    "backend",
    "web",
    "api",
    "app",
    "apps",
    "packages",
    "services",
    "libs",
    "shared",
}

MONOREPO_MANIFESTS = {"package.json", "go.mod", "Cargo.toml", "pyproject.toml", "tsconfig.json"}

ROOT_TOUCHING_KEYWORDS = [
    "package.json",
    "tsconfig",
    "eslint",
    "prettier",
    "workspace",
    "npm init",
    "npm install",
    "yarn",
    "pnpm",
    "dependencies",
    "devdependencies",
    "root",
    "project structure",
    "initialize",
    "setup",
    "monorepo",
]


def _normalize(path: str) -> str:
    return path.strip().removeprefix("./").lstrip("/")


def is_critical_file(path: str) -> bool:
    """Whether a path names a file that concurrent tasks should not share."""
    path = _normalize(path)
    parts = PurePosixPath(path).parts
    if not parts:
        return False
    name = parts[-1]
    if len(parts) == 1:
        if name in CRITICAL_FILES:
            return True
        if any(fnmatch.fnmatchcase(name, pattern) for pattern in CRITICAL_WILDCARDS):
            return True
    return len(parts) > 1 and parts[0].lower() in MONOREPO_DIRS and name in MONOREPO_MANIFESTS


def critical_boundaries(task: Task) -> list[str]:
    """Critical files among a task's declared file boundaries."""
    return [_normalize(b) for b in task.file_boundaries if is_critical_file(b)]


def might_touch_root(task: Task) -> bool:
    """Whether a task may modify files at the repository root."""
    for boundary in task.file_boundaries:
        if is_critical_file(boundary) or "/" not in _normalize(boundary):
            return True
    text = f"{task.title} {task.description}".lower()
    return any(keyword in text for keyword in ROOT_TOUCHING_KEYWORDS)


def paths_overlap(first: str, second: str) -> bool:
    """True if the paths are equal or one is a prefix of the other."""
    first, second = _normalize(first), _normalize(second)
    if not first or not second:
        return False
    return first.startswith(second) or second.startswith(first)


@dataclass
class FileOverlap:
    """Two tasks whose declared boundaries overlap."""

    first_id: str
    second_id: str
    path: str


def find_overlaps(tasks: list[Task]) -> list[FileOverlap]:
    """Pairs of tasks with overlapping file boundaries.

    Used before scheduling to warn about work that will probably conflict
    at merge time even though the tasks do not depend on each other.
    """
    overlaps = []
    for i, first in enumerate(tasks):
        for second in tasks[i + 1 :]:
            path = next(
                (
                    a
                    for a in first.file_boundaries
                    for b in second.file_boundaries
                    if paths_overlap(a, b)
                ),
                None,
            )
            if path is not None:
                overlaps.append(FileOverlap(first.id, second.id, _normalize(path)))
    return overlaps


class CollisionChecker:
    """Filters ready tasks so colliding work is not run concurrently.

    Args:
        greenfield: Also serialise tasks that may touch the repository root
    """

    def __init__(self, greenfield: bool = False) -> None:
        self.greenfield = greenfield

    def schedulable(self, candidates: list[Task], running: list[Task]) -> list[Task]:
        """Candidates that can start next to the running tasks and each other.

        A candidate is held back when one of its critical files is declared
        by a running task or by a candidate already accepted in this batch.
        In greenfield mode a root-touching candidate is also held back while
        another root-touching task runs or was accepted.
        """
        claimed = {path for task in running for path in critical_boundaries(task)}
        root_busy = self.greenfield and any(might_touch_root(task) for task in running)

        accepted = []
        for task in candidates:
            critical = critical_boundaries(task)
            clash = sorted(claimed.intersection(critical))
            if clash:
                logger.debug("Holding back %s: %s already claimed", task.id, ", ".join(clash))
                continue
            touches_root = self.greenfield and might_touch_root(task)
            if touches_root and root_busy:
                logger.debug("Holding back %s: another root-touching task is running", task.id)
                continue

            claimed.update(critical)
            root_busy = root_busy or touches_root
            accepted.append(task)
        return accepted
