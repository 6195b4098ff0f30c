"""Tests for file-boundary collision avoidance."""

import pytest

from swarm.collision import (
    CollisionChecker,
    critical_boundaries,
    find_overlaps,
    is_critical_file,
    might_touch_root,
    paths_overlap,
)
from swarm.models import Task


def task(task_id: str, files: list[str] | None = None, title: str = "", description: str = "") -> Task:
    return Task(
        id=task_id,
        title=title or f"Task {task_id}",
        description=description,
        file_boundaries=files or [],
    )


class TestCriticalFiles:
    """Tests for is_critical_file()."""

    @pytest.mark.parametrize(
        "path",
        [
            "package.json",
            "./go.mod",
            "/Cargo.lock",
            "pyproject.toml",
            ".env.local",
            "App.csproj",
            "frontend/package.json",
            "packages/ui/tsconfig.json",
        ],
    )
    def test_critical(self, path):
        assert is_critical_file(path)

    @pytest.mark.parametrize(
        "path",
        ["src/app.py", "docs/go.mod", "src/package.json", "README.md", ""],
    )
    def test_not_critical(self, path):
        assert not is_critical_file(path)

    def test_critical_boundaries_are_normalised(self):
        t = task("1", ["./package.json", "src/index.ts", "go.sum"])

        assert critical_boundaries(t) == ["package.json", "go.sum"]


class TestRootTouching:
    """Tests for might_touch_root()."""

    def test_root_level_boundary(self):
        assert might_touch_root(task("1", ["README.md"]))

    def test_nested_boundaries_only(self):
        assert not might_touch_root(task("1", ["src/api/users.py"], title="Add users API"))

    def test_keyword_in_description(self):
        t = task("1", title="Bootstrap", description="Initialize the project structure")

        assert might_touch_root(t)


class TestOverlaps:
    """Tests for paths_overlap() and find_overlaps()."""

    def test_prefix_overlap(self):
        assert paths_overlap("src/auth/", "src/auth/login.py")
        assert paths_overlap("./src/a.py", "src/a.py")
        assert not paths_overlap("src/auth/", "src/api/")
        assert not paths_overlap("", "src/api/")

    def test_find_overlaps(self):
        tasks = [
            task("1", ["src/auth/"]),
            task("2", ["src/api/"]),
            task("3", ["src/auth/session.py"]),
        ]

        overlaps = find_overlaps(tasks)

        assert [(o.first_id, o.second_id, o.path) for o in overlaps] == [
            ("1", "3", "src/auth/")
        ]


class TestCollisionChecker:
    """Tests for CollisionChecker.schedulable()."""

    def test_running_task_claims_critical_file(self):
        checker = CollisionChecker()
        running = [task("1", ["package.json", "src/a.ts"])]
        candidates = [task("2", ["package.json"]), task("3", ["src/b.ts"])]

        accepted = checker.schedulable(candidates, running)

        assert [t.id for t in accepted] == ["3"]

    def test_batch_serialises_shared_critical_file(self):
        """Only the first of two ready tasks sharing go.mod is started."""
        checker = CollisionChecker()
        candidates = [
            task("1", ["go.mod", "cmd/a.go"]),
            task("2", ["go.mod", "cmd/b.go"]),
            task("3", ["internal/c.go"]),
        ]

        accepted = checker.schedulable(candidates, running=[])

        assert [t.id for t in accepted] == ["1", "3"]

    def test_nested_files_do_not_collide(self):
        checker = CollisionChecker()
        candidates = [task("1", ["src/a.py"]), task("2", ["src/a.py"])]

        assert len(checker.schedulable(candidates, running=[])) == 2

    def test_greenfield_serialises_root_touching_tasks(self):
        checker = CollisionChecker(greenfield=True)
        candidates = [
            task("1", ["README.md"]),
            task("2", ["LICENSE"]),
            task("3", ["src/lib.rs"], title="Add parser"),
        ]

        accepted = checker.schedulable(candidates, running=[])

        assert [t.id for t in accepted] == ["1", "3"]

    def test_greenfield_waits_for_running_root_task(self):
        checker = CollisionChecker(greenfield=True)
        running = [task("1", title="Initialize the repository")]

        accepted = checker.schedulable([task("2", ["Makefile"])], running)

        assert accepted == []

    def test_root_tasks_run_together_outside_greenfield(self):
        checker = CollisionChecker(greenfield=False)
        candidates = [task("1", ["README.md"]), task("2", ["LICENSE"])]

        assert len(checker.schedulable(candidates, running=[])) == 2
