"""Shared fakes for swarm tests.

FakeGit keeps commits as file snapshots in memory and materialises
worktrees on disk, so workspace, merge and conflict behaviour can be
exercised without a git binary. ScriptedAgent replays a behaviour
function instead of spawning an LLM subprocess.
"""

import asyncio
import fnmatch
import inspect
import shutil
from collections.abc import Callable
from pathlib import Path

import pytest

from swarm.agent import AgentEvent, AgentEventType, AgentStartOptions
from swarm.config import SwarmConfig
from swarm.errors import GitError
from swarm.git import WorktreeInfo
from swarm.shell import ProcessResult


class FakeGitState:
    """Repository contents shared by every FakeGit view."""

    def __init__(self, repo_path: Path) -> None:
        self.repo_path = repo_path
        self.commits: dict[str, dict[str, str]] = {"c0000": {}}
        self.branches: dict[str, str] = {"main": "c0000"}
        self.head = "main"
        self.tags: dict[str, str] = {}
        self.worktrees: dict[Path, str] = {}
        self.forks: dict[str, str] = {}
        self.conflicts: list[str] = []
        self.dirty = ""
        self.fail_tags = False
        self.merges: list[tuple[str, str]] = []
        self._counter = 0

    def new_commit(self, files: dict[str, str]) -> str:
        self._counter += 1
        commit = f"c{self._counter:04d}"
        self.commits[commit] = dict(files)
        return commit

    def resolve(self, ref: str) -> str:
        if ref == "HEAD":
            return self.branches[self.head]
        if ref in self.branches:
            return self.branches[ref]
        if ref in self.tags:
            return self.tags[ref]
        if ref in self.commits:
            return ref
        raise GitError(["rev-parse", ref], f"fatal: unknown revision {ref}", 128)

    def files_at(self, ref: str) -> dict[str, str]:
        return self.commits[self.resolve(ref)]

    def commit_on(self, branch: str, files: dict[str, str]) -> str:
        """Advance a branch with the given files added or replaced."""
        snapshot = {**self.files_at(branch), **files}
        self.branches[branch] = self.new_commit(snapshot)
        return self.branches[branch]


def _changed(base: dict[str, str], other: dict[str, str]) -> set[str]:
    return {f for f in set(base) | set(other) if base.get(f) != other.get(f)}


def _read_tree(path: Path) -> dict[str, str]:
    return {
        p.relative_to(path).as_posix(): p.read_text()
        for p in sorted(path.rglob("*"))
        if p.is_file()
    }


class FakeGit:
    """GitRunner over a FakeGitState, bound to the repo or one worktree."""

    def __init__(self, state: FakeGitState, path: Path | None = None) -> None:
        self.state = state
        self.path = Path(path) if path is not None else state.repo_path

    def at(self, path: str | Path) -> "FakeGit":
        return FakeGit(self.state, Path(path))

    def _branch(self) -> str:
        return self.state.worktrees.get(self.path, self.state.head)

    def _is_worktree(self) -> bool:
        return self.path in self.state.worktrees

    async def current_branch(self) -> str:
        return self._branch()

    async def rev_parse(self, ref: str = "HEAD") -> str:
        if ref == "HEAD":
            return self.state.branches[self._branch()]
        return self.state.resolve(ref)

    async def git_path(self, name: str) -> Path:
        return self.state.repo_path / ".git" / name

    async def branch_exists(self, name: str) -> bool:
        return name in self.state.branches

    async def create_branch(self, name: str, start_point: str | None = None) -> None:
        if name in self.state.branches:
            raise GitError(["branch", name], f"fatal: branch {name} already exists", 128)
        self.state.branches[name] = self.state.resolve(start_point or "HEAD")
        self.state.forks[name] = self.state.branches[name]

    async def checkout_branch(self, name: str) -> None:
        if name not in self.state.branches:
            raise GitError(["checkout", name], f"error: pathspec {name}", 1)
        self.state.head = name

    async def delete_branch(self, name: str, force: bool = True) -> None:
        if name not in self.state.branches:
            raise GitError(["branch", "-D", name], f"error: branch {name} not found", 1)
        del self.state.branches[name]

    async def status_porcelain(self) -> str:
        if not self._is_worktree():
            return self.state.dirty
        committed = self.state.files_at(self._branch())
        on_disk = _read_tree(self.path)
        return "".join(f" M {f}\n" for f in sorted(_changed(committed, on_disk)))

    async def has_changes(self) -> bool:
        return bool((await self.status_porcelain()).strip())

    async def add_all(self) -> None:
        return None

    async def commit(self, message: str) -> None:
        branch = self._branch()
        on_disk = _read_tree(self.path)
        if not _changed(self.state.files_at(branch), on_disk):
            raise GitError(["commit", "-m", message], "nothing to commit", 1)
        self.state.branches[branch] = self.state.new_commit(on_disk)

    async def reset_hard(self, ref: str) -> None:
        self.state.branches[self._branch()] = self.state.resolve(ref)

    async def checkout_path(self, ref: str, path: str) -> None:
        return None

    async def diff(self, base: str, head: str) -> str:
        old, new = self.state.files_at(base), self.state.files_at(head)
        chunks = []
        for name in sorted(_changed(old, new)):
            chunks.append(f"diff --git a/{name} b/{name}")
            chunks.extend(f"+{line}" for line in new.get(name, "").splitlines())
        return "\n".join(chunks)

    async def changed_files(self, base: str, head: str) -> list[str]:
        return sorted(_changed(self.state.files_at(base), self.state.files_at(head)))

    async def show_file(self, ref: str, path: str) -> str:
        return self.state.files_at(ref)[path]

    async def merge(self, branch: str) -> None:
        await self.merge_no_ff(branch, f"Merge {branch}")

    async def merge_no_ff(self, branch: str, message: str) -> None:
        state = self.state
        target = self._branch()
        theirs = state.files_at(branch)
        ours = state.files_at(target)
        base = state.commits[state.forks.get(branch, state.resolve(branch))]
        theirs_changed = _changed(base, theirs)
        conflicts = sorted(
            f for f in _changed(base, ours) & theirs_changed if ours.get(f) != theirs.get(f)
        )
        if conflicts:
            state.conflicts = conflicts
            raise GitError(
                ["merge", "--no-ff", branch],
                "".join(f"CONFLICT (content): Merge conflict in {f}\n" for f in conflicts),
                1,
            )
        merged = dict(ours)
        for name in theirs_changed:
            if name in theirs:
                merged[name] = theirs[name]
            else:
                merged.pop(name, None)
        state.branches[target] = state.new_commit(merged)
        state.merges.append((branch, message))

    async def merge_abort(self) -> None:
        if not self.state.conflicts:
            raise GitError(["merge", "--abort"], "fatal: There is no merge to abort", 128)
        self.state.conflicts = []

    async def has_conflicts(self) -> bool:
        return bool(self.state.conflicts)

    async def conflicted_files(self) -> list[str]:
        return list(self.state.conflicts)

    async def worktree_add(self, path: str | Path, branch: str, start_point: str) -> None:
        path = Path(path)
        if branch in self.state.branches or path.exists():
            raise GitError(
                ["worktree", "add", str(path)], f"fatal: '{branch}' already exists", 128
            )
        commit = self.state.resolve(start_point)
        self.state.branches[branch] = commit
        self.state.forks[branch] = commit
        path.mkdir(parents=True)
        for name, content in self.state.commits[commit].items():
            target = path / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        self.state.worktrees[path] = branch

    async def worktree_remove(self, path: str | Path, force: bool = True) -> None:
        path = Path(path)
        if path not in self.state.worktrees:
            raise GitError(["worktree", "remove", str(path)], "fatal: not a working tree", 128)
        shutil.rmtree(path, ignore_errors=True)
        del self.state.worktrees[path]

    async def worktree_prune(self) -> None:
        return None

    async def worktree_list(self) -> list[WorktreeInfo]:
        entries = [
            WorktreeInfo(
                path=str(self.state.repo_path),
                head=self.state.branches[self.state.head],
                branch=self.state.head,
            )
        ]
        for path, branch in self.state.worktrees.items():
            entries.append(
                WorktreeInfo(path=str(path), head=self.state.branches[branch], branch=branch)
            )
        return entries

    async def worktree_unlock(self, path: str | Path) -> None:
        return None

    async def tag(self, name: str, commit: str, force: bool = False) -> None:
        if self.state.fail_tags:
            raise GitError(["tag", name], "fatal: cannot lock ref", 128)
        if name in self.state.tags and not force:
            raise GitError(["tag", name], f"fatal: tag '{name}' already exists", 128)
        self.state.tags[name] = self.state.resolve(commit)

    async def delete_tag(self, name: str) -> None:
        if name not in self.state.tags:
            raise GitError(["tag", "-d", name], f"error: tag '{name}' not found", 1)
        del self.state.tags[name]

    async def list_tags(self, pattern: str) -> list[str]:
        return sorted(t for t in self.state.tags if fnmatch.fnmatch(t, pattern))


class FakeShell:
    """ShellRunner returning canned results and recording commands."""

    def __init__(self) -> None:
        self.results: dict[str, ProcessResult] = {}
        self.calls: list[tuple[str, Path]] = []

    async def run(
        self, command: str, cwd: str | Path, timeout: float | None = None
    ) -> ProcessResult:
        self.calls.append((command, Path(cwd)))
        return self.results.get(command, ProcessResult(output="", returncode=0))

    def exists(self, cwd: str | Path, path: str) -> bool:
        return (Path(cwd) / path).exists()


Behaviour = Callable[[AgentStartOptions], object]


class ScriptedAgent:
    """AgentRunner driven by a behaviour function.

    The behaviour receives the start options and returns (or awaits to)
    the list of events to stream. It may write files into the workdir.
    """

    def __init__(self, behaviour: Behaviour, calls: list[AgentStartOptions]) -> None:
        self.behaviour = behaviour
        self.calls = calls
        self.options: AgentStartOptions | None = None
        self.killed = False

    async def start(self, options: AgentStartOptions) -> None:
        self.options = options
        self.calls.append(options)

    async def events(self):
        result = self.behaviour(self.options)
        if inspect.isawaitable(result):
            result = await result
        for event in result:
            yield event

    async def wait(self) -> int:
        return 0

    async def kill(self) -> None:
        self.killed = True


def result_event(text: str = "done", tokens: int = 100, cost: float = 0.01) -> AgentEvent:
    return AgentEvent(AgentEventType.RESULT, text=text, tokens=tokens, cost_usd=cost)


def task_title(options: AgentStartOptions) -> str:
    """Title of the task a coding prompt was built for."""
    first = options.prompt.splitlines()[0]
    return first.removeprefix("# Task: ")


def writes(files: dict[str, str], text: str = "done") -> Behaviour:
    """Behaviour writing files into the workdir and reporting success."""

    def behaviour(options: AgentStartOptions) -> list[AgentEvent]:
        for name, content in files.items():
            target = Path(options.workdir) / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return [
            AgentEvent(
                AgentEventType.TOOL_USE,
                tool_name="Write",
                tool_input={"file_path": str(Path(options.workdir) / name)},
            )
            for name in files
        ] + [result_event(text)]

    return behaviour


class Barrier:
    """Lets N agent behaviours proceed only once all of them have started."""

    def __init__(self, parties: int) -> None:
        self.parties = parties
        self.arrived = 0
        self.event = asyncio.Event()

    async def wait(self) -> None:
        self.arrived += 1
        if self.arrived >= self.parties:
            self.event.set()
        await self.event.wait()


class AgentScript:
    """Routes each agent invocation to a behaviour by task title."""

    def __init__(self, behaviours: dict[str, Behaviour | list[Behaviour]]) -> None:
        self.behaviours = behaviours
        self.calls: list[AgentStartOptions] = []
        self.runners: list[ScriptedAgent] = []
        self._counts: dict[str, int] = {}

    def _dispatch(self, options: AgentStartOptions) -> object:
        title = task_title(options)
        behaviour = self.behaviours[title]
        if isinstance(behaviour, list):
            index = self._counts.get(title, 0)
            self._counts[title] = index + 1
            behaviour = behaviour[min(index, len(behaviour) - 1)]
        return behaviour(options)

    def factory(self) -> ScriptedAgent:
        runner = ScriptedAgent(self._dispatch, self.calls)
        self.runners.append(runner)
        return runner

    def prompts_for(self, title: str) -> list[str]:
        return [c.prompt for c in self.calls if task_title(c) == title]


@pytest.fixture
def repo_path(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    (path / ".git").mkdir(parents=True)
    return path


@pytest.fixture
def git_state(repo_path: Path) -> FakeGitState:
    return FakeGitState(repo_path)


@pytest.fixture
def fake_git(git_state: FakeGitState) -> FakeGit:
    return FakeGit(git_state)


@pytest.fixture
def fake_shell() -> FakeShell:
    return FakeShell()


@pytest.fixture
def swarm_config() -> SwarmConfig:
    """Configuration for fast, unattended sessions."""
    return SwarmConfig(
        max_agents=2,
        max_attempts=2,
        retry_delay_seconds=0,
        review_enabled=False,
        escalation_timeout_seconds=5,
        cancel_grace_seconds=2,
        agent_timeout_seconds=10,
        layer_timeout_seconds=10,
        build_timeout_seconds=10,
    )


@pytest.fixture
def agent_script() -> type[AgentScript]:
    return AgentScript


@pytest.fixture
def writes_files() -> Callable[..., Behaviour]:
    return writes


@pytest.fixture
def make_barrier() -> type[Barrier]:
    return Barrier
