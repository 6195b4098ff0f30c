"""Tests for terminal reporting."""

from io import StringIO

import pytest
from rich.console import Console

from swarm.console import ConsoleReporter, task_table
from swarm.events import Event, EventKind
from swarm.models import Task, TaskStatus


@pytest.fixture
def output():
    return StringIO()


@pytest.fixture
def console(output):
    return Console(file=output, width=120, force_terminal=False, color_system=None)


class TestConsoleReporter:
    """Tests for ConsoleReporter."""

    def test_task_started_shows_agent(self, console, output):
        reporter = ConsoleReporter(console)

        reporter(
            Event(
                EventKind.TASK_STARTED,
                task_id="1",
                task_title="Add model",
                agent_id="agent-2",
                metadata={"attempt": 1},
            )
        )

        text = output.getvalue()
        assert "[agent-2]" in text
        assert "Task 1: Add model" in text
        assert "attempt" not in text

    def test_retry_attempt_shown(self, console, output):
        ConsoleReporter(console)(
            Event(EventKind.TASK_STARTED, task_id="1", agent_id="agent-1", metadata={"attempt": 2})
        )

        assert "(attempt 2)" in output.getvalue()

    def test_retrying_failure_vs_terminal_failure(self, console, output):
        reporter = ConsoleReporter(console)

        reporter(
            Event(
                EventKind.TASK_FAILED,
                task_id="1",
                error="stub found",
                metadata={"retrying": True, "attempt": 1},
            )
        )
        reporter(
            Event(EventKind.TASK_FAILED, task_id="2", error="gave up", log_file="/r/.logs/2.log")
        )

        text = output.getvalue()
        assert "attempt 1 failed: stub found" in text
        assert "Task 2: failed: gave up" in text
        assert "log: /r/.logs/2.log" in text

    def test_progress_only_when_verbose(self, console, output):
        event = Event(
            EventKind.TASK_PROGRESS,
            task_id="1",
            agent_id="agent-1",
            current_action="→ Reading a.py...",
        )

        ConsoleReporter(console)(event)
        assert output.getvalue() == ""

        ConsoleReporter(console, verbose=True)(event)
        assert "Reading a.py" in output.getvalue()

    def test_session_done_message(self, console, output):
        ConsoleReporter(console)(
            Event(EventKind.SESSION_DONE, message="all 2 task(s) merged", metadata={"success": True})
        )

        assert "all 2 task(s) merged" in output.getvalue()

    def test_unhandled_kinds_ignored(self, console, output):
        ConsoleReporter(console)(Event(EventKind.DEBUG, message="noise"))

        assert output.getvalue() == ""


class TestTaskTable:
    """Tests for task_table()."""

    def test_rows(self, console, output):
        tasks = [
            Task(id="1", title="Model", status=TaskStatus.DONE),
            Task(id="2", title="API", depends_on=["1"], status=TaskStatus.FAILED, error="boom"),
        ]

        console.print(task_table(tasks, title="Session s1"))

        text = output.getvalue()
        assert "Session s1" in text
        assert "done" in text
        assert "failed" in text
        assert "boom" in text
