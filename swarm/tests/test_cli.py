"""Tests for CLI module.

These tests verify argument validation, exit codes and the wiring of the
implement, plan and cleanup commands.
"""

import os
import sys
import textwrap
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from swarm.cli import cli, main
from swarm.models import Task, TaskStatus
from swarm.orchestrator import ExitCode, SessionResult

PLAN = textwrap.dedent(
    """
    # Reporting

    ## Task 1: Add report model

    **Description:** Model for reports.

    ## Task 2: Add report endpoint

    **Description:** GET /reports.
    **Depends on:** 1
    """
)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def plan_file(tmp_path):
    path = tmp_path / "plan.md"
    path.write_text(PLAN)
    return path


def session_result(exit_code: ExitCode = ExitCode.SUCCESS) -> SessionResult:
    return SessionResult(
        session_id="s1",
        success=exit_code == ExitCode.SUCCESS,
        aborted=exit_code == ExitCode.ABORTED,
        message="all 1 task(s) merged into session-s1",
        exit_code=exit_code,
        completed=["1"],
        tasks=[Task(id="1", title="Add report model", status=TaskStatus.DONE)],
        duration_seconds=75,
        total_tokens=12_000,
        total_cost_usd=0.42,
        session_branch="session-s1",
    )


class TestImplementValidation:
    """Invalid input exits with code 3 before any agent runs."""

    def test_help(self, runner):
        result = runner.invoke(cli, ["implement", "--help"])

        assert result.exit_code == 0
        for option in ("--repo", "--max-agents", "--greenfield", "--session-id"):
            assert option in result.output

    def test_empty_task(self, runner, repo_path):
        result = runner.invoke(cli, ["implement", "  ", "--repo", str(repo_path)])

        assert result.exit_code == 3
        assert "Describe the task" in result.output

    def test_not_a_git_repository(self, runner, tmp_path):
        result = runner.invoke(cli, ["implement", "Add a", "--repo", str(tmp_path)])

        assert result.exit_code == 3
        assert "not a git repository" in " ".join(result.output.split())

    def test_missing_agent_cli(self, runner, repo_path):
        with patch("swarm.cli.find_claude_cli", return_value=None):
            result = runner.invoke(cli, ["implement", "Add a", "--repo", str(repo_path)])

        assert result.exit_code == 3
        assert "Claude CLI not found" in result.output

    def test_usage_error_maps_to_invalid_input(self):
        """main() turns click usage errors into exit code 3."""
        argv = ["swarm", "implement", "Add a", "--max-agents", "0"]
        with patch.object(sys, "argv", argv):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 3


class TestImplementExecution:
    """Test implement with mocked session dependencies."""

    def test_flags_applied_to_config(self, runner, repo_path):
        implement = AsyncMock(return_value=ExitCode.PARTIAL)
        with patch("swarm.cli._agent_factory", return_value=MagicMock()):
            with patch("swarm.cli._implement", implement):
                result = runner.invoke(
                    cli,
                    [
                        "implement",
                        "Add reports",
                        "--repo",
                        str(repo_path),
                        "--max-agents",
                        "4",
                        "--max-attempts",
                        "2",
                        "--no-review",
                        "--greenfield",
                        "--session-id",
                        "abc",
                    ],
                )

        assert result.exit_code == 1
        args, kwargs = implement.call_args
        config = args[2]
        assert config.max_agents == 4
        assert config.max_attempts == 2
        assert config.review_enabled is False
        assert kwargs["greenfield"] is True
        assert kwargs["session_id"] == "abc"

    def test_session_runs_and_prints_summary(self, runner, repo_path):
        orchestrator = MagicMock()
        orchestrator.session_id = "s1"
        orchestrator.run = AsyncMock(return_value=session_result())

        with patch("swarm.cli._agent_factory", return_value=MagicMock()), patch(
            "swarm.cli.Orchestrator", return_value=orchestrator
        ) as orchestrator_cls, patch(
            "swarm.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())
        ), patch("swarm.cli.create_metrics"), patch("swarm.cli.configure_logging"):
            result = runner.invoke(
                cli,
                ["implement", "Add reports", "--repo", str(repo_path), "--on-escalation", "skip"],
            )

        assert result.exit_code == 0, result.output
        orchestrator.run.assert_awaited_once_with("Add reports")
        assert orchestrator_cls.call_args.kwargs["responder"].action.value == "skip"
        assert "Add report model" in result.output
        assert "Cost: $0.42" in result.output
        assert "Branch: session-s1" in result.output
        assert not (repo_path / ".worktrees" / "swarm.lock").exists()

    def test_locked_repository_aborts(self, runner, repo_path):
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(return_value=session_result())
        lock = repo_path / ".worktrees" / "swarm.lock"
        lock.parent.mkdir()
        # The parent process is alive for the duration of the test
        lock.write_text(str(os.getppid()))

        with patch("swarm.cli._agent_factory", return_value=MagicMock()), patch(
            "swarm.cli.Orchestrator", return_value=orchestrator
        ), patch("swarm.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())), patch(
            "swarm.cli.create_metrics"
        ), patch("swarm.cli.configure_logging"):
            result = runner.invoke(cli, ["implement", "Add reports", "--repo", str(repo_path)])

        assert result.exit_code == 2
        assert "Another swarm session" in result.output
        orchestrator.run.assert_not_called()


class TestPlanCommand:
    """Tests for the plan preview command."""

    def test_plan_file_preview(self, runner, repo_path, plan_file):
        result = runner.invoke(
            cli, ["plan", "--repo", str(repo_path), "--plan", str(plan_file)]
        )

        assert result.exit_code == 0, result.output
        assert "Reporting" in result.output
        assert "Add report model" in result.output
        assert "Add report endpoint" in result.output

    def test_cyclic_plan_is_invalid(self, runner, repo_path, tmp_path):
        plan = tmp_path / "cycle.md"
        plan.write_text(
            "## Task 1: A\n\n**Depends on:** 2\n\n## Task 2: B\n\n**Depends on:** 1\n"
        )

        result = runner.invoke(cli, ["plan", "--repo", str(repo_path), "--plan", str(plan)])

        assert result.exit_code == 3
        assert "cycle detected" in result.output


class TestCleanupCommand:
    """Tests for the cleanup command."""

    def test_removes_session_tags(self, runner, repo_path, fake_git, git_state):
        logs = repo_path / ".logs" / "s1"
        logs.mkdir(parents=True)
        (logs / "1.log").write_text("attempt 1 failed\n")
        git_state.tags.update(
            {
                "swarm-checkpoint-s1-1": "c0000",
                "swarm-checkpoint-s1-2": "c0000",
                "swarm-checkpoint-s10-1": "c0000",
            }
        )

        with patch("swarm.cli.GitCommandRunner", return_value=fake_git):
            result = runner.invoke(
                cli, ["cleanup", "--repo", str(repo_path), "--session-id", "s1"]
            )

        assert result.exit_code == 0, result.output
        assert "Removed 0 worktree(s) and 2 checkpoint tag(s)" in result.output
        assert list(git_state.tags) == ["swarm-checkpoint-s10-1"]
        assert not logs.exists()
