"""CLI for swarm.

Provides the `implement` command that runs a parallel agent session on a
repository, plus `plan` to preview a breakdown and `cleanup` to remove
leftovers of interrupted sessions.
"""

import asyncio
import shutil
import signal
import sys
from pathlib import Path

import click
from rich.console import Console

from swarm.agent import AgentRunnerFactory, ClaudeCLIRunner, find_claude_cli
from swarm.config import SwarmConfig
from swarm.console import ConsoleReporter, task_table
from swarm.decomposer import (
    AgentDecomposer,
    Decomposer,
    PlanDecomposer,
    SingleTaskDecomposer,
)
from swarm.errors import DecompositionError, GitError, GraphError, LockError
from swarm.escalation import (
    ConsoleResponder,
    EscalationAction,
    EscalationResponder,
    PolicyResponder,
)
from swarm.events import BufferedSubscriber, EventBus
from swarm.git import GitCommandRunner
from swarm.graph import DependencyGraph
from swarm.lock import RepoLock
from swarm.logging_config import configure_logging
from swarm.notifier import DiscordNotifier, format_duration
from swarm.orchestrator import ExitCode, Orchestrator, SessionResult
from swarm.telemetry import create_metrics, setup_telemetry
from swarm.workspace import WorkspaceAllocator

console = Console()

ESCALATION_CHOICES = ["prompt", "retry", "skip", "abort"]


@click.group()
@click.version_option(package_name="swarm-orchestrator")
def cli() -> None:
    """Swarm - parallel coding agents on git worktrees."""
    pass


def _fail_input(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    sys.exit(int(ExitCode.INVALID_INPUT))


def _resolve_repo(repo: str) -> Path:
    repo_path = Path(repo).resolve()
    if not (repo_path / ".git").exists():
        _fail_input(f"{repo_path} is not a git repository")
    return repo_path


def _build_decomposer(
    plan: str | None,
    single: bool,
    factory: AgentRunnerFactory,
    repo_path: Path,
    config: SwarmConfig,
) -> Decomposer:
    if plan:
        return PlanDecomposer(plan)
    if single:
        return SingleTaskDecomposer()
    return AgentDecomposer(
        factory,
        repo_path,
        model=config.agent_model,
        timeout=config.agent_timeout_seconds,
    )


def _agent_factory() -> AgentRunnerFactory:
    cli_path = find_claude_cli()
    if cli_path is None:
        _fail_input("Claude CLI not found. Install it or put `claude` on PATH.")
    return lambda: ClaudeCLIRunner(cli_path)


@cli.command()
@click.argument("task", default="")
@click.option(
    "--repo",
    type=click.Path(exists=True, file_okay=False),
    default=".",
    show_default=True,
    help="Repository to work on",
)
@click.option("--max-agents", "-n", type=click.IntRange(min=1), help="Concurrent agents")
@click.option("--greenfield", is_flag=True, help="Merge straight into the current branch")
@click.option("--session-id", help="Reuse a session identifier (resumes its branch)")
@click.option("-m", "--model", help="Model for the coding agents")
@click.option("--max-attempts", type=click.IntRange(min=1), help="Attempts before escalating")
@click.option(
    "--plan",
    "plan_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Take tasks from a markdown plan instead of decomposing",
)
@click.option("--single", is_flag=True, help="Run the request as one task")
@click.option("--no-review", is_flag=True, help="Skip the semantic and review layers")
@click.option(
    "--on-escalation",
    type=click.Choice(ESCALATION_CHOICES),
    default="prompt",
    show_default=True,
    help="How exhausted tasks are resolved",
)
@click.option("--webhook-url", help="Discord webhook for notifications")
@click.option("-v", "--verbose", is_flag=True, help="Show agent actions and debug logs")
def implement(
    task: str,
    repo: str,
    max_agents: int | None,
    greenfield: bool,
    session_id: str | None,
    model: str | None,
    max_attempts: int | None,
    plan_file: str | None,
    single: bool,
    no_review: bool,
    on_escalation: str,
    webhook_url: str | None,
    verbose: bool,
) -> None:
    """Implement TASK with a pool of coding agents."""
    if not task.strip() and not plan_file:
        _fail_input("Describe the task to implement, or pass --plan")
    repo_path = _resolve_repo(repo)

    config = SwarmConfig.from_env()
    if max_agents is not None:
        config.max_agents = max_agents
    if max_attempts is not None:
        config.max_attempts = max_attempts
    if model:
        config.agent_model = model
    if no_review:
        config.review_enabled = False
    if webhook_url:
        config.discord_webhook_url = webhook_url

    factory = _agent_factory()
    exit_code = asyncio.run(
        _implement(
            task,
            repo_path,
            config,
            factory,
            greenfield=greenfield,
            session_id=session_id,
            plan_file=plan_file,
            single=single,
            on_escalation=on_escalation,
            verbose=verbose,
        )
    )
    sys.exit(int(exit_code))


async def _implement(
    task: str,
    repo_path: Path,
    config: SwarmConfig,
    factory: AgentRunnerFactory,
    greenfield: bool,
    session_id: str | None,
    plan_file: str | None,
    single: bool,
    on_escalation: str,
    verbose: bool,
) -> ExitCode:
    """Internal async implementation of implement."""
    configure_logging(verbose=verbose, log_dir=repo_path / config.log_dir)
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    bus = EventBus()
    bus.subscribe(ConsoleReporter(console, verbose=verbose))

    notifier = None
    buffered = None
    if config.discord_webhook_url:
        notifier = DiscordNotifier(config.discord_webhook_url)
        buffered = BufferedSubscriber(notifier, name="swarm-discord")
        bus.subscribe(buffered)

    responder: EscalationResponder
    if on_escalation == "prompt":
        responder = ConsoleResponder(console)
    else:
        responder = PolicyResponder(EscalationAction.parse(on_escalation))

    orchestrator = Orchestrator(
        config,
        repo_path,
        agent_factory=factory,
        decomposer=_build_decomposer(plan_file, single, factory, repo_path, config),
        bus=bus,
        responder=responder,
        session_id=session_id,
        greenfield=greenfield,
        tracer=tracer,
    )

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
    try:
        with RepoLock(repo_path, config.worktree_dir):
            console.print(f"[bold]Session {orchestrator.session_id}[/bold] on {repo_path}")
            result = await orchestrator.run(task)
    except LockError as e:
        console.print(f"[red]Error:[/red] {e}")
        return ExitCode.ABORTED
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        if buffered is not None:
            buffered.close()
        if notifier is not None:
            notifier.close()

    _print_session_summary(result)
    return result.exit_code


def _print_session_summary(result: SessionResult) -> None:
    """Print the final task table and totals."""
    if result.tasks:
        console.print(task_table(result.tasks, title=f"Session {result.session_id}"))
    console.print(f"  Duration: {format_duration(result.duration_seconds)}")
    console.print(f"  Tokens: {result.total_tokens / 1000:.1f}k")
    console.print(f"  Cost: ${result.total_cost_usd:.2f}")
    if result.session_branch:
        console.print(f"  Branch: {result.session_branch}")


@cli.command()
@click.argument("task", default="")
@click.option(
    "--repo",
    type=click.Path(exists=True, file_okay=False),
    default=".",
    show_default=True,
    help="Repository the planner may inspect",
)
@click.option(
    "--plan",
    "plan_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Read tasks from a markdown plan",
)
@click.option("-m", "--model", help="Model for the planning agent")
def plan(task: str, repo: str, plan_file: str | None, model: str | None) -> None:
    """Show how TASK would be broken down, without running anything."""
    if not task.strip() and not plan_file:
        _fail_input("Describe the task to plan, or pass --plan")
    config = SwarmConfig.from_env()
    if model:
        config.agent_model = model
    repo_path = Path(repo).resolve()
    factory = None if plan_file else _agent_factory()
    decomposer = _build_decomposer(plan_file, False, factory, repo_path, config)

    graph = DependencyGraph()
    try:
        decomposition = asyncio.run(decomposer.decompose(task))
        graph.build(decomposition.all_tasks)
    except (DecompositionError, GraphError) as e:
        _fail_input(str(e))

    ordered = [graph.get_task(t) for t in graph.topological_sort() if not graph.is_epic(t)]
    title = decomposition.epic.title if decomposition.epic else "Plan"
    console.print(task_table(ordered, title=title))


@cli.command()
@click.option(
    "--repo",
    type=click.Path(exists=True, file_okay=False),
    default=".",
    show_default=True,
    help="Repository to clean",
)
@click.option("--session-id", help="Only clean this session (default: all)")
def cleanup(repo: str, session_id: str | None) -> None:
    """Remove worktrees, branches, tags and logs left by interrupted sessions."""
    repo_path = _resolve_repo(repo)
    config = SwarmConfig.from_env()
    try:
        worktrees, tags = asyncio.run(_cleanup(repo_path, config, session_id))
    except GitError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"Removed {worktrees} worktree(s) and {tags} checkpoint tag(s)")


async def _cleanup(
    repo_path: Path, config: SwarmConfig, session_id: str | None
) -> tuple[int, int]:
    git = GitCommandRunner(repo_path, timeout=config.command_timeout_seconds)
    root = repo_path / config.worktree_dir
    if session_id:
        sessions = [session_id]
    else:
        sessions = sorted(p.name for p in root.iterdir() if p.is_dir()) if root.exists() else []

    worktrees = 0
    for sid in sessions:
        allocator = WorkspaceAllocator(git, repo_path, sid, worktree_dir=config.worktree_dir)
        worktrees += len(await allocator.cleanup(delete_branches=True))
        shutil.rmtree(repo_path / config.log_dir / sid, ignore_errors=True)

    prefix = f"{config.tag_prefix}-checkpoint-"
    pattern = f"{prefix}{session_id}-*" if session_id else f"{prefix}*"
    tags = await git.list_tags(pattern)
    for tag in tags:
        await git.delete_tag(tag)
    return worktrees, len(tags)


def main() -> None:
    """Main entry point; invalid usage exits with the invalid-input code."""
    try:
        cli.main(standalone_mode=False)
    except click.UsageError as e:
        e.show()
        sys.exit(int(ExitCode.INVALID_INPUT))
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        console.print("Aborted!")
        sys.exit(int(ExitCode.ABORTED))


if __name__ == "__main__":
    main()
