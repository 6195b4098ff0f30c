"""Terminal reporting of session events.

ConsoleReporter is an EventBus subscriber printing one line per
lifecycle event. task_table renders task lists for plans and summaries.
"""

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from swarm.events import Event
from swarm.models import Task, TaskStatus
from swarm.notifier import format_duration

STATUS_STYLES = {
    TaskStatus.PENDING: "dim",
    TaskStatus.IN_PROGRESS: "cyan",
    TaskStatus.BLOCKED: "yellow",
    TaskStatus.DONE: "green",
    TaskStatus.FAILED: "red",
}


class ConsoleReporter:
    """Prints session progress to a rich console.

    Args:
        console: Console to print to
        verbose: Also print agent tool calls as they happen
    """

    def __init__(self, console: Console | None = None, verbose: bool = False) -> None:
        self.console = console or Console()
        self.verbose = verbose

    def __call__(self, event: Event) -> None:
        handler = getattr(self, f"_on_{event.kind.value}", None)
        if handler is not None:
            handler(event)

    def _label(self, event: Event) -> str:
        title = f" {event.task_title}" if event.task_title else ""
        return f"[bold]Task {event.task_id}:[/bold]{title}"

    def _on_epic_created(self, event: Event) -> None:
        subtasks = event.metadata.get("subtasks", [])
        self.console.print(
            f"[bold]Planned {len(subtasks)} task(s)[/bold] for {event.task_title or event.task_id}"
        )

    def _on_task_queued(self, event: Event) -> None:
        deps = event.metadata.get("depends_on") or []
        after = f" [dim](after {', '.join(deps)})[/dim]" if deps else ""
        self.console.print(f"  [dim]queued[/dim] {self._label(event)}{after}")

    def _on_task_started(self, event: Event) -> None:
        attempt = event.metadata.get("attempt", 1)
        suffix = f" [dim](attempt {attempt})[/dim]" if attempt > 1 else ""
        agent = escape(f"[{event.agent_id}]")
        self.console.print(f"[cyan]▶[/cyan] {agent} {self._label(event)}{suffix}")

    def _on_task_progress(self, event: Event) -> None:
        if self.verbose and event.current_action:
            self.console.print(f"           [dim]{event.agent_id}:[/dim] {event.current_action}")

    def _on_task_completed(self, event: Event) -> None:
        duration = (
            format_duration(event.duration_seconds) if event.duration_seconds is not None else "?"
        )
        self.console.print(
            f"[green]✓[/green] {self._label(event)} "
            f"[dim]({duration}, {(event.tokens or 0) / 1000:.1f}k tokens, "
            f"${event.cost_usd or 0.0:.2f})[/dim]"
        )

    def _on_task_failed(self, event: Event) -> None:
        if event.metadata.get("retrying"):
            self.console.print(
                f"[yellow]↻[/yellow] {self._label(event)} "
                f"attempt {event.metadata.get('attempt')} failed: {escape(event.error or '')}"
            )
            return
        self.console.print(f"[red]✗[/red] {self._label(event)} failed: {escape(event.error or '')}")
        if event.log_file:
            self.console.print(f"    [dim]log: {event.log_file}[/dim]")

    def _on_task_escalation(self, event: Event) -> None:
        self.console.print(
            f"[bold yellow]![/bold yellow] {self._label(event)} needs a decision "
            f"after {event.metadata.get('attempts')} attempts"
        )

    def _on_merge_completed(self, event: Event) -> None:
        if self.verbose:
            self.console.print(f"    [dim]merged {event.metadata.get('branch')}[/dim]")

    def _on_session_done(self, event: Event) -> None:
        color = "green" if event.metadata.get("success") else "red"
        self.console.print(f"\n[bold {color}]{event.message}[/bold {color}]")


def task_table(tasks: list[Task], title: str = "Tasks") -> Table:
    """Table of tasks with their status, dependencies and errors."""
    table = Table(title=title)
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Depends on")
    table.add_column("Status")
    table.add_column("Error", style="red")
    for task in tasks:
        style = STATUS_STYLES.get(task.status, "white")
        table.add_row(
            task.id,
            task.title,
            ", ".join(task.depends_on) or "-",
            f"[{style}]{task.status.value}[/{style}]",
            escape(task.error or ""),
        )
    return table
