"""Per-task log files.

Agent transcripts, validation summaries and failures for a task are
appended to `<repo>/<log_dir>/<session_id>/<task_id>.log` so that escalation
requests and task_failed events can point the user at the full story.
"""

import threading
from datetime import datetime
from pathlib import Path

from swarm.agent import AgentEvent, AgentEventType, format_tool_call


class TaskLogs:
    """Appends timestamped lines to per-task log files."""

    def __init__(self, repo_path: str | Path, session_id: str, log_dir: str = ".logs") -> None:
        self.root = Path(repo_path) / log_dir / session_id
        self._lock = threading.Lock()

    def path_for(self, task_id: str) -> Path:
        return self.root / f"{task_id}.log"

    def write(self, task_id: str, text: str) -> Path:
        path = self.path_for(task_id)
        stamp = datetime.now().strftime("%H:%M:%S")
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                for line in text.rstrip("\n").splitlines() or [""]:
                    f.write(f"{stamp} {line}\n")
        return path

    def write_agent_event(self, task_id: str, event: AgentEvent) -> None:
        if event.type == AgentEventType.TOOL_USE:
            self.write(task_id, format_tool_call(event.tool_name or "", event.tool_input))
        elif event.type == AgentEventType.ASSISTANT:
            self.write(task_id, event.text)
        elif event.type == AgentEventType.RESULT:
            self.write(task_id, f"[result] {event.text}")
        else:
            self.write(task_id, f"[error] {event.text}")
