"""Discord webhook notifier for session events.

Turns bus events into Discord embeds. Webhook failures are logged but
not raised, so notification problems never block a session. Posting is
synchronous; wrap the notifier in a BufferedSubscriber so slow webhooks
do not hold up the publisher.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

import httpx

from swarm.events import Event, EventKind

logger = logging.getLogger(__name__)

# Color scheme for Discord embeds
COLORS = {
    "started": 0x3498DB,  # Blue
    "completed": 0x2ECC71,  # Green
    "failed": 0xE74C3C,  # Red
    "escalation": 0xF39C12,  # Orange
    "session_done": 0x9B59B6,  # Purple
}

# Maximum description length for Discord embeds
MAX_DESCRIPTION_LENGTH = 4096
TRUNCATION_SUFFIX = "... [truncated]"


@dataclass
class DiscordEmbed:
    """Discord embed message structure.

    Attributes:
        title: Bold title text at the top of the embed
        description: Main body text of the embed (max 4096 chars)
        color: Integer color value
        fields: Optional list of field dicts with name, value, inline keys
        timestamp: Optional ISO format timestamp string
    """

    title: str
    description: str
    color: int
    fields: list[dict] | None = None
    timestamp: str | None = None

    def to_dict(self) -> dict:
        """Convert embed to Discord API format, omitting unset fields."""
        result = {
            "title": self.title,
            "description": self.description,
            "color": self.color,
        }
        if self.fields is not None:
            result["fields"] = self.fields
        if self.timestamp is not None:
            result["timestamp"] = self.timestamp
        return result


def _truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def format_duration(seconds: float) -> str:
    """Format duration like "45s", "2m 30s" or "1h 15m"."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s" if secs > 0 else f"{minutes}m"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"


def _timestamp(event: Event) -> str:
    stamp: datetime = event.timestamp
    return stamp.isoformat()


def format_epic_created(event: Event) -> DiscordEmbed:
    subtasks = event.metadata.get("subtasks", [])
    return DiscordEmbed(
        title=f"🚀 Session Started: {event.task_title or event.task_id}",
        description=f"Implementing {len(subtasks)} task(s).",
        color=COLORS["started"],
        timestamp=_timestamp(event),
    )


def format_task_completed(event: Event) -> DiscordEmbed:
    fields = []
    if event.duration_seconds is not None:
        fields.append(
            {"name": "Duration", "value": format_duration(event.duration_seconds), "inline": True}
        )
    fields.append({"name": "Cost", "value": f"${event.cost_usd or 0.0:.2f}", "inline": True})
    if event.agent_id:
        fields.append({"name": "Agent", "value": event.agent_id, "inline": True})
    return DiscordEmbed(
        title=f"✅ Task {event.task_id}: {event.task_title or ''}".rstrip(": "),
        description="Merged into the session branch.",
        color=COLORS["completed"],
        fields=fields,
        timestamp=_timestamp(event),
    )


def format_task_failed(event: Event) -> DiscordEmbed:
    description_parts = [f"Task {event.task_id}: {event.task_title or ''}", "", "**Error:**"]
    error = event.error or "unknown error"
    available = MAX_DESCRIPTION_LENGTH - len("\n".join(description_parts)) - 10
    description_parts.append(f"```\n{_truncate_text(error, available)}\n```")
    return DiscordEmbed(
        title=f"❌ Task Failed: {event.task_id}",
        description="\n".join(description_parts),
        color=COLORS["failed"],
        timestamp=_timestamp(event),
    )


def format_escalation(event: Event) -> DiscordEmbed:
    attempts = event.metadata.get("attempts")
    summary = event.metadata.get("validation_summary") or event.message or ""
    fields = []
    if attempts is not None:
        fields.append({"name": "Attempts", "value": str(attempts), "inline": True})
    if event.log_file:
        fields.append({"name": "Log", "value": event.log_file, "inline": False})
    return DiscordEmbed(
        title=f"⚠️ Needs Human Input: Task {event.task_id}",
        description=_truncate_text(summary, MAX_DESCRIPTION_LENGTH),
        color=COLORS["escalation"],
        fields=fields or None,
        timestamp=_timestamp(event),
    )


def format_session_done(event: Event) -> DiscordEmbed:
    success = bool(event.metadata.get("success"))
    fields = [{"name": "Cost", "value": f"${event.cost_usd or 0.0:.2f}", "inline": True}]
    if event.duration_seconds is not None:
        fields.insert(
            0,
            {"name": "Duration", "value": format_duration(event.duration_seconds), "inline": True},
        )
    return DiscordEmbed(
        title="🎉 Session Complete" if success else "🛑 Session Ended",
        description=event.message or "",
        color=COLORS["session_done"] if success else COLORS["failed"],
        fields=fields,
        timestamp=_timestamp(event),
    )


_FORMATTERS = {
    EventKind.EPIC_CREATED: format_epic_created,
    EventKind.TASK_COMPLETED: format_task_completed,
    EventKind.TASK_ESCALATION: format_escalation,
    EventKind.SESSION_DONE: format_session_done,
}


def format_event(event: Event) -> DiscordEmbed | None:
    """Embed for an event worth notifying about, or None.

    Retry signals (task_failed with retrying=True) are not notified.
    """
    if event.kind == EventKind.TASK_FAILED:
        if event.metadata.get("retrying"):
            return None
        return format_task_failed(event)
    formatter = _FORMATTERS.get(event.kind)
    return formatter(event) if formatter else None


class DiscordNotifier:
    """Event subscriber posting embeds to a Discord webhook.

    Args:
        webhook_url: Discord webhook URL
        client: HTTP client to use; one with a 5 second timeout is created
            if None
    """

    def __init__(self, webhook_url: str, client: httpx.Client | None = None) -> None:
        self.webhook_url = webhook_url
        self._client = client or httpx.Client(timeout=5.0)
        self._owns_client = client is None

    def __call__(self, event: Event) -> None:
        embed = format_event(event)
        if embed is not None:
            self.send(embed)

    def send(self, embed: DiscordEmbed) -> bool:
        """Post one embed; Discord answers 204 No Content on success.

        Returns:
            True if the webhook accepted the message
        """
        payload = {"embeds": [embed.to_dict()]}
        try:
            response = self._client.post(self.webhook_url, json=payload)
        except httpx.TimeoutException:
            logger.warning("Discord webhook request timed out")
            return False
        except httpx.ConnectError:
            logger.warning("Failed to connect to Discord webhook")
            return False
        except httpx.HTTPError as e:
            logger.warning("Discord webhook error: %s", e)
            return False

        if response.status_code >= 400:
            logger.warning("Discord webhook returned %s: %s", response.status_code, response.text)
            return False
        return True

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
