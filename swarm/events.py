"""Typed event bus for session observers.

Components publish Event objects describing every state transition; any
number of subscribers (console reporter, webhook notifier, tests) receive
them synchronously in publish order. There is no persistence, replay or
filtering: subscribers see only events published after they register and
filter for themselves.
"""

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of events published during a session."""

    TASK_ENTERED = "task_entered"
    EPIC_CREATED = "epic_created"
    TASK_QUEUED = "task_queued"
    TASK_STARTED = "task_started"
    TASK_PROGRESS = "task_progress"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_ESCALATION = "task_escalation"
    MERGE_STARTED = "merge_started"
    MERGE_COMPLETED = "merge_completed"
    SESSION_DONE = "session_done"
    DEBUG = "debug"


@dataclass
class Event:
    """A single observable occurrence.

    Only kind is required; everything else is filled in as relevant to the
    event. metadata carries kind-specific structured data such as
    "retrying" on task_failed or "success" on session_done.
    """

    kind: EventKind
    task_id: str | None = None
    task_title: str | None = None
    parent_id: str | None = None
    agent_id: str | None = None
    message: str = ""
    error: str | None = None
    tokens: int | None = None
    cost_usd: float | None = None
    duration_seconds: float | None = None
    log_file: str | None = None
    current_action: str | None = None
    original_task_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[Event], None]


class Subscription:
    """Handle returned by EventBus.subscribe(); call unsubscribe() to detach."""

    def __init__(self, bus: "EventBus", handler: EventHandler) -> None:
        self._bus = bus
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """Fan-out of events to registered handlers.

    Handlers run on the publisher's thread and must not block indefinitely.
    Handlers that may block should wrap themselves in BufferedSubscriber.
    Only subscriber-list mutation takes the lock; publish reads an immutable
    snapshot.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: tuple[Subscription, ...] = ()

    def subscribe(self, handler: EventHandler) -> Subscription:
        """Register a handler for all future events.

        Args:
            handler: Callable invoked once per published event

        Returns:
            Subscription handle used to unsubscribe
        """
        subscription = Subscription(self, handler)
        with self._lock:
            self._subscriptions = (*self._subscriptions, subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions = tuple(
                s for s in self._subscriptions if s is not subscription
            )

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: Event) -> None:
        """Deliver an event to every current subscriber.

        A handler raising an exception is logged and does not prevent
        delivery to the remaining subscribers.
        """
        for subscription in self._subscriptions:
            try:
                subscription.handler(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed handling %s", event.kind.value
                )

    def emit(self, kind: EventKind, **fields: Any) -> Event:
        """Build and publish an event in one call."""
        event = Event(kind=kind, **fields)
        self.publish(event)
        return event


class BufferedSubscriber:
    """Decouples a slow handler from the publisher.

    Events are put on an unbounded queue and delivered in order by a
    dedicated dispatcher thread, so publish never waits on the handler.

    Usage:
        buffered = BufferedSubscriber(notifier.handle)
        bus.subscribe(buffered)
        ...
        buffered.close()  # drains remaining events
    """

    _STOP = object()

    def __init__(self, handler: EventHandler, name: str = "swarm-subscriber") -> None:
        self._handler = handler
        self._queue: queue.Queue[Any] = queue.Queue()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def __call__(self, event: Event) -> None:
        self._queue.put(event)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                return
            try:
                self._handler(item)
            except Exception:
                logger.exception("Buffered subscriber failed handling event")

    def close(self, timeout: float | None = 5.0) -> None:
        """Stop the dispatcher after delivering everything already queued."""
        self._queue.put(self._STOP)
        self._thread.join(timeout)
