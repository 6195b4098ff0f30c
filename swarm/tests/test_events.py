"""Tests for the event bus."""

import threading
import time

from swarm.events import BufferedSubscriber, Event, EventBus, EventKind


class TestEventBus:
    """Tests for EventBus subscribe/publish."""

    def test_every_subscriber_receives_events_in_order(self):
        bus = EventBus()
        first, second = [], []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        bus.emit(EventKind.TASK_QUEUED, task_id="1")
        bus.emit(EventKind.TASK_STARTED, task_id="1")

        assert [e.kind for e in first] == [EventKind.TASK_QUEUED, EventKind.TASK_STARTED]
        assert [e.kind for e in second] == [EventKind.TASK_QUEUED, EventKind.TASK_STARTED]

    def test_unsubscribe_stops_delivery(self):
        bus = EventBus()
        received = []
        subscription = bus.subscribe(received.append)

        subscription.unsubscribe()
        subscription.unsubscribe()
        bus.emit(EventKind.DEBUG, message="ignored")

        assert received == []
        assert bus.subscriber_count == 0

    def test_failing_handler_does_not_block_others(self, caplog):
        """An exception in one handler is logged and others still run."""
        bus = EventBus()
        received = []

        def broken(event: Event) -> None:
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        bus.emit(EventKind.TASK_FAILED, task_id="1", error="x")

        assert len(received) == 1
        assert "Event subscriber failed" in caplog.text

    def test_subscribe_during_publish_applies_to_next_event(self):
        """Publishing iterates a snapshot of the subscriber list."""
        bus = EventBus()
        late = []

        def subscribe_late(event: Event) -> None:
            if not late and event.kind == EventKind.TASK_QUEUED:
                bus.subscribe(late.append)

        bus.subscribe(subscribe_late)
        bus.emit(EventKind.TASK_QUEUED)
        bus.emit(EventKind.TASK_STARTED)

        assert [e.kind for e in late] == [EventKind.TASK_STARTED]

    def test_emit_returns_populated_event(self):
        bus = EventBus()

        event = bus.emit(
            EventKind.TASK_COMPLETED, task_id="2", tokens=10, metadata={"retrying": False}
        )

        assert event.task_id == "2"
        assert event.tokens == 10
        assert event.metadata == {"retrying": False}
        assert event.timestamp is not None

    def test_concurrent_publishers(self):
        bus = EventBus()
        received = []
        lock = threading.Lock()

        def record(event: Event) -> None:
            with lock:
                received.append(event.task_id)

        bus.subscribe(record)
        threads = [
            threading.Thread(
                target=lambda n=n: [bus.emit(EventKind.DEBUG, task_id=str(n)) for _ in range(50)]
            )
            for n in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(received) == 200


class TestBufferedSubscriber:
    """Tests for BufferedSubscriber."""

    def test_slow_handler_does_not_block_publisher(self):
        release = threading.Event()
        received = []

        def slow(event: Event) -> None:
            release.wait(5)
            received.append(event.kind)

        buffered = BufferedSubscriber(slow)
        bus = EventBus()
        bus.subscribe(buffered)

        started = time.monotonic()
        bus.emit(EventKind.TASK_STARTED)
        bus.emit(EventKind.TASK_COMPLETED)
        assert time.monotonic() - started < 1.0

        release.set()
        buffered.close()
        assert received == [EventKind.TASK_STARTED, EventKind.TASK_COMPLETED]

    def test_close_drains_queue(self):
        received = []
        buffered = BufferedSubscriber(received.append)

        for _ in range(10):
            buffered(Event(kind=EventKind.DEBUG))
        buffered.close()

        assert len(received) == 10

    def test_handler_errors_are_logged(self, caplog):
        def broken(event: Event) -> None:
            raise ValueError("nope")

        buffered = BufferedSubscriber(broken)
        buffered(Event(kind=EventKind.DEBUG))
        buffered.close()

        assert "Buffered subscriber failed" in caplog.text
