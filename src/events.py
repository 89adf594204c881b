"""Topic-based event bus shared by the pipeline engine and the queue executor.

Publishing never blocks: each subscriber owns a bounded buffer. When a buffer
is full, token events are the first to go (they are coalesced and non-critical);
lifecycle events are always delivered.
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

# Pipeline topics
STAGE_START = "pipeline:stage_start"
STAGE_TOKEN = "pipeline:stage_token"
STAGE_COMPLETE = "pipeline:stage_complete"
STAGE_ERROR = "pipeline:stage_error"
RUN_FINISHED = "pipeline:run_finished"

# Queue topics
JOB_ENQUEUED = "queue:job_enqueued"
JOB_STARTED = "queue:job_started"
JOB_PROGRESS = "queue:job_progress"
JOB_COMPLETED = "queue:job_completed"
JOB_FAILED = "queue:job_failed"
JOB_CANCELLED = "queue:job_cancelled"
QUEUE_UPDATED = "queue:updated"

# Events that may be dropped under backpressure
DROPPABLE_TOPICS = frozenset({STAGE_TOKEN, JOB_PROGRESS})


@dataclass(frozen=True)
class Event:
    """A published event."""
    topic: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)


class Subscription:
    """A subscriber's private, bounded event buffer."""

    def __init__(
        self,
        bus: "EventBus",
        topics: frozenset[str] | None,
        maxsize: int,
        loop: asyncio.AbstractEventLoop,
    ):
        self._bus = bus
        self.topics = topics
        self.maxsize = maxsize
        self._loop = loop
        self._buffer: deque[Event] = deque()
        self._lock = threading.Lock()
        self._wakeup = asyncio.Event()
        self.dropped = 0
        self.closed = False

    def wants(self, topic: str) -> bool:
        return self.topics is None or topic in self.topics

    def offer(self, event: Event) -> None:
        """Buffer an event without blocking the publisher."""
        with self._lock:
            if self.closed:
                return
            if len(self._buffer) >= self.maxsize:
                if not self._make_room(event):
                    self.dropped += 1
                    return
            self._buffer.append(event)
        try:
            self._loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            # Subscriber's loop is gone; it will never read again
            self.closed = True

    def _make_room(self, incoming: Event) -> bool:
        """Drop the oldest droppable event. Returns False if the incoming event should be dropped."""
        for index, queued in enumerate(self._buffer):
            if queued.topic in DROPPABLE_TOPICS:
                del self._buffer[index]
                self.dropped += 1
                return True
        if incoming.topic in DROPPABLE_TOPICS:
            return False
        logger.warning(
            f"Subscriber buffer over capacity ({len(self._buffer)}), keeping lifecycle event {incoming.topic}"
        )
        return True

    def get_nowait(self) -> Event | None:
        with self._lock:
            if self._buffer:
                return self._buffer.popleft()
            return None

    async def get(self, timeout: float | None = None) -> Event:
        """Wait for the next event.

        Raises:
            asyncio.TimeoutError: If no event arrived within timeout
        """
        while True:
            with self._lock:
                if self._buffer:
                    return self._buffer.popleft()
                self._wakeup.clear()
            await asyncio.wait_for(self._wakeup.wait(), timeout)

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def close(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    """Process-wide publish mechanism with independent subscribers per topic."""

    def __init__(self, default_maxsize: int = 100):
        self.default_maxsize = default_maxsize
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._listeners: list[tuple[frozenset[str] | None, Callable[[Event], None]]] = []

    def subscribe(
        self,
        topics: Iterable[str] | None = None,
        maxsize: int | None = None,
    ) -> Subscription:
        """Create a buffered subscription. Must be called from a running event loop.

        Args:
            topics: Topics to receive (None for all)
            maxsize: Buffer capacity before backpressure kicks in
        """
        subscription = Subscription(
            self,
            frozenset(topics) if topics is not None else None,
            maxsize or self.default_maxsize,
            asyncio.get_running_loop(),
        )
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscription.closed = True
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def add_listener(
        self,
        listener: Callable[[Event], None],
        topics: Iterable[str] | None = None,
    ) -> None:
        """Register a synchronous callback. Callbacks must not block."""
        with self._lock:
            self._listeners.append((frozenset(topics) if topics is not None else None, listener))

    def remove_listener(self, listener: Callable[[Event], None]) -> None:
        with self._lock:
            self._listeners = [entry for entry in self._listeners if entry[1] is not listener]

    def publish(self, topic: str, data: dict[str, Any]) -> Event:
        """Publish an event to every interested subscriber and listener."""
        event = Event(topic=topic, data=data)

        # Iterate snapshots so subscribers can come and go concurrently
        with self._lock:
            subscriptions = list(self._subscriptions)
            listeners = list(self._listeners)

        for subscription in subscriptions:
            if subscription.wants(topic):
                subscription.offer(event)

        for topics, listener in listeners:
            if topics is not None and topic not in topics:
                continue
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"Error in event listener for {topic}: {e}")

        return event

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions) + len(self._listeners)


class TokenCoalescer:
    """Buffers streamed tokens per stage and publishes them in batches.

    A background task flushes the accumulator every ``interval`` seconds.
    ``flush()`` performs the read-and-clear and the publish under one lock, so a
    periodic flush and the final flush before ``stage_complete`` can never emit
    the same text twice or reorder it.
    """

    def __init__(self, bus: EventBus, run_id: str, interval: float = 0.033):
        self.bus = bus
        self.run_id = run_id
        self.interval = interval
        self._lock = threading.Lock()
        self._buffers: dict[str, list[str]] = {}
        self._task: asyncio.Task | None = None

    def add(self, stage: str, token: str) -> None:
        if not token:
            return
        with self._lock:
            self._buffers.setdefault(stage, []).append(token)

    def flush(self, stage: str | None = None) -> int:
        """Publish buffered tokens (for one stage, or all). Returns characters flushed."""
        flushed = 0
        with self._lock:
            stages = [stage] if stage is not None else list(self._buffers)
            for name in stages:
                parts = self._buffers.pop(name, None)
                if not parts:
                    continue
                text = "".join(parts)
                flushed += len(text)
                self.bus.publish(STAGE_TOKEN, {
                    "run_id": self.run_id,
                    "stage": name,
                    "token": text,
                })
        return flushed

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.flush()

    async def stop(self) -> None:
        """Stop the periodic task and flush whatever is left."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.flush()
