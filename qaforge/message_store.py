"""
Message Store
=============

Fan-out point for structured events. Every published event goes to:

- a bounded per-subject ring buffer for fast recent-history reads,
- every live subscriber (WebSocket clients),
- a bounded queue drained by one background batch writer.

publish() never waits on subscribers or on the database. Persistence is
best effort: a failed write is reported and the buffered and broadcast copies
are unaffected.
"""

import asyncio
import contextlib
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from qaforge.db.repository import Database, clamp_limit
from qaforge.events import StructuredEvent
from qaforge.output import print_debug, print_error, print_warning

DEFAULT_CAPACITY = 1000
DEFAULT_BATCH_SIZE = 50
DEFAULT_FLUSH_INTERVAL = 0.5
DEFAULT_WRITE_QUEUE_SIZE = 10000
DEFAULT_SUBSCRIBER_QUEUE_SIZE = 1000


@dataclass
class EventPage:
    """One page of a subject's persisted events."""
    events: List[StructuredEvent] = field(default_factory=list)
    total: int = 0
    has_more: bool = False

    def to_dict(self) -> dict:
        return {
            "events": [event.to_dict() for event in self.events],
            "total": self.total,
            "has_more": self.has_more,
        }


class EventSubscription:
    """
    A live listener registered with a MessageStore.

    Iterate it to receive events published after subscription. Closing the
    subscription ends the iteration.

        async with store.subscribe() as events:
            async for event in events:
                ...
    """

    _CLOSED = object()

    def __init__(self, store: "MessageStore", subject_id: Optional[str], maxsize: int):
        self._store = store
        self.subject_id = subject_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self.dropped = 0
        self.closed = False

    def _offer(self, event: StructuredEvent) -> None:
        if self.closed:
            return
        if self.subject_id is not None and event.subject_id != self.subject_id:
            return
        # The spare slot is kept for the close marker
        if self._queue.qsize() >= self._maxsize:
            if self.dropped == 0:
                print_warning("Subscriber is not keeping up, dropping events")
            self.dropped += 1
            return
        self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[StructuredEvent]:
        """Next event, or None once closed or when the timeout expires."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is self._CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._store._unsubscribe(self)
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> StructuredEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "EventSubscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class MessageStore:
    """Ring buffer, broadcast and batched persistence for structured events."""

    def __init__(
        self,
        database: Database,
        capacity: int = DEFAULT_CAPACITY,
        batch_size: int = DEFAULT_BATCH_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        write_queue_size: int = DEFAULT_WRITE_QUEUE_SIZE,
        subscriber_queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE,
    ):
        self.database = database
        self.capacity = capacity
        self.batch_size = max(1, batch_size)
        self.flush_interval = flush_interval
        self.subscriber_queue_size = subscriber_queue_size

        self._buffers: Dict[str, Deque[StructuredEvent]] = {}
        self._buffer_lock = threading.Lock()
        self._subscribers: List[EventSubscription] = []
        self._subscriber_lock = threading.Lock()

        self._write_queue: asyncio.Queue = asyncio.Queue(maxsize=write_queue_size)
        self._writer_task: Optional[asyncio.Task] = None
        self.dropped_writes = 0
        self.failed_writes = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._writer_task is not None and not self._writer_task.done()

    def start(self) -> None:
        """Start the background batch writer."""
        if not self.running:
            self._writer_task = asyncio.create_task(self._writer_loop())

    async def stop(self) -> None:
        """Flush pending writes, stop the writer and close all subscriptions."""
        await self.flush()
        if self._writer_task is not None:
            self._writer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer_task
            self._writer_task = None
        with self._subscriber_lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()

    # =========================================================================
    # Publish / subscribe
    # =========================================================================

    def publish(self, event: StructuredEvent) -> None:
        """Buffer, enqueue for persistence and broadcast one event."""
        with self._buffer_lock:
            buffer = self._buffers.get(event.subject_id)
            if buffer is None:
                buffer = deque(maxlen=self.capacity)
                self._buffers[event.subject_id] = buffer
            buffer.append(event)

        try:
            self._write_queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped_writes += 1
            print_warning(f"Persistence queue full, event {event.id} will not be stored")

        with self._subscriber_lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._offer(event)

    async def push(self, event: StructuredEvent) -> None:
        """Async form of publish(), usable as an event sink."""
        self.publish(event)

    def subscribe(self, subject_id: Optional[str] = None) -> EventSubscription:
        """Register a live listener. Past events are not replayed."""
        subscription = EventSubscription(self, subject_id, self.subscriber_queue_size)
        with self._subscriber_lock:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        with self._subscriber_lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._subscriber_lock:
            return len(self._subscribers)

    # =========================================================================
    # Reads
    # =========================================================================

    async def query(self, subject_id: str) -> List[StructuredEvent]:
        """
        Recent events of a subject, oldest first.

        Served from the ring buffer when it holds the subject, otherwise
        rebuilt from the durable store.
        """
        with self._buffer_lock:
            buffer = self._buffers.get(subject_id)
            if buffer:
                return list(buffer)

        events = await self.database.query_events(subject_id)
        return events[-self.capacity:]

    async def warm(self, subject_id: str) -> int:
        """Reload a subject's ring buffer from durable storage."""
        await self.flush()
        persisted = await self.database.query_events(subject_id)
        persisted_ids = {event.id for event in persisted}

        with self._buffer_lock:
            fresh = deque(persisted, maxlen=self.capacity)
            for event in self._buffers.get(subject_id, ()):
                if event.id not in persisted_ids:
                    fresh.append(event)
            self._buffers[subject_id] = fresh
            count = len(fresh)

        print_debug(f"Warmed buffer for {subject_id} with {count} events")
        return count

    async def page(
        self,
        subject_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> EventPage:
        """A page of persisted events with the total count."""
        limit = clamp_limit(limit)
        offset = max(0, int(offset or 0))
        events = await self.database.query_events(subject_id, limit=limit, offset=offset)
        total = await self.database.count_events(subject_id)
        return EventPage(events=events, total=total, has_more=offset + len(events) < total)

    async def clear(self, subject_id: str) -> int:
        """Drop a subject's buffered and persisted events."""
        await self.flush()
        with self._buffer_lock:
            self._buffers.pop(subject_id, None)
        return await self.database.clear_events(subject_id)

    def buffer_stats(self) -> dict:
        """Sizes of the in-memory buffers and queues."""
        with self._buffer_lock:
            per_subject = {subject_id: len(buffer) for subject_id, buffer in self._buffers.items()}
        return {
            "subjects": len(per_subject),
            "total_events": sum(per_subject.values()),
            "capacity": self.capacity,
            "per_subject": per_subject,
            "pending_writes": self._write_queue.qsize(),
            "dropped_writes": self.dropped_writes,
            "failed_writes": self.failed_writes,
            "subscribers": self.subscriber_count,
        }

    # =========================================================================
    # Persistence
    # =========================================================================

    async def flush(self) -> None:
        """Wait until every queued event has been handed to the database."""
        if self.running:
            await self._write_queue.join()
            return

        while not self._write_queue.empty():
            batch = []
            while len(batch) < self.batch_size and not self._write_queue.empty():
                batch.append(self._write_queue.get_nowait())
            await self._write_batch(batch)
            for _ in batch:
                self._write_queue.task_done()

    async def _writer_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            batch = [await self._write_queue.get()]
            deadline = loop.time() + self.flush_interval
            while len(batch) < self.batch_size:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    batch.append(await asyncio.wait_for(self._write_queue.get(), remaining))
                except asyncio.TimeoutError:
                    break
            try:
                await self._write_batch(batch)
            finally:
                for _ in batch:
                    self._write_queue.task_done()

    async def _write_batch(self, batch: List[StructuredEvent]) -> None:
        if not batch:
            return
        try:
            await self.database.save_events_batch(batch)
            print_debug(f"Persisted {len(batch)} events")
        except Exception as e:
            self.failed_writes += len(batch)
            print_error(f"Failed to persist {len(batch)} events: {e}")
