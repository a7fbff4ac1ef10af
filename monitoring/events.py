"""
Live progress channel.

A process-wide publish/subscribe bus for job progress. It is created at
startup, closed at shutdown, and handed to whoever needs it (the
orchestrator publishes, the SSE endpoint subscribes). Publishing never
blocks: a slow subscriber loses its oldest frames instead of stalling a
scrape loop.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import AsyncIterator, Dict, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class JobEvent:
    """Base class for bus events."""
    job_id: str
    timestamp: datetime = field(default_factory=datetime.now, init=False)

    event_type = "event"

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["type"] = self.event_type
        return data

    def to_sse(self) -> str:
        """Format as a Server-Sent Event frame."""
        return f"event: {self.event_type}\ndata: {json.dumps(self.to_dict())}\n\n"


@dataclass
class JobProgress(JobEvent):
    records_scraped: int = 0
    current_term: Optional[str] = None

    event_type = "progress"


@dataclass
class JobCompleted(JobEvent):
    records_scraped: int = 0

    event_type = "completed"


@dataclass
class JobFailed(JobEvent):
    error: str = ""

    event_type = "failed"


@dataclass
class JobPaused(JobEvent):
    reason: str = ""

    event_type = "paused"


class Subscription:
    """One subscriber's bounded inbox. Iterate it to receive events."""

    def __init__(self, bus: "EventBus", job_id: Optional[str], maxsize: int):
        self.bus = bus
        self.job_id = job_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def matches(self, event: JobEvent) -> bool:
        return self.job_id is None or self.job_id == event.job_id

    def offer(self, event: Optional[JobEvent]):
        """Enqueue without blocking; drop the oldest frame when full."""
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self, timeout: Optional[float] = None) -> Optional[JobEvent]:
        """
        Next event, or None on timeout or once the subscription is closed.
        """
        if self.closed and self.queue.empty():
            return None
        try:
            if timeout is None:
                event = await self.queue.get()
            else:
                event = await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if event is None:
            self.closed = True
        return event

    def __aiter__(self) -> AsyncIterator[JobEvent]:
        return self._iterate()

    async def _iterate(self):
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    def close(self):
        self.bus.unsubscribe(self)


class EventBus:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscriptions: Set[Subscription] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        """Subscribe to one job's events, or to all jobs when ``job_id`` is None."""
        if self._closed:
            raise RuntimeError("Event bus is closed")
        subscription = Subscription(self, job_id, self.queue_size)
        self._subscriptions.add(subscription)
        logger.debug(f"Subscribed to {job_id or 'all jobs'} ({len(self._subscriptions)} active)")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if subscription in self._subscriptions:
            self._subscriptions.discard(subscription)
            subscription.closed = True
            subscription.offer(None)
            logger.debug(f"Unsubscribed from {subscription.job_id or 'all jobs'}")

    def publish(self, event: JobEvent) -> int:
        """Deliver to matching subscribers. Returns how many received it."""
        if self._closed:
            return 0
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.offer(event)
                delivered += 1
        return delivered

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        if job_id is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions if s.job_id in (None, job_id))

    def close(self):
        """Tear down: every subscriber's iterator ends."""
        self._closed = True
        for subscription in list(self._subscriptions):
            self.unsubscribe(subscription)
