"""In-process change notifications.

Mutating routes publish a small ``ChangeEvent`` on the family and child
topics; ``/events/stream`` forwards them to the browser as server-sent events
so open dashboards know to re-fetch. Events never carry row data.
"""
import asyncio
import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

from .models import utcnow

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0
QUEUE_SIZE = 100


def family_topic(family_id: int) -> str:
    return f"family:{family_id}"


def child_topic(child_id: int) -> str:
    return f"child:{child_id}"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: str
    family_id: int
    child_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_sse(self) -> str:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return f"event: change\ndata: {json.dumps(data)}\n\n"


Subscriber = Tuple[asyncio.AbstractEventLoop, "asyncio.Queue[ChangeEvent]"]


class ChangeBroker:
    """Topic fan-out safe to publish into from worker threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._topics: Dict[str, List[Subscriber]] = {}

    def subscribe(self, topics: Iterable[str]) -> "asyncio.Queue[ChangeEvent]":
        """Must be called from a running event loop."""
        queue: "asyncio.Queue[ChangeEvent]" = asyncio.Queue(maxsize=QUEUE_SIZE)
        subscriber = (asyncio.get_running_loop(), queue)
        with self._lock:
            for topic in topics:
                self._topics.setdefault(topic, []).append(subscriber)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[ChangeEvent]"):
        with self._lock:
            for topic in list(self._topics):
                remaining = [sub for sub in self._topics[topic] if sub[1] is not queue]
                if remaining:
                    self._topics[topic] = remaining
                else:
                    del self._topics[topic]

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._topics.get(topic, []))

    def publish(self, event: ChangeEvent) -> int:
        topics = [family_topic(event.family_id)]
        if event.child_id is not None:
            topics.append(child_topic(event.child_id))
        delivered: Set[int] = set()
        with self._lock:
            targets = [sub for topic in topics for sub in self._topics.get(topic, [])]
        for loop, queue in targets:
            if id(queue) in delivered:
                continue
            delivered.add(id(queue))
            try:
                loop.call_soon_threadsafe(self._offer, queue, event)
            except RuntimeError:
                logger.debug("Dropping event for a subscriber whose loop is closed")
        return len(delivered)

    @staticmethod
    def _offer(queue: "asyncio.Queue[ChangeEvent]", event: ChangeEvent):
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Change stream subscriber is lagging, dropped %s event", event.table)

    async def stream(
        self, topics: Iterable[str], keepalive: float = KEEPALIVE_SECONDS
    ) -> AsyncIterator[str]:
        queue = self.subscribe(topics)
        try:
            yield ": connected\n\n"
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield event.to_sse()
        finally:
            self.unsubscribe(queue)


broker = ChangeBroker()


def publish_change(table: str, kind: str, family_id: int, child_id: Optional[int] = None) -> int:
    return broker.publish(ChangeEvent(table=table, kind=kind, family_id=family_id, child_id=child_id))
