"""
Job Event Sinks

The scheduler reports lifecycle changes (created, status changed, progress
updated) to an event sink. Delivery is best-effort: a sink may drop events, and
the scheduler never lets a sink failure interrupt job processing.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set

from taxflow.jobs.job_types import Job, JobEvent, JobEventType

logger = logging.getLogger(__name__)


class EventSink(ABC):
    """Receives job lifecycle notifications."""

    @abstractmethod
    def notify(self, job_id: str, event_type: JobEventType, snapshot: Job) -> None:
        """Deliver one event. Must not block."""


class NullEventSink(EventSink):
    def notify(self, job_id: str, event_type: JobEventType, snapshot: Job) -> None:
        return None


class LoggingEventSink(EventSink):
    """Writes every event to the application log."""

    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    def notify(self, job_id: str, event_type: JobEventType, snapshot: Job) -> None:
        logger.log(
            self.level,
            f"[Job {job_id}] {event_type.value}: status={snapshot.status.value} "
            f"progress={snapshot.progress.current:g}/{snapshot.progress.total:g}"
        )


class CompositeEventSink(EventSink):
    """Fans each event out to several sinks; one failing sink does not starve the rest."""

    def __init__(self, sinks: List[EventSink]):
        self.sinks = list(sinks)

    def notify(self, job_id: str, event_type: JobEventType, snapshot: Job) -> None:
        for sink in self.sinks:
            try:
                sink.notify(job_id, event_type, snapshot)
            except Exception as e:
                logger.warning(f"Event sink {type(sink).__name__} failed for job {job_id}: {e}")


class _Subscription:
    def __init__(self, owner_ref: str, loop: asyncio.AbstractEventLoop, max_queue: int):
        self.owner_ref = owner_ref
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.dropped = 0

    def offer(self, event: JobEvent):
        # Runs on the subscriber's loop
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1


class BroadcastEventSink(EventSink):
    """
    In-process pub/sub keyed by owner_ref, feeding the SSE endpoint.

    Each subscriber gets a bounded queue; events for a slow subscriber are
    dropped rather than buffered without limit. notify() may be called from
    executor threads, so delivery hops onto the subscriber's loop.
    """

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Set[_Subscription]] = {}

    def subscribe(self, owner_ref: str) -> _Subscription:
        """Register a subscriber. Must be called from a running event loop."""
        subscription = _Subscription(owner_ref, asyncio.get_running_loop(), self.max_queue)
        with self._lock:
            self._subscriptions.setdefault(owner_ref, set()).add(subscription)
        logger.debug(f"SSE subscriber added for {owner_ref}")
        return subscription

    def unsubscribe(self, subscription: _Subscription):
        with self._lock:
            subs = self._subscriptions.get(subscription.owner_ref)
            if subs is not None:
                subs.discard(subscription)
                if not subs:
                    del self._subscriptions[subscription.owner_ref]

    def subscriber_count(self, owner_ref: Optional[str] = None) -> int:
        with self._lock:
            if owner_ref is not None:
                return len(self._subscriptions.get(owner_ref, ()))
            return sum(len(s) for s in self._subscriptions.values())

    def notify(self, job_id: str, event_type: JobEventType, snapshot: Job) -> None:
        with self._lock:
            subs = list(self._subscriptions.get(snapshot.owner_ref, ()))
        if not subs:
            return

        event = JobEvent.from_job(snapshot, event_type)
        for sub in subs:
            if sub.loop.is_closed():
                self.unsubscribe(sub)
                continue
            sub.loop.call_soon_threadsafe(sub.offer, event)


class SupabaseEventSink(EventSink):
    """Appends events to the `job_events` table."""

    table_name = "job_events"

    def __init__(self, supabase=None):
        if supabase is None:
            from taxflow.supabase_client import get_supabase
            supabase = get_supabase()
        self.supabase = supabase

    def notify(self, job_id: str, event_type: JobEventType, snapshot: Job) -> None:
        if self.supabase is None:
            return
        event = JobEvent.from_job(snapshot, event_type)
        try:
            self.supabase.table(self.table_name).insert(event.model_dump(mode="json")).execute()
        except Exception as e:
            logger.error(f"Error logging event for job {job_id}: {e}")
