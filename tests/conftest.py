"""
Shared fixtures and helpers for the job scheduler tests.
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import pytest

# Keep tests off any real Supabase project
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("SUPABASE_URL", None)
os.environ.pop("SUPABASE_JWT_SECRET", None)

from taxflow.config import SchedulerSettings
from taxflow.jobs.events import EventSink
from taxflow.jobs.job_types import Job, JobEventType, JobStatus
from taxflow.jobs.registry import TaskRegistry
from taxflow.jobs.scheduler import Scheduler
from taxflow.jobs.store import InMemoryJobStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int):
        self.now += timedelta(milliseconds=ms)


class RecordingSink(EventSink):
    """Collects (job_id, event type, status) for assertions."""

    def __init__(self):
        self.events: List[Tuple[str, JobEventType, JobStatus]] = []

    def notify(self, job_id, event_type, snapshot):
        self.events.append((job_id, event_type, snapshot.status))

    def for_job(self, job_id: str) -> List[Tuple[JobEventType, JobStatus]]:
        return [(t, s) for jid, t, s in self.events if jid == job_id]


def make_scheduler(
    handlers: Optional[Dict[str, Callable]] = None,
    clock: Optional[FakeClock] = None,
    store: Optional[InMemoryJobStore] = None,
    **settings
) -> Scheduler:
    registry = TaskRegistry()
    for name, handler in (handlers or {}).items():
        registry.register(name, handler)
    return Scheduler(
        store or InMemoryJobStore(),
        registry,
        RecordingSink(),
        SchedulerSettings(**settings),
        clock=clock or FakeClock()
    )


async def drain(rounds: int = 5):
    """Let freshly created attempt tasks run to their first real suspension."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for_status(scheduler: Scheduler, job_id: str, status: JobStatus, timeout: float = 2.0) -> Job:
    """Poll until the job reaches `status` (for handlers that run in threads)."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        job = scheduler.get_job(job_id)
        if job is not None and job.status == status:
            return job
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Job {job_id} never reached {status.value}: {job.status if job else None}")
        await asyncio.sleep(0.01)


async def ok_handler(ctx):
    return {"echo": ctx.payload}


async def failing_handler(ctx):
    raise RuntimeError("boom")


async def blocking_handler(ctx):
    await ctx.sleep(3600)
    ctx.raise_if_cancelled()
    return {"finished": True}


@pytest.fixture
def clock():
    return FakeClock()
