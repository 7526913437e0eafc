"""
Job Runner

Per-attempt execution support:
- JobContext, the object handed to each handler (progress, logs,
  cancellation, child jobs)
- execute_handler, which runs sync or async handlers off the admission loop
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from taxflow.jobs.errors import JobCancelled
from taxflow.jobs.job_types import Job, LogLevel
from taxflow.jobs.registry import TaskDefinition

if TYPE_CHECKING:
    from taxflow.jobs.scheduler import Scheduler

logger = logging.getLogger(__name__)


class JobContext:
    """
    Context object passed to job handlers.

    Bound to one attempt. Once the scheduler moves on (cancel, timeout, a newer
    attempt) every call from a stale context is ignored.
    """

    def __init__(self, scheduler: "Scheduler", job: Job, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.job_id = job.id
        self.task_type = job.task_type
        self.owner_ref = job.owner_ref
        self.payload = job.payload
        self.attempt = job.attempt
        self.max_retries = job.policy.max_retries
        self.parent_id = job.parent_id
        self.tags = list(job.tags)

        self._scheduler = scheduler
        self._loop = loop
        self._cancel_flag = threading.Event()
        self._cancel_event = asyncio.Event()
        self._warnings: List[str] = []

    def __repr__(self) -> str:
        return f"JobContext(job_id={self.job_id!r}, task_type={self.task_type!r}, attempt={self.attempt})"

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def report_progress(
        self,
        current: float,
        total: Optional[float] = None,
        message: Optional[str] = None
    ) -> bool:
        """Report progress for this attempt. Returns False if the attempt is stale."""
        if self.cancelled:
            return False
        job = self._scheduler.update_progress(
            self.job_id, current, total=total, message=message, generation=self.attempt
        )
        return job is not None

    def log(self, message: str, data: Optional[Dict[str, Any]] = None, level: LogLevel = LogLevel.INFO) -> bool:
        """Append a message to the job's log ring."""
        logger.info(f"[Job {self.job_id}] {message}")
        return self._scheduler.append_log(
            self.job_id, level, message, data=data, generation=self.attempt
        )

    def warn(self, message: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Log a warning; warnings are also returned by get_warnings()."""
        self._warnings.append(message)
        logger.warning(f"[Job {self.job_id}] Warning: {message}")
        return self._scheduler.append_log(
            self.job_id, LogLevel.WARN, message, data=data, generation=self.attempt
        )

    def get_warnings(self) -> List[str]:
        return list(self._warnings)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancel_flag.is_set()

    def check_cancelled(self) -> bool:
        """True once cancel, timeout or shutdown has been signalled."""
        return self.cancelled

    def raise_if_cancelled(self):
        if self.cancelled:
            raise JobCancelled(f"Job {self.job_id} attempt {self.attempt} was cancelled")

    def signal_cancel(self):
        """Called by the scheduler; safe from any thread."""
        self._cancel_flag.set()
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._cancel_event.set()
        else:
            loop.call_soon_threadsafe(self._cancel_event.set)

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, waking early on cancellation.
        Returns True if cancelled.
        """
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.cancelled

    def wait_cancelled(self, timeout: Optional[float] = None) -> bool:
        """Blocking counterpart of sleep() for handlers running in a thread."""
        return self._cancel_flag.wait(timeout)

    # ------------------------------------------------------------------
    # Child jobs
    # ------------------------------------------------------------------

    def create_child_job(self, task_type: str, payload: Any = None, **options) -> Job:
        """Submit a job that records this job as its parent."""
        child = self._scheduler.submit(
            self.owner_ref,
            task_type,
            payload,
            parent_id=self.job_id,
            **options
        )
        self.log(
            f"Created child job {child.id} of type {child.task_type}",
            {"child_job_id": child.id, "child_task_type": child.task_type}
        )
        return child


@dataclass
class Attempt:
    """Handle for one in-flight attempt."""
    job_id: str
    generation: int
    context: JobContext
    started_at: datetime
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def signal(self):
        self.context.signal_cancel()
        task = self.task
        if task is None or task.done():
            return
        loop = task.get_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            task.cancel()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(task.cancel)


async def execute_handler(definition: TaskDefinition, ctx: JobContext) -> Any:
    """Run a handler; sync handlers go to the loop's default thread pool."""
    if definition.is_async:
        return await definition.handler(ctx)

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, definition.handler, ctx)
