"""
Job Scheduler

Admits, runs and accounts for background jobs under a fixed concurrency
ceiling:
- Submission, cancellation and manual retry
- Priority/FIFO admission on a fixed cadence
- Dispatch of attempts to registered handlers
- Exponential backoff retries and timeout detection
- Progress/log propagation to the job store and event sink
"""

import asyncio
import copy
import itertools
import logging
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4
import threading

from pydantic import ValidationError as PydanticValidationError

from taxflow.config import SchedulerSettings
from taxflow.jobs.errors import (
    JobCancelled, JobNotFound, JobValidationError, NonRetryableJobError,
    StoreConflict, StoreError, UnknownTaskType
)
from taxflow.jobs.events import EventSink, NullEventSink
from taxflow.jobs.job_types import (
    ErrorCode, Job, JobErrorEntry, JobEventType, JobLogEntry, JobPolicy,
    JobPriority, JobProgress, JobStatus, LogLevel, SchedulerStats,
    resolve_priority, utcnow
)
from taxflow.jobs.registry import TaskDefinition, TaskRegistry
from taxflow.jobs.runner import Attempt, JobContext, execute_handler
from taxflow.jobs.store import JobStore
from taxflow.jobs.utils import (
    compute_backoff_ms, ensure_json_compatible, format_duration, next_run_at,
    safe_json_value
)

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Scheduler:
    """
    Owns the in-memory working set of non-terminal jobs and the pool of
    running attempts.

    Constructed explicitly and started/stopped by the process that owns it.
    All job mutations go through _commit(), which persists before the working
    set changes and before any event is emitted.

    Several schedulers may share one store. The working set then holds the
    due pending rows (refreshed from the store every admission cycle) plus
    the jobs this process is running; the compare-and-set on `pending` lets
    only one of them claim a job. Running jobs are kept alive by a heartbeat
    on `updated_at`, and a running row whose heartbeat stopped is reclaimed
    as WorkerLost.
    """

    def __init__(
        self,
        store: JobStore,
        registry: TaskRegistry,
        event_sink: Optional[EventSink] = None,
        settings: Optional[SchedulerSettings] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.registry = registry
        self.event_sink = event_sink or NullEventSink()
        self.settings = settings or SchedulerSettings()
        self._clock = clock

        self._lock = threading.RLock()
        self._working_set: Dict[str, Job] = {}
        self._active: Dict[str, Attempt] = {}
        self._sequence = itertools.count(1)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._loop_tasks: List[asyncio.Task] = []

    # ======================================================================
    # Lifecycle
    # ======================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def max_concurrent_jobs(self) -> int:
        return self.settings.max_concurrent_jobs

    async def start(self):
        """Rebuild the working set from the store and start the loops."""
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        self.registry.freeze()
        self.recover()

        self._running = True
        self._stop_event = asyncio.Event()
        self._loop_tasks = [
            asyncio.create_task(self._admission_loop()),
            asyncio.create_task(self._timeout_loop()),
            asyncio.create_task(self._heartbeat_loop()),
        ]
        logger.info(
            f"Scheduler started: concurrency={self.max_concurrent_jobs}, "
            f"poll_interval={self.settings.poll_interval}s, "
            f"heartbeat_interval={self.settings.heartbeat_interval}s, "
            f"task_types={self.registry.names()}"
        )

    async def stop(self):
        """
        Stop the loops and signal in-flight attempts.

        Interrupted jobs stay `running` in the store. Once their heartbeat is
        older than `lost_after_ms`, the next scheduler to look reclaims them
        as lost attempts.
        """
        if not self._running:
            return

        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

        with self._lock:
            attempts = list(self._active.values())
            self._active.clear()

        for attempt in attempts:
            logger.info(f"Signalling active job {attempt.job_id} for shutdown")
            attempt.signal()

        pending = self._loop_tasks + [a.task for a in attempts if a.task is not None]
        for task in self._loop_tasks:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._loop_tasks = []

        with self._lock:
            self._working_set.clear()
        logger.info("Scheduler stopped")

    def recover(self) -> int:
        """
        Seed the working set from the store.

        Pending jobs join the working set. Jobs found `running` whose
        heartbeat is older than `lost_after_ms` are failed with WorkerLost and
        go through the normal retry decision; fresher ones belong to a live
        process and are left alone.
        """
        listed_at = self._now()
        jobs = self.store.list_active()

        with self._lock:
            max_sequence = 0
            for job in jobs:
                max_sequence = max(max_sequence, job.sequence)
            self._sequence = itertools.count(max_sequence + 1)
            self._merge_stored(jobs, listed_at)

        lost = self._reclaim_lost(jobs, listed_at)
        logger.info(f"Recovered {len(jobs)} active job(s) from the store ({len(lost)} interrupted)")
        return len(jobs)

    def _reclaim_lost(self, stored: List[Job], now: datetime) -> List[str]:
        """Fail running rows that no live attempt has heartbeated lately."""
        cutoff = now - timedelta(milliseconds=self.settings.lost_after_ms)
        with self._lock:
            lost = [
                job for job in stored
                if job.status == JobStatus.RUNNING
                and job.id not in self._active
                and _as_utc(job.updated_at) <= cutoff
            ]

        reclaimed = []
        for job in lost:
            logger.warning(
                f"Job {job.id} has had no heartbeat since {job.updated_at.isoformat()}; "
                f"reclaiming attempt {job.attempt}"
            )
            failed = self._fail_current(
                job.id,
                ErrorCode.WORKER_LOST,
                "The worker stopped while this job was running",
                retryable=True,
                stored=job
            )
            if failed is not None:
                reclaimed.append(job.id)
        return reclaimed

    def _merge_stored(self, stored: List[Job], listed_at: datetime):
        """
        Bring the working set in line with a listing of active rows.
        Caller holds the lock.

        Jobs with a live attempt here are authoritative and untouched. Pending
        rows are taken unless the local copy is newer; anything else (claimed
        or finished by another process, or deleted) leaves the working set.
        """
        fresh = {job.id: job for job in stored}
        for job_id, job in list(self._working_set.items()):
            if job_id in self._active:
                continue
            current = fresh.get(job_id)
            if current is None and _as_utc(job.updated_at) >= listed_at:
                # Written after the listing was taken
                continue
            if current is not None and current.status == JobStatus.PENDING:
                if _as_utc(job.updated_at) > _as_utc(current.updated_at):
                    continue
                self._working_set[job_id] = current
                continue
            del self._working_set[job_id]

        for job in stored:
            if job.status == JobStatus.PENDING and job.id not in self._working_set:
                self._working_set[job.id] = job

    async def _admission_loop(self):
        """Runs admission cycles on a fixed cadence."""
        while self._running:
            try:
                await self.run_admission_cycle()
            except Exception as e:
                logger.error(f"Error in admission loop: {e}")

            if await self._wait_for_stop(self.settings.poll_interval):
                break

    async def _timeout_loop(self):
        """Periodically fails attempts that overran their timeout."""
        while self._running:
            try:
                self.sweep_timeouts()
            except Exception as e:
                logger.error(f"Error in timeout sweep: {e}")

            if await self._wait_for_stop(self.settings.timeout_sweep_interval):
                break

    async def _heartbeat_loop(self):
        """Keeps `updated_at` of this process's running jobs fresh."""
        while self._running:
            if await self._wait_for_stop(self.settings.heartbeat_interval):
                break
            try:
                self.heartbeat()
            except Exception as e:
                logger.error(f"Error in heartbeat: {e}")

    async def _wait_for_stop(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # ======================================================================
    # Submission
    # ======================================================================

    def submit(
        self,
        owner_ref: str,
        task_type: str,
        payload: Any = None,
        priority: Union[JobPriority, str, int, None] = None,
        timeout_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_base_delay_ms: Optional[int] = None,
        dependencies: Optional[List[str]] = None,
        parent_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        scheduled_for: Optional[datetime] = None,
        expires_at: Optional[datetime] = None
    ) -> Job:
        """
        Create a pending job.

        Raises UnknownTaskType or JobValidationError without creating a record.
        """
        definition = self.registry.resolve(task_type)

        if not owner_ref:
            raise JobValidationError("owner_ref is required")

        ensure_json_compatible(payload)
        definition.validate_payload(payload)

        try:
            numeric_priority = resolve_priority(priority)
        except ValueError as e:
            raise JobValidationError(str(e)) from e

        try:
            policy = JobPolicy(
                max_retries=self.settings.default_max_retries if max_retries is None else max_retries,
                retry_base_delay_ms=(
                    self.settings.default_retry_delay_ms
                    if retry_base_delay_ms is None else retry_base_delay_ms
                ),
                timeout_ms=self.settings.default_timeout_ms if timeout_ms is None else timeout_ms,
            )
        except PydanticValidationError as e:
            raise JobValidationError(
                "Invalid retry/timeout policy",
                {"errors": e.errors(include_url=False, include_context=False)}
            ) from e

        now = self._now()
        job = Job(
            id=str(uuid4()),
            owner_ref=owner_ref,
            task_type=definition.name,
            priority=numeric_priority,
            payload=copy.deepcopy(payload),
            policy=policy,
            dependencies=list(dependencies or []),
            parent_id=parent_id,
            tags=list(tags or []),
            sequence=next(self._sequence),
            created_at=now,
            updated_at=now,
            scheduled_not_before=_as_utc(scheduled_for),
            expires_at=_as_utc(expires_at),
        )
        self._add_log(job, LogLevel.INFO, "Job created and queued", {
            "task_type": job.task_type, "priority": job.priority
        })

        self.store.create(job)
        with self._lock:
            # A scheduler that is not admitting leaves the job to whichever
            # process is; its next admission cycle picks the row up.
            if self._running:
                self._working_set[job.id] = job
            snapshot = job.model_copy(deep=True)

        logger.info(
            f"Created job {job.id} of type {job.task_type} "
            f"(owner={owner_ref}, priority={job.priority})"
        )
        self._emit(snapshot, JobEventType.CREATED)

        if parent_id:
            self._link_child(parent_id, job.id)

        return snapshot

    def _link_child(self, parent_id: str, child_id: str):
        """
        Record child_id on the parent when the parent can still change.

        A parent this process does not track is updated in the store only.
        """
        with self._lock:
            parent = self._load(parent_id)
            if parent is None or parent.is_terminal:
                logger.debug(f"Parent job {parent_id} not linkable for child {child_id}")
                return
            if child_id in parent.child_ids:
                return

            updated = parent.model_copy(deep=True)
            updated.child_ids.append(child_id)
            try:
                self._commit(updated, expected_status=parent.status, adopt=False)
            except StoreError as e:
                logger.warning(f"Could not link child {child_id} to parent {parent_id}: {e}")

    # ======================================================================
    # Cancel / retry
    # ======================================================================

    def cancel(self, job_id: str, reason: Optional[str] = None) -> bool:
        """
        Cancel a pending or running job.

        Returns False (and changes nothing) if the job is unknown or already
        terminal.
        """
        with self._lock:
            job = self._load(job_id)
            if job is None or job.is_terminal:
                return False

            now = self._now()
            updated = job.model_copy(deep=True)
            updated.status = JobStatus.CANCELLED
            if updated.completed_at is None:
                updated.completed_at = now
            self._add_log(updated, LogLevel.INFO, f"Job cancelled: {reason or 'cancelled by user'}")

            try:
                self._commit(updated, expected_status=job.status, adopt=False)
            except StoreConflict:
                self._resync(job_id)
                return False

            attempt = self._active.pop(job_id, None)
            snapshot = updated.model_copy(deep=True)

        if attempt is not None:
            attempt.signal()

        logger.info(f"Job {job_id} cancelled ({reason or 'no reason given'})")
        self._emit(snapshot, JobEventType.STATUS_CHANGED)
        return True

    def retry(self, job_id: str) -> bool:
        """
        Reopen a failed job that still has retry budget left.

        The job goes back to pending immediately, without backoff.
        `completed_at` keeps the time of the first terminal transition.
        """
        with self._lock:
            job = self._load(job_id)
            if job is None or not job.can_retry:
                return False

            updated = job.model_copy(deep=True)
            updated.status = JobStatus.PENDING
            updated.scheduled_not_before = None
            updated.attempt_started_at = None
            self._add_log(
                updated, LogLevel.INFO,
                f"Manual retry requested (attempt {updated.attempt}/{updated.policy.max_retries + 1} used)"
            )

            try:
                self._commit(updated, expected_status=JobStatus.FAILED, adopt=self._running)
            except StoreConflict:
                self._resync(job_id)
                return False
            snapshot = updated.model_copy(deep=True)

        logger.info(f"Job {job_id} re-queued by manual retry")
        self._emit(snapshot, JobEventType.STATUS_CHANGED)
        return True

    # ======================================================================
    # Executor callbacks
    # ======================================================================

    def update_progress(
        self,
        job_id: str,
        current: float,
        total: Optional[float] = None,
        message: Optional[str] = None,
        generation: Optional[int] = None
    ) -> Optional[Job]:
        """
        Record progress for a running job.

        `current` is clamped into [0, total] and never moves backwards within
        an attempt. Returns None when the update was ignored (job not running,
        or the caller's attempt is stale).
        """
        if total is not None and total <= 0:
            raise JobValidationError("total must be positive")

        with self._lock:
            job = self._working_set.get(job_id)
            if job is None or job.status != JobStatus.RUNNING:
                return None
            if generation is not None and generation != job.attempt:
                return None

            new_total = float(total) if total is not None else job.progress.total
            clamped = min(max(float(current), 0.0), new_total)
            clamped = max(clamped, min(job.progress.current, new_total))

            updated = job.model_copy(deep=True)
            updated.progress = JobProgress(
                current=clamped,
                total=new_total,
                message=message if message is not None else job.progress.message,
            )

            try:
                self._commit(updated, expected_status=JobStatus.RUNNING)
            except StoreConflict:
                self._resync(job_id)
                return None
            snapshot = updated.model_copy(deep=True)

        logger.debug(f"Job {job_id} progress {clamped:g}/{new_total:g}")
        self._emit(snapshot, JobEventType.PROGRESS_UPDATED)
        return snapshot

    def append_log(
        self,
        job_id: str,
        level: Union[LogLevel, str],
        message: str,
        data: Optional[Dict[str, Any]] = None,
        generation: Optional[int] = None
    ) -> bool:
        """Append to the log ring of a pending or running job."""
        try:
            level = LogLevel(level)
        except ValueError as e:
            raise JobValidationError(f"Invalid log level: {level!r}") from e

        with self._lock:
            job = self._working_set.get(job_id)
            if job is None:
                # Only a queued row may be written from outside; a running
                # row belongs to the process executing it.
                job = self.store.get(job_id)
                if job is None or job.status != JobStatus.PENDING:
                    return False
            if job.is_terminal:
                return False
            if generation is not None and (job.status != JobStatus.RUNNING or generation != job.attempt):
                return False

            updated = job.model_copy(deep=True)
            self._add_log(updated, level, message, safe_json_value(data) if data else None)
            try:
                self._commit(updated, expected_status=job.status, adopt=False)
            except StoreConflict:
                self._resync(job_id)
                return False
        return True

    # ======================================================================
    # Admission & dispatch
    # ======================================================================

    async def run_admission_cycle(self) -> List[str]:
        """
        Admit as many due pending jobs as there are free slots.

        Highest priority first, then oldest first. Returns the admitted ids.

        The working set is first refreshed from the store, which also picks
        up jobs submitted through other processes and reclaims running rows
        whose heartbeat stopped.
        """
        self._loop = asyncio.get_running_loop()

        listed_at = self._now()
        try:
            stored = self.store.list_active()
        except StoreError as e:
            logger.error(f"Store unavailable during admission, skipping cycle: {e}")
            return []

        with self._lock:
            self._merge_stored(stored, listed_at)
        self._reclaim_lost(stored, listed_at)

        admitted: List[Job] = []
        with self._lock:
            slots_free = self.max_concurrent_jobs - len(self._active)
            if slots_free <= 0:
                return []

            now = self._now()
            candidates = [
                job for job in self._working_set.values()
                if job.status == JobStatus.PENDING
                and job.is_due(now)
                and not job.is_expired(now)
            ]
            candidates.sort(key=lambda j: (-j.priority, j.created_at, j.sequence))

            for job in candidates[:slots_free]:
                try:
                    definition = self.registry.resolve(job.task_type)
                except UnknownTaskType:
                    self._fail_unroutable(job)
                    continue

                try:
                    started = self._begin_attempt(job, definition, now)
                except StoreConflict:
                    self._resync(job.id)
                    continue
                except StoreError as e:
                    logger.error(f"Store unavailable during admission, skipping cycle: {e}")
                    break
                admitted.append(started)

        for job in admitted:
            logger.info(
                f"Starting job {job.id} of type {job.task_type} "
                f"(attempt {job.attempt}/{job.policy.max_retries + 1}, priority={job.priority})"
            )
            self._emit(job, JobEventType.STATUS_CHANGED)

        return [job.id for job in admitted]

    def _begin_attempt(self, job: Job, definition: TaskDefinition, now: datetime) -> Job:
        """pending -> running, then dispatch. Caller holds the lock."""
        updated = job.model_copy(deep=True)
        updated.status = JobStatus.RUNNING
        updated.attempt += 1
        if updated.started_at is None:
            updated.started_at = now
        updated.attempt_started_at = now
        updated.scheduled_not_before = None
        updated.progress = JobProgress(total=job.progress.total)
        self._add_log(
            updated, LogLevel.INFO,
            f"Attempt {updated.attempt}/{updated.policy.max_retries + 1} started"
        )

        self._commit(updated, expected_status=JobStatus.PENDING)

        ctx = JobContext(self, updated, loop=self._loop)
        attempt = Attempt(
            job_id=updated.id,
            generation=updated.attempt,
            context=ctx,
            started_at=now,
        )
        self._active[updated.id] = attempt
        attempt.task = self._loop.create_task(self._run_attempt(definition, attempt))
        return updated.model_copy(deep=True)

    def _fail_unroutable(self, job: Job):
        """A stored job whose task type is no longer registered."""
        logger.error(f"No handler registered for task type {job.task_type} (job {job.id})")
        self._fail_current(
            job.id,
            ErrorCode.EXECUTION_ERROR,
            f"No handler registered for task type {job.task_type}",
            retryable=False
        )

    async def _run_attempt(self, definition: TaskDefinition, attempt: Attempt):
        """Dispatch boundary: handler faults become recorded failures."""
        ctx = attempt.context
        try:
            result = await execute_handler(definition, ctx)
        except asyncio.CancelledError:
            logger.debug(f"Attempt {attempt.generation} of job {attempt.job_id} was cancelled")
            raise
        except JobCancelled:
            logger.info(f"Job {attempt.job_id} attempt {attempt.generation} stopped after cancellation")
        except NonRetryableJobError as e:
            self._complete_failure(attempt, ErrorCode.EXECUTION_ERROR, str(e), retryable=False, details=e.details)
        except Exception as e:
            logger.error(f"Job {attempt.job_id} attempt {attempt.generation} failed: {e}\n{traceback.format_exc()}")
            self._complete_failure(
                attempt,
                ErrorCode.EXECUTION_ERROR,
                str(e) or type(e).__name__,
                retryable=True,
                details={"exception": type(e).__name__}
            )
        else:
            self._complete_success(attempt, result, ctx.get_warnings())
        finally:
            self._release(attempt)

    def _release(self, attempt: Attempt):
        with self._lock:
            if self._active.get(attempt.job_id) is attempt:
                del self._active[attempt.job_id]

    def _is_current(self, attempt: Attempt) -> Optional[Job]:
        """The job, if `attempt` is still the live attempt. Caller holds the lock."""
        job = self._working_set.get(attempt.job_id)
        if job is None or job.status != JobStatus.RUNNING or job.attempt != attempt.generation:
            return None
        return job

    def _complete_success(self, attempt: Attempt, result: Any, warnings: List[str]):
        with self._lock:
            job = self._is_current(attempt)
            if job is None:
                logger.info(f"Ignoring result of stale attempt {attempt.generation} for job {attempt.job_id}")
                return

            now = self._now()
            updated = job.model_copy(deep=True)
            updated.status = JobStatus.COMPLETED
            updated.result = safe_json_value(result)
            updated.progress = JobProgress(
                current=updated.progress.total,
                total=updated.progress.total,
                message=updated.progress.message,
            )
            if updated.completed_at is None:
                updated.completed_at = now
            self._add_log(updated, LogLevel.INFO, "Job completed successfully", {
                "warnings_count": len(warnings)
            })

            try:
                self._commit(updated, expected_status=JobStatus.RUNNING)
            except StoreConflict:
                self._resync(attempt.job_id)
                return
            except StoreError as e:
                logger.error(f"Could not record completion of job {attempt.job_id}: {e}")
                return
            snapshot = updated.model_copy(deep=True)

        duration = (snapshot.completed_at - snapshot.started_at).total_seconds()
        logger.info(f"Job {snapshot.id} completed successfully in {format_duration(duration)}")
        self._emit(snapshot, JobEventType.STATUS_CHANGED)

    def _complete_failure(
        self,
        attempt: Attempt,
        code: ErrorCode,
        message: str,
        retryable: bool,
        details: Optional[Dict[str, Any]] = None
    ):
        failed = self._fail_current(
            attempt.job_id, code, message, retryable, details, generation=attempt.generation
        )
        if failed is None:
            logger.info(f"Ignoring failure of stale attempt {attempt.generation} for job {attempt.job_id}")

    def _fail_current(
        self,
        job_id: str,
        code: ErrorCode,
        message: str,
        retryable: bool,
        details: Optional[Dict[str, Any]] = None,
        generation: Optional[int] = None,
        stored: Optional[Job] = None
    ) -> Optional[Job]:
        """
        Record a failed attempt and decide between backoff retry and
        permanent failure.

        With `generation` set, only the matching running attempt may fail the job.
        `stored` supplies a row the working set does not hold (a reclaimed job).
        """
        with self._lock:
            job = self._working_set.get(job_id) or stored
            if job is None or job.is_terminal:
                return None
            if generation is not None and (job.status != JobStatus.RUNNING or job.attempt != generation):
                return None

            now = self._now()
            updated = job.model_copy(deep=True)
            updated.errors.append(JobErrorEntry(
                code=code.value,
                message=message,
                occurred_at=now,
                retryable=retryable,
                attempt=job.attempt,
                details=safe_json_value(details) if details else None,
            ))
            self._add_log(updated, LogLevel.ERROR, f"Error: {code.value} - {message}")

            if retryable and updated.attempt <= updated.policy.max_retries:
                attempt_no = max(updated.attempt, 1)
                delay_ms = compute_backoff_ms(updated.policy.retry_base_delay_ms, attempt_no)
                updated.status = JobStatus.PENDING
                updated.scheduled_not_before = next_run_at(now, updated.policy.retry_base_delay_ms, attempt_no)
                updated.attempt_started_at = None
                self._add_log(
                    updated, LogLevel.INFO,
                    f"Retry {updated.attempt}/{updated.policy.max_retries} scheduled in "
                    f"{format_duration(delay_ms / 1000)}"
                )
            else:
                updated.status = JobStatus.FAILED
                if updated.completed_at is None:
                    updated.completed_at = now

            try:
                self._commit(updated, expected_status=job.status)
            except StoreConflict:
                self._resync(job_id)
                return None
            except StoreError as e:
                logger.error(f"Could not record failure of job {job_id}: {e}")
                return None
            snapshot = updated.model_copy(deep=True)

        if snapshot.status == JobStatus.FAILED:
            logger.error(
                f"Job {job_id} failed permanently after {snapshot.attempt} attempt(s): "
                f"{code.value} - {message}"
            )
        else:
            logger.warning(
                f"Job {job_id} attempt {snapshot.attempt} failed ({code.value}); "
                f"retrying at {snapshot.scheduled_not_before.isoformat()}"
            )
        self._emit(snapshot, JobEventType.STATUS_CHANGED)
        return snapshot

    # ======================================================================
    # Timeout sweep
    # ======================================================================

    def sweep_timeouts(self) -> List[str]:
        """
        Fail running attempts past their timeout and pending jobs past their
        expiry. Returns the affected job ids.
        """
        now = self._now()
        with self._lock:
            timed_out = [
                job.id for job in self._working_set.values()
                if job.is_timed_out(now)
            ]
            expired = [
                job.id for job in self._working_set.values()
                if job.status == JobStatus.PENDING and job.is_expired(now)
            ]
            stale_attempts = [self._active.pop(job_id, None) for job_id in timed_out]

        for attempt in stale_attempts:
            if attempt is not None:
                attempt.signal()

        for job_id in timed_out:
            job = self._working_set.get(job_id)
            timeout_ms = job.policy.timeout_ms if job else None
            logger.warning(f"Job {job_id} exceeded its timeout of {timeout_ms}ms")
            self._fail_current(
                job_id,
                ErrorCode.TIMEOUT,
                f"Attempt exceeded timeout of {timeout_ms}ms",
                retryable=True
            )

        for job_id in expired:
            self._fail_current(
                job_id,
                ErrorCode.EXPIRED,
                "Job expired before it could run",
                retryable=False
            )

        return timed_out + expired

    def heartbeat(self) -> List[str]:
        """
        Touch `updated_at` of every job with a live attempt in this process.

        A lost compare-and-set means another process cancelled or reclaimed
        the job; the attempt is then dropped. Returns the touched job ids.
        """
        touched, lost = [], []
        with self._lock:
            for job_id in list(self._active):
                job = self._working_set.get(job_id)
                if job is None or job.status != JobStatus.RUNNING:
                    continue
                try:
                    self._commit(job.model_copy(deep=True), expected_status=JobStatus.RUNNING)
                except StoreConflict:
                    lost.append(job_id)
                    continue
                except StoreError as e:
                    logger.warning(f"Heartbeat skipped, store unavailable: {e}")
                    break
                touched.append(job_id)

        for job_id in lost:
            self._resync(job_id)
        if touched:
            logger.debug(f"Heartbeat for {len(touched)} running job(s)")
        return touched

    # ======================================================================
    # Queries
    # ======================================================================

    def get_job(self, job_id: str) -> Optional[Job]:
        """Live copy for jobs running here, otherwise the stored record."""
        with self._lock:
            if job_id in self._active:
                job = self._working_set.get(job_id)
                if job is not None:
                    return job.model_copy(deep=True)
        return self.store.get(job_id)

    def list_jobs(
        self,
        owner_ref: Optional[str] = None,
        status: Optional[List[JobStatus]] = None,
        task_type: Optional[str] = None,
        limit: int = 50,
        skip: int = 0,
        sort_by: str = "created_at",
        descending: bool = True
    ) -> Tuple[List[Job], int]:
        if limit < 1 or skip < 0:
            raise JobValidationError("limit must be positive and skip non-negative")
        return self.store.list_jobs(
            owner_ref=owner_ref,
            status=status,
            task_type=task_type,
            limit=limit,
            skip=skip,
            sort_by=sort_by,
            descending=descending
        )

    def get_job_logs(
        self,
        job_id: str,
        level: Optional[LogLevel] = None,
        limit: int = 100
    ) -> List[JobLogEntry]:
        """Most recent log entries, oldest first."""
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        logs = [entry for entry in job.logs if level is None or entry.level == level]
        return logs[-limit:] if limit > 0 else []

    def stats(self) -> SchedulerStats:
        """
        Store-wide aggregates plus this scheduler's live figures.

        A scheduler that is not admitting has no in-memory queue, so it
        reports the stored pending count as the queue depth.
        """
        stats = self.store.aggregate()
        with self._lock:
            if self._running:
                stats.queue_depth = len(self._working_set)
            else:
                stats.queue_depth = stats.by_status.get(JobStatus.PENDING.value, 0)
            stats.active_attempts = len(self._active)
        stats.max_concurrent_jobs = self.max_concurrent_jobs
        stats.running = self._running
        return stats

    def active_job_ids(self) -> List[str]:
        with self._lock:
            return list(self._active)

    def working_set_ids(self) -> List[str]:
        with self._lock:
            return list(self._working_set)

    # ======================================================================
    # Housekeeping
    # ======================================================================

    def delete_job(self, job_id: str) -> bool:
        """Cancel (if still active) and remove a job record."""
        job = self.get_job(job_id)
        if job is None:
            return False
        if not job.is_terminal:
            self.cancel(job_id, "Job deleted")

        with self._lock:
            self._working_set.pop(job_id, None)
        deleted = self.store.delete(job_id)
        logger.info(f"Job {job_id} deleted")
        return deleted

    def cleanup_completed(self, older_than_days: Optional[int] = None) -> int:
        """Retention sweep: remove terminal jobs finished more than N days ago."""
        days = self.settings.retention_days if older_than_days is None else older_than_days
        if days < 0:
            raise JobValidationError("older_than_days must not be negative")
        cutoff = self._now() - timedelta(days=days)
        removed = self.store.delete_terminal_before(cutoff)
        logger.info(f"Cleaned up {removed} job(s) finished before {cutoff.isoformat()}")
        return removed

    # ======================================================================
    # Internals
    # ======================================================================

    def _now(self) -> datetime:
        return self._clock()

    def _load(self, job_id: str) -> Optional[Job]:
        """Working-set copy if present, else the stored record. Caller holds the lock."""
        job = self._working_set.get(job_id)
        if job is not None:
            return job
        return self.store.get(job_id)

    def _add_log(self, job: Job, level: LogLevel, message: str, data: Optional[Dict[str, Any]] = None):
        job.logs.append(JobLogEntry(level=level, message=message, occurred_at=self._now(), data=data))
        cap = self.settings.log_capacity
        if len(job.logs) > cap:
            job.logs = job.logs[-cap:]

    def _commit(self, job: Job, expected_status: Optional[JobStatus] = None, adopt: bool = True) -> Job:
        """
        Persist, then apply to the working set. Caller holds the lock.

        With adopt=False a job the working set does not already hold is only
        written to the store.
        """
        job.updated_at = self._now()
        self.store.save(job, expected_status=expected_status)
        if job.is_terminal:
            self._working_set.pop(job.id, None)
        elif adopt or job.id in self._working_set:
            self._working_set[job.id] = job
        return job

    def _resync(self, job_id: str):
        """Reload a job after losing a compare-and-set against another writer."""
        try:
            fresh = self.store.get(job_id)
        except StoreError as e:
            logger.error(f"Could not reload job {job_id}: {e}")
            return

        with self._lock:
            attempt = self._active.get(job_id)
            if attempt is not None and (
                fresh is None
                or fresh.status != JobStatus.RUNNING
                or fresh.attempt != attempt.generation
            ):
                del self._active[job_id]
            else:
                attempt = None

            if fresh is None or fresh.is_terminal:
                self._working_set.pop(job_id, None)
            elif fresh.status == JobStatus.RUNNING and job_id not in self._active:
                # Running under another process
                self._working_set.pop(job_id, None)
            else:
                self._working_set[job_id] = fresh

        if attempt is not None:
            attempt.signal()
        logger.warning(f"Job {job_id} changed underneath the scheduler; reloaded from store")

    def _emit(self, snapshot: Job, event_type: JobEventType):
        try:
            self.event_sink.notify(snapshot.id, event_type, snapshot)
        except Exception as e:
            logger.warning(f"Event sink failed for job {snapshot.id} ({event_type.value}): {e}")


# ============================================================================
# Construction
# ============================================================================

def build_scheduler(
    settings: Optional[SchedulerSettings] = None,
    broadcaster: Optional[EventSink] = None,
    registry: Optional[TaskRegistry] = None
) -> Scheduler:
    """
    Wire up a Scheduler from settings: store backend, built-in handlers and
    the event sinks that are available.
    """
    from taxflow.jobs.events import CompositeEventSink, LoggingEventSink, SupabaseEventSink
    from taxflow.jobs.handlers import register_builtin_handlers
    from taxflow.jobs.store import InMemoryJobStore, SupabaseJobStore
    from taxflow.supabase_client import get_supabase

    settings = settings or SchedulerSettings.from_env()

    if settings.store_backend == "supabase":
        store = SupabaseJobStore()
    elif settings.store_backend == "memory":
        store = InMemoryJobStore()
    else:
        raise ValueError(f"Unknown job store backend: {settings.store_backend}")

    if registry is None:
        registry = TaskRegistry()
        register_builtin_handlers(registry)

    sinks: List[EventSink] = [LoggingEventSink()]
    if broadcaster is not None:
        sinks.append(broadcaster)
    supabase = get_supabase()
    if supabase is not None and settings.store_backend == "supabase":
        sinks.append(SupabaseEventSink(supabase))

    logger.info(
        f"Built scheduler with {settings.store_backend} store and "
        f"{len(sinks)} event sink(s)"
    )
    return Scheduler(store, registry, CompositeEventSink(sinks), settings)
