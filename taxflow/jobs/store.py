"""
Job Store

Durable storage for Job records. The scheduler's working set is only a cache;
every status transition goes through a store write first.

Two backends:
- InMemoryJobStore: single-process store for tests and local runs
- SupabaseJobStore: the `background_jobs` table
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from taxflow.jobs.errors import JobValidationError, StoreConflict, StoreError
from taxflow.jobs.job_types import (
    Job, JobStatus, SchedulerStats, TERMINAL_STATUSES
)

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = (
    "created_at", "updated_at", "started_at", "completed_at",
    "priority", "status", "task_type", "attempt",
)

ACTIVE_STATUSES = [JobStatus.PENDING.value, JobStatus.RUNNING.value]
TERMINAL_STATUS_VALUES = [s.value for s in TERMINAL_STATUSES]


def _parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, JobStatus) else str(status)


def check_sort_field(sort_by: str) -> str:
    if sort_by not in SORTABLE_FIELDS:
        raise JobValidationError(
            f"Cannot sort by '{sort_by}'",
            {"allowed": list(SORTABLE_FIELDS)}
        )
    return sort_by


def compute_stats(rows: Iterable[Dict[str, Any]]) -> SchedulerStats:
    """
    Aggregate job rows into statistics.

    Each row needs status, task_type, attempt, started_at and completed_at.
    """
    by_status: Dict[str, int] = {s.value: 0 for s in JobStatus}
    by_task_type: Dict[str, int] = {}
    durations: List[float] = []
    total = 0
    total_retries = 0
    retried_jobs = 0

    for row in rows:
        total += 1
        status = _status_value(row.get("status"))
        by_status[status] = by_status.get(status, 0) + 1
        task_type = row.get("task_type") or "unknown"
        by_task_type[task_type] = by_task_type.get(task_type, 0) + 1

        retries = max(0, int(row.get("attempt") or 0) - 1)
        total_retries += retries
        if retries:
            retried_jobs += 1

        if status == JobStatus.COMPLETED.value:
            started = _parse_datetime(row.get("started_at"))
            completed = _parse_datetime(row.get("completed_at"))
            if started and completed:
                durations.append((completed - started).total_seconds() * 1000)

    finished = by_status[JobStatus.COMPLETED.value] + by_status[JobStatus.FAILED.value]

    return SchedulerStats(
        total=total,
        by_status=by_status,
        by_task_type=by_task_type,
        average_duration_ms=round(sum(durations) / len(durations), 1) if durations else None,
        total_retries=total_retries,
        failure_rate=round(by_status[JobStatus.FAILED.value] / finished, 4) if finished else 0.0,
        retry_rate=round(retried_jobs / total, 4) if total else 0.0,
    )


class JobStore(ABC):
    """Persistence contract the scheduler relies on."""

    @abstractmethod
    def create(self, job: Job) -> Job:
        """Insert a new job record."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        """Point lookup. Returns None when the job does not exist."""

    @abstractmethod
    def save(self, job: Job, expected_status: Optional[JobStatus] = None) -> Job:
        """
        Write the full record. When expected_status is given the write only
        happens if the stored status still matches, otherwise StoreConflict.
        """

    @abstractmethod
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
        """Filtered, sorted, paginated listing. Returns (jobs, total_count)."""

    @abstractmethod
    def list_active(self) -> List[Job]:
        """All pending and running jobs, used to seed the working set."""

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        """Remove a job record."""

    @abstractmethod
    def delete_terminal_before(self, cutoff: datetime) -> int:
        """Remove terminal jobs that finished before cutoff."""

    @abstractmethod
    def aggregate(self) -> SchedulerStats:
        """Counts by status/type, mean duration and retry figures."""


# ============================================================================
# In-memory backend
# ============================================================================

class InMemoryJobStore(JobStore):
    """
    Keeps serialized copies of each job so callers never share mutable
    state with the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._rows: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def _dump(job: Job) -> Dict[str, Any]:
        return job.model_dump(mode="json")

    def create(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._rows:
                raise StoreError(f"Job {job.id} already exists")
            self._rows[job.id] = self._dump(job)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            row = self._rows.get(job_id)
            return Job.model_validate(row) if row else None

    def save(self, job: Job, expected_status: Optional[JobStatus] = None) -> Job:
        with self._lock:
            current = self._rows.get(job.id)
            if expected_status is not None:
                if current is None or current["status"] != _status_value(expected_status):
                    raise StoreConflict(
                        f"Job {job.id} is no longer {_status_value(expected_status)}",
                        {"job_id": job.id}
                    )
            self._rows[job.id] = self._dump(job)
        return job

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
        check_sort_field(sort_by)
        wanted = {_status_value(s) for s in status} if status else None

        with self._lock:
            jobs = [Job.model_validate(row) for row in self._rows.values()]

        matched = [
            j for j in jobs
            if (owner_ref is None or j.owner_ref == owner_ref)
            and (wanted is None or j.status.value in wanted)
            and (task_type is None or j.task_type == task_type)
        ]

        # Missing values always sort last
        present = [j for j in matched if getattr(j, sort_by) is not None]
        missing = [j for j in matched if getattr(j, sort_by) is None]
        present.sort(
            key=lambda j: (_sort_value(getattr(j, sort_by)), j.sequence),
            reverse=descending
        )
        ordered = present + missing

        total = len(ordered)
        return ordered[skip:skip + max(0, limit)], total

    def list_active(self) -> List[Job]:
        with self._lock:
            return [
                Job.model_validate(row) for row in self._rows.values()
                if row["status"] in ACTIVE_STATUSES
            ]

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._rows.pop(job_id, None) is not None

    def delete_terminal_before(self, cutoff: datetime) -> int:
        removed = 0
        with self._lock:
            for job_id, row in list(self._rows.items()):
                completed_at = _parse_datetime(row.get("completed_at"))
                if row["status"] in TERMINAL_STATUS_VALUES and completed_at and completed_at < cutoff:
                    del self._rows[job_id]
                    removed += 1
        return removed

    def aggregate(self) -> SchedulerStats:
        with self._lock:
            rows = list(self._rows.values())
        return compute_stats(rows)


def _sort_value(value: Any) -> Any:
    if isinstance(value, JobStatus):
        return value.value
    return value


# ============================================================================
# Supabase backend
# ============================================================================

class SupabaseJobStore(JobStore):
    """Job records in the `background_jobs` table, one column per field."""

    table_name = "background_jobs"
    stats_columns = "status, task_type, attempt, started_at, completed_at"

    def __init__(self, supabase=None):
        if supabase is None:
            from taxflow.supabase_client import get_supabase
            supabase = get_supabase()
        if supabase is None:
            raise StoreError("Supabase is not configured")
        self.supabase = supabase

    def _table(self):
        return self.supabase.table(self.table_name)

    @staticmethod
    def _dump(job: Job) -> Dict[str, Any]:
        return job.model_dump(mode="json")

    def create(self, job: Job) -> Job:
        try:
            self._table().insert(self._dump(job)).execute()
            return job
        except Exception as e:
            logger.error(f"Error creating job {job.id}: {e}")
            raise StoreError(f"Failed to create job {job.id}") from e

    def get(self, job_id: str) -> Optional[Job]:
        try:
            result = self._table()\
                .select("*")\
                .eq("id", job_id)\
                .limit(1)\
                .execute()
        except Exception as e:
            logger.error(f"Error getting job {job_id}: {e}")
            raise StoreError(f"Failed to load job {job_id}") from e

        return Job.model_validate(result.data[0]) if result.data else None

    def save(self, job: Job, expected_status: Optional[JobStatus] = None) -> Job:
        row = self._dump(job)
        try:
            if expected_status is None:
                self._table().upsert(row).execute()
                return job

            result = self._table()\
                .update(row)\
                .eq("id", job.id)\
                .eq("status", _status_value(expected_status))\
                .execute()
        except Exception as e:
            logger.error(f"Error saving job {job.id}: {e}")
            raise StoreError(f"Failed to save job {job.id}") from e

        if not result.data:
            raise StoreConflict(
                f"Job {job.id} is no longer {_status_value(expected_status)}",
                {"job_id": job.id}
            )
        return job

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
        check_sort_field(sort_by)
        try:
            query = self._table().select("*", count="exact")

            if owner_ref:
                query = query.eq("owner_ref", owner_ref)

            if status:
                query = query.in_("status", [_status_value(s) for s in status])

            if task_type:
                query = query.eq("task_type", task_type)

            result = query\
                .order(sort_by, desc=descending)\
                .range(skip, skip + limit - 1)\
                .execute()
        except Exception as e:
            logger.error(f"Error listing jobs: {e}")
            raise StoreError("Failed to list jobs") from e

        rows = result.data or []
        total = result.count if getattr(result, "count", None) is not None else len(rows)
        return [Job.model_validate(r) for r in rows], total

    def list_active(self) -> List[Job]:
        try:
            result = self._table()\
                .select("*")\
                .in_("status", ACTIVE_STATUSES)\
                .execute()
        except Exception as e:
            logger.error(f"Error loading active jobs: {e}")
            raise StoreError("Failed to load active jobs") from e

        return [Job.model_validate(r) for r in result.data or []]

    def delete(self, job_id: str) -> bool:
        try:
            result = self._table().delete().eq("id", job_id).execute()
        except Exception as e:
            logger.error(f"Error deleting job {job_id}: {e}")
            raise StoreError(f"Failed to delete job {job_id}") from e
        return bool(result.data)

    def delete_terminal_before(self, cutoff: datetime) -> int:
        try:
            result = self._table()\
                .delete()\
                .in_("status", TERMINAL_STATUS_VALUES)\
                .lt("completed_at", cutoff.isoformat())\
                .execute()
        except Exception as e:
            logger.error(f"Error cleaning up jobs: {e}")
            raise StoreError("Failed to clean up jobs") from e
        return len(result.data or [])

    def aggregate(self) -> SchedulerStats:
        try:
            result = self._table().select(self.stats_columns).execute()
        except Exception as e:
            logger.error(f"Error computing job statistics: {e}")
            raise StoreError("Failed to compute job statistics") from e
        return compute_stats(result.data or [])
