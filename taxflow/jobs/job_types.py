"""
Job Types and Schemas

Defines enums and Pydantic models for the background job scheduler: the Job
record itself, its retry/timeout policy, progress, error history and log ring,
plus the event and statistics payloads exposed to external consumers.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskType(str, Enum):
    """Task types shipped with TaxFlow. Other subsystems may register more."""
    DOCUMENT_PROCESSING = "document_processing"
    TAX_CALCULATION = "tax_calculation"
    FORM_GENERATION = "form_generation"
    DATA_VALIDATION = "data_validation"
    REPORT_GENERATION = "report_generation"
    NOTIFICATION = "notification"
    CLEANUP = "cleanup"
    BACKUP = "backup"
    OTHER = "other"


class JobStatus(str, Enum):
    """Status of a background job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Failed jobs can still be reopened by an explicit retry; these cannot.
FROZEN_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})


class JobPriority(str, Enum):
    """Named priority bands accepted at submission."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


PRIORITY_VALUES = {
    JobPriority.LOW: 1,
    JobPriority.MEDIUM: 5,
    JobPriority.HIGH: 10,
}

MIN_PRIORITY = 1
MAX_PRIORITY = 10


def resolve_priority(priority: Union[JobPriority, str, int, None]) -> int:
    """Map a priority band (or raw number) onto the numeric scale."""
    if priority is None:
        return PRIORITY_VALUES[JobPriority.MEDIUM]
    if isinstance(priority, bool):
        raise ValueError(f"Invalid priority: {priority!r}")
    if isinstance(priority, int):
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValueError(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")
        return priority
    try:
        return PRIORITY_VALUES[JobPriority(str(priority).lower())]
    except ValueError:
        raise ValueError(f"Invalid priority: {priority!r}")


class JobEventType(str, Enum):
    """Lifecycle notifications delivered to the event sink."""
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    PROGRESS_UPDATED = "progress_updated"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ErrorCode(str, Enum):
    """Codes recorded in a job's error history."""
    EXECUTION_ERROR = "ExecutionError"
    TIMEOUT = "Timeout"
    WORKER_LOST = "WorkerLost"
    EXPIRED = "Expired"


class JobProgress(BaseModel):
    """Progress of the current attempt."""
    current: float = Field(default=0, ge=0)
    total: float = Field(default=100, gt=0)
    message: Optional[str] = None

    @property
    def percent(self) -> float:
        return round(min(100.0, self.current / self.total * 100), 2)


class JobPolicy(BaseModel):
    """Retry and timeout policy. Fixed for the lifetime of the job."""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    retry_base_delay_ms: int = Field(default=5000, ge=0)
    timeout_ms: int = Field(default=300000, gt=0)


class JobErrorEntry(BaseModel):
    """One failed attempt."""
    code: str
    message: str
    occurred_at: datetime = Field(default_factory=utcnow)
    retryable: bool = True
    attempt: int = 0
    details: Optional[Dict[str, Any]] = None


class JobLogEntry(BaseModel):
    level: LogLevel = LogLevel.INFO
    message: str
    occurred_at: datetime = Field(default_factory=utcnow)
    data: Optional[Dict[str, Any]] = None


class Job(BaseModel):
    """
    A persisted unit of asynchronous work.

    Only the scheduler changes status; executors touch progress, logs and
    result through their JobContext.
    """
    id: str
    owner_ref: str
    task_type: str
    status: JobStatus = JobStatus.PENDING
    priority: int = Field(default=5, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    payload: Any = None
    result: Any = None
    progress: JobProgress = Field(default_factory=JobProgress)
    policy: JobPolicy = Field(default_factory=JobPolicy)
    attempt: int = Field(default=0, ge=0)
    errors: List[JobErrorEntry] = Field(default_factory=list)
    logs: List[JobLogEntry] = Field(default_factory=list)

    # Informational graph links; admission does not wait on them.
    dependencies: List[str] = Field(default_factory=list)
    parent_id: Optional[str] = None
    child_ids: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    # Submission order, used to keep FIFO stable when created_at collides.
    sequence: int = 0

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    attempt_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    scheduled_not_before: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_frozen(self) -> bool:
        return self.status in FROZEN_STATUSES

    @property
    def can_retry(self) -> bool:
        return self.status == JobStatus.FAILED and self.attempt <= self.policy.max_retries

    def is_due(self, now: datetime) -> bool:
        return self.scheduled_not_before is None or self.scheduled_not_before <= now

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def is_timed_out(self, now: datetime) -> bool:
        if self.status != JobStatus.RUNNING or self.attempt_started_at is None:
            return False
        elapsed_ms = (now - self.attempt_started_at).total_seconds() * 1000
        return elapsed_ms > self.policy.timeout_ms

    def elapsed_ms(self, now: datetime) -> int:
        if not self.started_at:
            return 0
        end = self.completed_at if self.is_terminal and self.completed_at else now
        return int((end - self.started_at).total_seconds() * 1000)

    @property
    def duration_ms(self) -> Optional[int]:
        if not self.started_at or not self.completed_at:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def estimated_time_remaining_ms(self, now: datetime) -> Optional[int]:
        """Linear extrapolation from the current attempt's progress."""
        if self.status != JobStatus.RUNNING or not self.attempt_started_at:
            return None
        ratio = self.progress.current / self.progress.total
        if ratio <= 0:
            return None
        elapsed = (now - self.attempt_started_at).total_seconds() * 1000
        return max(0, int(elapsed / ratio - elapsed))


# ============================================================================
# Event and statistics payloads
# ============================================================================

class JobEvent(BaseModel):
    """Payload handed to external subscribers."""
    job_id: str
    owner_ref: str
    type: JobEventType
    status: JobStatus
    progress: JobProgress
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_job(cls, job: Job, event_type: JobEventType) -> "JobEvent":
        return cls(
            job_id=job.id,
            owner_ref=job.owner_ref,
            type=event_type,
            status=job.status,
            progress=job.progress.model_copy(),
        )


class SchedulerStats(BaseModel):
    """Aggregate view for operational monitoring."""
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_task_type: Dict[str, int] = Field(default_factory=dict)
    average_duration_ms: Optional[float] = None
    total_retries: int = 0
    failure_rate: float = 0.0
    retry_rate: float = 0.0
    queue_depth: int = 0
    active_attempts: int = 0
    max_concurrent_jobs: int = 0
    running: bool = False


# ============================================================================
# API Schemas
# ============================================================================

class SubmitJobRequest(BaseModel):
    """Request to submit a new background job."""
    session_id: str = Field(..., min_length=1)
    task_type: str = Field(..., min_length=1)
    payload: Any = None
    priority: Union[JobPriority, int] = JobPriority.MEDIUM
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    retry_delay_ms: Optional[int] = Field(default=None, ge=0)
    dependencies: List[str] = Field(default_factory=list)
    parent_job_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class ProgressUpdateRequest(BaseModel):
    current: float
    total: Optional[float] = Field(default=None, gt=0)
    message: Optional[str] = None


class LogRequest(BaseModel):
    level: LogLevel = LogLevel.INFO
    message: str = Field(..., min_length=1)
    data: Optional[Dict[str, Any]] = None


class SubmitJobResponse(BaseModel):
    job_id: str
    status: JobStatus
    priority: int
    created_at: datetime


class JobStatusResponse(BaseModel):
    """A job plus derived timing and action availability."""
    job: Job
    percent: float
    elapsed_ms: int
    estimated_time_remaining_ms: Optional[int] = None
    can_cancel: bool
    can_retry: bool

    @classmethod
    def from_job(cls, job: Job, now: Optional[datetime] = None) -> "JobStatusResponse":
        now = now or utcnow()
        return cls(
            job=job,
            percent=job.progress.percent,
            elapsed_ms=job.elapsed_ms(now),
            estimated_time_remaining_ms=job.estimated_time_remaining_ms(now),
            can_cancel=not job.is_terminal,
            can_retry=job.can_retry,
        )


class JobListResponse(BaseModel):
    jobs: List[Job]
    total_count: int
    has_more: bool


class JobLogsResponse(BaseModel):
    job_id: str
    logs: List[JobLogEntry]
    total_count: int


class CancelJobResponse(BaseModel):
    success: bool
    message: str
    job_id: str


class RetryJobResponse(BaseModel):
    success: bool
    message: str
    job_id: str
    status: Optional[JobStatus] = None
