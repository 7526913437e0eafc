"""
TaxFlow Background Jobs Framework

This package provides the background job scheduler used for long-running work
like document processing, tax calculations, form generation and reports.

Key components:
- job_types: Job record, enums and API schemas
- store: Durable job storage (in-memory and Supabase)
- registry: Task type -> handler mapping
- scheduler: Admission, dispatch, retries, timeouts and cancellation
- runner: Per-attempt JobContext and handler execution
- events: Lifecycle event sinks (logging, SSE broadcast, Supabase)
- handlers: Built-in task handlers
- utils: Backoff, JSON and progress helpers
"""

from taxflow.jobs.job_types import (
    TaskType,
    JobStatus,
    JobPriority,
    JobEventType,
    LogLevel,
    ErrorCode,
    Job,
    JobProgress,
    JobPolicy,
    JobEvent,
    SchedulerStats,
)

from taxflow.jobs.errors import (
    JobError,
    UnknownTaskType,
    JobValidationError,
    JobNotFound,
    StoreError,
    StoreConflict,
    NonRetryableJobError,
    JobCancelled,
)

from taxflow.jobs.store import (
    JobStore,
    InMemoryJobStore,
    SupabaseJobStore,
)

from taxflow.jobs.registry import (
    TaskRegistry,
    TaskDefinition,
)

from taxflow.jobs.events import (
    EventSink,
    NullEventSink,
    LoggingEventSink,
    BroadcastEventSink,
    SupabaseEventSink,
    CompositeEventSink,
)

from taxflow.jobs.runner import JobContext

from taxflow.jobs.scheduler import Scheduler

from taxflow.jobs.handlers import register_builtin_handlers

__all__ = [
    # Types
    "TaskType",
    "JobStatus",
    "JobPriority",
    "JobEventType",
    "LogLevel",
    "ErrorCode",
    "Job",
    "JobProgress",
    "JobPolicy",
    "JobEvent",
    "SchedulerStats",
    # Errors
    "JobError",
    "UnknownTaskType",
    "JobValidationError",
    "JobNotFound",
    "StoreError",
    "StoreConflict",
    "NonRetryableJobError",
    "JobCancelled",
    # Store
    "JobStore",
    "InMemoryJobStore",
    "SupabaseJobStore",
    # Registry
    "TaskRegistry",
    "TaskDefinition",
    # Events
    "EventSink",
    "NullEventSink",
    "LoggingEventSink",
    "BroadcastEventSink",
    "SupabaseEventSink",
    "CompositeEventSink",
    # Scheduler
    "Scheduler",
    "JobContext",
    "register_builtin_handlers",
]
