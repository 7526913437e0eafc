"""
Job Errors

Exceptions raised by the scheduler and its collaborators. Submission-time
errors surface to the caller; execution-time failures are recorded on the job
instead of being raised.
"""

from typing import Any, Dict, Optional


class JobError(Exception):
    """Base class for scheduler errors."""

    error_type = "job_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type,
            "message": self.message,
            "details": self.details or None,
        }


class UnknownTaskType(JobError):
    """The task type has no registered executor."""

    error_type = "unknown_task_type"

    def __init__(self, task_type: str):
        super().__init__(f"Unknown task type: {task_type}", {"task_type": task_type})
        self.task_type = task_type


class JobValidationError(JobError):
    """Payload or policy rejected at submission."""

    error_type = "validation_error"


class JobNotFound(JobError):
    error_type = "not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", {"job_id": job_id})
        self.job_id = job_id


class StoreError(JobError):
    """The job store could not complete an operation."""

    error_type = "store_error"


class StoreConflict(StoreError):
    """A compare-and-set write lost against a concurrent status change."""

    error_type = "store_conflict"


class NonRetryableJobError(Exception):
    """
    Raised by an executor to fail the current attempt without retrying,
    e.g. when the payload references data that no longer exists.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details


class JobCancelled(Exception):
    """Raised inside a handler that stops because its attempt was cancelled."""
