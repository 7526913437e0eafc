"""
Background Jobs API Routes

Provides endpoints for:
- Submitting background jobs
- Checking job status and listing jobs per session
- Cancelling, retrying and deleting jobs
- Progress and log reporting from external executors
- Statistics, retention cleanup and health
- Server-Sent Events (SSE) streaming of job events per session
"""

import asyncio
import json
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from taxflow.jobs.errors import (
    JobNotFound, JobValidationError, StoreError, UnknownTaskType
)
from taxflow.jobs.events import BroadcastEventSink
from taxflow.jobs.job_types import (
    CancelJobResponse, JobListResponse, JobLogsResponse, JobStatus,
    JobStatusResponse, LogLevel, LogRequest, ProgressUpdateRequest,
    RetryJobResponse, SchedulerStats, SubmitJobRequest, SubmitJobResponse,
    TaskType, utcnow
)
from taxflow.jobs.scheduler import Scheduler
from taxflow.supabase_client import verify_supabase_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])

SSE_KEEPALIVE_SECONDS = 15


# =============================================================================
# DEPENDENCIES
# =============================================================================

async def get_current_user(authorization: str = Header(None)):
    """Extract and verify user from Supabase JWT token."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header missing")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    token = parts[1]
    user_data = verify_supabase_token(token)

    if not user_data:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return user_data


def get_scheduler(request: Request) -> Scheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Job scheduler is not available")
    return scheduler


def get_broadcaster(request: Request) -> BroadcastEventSink:
    broadcaster = getattr(request.app.state, "broadcaster", None)
    if broadcaster is None:
        raise HTTPException(status_code=503, detail="Event streaming is not available")
    return broadcaster


def _raise_http(e: Exception):
    """Map scheduler exceptions onto HTTP errors."""
    if isinstance(e, (UnknownTaskType, JobValidationError)):
        raise HTTPException(status_code=400, detail=e.to_dict())
    if isinstance(e, JobNotFound):
        raise HTTPException(status_code=404, detail="Job not found")
    if isinstance(e, StoreError):
        logger.error(f"Job store error: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")
    raise e


def _require_job(scheduler: Scheduler, job_id: str):
    try:
        job = scheduler.get_job(job_id)
    except StoreError as e:
        _raise_http(e)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


# =============================================================================
# STATIC ENDPOINTS (declared before /{job_id})
# =============================================================================

@router.post("", response_model=SubmitJobResponse)
async def submit_job(
    request: SubmitJobRequest,
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """
    Submit a new background job.

    Returns immediately with the job id; the scheduler admits it on its next
    cycle.
    """
    try:
        job = scheduler.submit(
            request.session_id,
            request.task_type,
            request.payload,
            priority=request.priority,
            timeout_ms=request.timeout_ms,
            max_retries=request.max_retries,
            retry_base_delay_ms=request.retry_delay_ms,
            dependencies=request.dependencies,
            parent_id=request.parent_job_id,
            tags=request.tags,
            scheduled_for=request.scheduled_for,
            expires_at=request.expires_at,
        )
    except (UnknownTaskType, JobValidationError, StoreError) as e:
        _raise_http(e)

    logger.info(f"User {user.get('id')} submitted job {job.id} ({job.task_type})")
    return SubmitJobResponse(
        job_id=job.id,
        status=job.status,
        priority=job.priority,
        created_at=job.created_at
    )


@router.get("/stats", response_model=SchedulerStats)
async def get_stats(
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """Queue statistics: counts by status and type, durations, rates."""
    try:
        return scheduler.stats()
    except StoreError as e:
        _raise_http(e)


@router.get("/health")
async def health(scheduler: Scheduler = Depends(get_scheduler)):
    """Scheduler liveness. No authentication."""
    return {
        "status": "healthy" if scheduler.is_running else "stopped",
        "running": scheduler.is_running,
        "active_attempts": len(scheduler.active_job_ids()),
        "queue_depth": len(scheduler.working_set_ids()),
        "max_concurrent_jobs": scheduler.max_concurrent_jobs,
        "task_types": scheduler.registry.names(),
        "timestamp": utcnow().isoformat(),
    }


@router.get("/task-types")
async def list_task_types(scheduler: Scheduler = Depends(get_scheduler)):
    """Available task types."""
    return {
        "task_types": scheduler.registry.names(),
        "builtin": [t.value for t in TaskType],
    }


@router.post("/cleanup")
async def cleanup_jobs(
    older_than_days: Optional[int] = Query(default=None, ge=0),
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """Delete terminal jobs that finished more than N days ago."""
    try:
        removed = scheduler.cleanup_completed(older_than_days)
    except (JobValidationError, StoreError) as e:
        _raise_http(e)

    return {"success": True, "deleted_count": removed}


@router.get("/session/{session_id}", response_model=JobListResponse)
async def list_session_jobs(
    session_id: str,
    status: Optional[List[JobStatus]] = Query(default=None),
    task_type: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    skip: int = Query(default=0, ge=0),
    sort_by: str = "created_at",
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """List jobs submitted for a session, with filtering and pagination."""
    try:
        jobs, total = scheduler.list_jobs(
            owner_ref=session_id,
            status=status,
            task_type=task_type,
            limit=limit,
            skip=skip,
            sort_by=sort_by,
            descending=sort_order == "desc"
        )
    except (JobValidationError, StoreError) as e:
        _raise_http(e)

    return JobListResponse(
        jobs=jobs,
        total_count=total,
        has_more=skip + len(jobs) < total
    )


@router.get("/session/{session_id}/stream")
async def stream_session_events(
    session_id: str,
    user: Dict = Depends(get_current_user),
    broadcaster: BroadcastEventSink = Depends(get_broadcaster)
):
    """
    Stream job events for a session using Server-Sent Events (SSE).

    Delivery is best-effort: no replay, and events for a slow client are
    dropped.
    """
    subscription = broadcaster.subscribe(session_id)

    async def event_generator():
        """Generate SSE events."""
        try:
            yield f"data: {json.dumps({'type': 'connected', 'session_id': session_id})}\n\n"
            while True:
                try:
                    event = await asyncio.wait_for(
                        subscription.queue.get(), timeout=SSE_KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {event.model_dump_json()}\n\n"

        except asyncio.CancelledError:
            logger.info(f"SSE connection cancelled for session {session_id}")
            raise
        finally:
            broadcaster.unsubscribe(subscription)
            if subscription.dropped:
                logger.warning(
                    f"SSE subscriber for session {session_id} dropped {subscription.dropped} event(s)"
                )

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable nginx buffering
        }
    )


# =============================================================================
# PER-JOB ENDPOINTS
# =============================================================================

@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """Current state of a job, with elapsed and estimated remaining time."""
    job = _require_job(scheduler, job_id)
    return JobStatusResponse.from_job(job)


@router.post("/{job_id}/cancel", response_model=CancelJobResponse)
async def cancel_job(
    job_id: str,
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """
    Cancel a pending or running job.

    Cancelling a job that already finished is not an error.
    """
    job = _require_job(scheduler, job_id)

    try:
        cancelled = scheduler.cancel(job_id, f"Cancelled by user {user.get('id')}")
    except StoreError as e:
        _raise_http(e)

    if cancelled:
        return CancelJobResponse(success=True, message="Job cancelled", job_id=job_id)
    return CancelJobResponse(
        success=False,
        message=f"Job is already {job.status.value}",
        job_id=job_id
    )


@router.post("/{job_id}/retry", response_model=RetryJobResponse)
async def retry_job(
    job_id: str,
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """Re-queue a failed job that has retry budget left."""
    job = _require_job(scheduler, job_id)

    try:
        retried = scheduler.retry(job_id)
    except StoreError as e:
        _raise_http(e)

    if not retried:
        raise HTTPException(
            status_code=400,
            detail=f"Job cannot be retried (status={job.status.value}, attempts={job.attempt})"
        )

    return RetryJobResponse(
        success=True,
        message="Job re-queued",
        job_id=job_id,
        status=JobStatus.PENDING
    )


@router.put("/{job_id}/progress", response_model=JobStatusResponse)
async def update_job_progress(
    job_id: str,
    request: ProgressUpdateRequest,
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """Report progress for a running job."""
    job = _require_job(scheduler, job_id)

    try:
        updated = scheduler.update_progress(
            job_id, request.current, total=request.total, message=request.message
        )
    except (JobValidationError, StoreError) as e:
        _raise_http(e)

    if updated is None:
        raise HTTPException(
            status_code=409,
            detail=f"Progress can only be reported for running jobs (status={job.status.value})"
        )
    return JobStatusResponse.from_job(updated)


@router.post("/{job_id}/logs")
async def add_job_log(
    job_id: str,
    request: LogRequest,
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """Append a log entry to a pending or running job."""
    job = _require_job(scheduler, job_id)

    try:
        added = scheduler.append_log(job_id, request.level, request.message, data=request.data)
    except (JobValidationError, StoreError) as e:
        _raise_http(e)

    if not added:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot add logs to a {job.status.value} job"
        )
    return {"success": True, "job_id": job_id}


@router.get("/{job_id}/logs", response_model=JobLogsResponse)
async def get_job_logs(
    job_id: str,
    level: Optional[LogLevel] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """Most recent log entries for a job, oldest first."""
    try:
        logs = scheduler.get_job_logs(job_id, level=level, limit=limit)
    except (JobNotFound, StoreError) as e:
        _raise_http(e)

    return JobLogsResponse(job_id=job_id, logs=logs, total_count=len(logs))


@router.delete("/{job_id}")
async def delete_job(
    job_id: str,
    user: Dict = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler)
):
    """Delete a job, cancelling it first if it is still active."""
    try:
        deleted = scheduler.delete_job(job_id)
    except StoreError as e:
        _raise_http(e)

    if not deleted:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"success": True, "message": "Job deleted", "job_id": job_id}
