"""
Job Handlers

Built-in executors for the TaxFlow task types. Each handler receives a
JobContext, walks through its stages while reporting progress, and returns a
result dictionary.

These executors only stage progress and echo a structured result; subsystems
that do the real work register their own handlers for the same task types.
"""

import logging
from functools import partial
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from taxflow.jobs.job_types import TaskType, utcnow
from taxflow.jobs.registry import TaskRegistry
from taxflow.jobs.runner import JobContext
from taxflow.jobs.utils import ProgressTracker

logger = logging.getLogger(__name__)

DEFAULT_STEP_DELAY = 0.5


# ============================================================================
# Payload models
# ============================================================================

class _Params(BaseModel):
    model_config = ConfigDict(extra="allow")


class DocumentProcessingParams(_Params):
    document_id: str = Field(..., min_length=1)


class TaxCalculationParams(_Params):
    form_data: Dict[str, Any]


class FormGenerationParams(_Params):
    form_id: str = Field(..., min_length=1)


class DataValidationParams(_Params):
    session_id: Optional[str] = None
    format: str = "json"


class ReportGenerationParams(_Params):
    session_id: Optional[str] = None
    report_type: str = "summary"


class NotificationParams(_Params):
    recipient: str = Field(..., min_length=1)
    subject: Optional[str] = None
    template: Optional[str] = None


class CleanupParams(_Params):
    type: str = "temp_files"
    older_than_days: int = Field(default=7, ge=0)


class BackupParams(_Params):
    type: str = "full"
    target: Optional[str] = None


class OtherParams(_Params):
    operation: Optional[str] = None


# ============================================================================
# Shared stage runner
# ============================================================================

async def _run_stages(ctx: JobContext, stages: List[str], step_delay: float):
    """Report each stage in turn. Raises JobCancelled if the attempt is cancelled."""
    tracker = ProgressTracker([(name, 100 / len(stages)) for name in stages])

    for name in stages:
        ctx.raise_if_cancelled()
        ctx.report_progress(*tracker.stage(name))
        await ctx.sleep(step_delay)
        ctx.raise_if_cancelled()
        ctx.report_progress(*tracker.complete(name))


# ============================================================================
# Document Processing Handler
# ============================================================================

async def handle_document_processing(ctx: JobContext, step_delay: float = DEFAULT_STEP_DELAY) -> Dict[str, Any]:
    """
    Process an uploaded document.

    Stages:
    1. Extracting text
    2. Analyzing content
    3. Extracting entities
    4. Validating data
    5. Finalizing results
    """
    document_id = ctx.payload["document_id"]
    ctx.log(f"Processing document {document_id}")

    await _run_stages(ctx, [
        "Extracting text",
        "Analyzing content",
        "Extracting entities",
        "Validating data",
        "Finalizing results",
    ], step_delay)

    return {
        "document_id": document_id,
        "processed": True,
        "entities": [],
        "confidence": None,
    }


# ============================================================================
# Tax Calculation Handler
# ============================================================================

async def handle_tax_calculation(ctx: JobContext, step_delay: float = DEFAULT_STEP_DELAY) -> Dict[str, Any]:
    """Stage a tax calculation over submitted form data."""
    form_data = ctx.payload["form_data"]

    await _run_stages(ctx, [
        "Validating form data",
        "Calculating income",
        "Calculating deductions",
        "Calculating tax liability",
    ], step_delay)

    return {
        "fields_received": sorted(form_data.keys()),
        "is_valid": True,
    }


# ============================================================================
# Form Generation Handler
# ============================================================================

async def handle_form_generation(ctx: JobContext, step_delay: float = DEFAULT_STEP_DELAY) -> Dict[str, Any]:
    form_id = ctx.payload["form_id"]

    await _run_stages(ctx, [
        "Loading form data",
        "Validating fields",
        "Generating form",
    ], step_delay)

    return {
        "form_id": form_id,
        "generated": True,
        "warnings": ctx.get_warnings(),
    }


# ============================================================================
# Data Validation / Report Handlers
# ============================================================================

async def handle_data_validation(ctx: JobContext, step_delay: float = DEFAULT_STEP_DELAY) -> Dict[str, Any]:
    params = DataValidationParams.model_validate(ctx.payload or {})

    await _run_stages(ctx, [
        "Gathering data",
        "Checking records",
        "Summarizing issues",
    ], step_delay)

    return {
        "session_id": params.session_id,
        "format": params.format,
        "is_valid": True,
        "errors": [],
    }


async def handle_report_generation(ctx: JobContext, step_delay: float = DEFAULT_STEP_DELAY) -> Dict[str, Any]:
    params = ReportGenerationParams.model_validate(ctx.payload or {})

    await _run_stages(ctx, [
        "Gathering data",
        "Formatting report",
        "Generating file",
        "Finalizing report",
    ], step_delay)

    return {
        "session_id": params.session_id,
        "report_type": params.report_type,
        "generated_at": utcnow().isoformat(),
    }


# ============================================================================
# Notification Handler
# ============================================================================

async def handle_notification(ctx: JobContext, step_delay: float = DEFAULT_STEP_DELAY) -> Dict[str, Any]:
    params = NotificationParams.model_validate(ctx.payload)

    await _run_stages(ctx, [
        "Preparing notification",
        "Sending notification",
        "Confirming delivery",
    ], step_delay)

    return {
        "recipient": params.recipient,
        "subject": params.subject,
        "template": params.template,
        "sent_at": utcnow().isoformat(),
        "status": "sent",
    }


# ============================================================================
# Maintenance Handlers
# ============================================================================

async def handle_cleanup(ctx: JobContext, step_delay: float = DEFAULT_STEP_DELAY) -> Dict[str, Any]:
    params = CleanupParams.model_validate(ctx.payload or {})

    await _run_stages(ctx, [
        "Scanning for old data",
        "Removing items",
        "Finalizing cleanup",
    ], step_delay)

    return {
        "type": params.type,
        "older_than_days": params.older_than_days,
        "items_deleted": 0,
    }


async def handle_backup(ctx: JobContext, step_delay: float = DEFAULT_STEP_DELAY) -> Dict[str, Any]:
    params = BackupParams.model_validate(ctx.payload or {})

    await _run_stages(ctx, [
        "Preparing backup",
        "Creating backup archive",
        "Uploading to storage",
        "Verifying backup",
    ], step_delay)

    return {
        "type": params.type,
        "target": params.target,
        "backup_id": f"backup_{ctx.job_id}",
        "created_at": utcnow().isoformat(),
    }


async def handle_other(ctx: JobContext, step_delay: float = DEFAULT_STEP_DELAY) -> Dict[str, Any]:
    params = OtherParams.model_validate(ctx.payload or {})

    await _run_stages(ctx, ["Executing operation", "Finalizing"], step_delay)

    return {"operation": params.operation, "completed": True}


# ============================================================================
# Register All Handlers
# ============================================================================

BUILTIN_HANDLERS = {
    TaskType.DOCUMENT_PROCESSING: (handle_document_processing, DocumentProcessingParams),
    TaskType.TAX_CALCULATION: (handle_tax_calculation, TaxCalculationParams),
    TaskType.FORM_GENERATION: (handle_form_generation, FormGenerationParams),
    TaskType.DATA_VALIDATION: (handle_data_validation, DataValidationParams),
    TaskType.REPORT_GENERATION: (handle_report_generation, ReportGenerationParams),
    TaskType.NOTIFICATION: (handle_notification, NotificationParams),
    TaskType.CLEANUP: (handle_cleanup, CleanupParams),
    TaskType.BACKUP: (handle_backup, BackupParams),
    TaskType.OTHER: (handle_other, OtherParams),
}


def register_builtin_handlers(registry: TaskRegistry, step_delay: float = DEFAULT_STEP_DELAY):
    """Register the built-in executors for every TaskType."""
    for task_type, (handler, payload_model) in BUILTIN_HANDLERS.items():
        registry.register(
            task_type,
            partial(handler, step_delay=step_delay),
            payload_model=payload_model,
            description=(handler.__doc__ or "").strip().split("\n")[0] or None
        )

    logger.info(f"Registered {len(BUILTIN_HANDLERS)} built-in job handlers")
