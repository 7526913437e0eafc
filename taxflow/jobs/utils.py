"""
Job Utilities

Retry/backoff arithmetic, JSON helpers for payloads and results, and a
progress helper for handlers that run in stages.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from taxflow.jobs.errors import JobValidationError

logger = logging.getLogger(__name__)


def compute_backoff_ms(retry_base_delay_ms: int, attempt: int) -> int:
    """
    Delay before the attempt that follows `attempt`.

    retry_base_delay_ms * 2^(attempt - 1): 1x after the first attempt,
    2x after the second, 4x after the third, ...
    """
    if attempt < 1:
        raise ValueError("attempt must be at least 1")
    return retry_base_delay_ms * (2 ** (attempt - 1))


def next_run_at(now: datetime, retry_base_delay_ms: int, attempt: int) -> datetime:
    return now + timedelta(milliseconds=compute_backoff_ms(retry_base_delay_ms, attempt))


def ensure_json_compatible(value: Any, what: str = "payload") -> Any:
    """Reject values that cannot be stored as JSON."""
    try:
        json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise JobValidationError(f"The {what} must be JSON-compatible: {e}") from e
    return value


def safe_json_value(value: Any) -> Any:
    """Convert value to JSON-safe format."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return [safe_json_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): safe_json_value(v) for k, v in value.items()}
    if hasattr(value, "model_dump"):
        return safe_json_value(value.model_dump(mode="json"))
    return str(value)


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        mins = seconds / 60
        return f"{mins:.1f}m"
    hours = seconds / 3600
    return f"{hours:.1f}h"


class ProgressTracker:
    """
    Helper for tracking progress across multiple weighted stages.

    Usage:
        tracker = ProgressTracker([
            ("loading", 10),
            ("processing", 70),
            ("saving", 20),
        ])

        ctx.report_progress(*tracker.stage("loading"))
        for i, item in enumerate(items):
            ctx.report_progress(*tracker.progress("processing", i, len(items)))
        ctx.report_progress(*tracker.complete("saving"))

    Each call returns (current, total, message) on a 0-100 scale.
    """

    total = 100

    def __init__(self, stages: List[Tuple[str, float]]):
        self.stages: Dict[str, Dict[str, float]] = {}
        cumulative = 0.0

        for name, weight in stages:
            self.stages[name] = {
                "start": cumulative,
                "weight": weight,
                "end": cumulative + weight
            }
            cumulative += weight

        if cumulative and abs(cumulative - self.total) > 1e-6:
            logger.debug(f"ProgressTracker weights sum to {cumulative}, not {self.total}")

        self._current_stage: Optional[str] = None

    @property
    def current_stage(self) -> Optional[str]:
        return self._current_stage

    def stage(self, name: str) -> Tuple[float, float, str]:
        """(current, total, message) for starting a stage."""
        self._current_stage = name
        if name not in self.stages:
            return (0, self.total, name)
        return (self.stages[name]["start"], self.total, name)

    def complete(self, name: str) -> Tuple[float, float, str]:
        """(current, total, message) for completing a stage."""
        if name not in self.stages:
            return (self.total, self.total, name)
        return (self.stages[name]["end"], self.total, name)

    def progress(self, name: str, current: int, total: int) -> Tuple[float, float, str]:
        """(current, total, message) for progress within a stage."""
        if name not in self.stages or total <= 0:
            return (0, self.total, name)

        stage = self.stages[name]
        stage_progress = min(current / total, 1.0)
        return (stage["start"] + stage["weight"] * stage_progress, self.total, name)
