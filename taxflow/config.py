"""
Scheduler configuration.

Values come from the environment (optionally a .env file) and can be overridden
by the worker's command line flags.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SchedulerSettings:
    """Tunables for a Scheduler instance."""
    max_concurrent_jobs: int = 5
    poll_interval: float = 1.0  # seconds between admission cycles
    timeout_sweep_interval: float = 1.0  # seconds between timeout sweeps
    default_timeout_ms: int = 300000
    default_max_retries: int = 3
    default_retry_delay_ms: int = 5000
    log_capacity: int = 100
    retention_days: int = 7
    store_backend: str = "memory"  # "memory" | "supabase"
    heartbeat_interval: float = 10.0  # seconds between running-job heartbeats
    lost_after_ms: int = 60000  # running jobs without a heartbeat for this long are reclaimed
    run_scheduler: bool = True  # API process only; worker.py always runs one

    def __post_init__(self):
        if self.max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        if self.poll_interval <= 0 or self.timeout_sweep_interval <= 0:
            raise ValueError("scheduler intervals must be positive")
        if self.log_capacity < 1:
            raise ValueError("log_capacity must be at least 1")
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.lost_after_ms <= self.heartbeat_interval * 1000:
            raise ValueError("lost_after_ms must be longer than the heartbeat interval")

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        return cls(
            max_concurrent_jobs=_env_int("JOB_MAX_CONCURRENT", 5),
            poll_interval=_env_float("JOB_POLL_INTERVAL", 1.0),
            timeout_sweep_interval=_env_float("JOB_TIMEOUT_SWEEP_INTERVAL", 1.0),
            default_timeout_ms=_env_int("JOB_DEFAULT_TIMEOUT_MS", 300000),
            default_max_retries=_env_int("JOB_DEFAULT_MAX_RETRIES", 3),
            default_retry_delay_ms=_env_int("JOB_DEFAULT_RETRY_DELAY_MS", 5000),
            log_capacity=_env_int("JOB_LOG_CAPACITY", 100),
            retention_days=_env_int("JOB_RETENTION_DAYS", 7),
            store_backend=os.environ.get("JOB_STORE", "memory").strip().lower(),
            heartbeat_interval=_env_float("JOB_HEARTBEAT_INTERVAL", 10.0),
            lost_after_ms=_env_int("JOB_LOST_AFTER_MS", 60000),
            run_scheduler=_env_bool("JOB_RUN_SCHEDULER", True),
        )


LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")
