#!/usr/bin/env python3
"""
TaxFlow Background Job Worker

A dedicated worker process that runs the job scheduler outside the API
process. Run the API with JOB_RUN_SCHEDULER=false so only workers execute jobs.

Usage:
    python worker.py [--concurrency=N] [--poll-interval=S] [--store=supabase]

Features:
- Claims queued jobs from the shared store by priority under a concurrency ceiling
- Retries failed attempts with exponential backoff
- Heartbeats running jobs and reclaims ones whose worker went away
- Periodic retention cleanup of finished jobs
- Graceful shutdown on signals
"""

import asyncio
import logging
import os
import signal
from dataclasses import replace
from typing import Optional
import argparse

from taxflow.config import LOG_LEVEL, SchedulerSettings
from taxflow.jobs.scheduler import Scheduler, build_scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("taxflow.worker")


class BackgroundJobWorker:
    """
    Worker that owns a Scheduler for the lifetime of the process.
    """

    def __init__(
        self,
        settings: SchedulerSettings,
        cleanup_interval: float = 3600.0,
        scheduler: Optional[Scheduler] = None
    ):
        self.settings = settings
        self.cleanup_interval = cleanup_interval
        self.scheduler = scheduler or build_scheduler(settings)

        self._shutdown_event: Optional[asyncio.Event] = None

        logger.info(
            f"Worker {os.getpid()} initialized with concurrency={settings.max_concurrent_jobs}, "
            f"store={settings.store_backend}"
        )

    async def start(self):
        """Start the scheduler and block until shutdown."""
        self._shutdown_event = asyncio.Event()
        logger.info("Worker starting...")

        # Set up signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

        await self.scheduler.start()
        try:
            await self._cleanup_loop()
        except asyncio.CancelledError:
            logger.info("Worker cancelled")
        finally:
            await self.scheduler.stop()
            logger.info("Worker shutdown complete")

    def _handle_shutdown(self):
        """Handle shutdown signal."""
        logger.info("Worker received shutdown signal")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _cleanup_loop(self):
        """Periodically delete finished jobs past the retention window."""
        while not self._shutdown_event.is_set():
            try:
                removed = self.scheduler.cleanup_completed()
                if removed:
                    logger.info(f"Retention cleanup removed {removed} job(s)")
            except Exception as e:
                logger.error(f"Error in retention cleanup: {e}")

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.cleanup_interval
                )
                break
            except asyncio.TimeoutError:
                pass


def main():
    """Main entry point for the worker."""
    defaults = SchedulerSettings.from_env()

    parser = argparse.ArgumentParser(description="TaxFlow Background Job Worker")
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=int(os.environ.get("WORKER_CONCURRENCY", defaults.max_concurrent_jobs)),
        help="Number of jobs to run concurrently (default: 5)"
    )
    parser.add_argument(
        "--poll-interval", "-p",
        type=float,
        default=float(os.environ.get("WORKER_POLL_INTERVAL", defaults.poll_interval)),
        help="Seconds between admission cycles (default: 1.0)"
    )
    parser.add_argument(
        "--store",
        choices=["memory", "supabase"],
        default=os.environ.get("JOB_STORE", "supabase"),
        help="Job store backend (default: supabase)"
    )
    parser.add_argument(
        "--cleanup-interval",
        type=float,
        default=float(os.environ.get("WORKER_CLEANUP_INTERVAL", "3600")),
        help="Seconds between retention cleanups (default: 3600)"
    )

    args = parser.parse_args()

    settings = replace(
        defaults,
        max_concurrent_jobs=args.concurrency,
        poll_interval=args.poll_interval,
        store_backend=args.store
    )

    worker = BackgroundJobWorker(settings, cleanup_interval=args.cleanup_interval)

    try:
        asyncio.run(worker.start())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")

    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
