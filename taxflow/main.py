from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import os
import logging

from taxflow import __version__
from taxflow.config import ENVIRONMENT, LOG_LEVEL, SchedulerSettings
from taxflow.jobs.events import BroadcastEventSink
from taxflow.jobs.scheduler import build_scheduler
from taxflow.jobs_routes import router as jobs_router
from taxflow.supabase_client import get_supabase
from taxflow.jobs.job_types import utcnow

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="TaxFlow Jobs API",
    description="Background job scheduling for tax document and form processing",
    version=__version__
)

# Get allowed origins from environment
allowed_origins = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Build the job scheduler; start it unless jobs run in a separate worker."""
    settings = SchedulerSettings.from_env()
    broadcaster = BroadcastEventSink()
    scheduler = build_scheduler(settings, broadcaster=broadcaster)

    app.state.broadcaster = broadcaster
    app.state.scheduler = scheduler
    if settings.run_scheduler:
        await scheduler.start()
    else:
        logger.info("JOB_RUN_SCHEDULER is off; jobs are queued for a separate worker process")

    port = os.environ.get("PORT", "8000")
    logger.info(f"TaxFlow Jobs API starting on port {port} ({ENVIRONMENT})")
    logger.info(f"Supabase connected: {get_supabase() is not None}")


@app.on_event("shutdown")
async def shutdown_event():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.stop()


# Health check
@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "services": {
            "database": "connected" if get_supabase() else "not configured",
            "scheduler": "running" if scheduler and scheduler.is_running else "stopped"
        }
    }


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "TaxFlow Jobs API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health"
    }


# Register Routers
app.include_router(jobs_router)
