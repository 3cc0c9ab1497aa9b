# ============================================================================
# PIPELINE ORCHESTRATOR - MAIN APPLICATION
# ============================================================================
# STATUS: Core - FastAPI application entry point
# PURPOSE: Main application with scheduler and schedule ticker
# CREATED: 19 OCT 2026
# ============================================================================
"""
Pipeline Orchestrator Main Application

FastAPI application that:
1. Loads environments and pipeline definitions
2. Provides the HTTP API for events, runs and approvals
3. Runs the scheduler, the rollback controller and the schedule ticker

Usage:
    uvicorn main:app --host 0.0.0.0 --port 8000

Environment:
    PIPELINES_DIR      directory of pipeline YAML files (./pipelines)
    ENVIRONMENTS_FILE  environments YAML (./environments.yaml)
    LOG_LEVEL          logging level (INFO)
    LOG_FORMAT         "json" for structured output
    HOST / PORT        bind address when run directly
"""

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from __version__ import __version__, BUILD_DATE, CODENAME
from core.config import Defaults, get_defaults
from core.logging import configure_logging, get_logger
from orchestrator import Scheduler
from orchestrator.engine.triggers import ScheduleTicker
from services import (
    ArtifactStore,
    EnvironmentService,
    EventService,
    PipelineService,
    RollbackService,
)
from services.run_service import RunService
from worker import RunnerPool
from api.routes import router, set_services

logger = get_logger(__name__)


@dataclass
class Services:
    """Everything the lifespan wires together."""
    pipeline_service: PipelineService
    environment_service: EnvironmentService
    artifact_store: ArtifactStore
    event_service: EventService
    scheduler: Scheduler
    rollback_service: RollbackService
    run_service: RunService
    ticker: ScheduleTicker


def build_services(
    pipelines_dir: Optional[str] = None,
    environments_file: Optional[str] = None,
    defaults: Optional[Defaults] = None,
) -> Services:
    """
    Create and connect all services. Nothing is started here.
    """
    defaults = defaults or get_defaults()

    environment_service = EnvironmentService(
        approval_timeout_seconds=defaults.approvals.approval_timeout_seconds,
    )
    if environments_file and Path(environments_file).exists():
        count = environment_service.load_file(environments_file)
        logger.info(f"Loaded {count} environments from {environments_file}")
    else:
        logger.warning(f"Environments file not found: {environments_file}")

    pipeline_service = PipelineService(pipelines_dir, environment_exists=environment_service.exists)
    count = pipeline_service.load_all()
    logger.info(f"Loaded {count} pipelines")

    artifact_store = ArtifactStore(
        retention_seconds=defaults.artifacts.retention_seconds,
        markers_per_environment=defaults.artifacts.markers_per_environment,
    )
    event_service = EventService()
    scheduler = Scheduler(
        environment_service,
        artifact_store,
        event_service,
        pool=RunnerPool(defaults.scheduler.runner_slots),
        defaults=defaults.scheduler,
    )

    rollback_service = RollbackService(artifact_store, event_service)
    rollback_service.attach(scheduler)

    run_service = RunService(
        pipeline_service,
        environment_service,
        artifact_store,
        scheduler,
        event_service,
        rollback_service=rollback_service,
    )
    ticker = ScheduleTicker(
        on_tick=run_service.ingest,
        poll_seconds=defaults.triggers.schedule_tick_seconds,
    )

    return Services(
        pipeline_service=pipeline_service,
        environment_service=environment_service,
        artifact_store=artifact_store,
        event_service=event_service,
        scheduler=scheduler,
        rollback_service=rollback_service,
        run_service=run_service,
        ticker=ticker,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Initializes services on startup, cleans up on shutdown.
    """
    configure_logging(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        json_output=os.environ.get("LOG_FORMAT", "").lower() == "json",
    )
    logger.info(f"Starting {CODENAME} v{__version__} (Build {BUILD_DATE})")

    services = build_services(
        pipelines_dir=os.environ.get("PIPELINES_DIR", "./pipelines"),
        environments_file=os.environ.get("ENVIRONMENTS_FILE", "./environments.yaml"),
    )
    app.state.services = services

    set_services(
        pipeline_service=services.pipeline_service,
        environment_service=services.environment_service,
        run_service=services.run_service,
        scheduler=services.scheduler,
        event_service=services.event_service,
        rollback_service=services.rollback_service,
        ticker=services.ticker,
    )

    await services.ticker.start()
    logger.info("Scheduler ready")

    yield

    # Shutdown
    logger.info(f"Shutting down {CODENAME}...")

    await services.ticker.stop()
    await services.scheduler.shutdown()

    logger.info(f"{CODENAME} stopped")


# Create FastAPI app
app = FastAPI(
    title=CODENAME,
    description="Declarative pipeline orchestration with approval gates and rollback",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router, prefix="/api/v1")


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": CODENAME,
        "version": __version__,
        "build_date": BUILD_DATE,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/livez")
async def livez():
    """Process alive."""
    return {"status": "alive"}


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=os.environ.get("RELOAD", "false").lower() == "true",
    )
