# ============================================================================
# SERVICES MODULE
# ============================================================================
# STATUS: Core - Business logic layer
# PURPOSE: Pipelines, environments, artifacts, events, rollback
# CREATED: 19 OCT 2026
# ============================================================================
"""
Services Module

Business logic of the pipeline orchestrator. RunService is imported from
services.run_service directly; it depends on the scheduler.

Usage:
    from services import PipelineService, EnvironmentService

    pipelines = PipelineService("pipelines")
    pipelines.load_all()
"""

from .pipeline_service import PipelineService
from .environment_service import EnvironmentService
from .artifact_service import ArtifactStore
from .event_service import EventService, NotificationSink, LoggingNotificationSink, MemoryNotificationSink
from .rollback_service import RollbackService

__all__ = [
    "PipelineService",
    "EnvironmentService",
    "ArtifactStore",
    "EventService",
    "NotificationSink",
    "LoggingNotificationSink",
    "MemoryNotificationSink",
    "RollbackService",
]
