# ============================================================================
# MODELS MODULE
# ============================================================================
# STATUS: Model exports
# PURPOSE: Central export point for all Pydantic models
# CREATED: 19 OCT 2026
# ============================================================================
"""
Models Module - Central Export Point

All Pydantic models of the pipeline orchestrator:
    - pipeline:    PipelineDefinition and its parts (immutable per revision)
    - environment: Environment value objects and ApprovalRequest
    - run:         RunInstance / JobRun / StepRun runtime state
    - events:      inbound TriggerEvent, run timeline, artifacts, markers
"""

from core.models.pipeline import (
    PipelineDefinition,
    TriggerRule,
    DispatchInput,
    JobSpec,
    StepSpec,
    MatrixSpec,
    RetryPolicy,
)
from core.models.environment import Environment, ApprovalRequest, ApprovalDecision
from core.models.run import RunInstance, JobRun, StepRun
from core.models.events import (
    TriggerEvent,
    RunEvent,
    EventType,
    EventStatus,
    Notification,
    ArtifactRecord,
    DeployMarker,
)

__all__ = [
    # Pipeline
    "PipelineDefinition",
    "TriggerRule",
    "DispatchInput",
    "JobSpec",
    "StepSpec",
    "MatrixSpec",
    "RetryPolicy",
    # Environment
    "Environment",
    "ApprovalRequest",
    "ApprovalDecision",
    # Run
    "RunInstance",
    "JobRun",
    "StepRun",
    # Events
    "TriggerEvent",
    "RunEvent",
    "EventType",
    "EventStatus",
    "Notification",
    "ArtifactRecord",
    "DeployMarker",
]
