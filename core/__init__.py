# ============================================================================
# CORE MODULE
# ============================================================================
# STATUS: Core module initialization
# PURPOSE: Export core contracts, models and errors
# CREATED: 19 OCT 2026
# ============================================================================

from core.contracts import (
    RunStatus,
    JobRunStatus,
    StepStatus,
    ApprovalState,
    EventKind,
    JobRole,
    FailureCause,
    SkippedNeedsPolicy,
    TimeoutAction,
)
from core.errors import (
    PipelineError,
    PipelineValidationError,
    CyclicDependencyError,
    ArtifactError,
    InvalidTransitionError,
    ApprovalError,
)
from core.models import (
    PipelineDefinition,
    JobSpec,
    StepSpec,
    Environment,
    ApprovalRequest,
    RunInstance,
    JobRun,
    TriggerEvent,
    RunEvent,
    EventType,
    EventStatus,
)

__all__ = [
    # Enums
    "RunStatus",
    "JobRunStatus",
    "StepStatus",
    "ApprovalState",
    "EventKind",
    "JobRole",
    "FailureCause",
    "SkippedNeedsPolicy",
    "TimeoutAction",
    "EventType",
    "EventStatus",
    # Errors
    "PipelineError",
    "PipelineValidationError",
    "CyclicDependencyError",
    "ArtifactError",
    "InvalidTransitionError",
    "ApprovalError",
    # Models
    "PipelineDefinition",
    "JobSpec",
    "StepSpec",
    "Environment",
    "ApprovalRequest",
    "RunInstance",
    "JobRun",
    "TriggerEvent",
    "RunEvent",
]
