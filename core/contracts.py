# ============================================================================
# BASE CONTRACTS & ENUMS
# ============================================================================
# STATUS: Foundation - Core enums and base contracts
# PURPOSE: Define status enums and base data contracts for pipeline runs
# CREATED: 19 OCT 2026
# EXPORTS: RunStatus, JobRunStatus, ApprovalState, EventKind, JobRole,
#          FailureCause, SkippedNeedsPolicy, TimeoutAction, RunData, JobRunData
# DEPENDENCIES: enum, pydantic
# ============================================================================
"""
Base contracts for the pipeline orchestration system.

These define the identity fields and lifecycle enums shared by the
scheduler, the services, the runner and the HTTP surface.
"""

from enum import Enum
from pydantic import BaseModel, Field


# ============================================================================
# STATUS ENUMS
# ============================================================================

class RunStatus(str, Enum):
    """
    RunInstance lifecycle states.

    State transitions:
        QUEUED -> RUNNING -> SUCCEEDED
                          -> FAILED
               -> CANCELLED
    """
    QUEUED = "queued"            # Run created, scheduler not started
    RUNNING = "running"          # Scheduler driving the job graph
    SUCCEEDED = "succeeded"      # Every job terminal, none failed
    FAILED = "failed"            # At least one job failed
    CANCELLED = "cancelled"      # Cancelled through the control surface

    def is_terminal(self) -> bool:
        """Check if this is a terminal state (no further transitions)."""
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class JobRunStatus(str, Enum):
    """
    JobRun lifecycle states within a run.

    State transitions:
        PENDING -> READY -> RUNNING -> SUCCEEDED
                                    -> FAILED
                -> BLOCKED -> READY
                           -> FAILED (rejected / timed out)
                -> SKIPPED (condition false)
        any non-terminal -> CANCELLED
    """
    PENDING = "pending"          # Waiting for needs
    BLOCKED = "blocked"          # Waiting on an approval request
    READY = "ready"              # Needs met, condition true, awaiting a slot
    RUNNING = "running"          # Steps executing on a runner slot
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"          # Condition evaluated false
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (
            JobRunStatus.SUCCEEDED,
            JobRunStatus.FAILED,
            JobRunStatus.SKIPPED,
            JobRunStatus.CANCELLED,
        )

    @property
    def result(self) -> str:
        """Result string exposed to expressions as needs.<job>.result."""
        return {
            JobRunStatus.SUCCEEDED: "success",
            JobRunStatus.FAILED: "failure",
            JobRunStatus.SKIPPED: "skipped",
            JobRunStatus.CANCELLED: "cancelled",
        }.get(self, "")


class StepStatus(str, Enum):
    """Outcome of a single step within a job."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def result(self) -> str:
        return {
            StepStatus.SUCCEEDED: "success",
            StepStatus.FAILED: "failure",
            StepStatus.SKIPPED: "skipped",
            StepStatus.CANCELLED: "cancelled",
        }.get(self, "")


class ApprovalState(str, Enum):
    """
    ApprovalRequest states.

    PENDING -> APPROVED | REJECTED | TIMED_OUT | CANCELLED
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        return self != ApprovalState.PENDING


class EventKind(str, Enum):
    """Inbound event kinds a trigger rule can match."""
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    WORKFLOW_DISPATCH = "workflow_dispatch"      # Manual dispatch
    REPOSITORY_DISPATCH = "repository_dispatch"  # External dispatch
    WORKFLOW_CALL = "workflow_call"              # Raised by a calling job only


class JobRole(str, Enum):
    """Role tag of a job, used by the rollback controller."""
    BUILD = "build"
    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class FailureCause(str, Enum):
    """Why a JobRun ended FAILED (or CANCELLED)."""
    STEP = "step"                                      # Step exited non-zero
    APPROVAL = "approval"                              # Rejected or timed out
    ENVIRONMENT_PROTECTION = "environment_protection"  # Branch restriction
    INFRASTRUCTURE = "infrastructure"                  # Lost runner
    TEMPLATE = "template"                              # Input resolution failed
    ARTIFACT = "artifact"                              # Write-once / access error
    CALLED_PIPELINE = "called_pipeline"                # Called run rejected or failed
    CANCELLED = "cancelled"


class SkippedNeedsPolicy(str, Enum):
    """
    How a SKIPPED dependency counts for success().

    SATISFIED: skipped is satisfied-but-not-successful, downstream still runs.
    BLOCKING:  skipped makes success() false, downstream is skipped as well.
    """
    SATISFIED = "satisfied"
    BLOCKING = "blocking"


class TimeoutAction(str, Enum):
    """What an approval timeout resolves to."""
    FAIL = "fail"
    APPROVE = "approve"


# ============================================================================
# BASE DATA CONTRACTS
# ============================================================================

class RunData(BaseModel):
    """Essential run identity."""
    run_id: str = Field(..., max_length=64)
    pipeline_id: str = Field(..., max_length=64, description="Reference to pipeline definition")

    model_config = {"frozen": False}


class JobRunData(BaseModel):
    """Essential JobRun identity within a run."""
    run_id: str = Field(..., max_length=64)
    name: str = Field(..., max_length=256, description="Expanded job name (matrix aware)")

    model_config = {"frozen": False}
