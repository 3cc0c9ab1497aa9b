# ============================================================================
# EVENT MODELS
# ============================================================================
# STATUS: Core model - Inbound trigger events and run timeline events
# PURPOSE: Event context for trigger matching; milestones for auditing
# CREATED: 19 OCT 2026
# EXPORTS: TriggerEvent, RunEvent, EventType, EventStatus, Notification,
#          ArtifactRecord, DeployMarker
# DEPENDENCIES: pydantic, enum
# ============================================================================
"""
Event Models

TriggerEvent is what arrives from source control, the scheduler tick, a
manual dispatch or an external dispatch call. RunEvent records execution
milestones of a run for debugging and auditing.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from core.contracts import EventKind


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# INBOUND EVENTS
# ============================================================================

class TriggerEvent(BaseModel):
    """
    An inbound event evaluated against every pipeline's trigger rules.

    `ref` is normalised on construction: refs/heads/<x> sets `branch`,
    refs/tags/<x> sets `tag`. A bare ref is treated as a branch.
    """
    kind: EventKind
    ref: Optional[str] = None
    branch: Optional[str] = None
    tag: Optional[str] = None
    sha: Optional[str] = Field(default=None, max_length=64)
    actor: Optional[str] = None
    changed_paths: Optional[List[str]] = Field(
        default=None,
        description="None means unknown; path filters then match",
    )
    action: Optional[str] = Field(
        default=None,
        description="Pull request action or external dispatch type",
    )
    pipeline_id: Optional[str] = Field(
        default=None,
        description="Manual dispatch target; other kinds match every pipeline",
    )
    inputs: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)
    scheduled_at: Optional[datetime] = None
    cron: Optional[str] = Field(
        default=None,
        description="Set on schedule run seeds to the matching expression",
    )
    received_at: datetime = Field(default_factory=_utcnow)

    @field_validator("changed_paths", mode="before")
    @classmethod
    def handle_string_input(cls, v):
        if isinstance(v, str):
            return [v]
        return v

    @model_validator(mode="after")
    def normalize_ref(self) -> "TriggerEvent":
        if self.ref and not (self.branch or self.tag):
            if self.ref.startswith("refs/heads/"):
                self.branch = self.ref[len("refs/heads/"):]
            elif self.ref.startswith("refs/tags/"):
                self.tag = self.ref[len("refs/tags/"):]
            else:
                self.branch = self.ref
        return self

    def context(self) -> Dict[str, Any]:
        """Variables exposed to expressions as `event`."""
        return {
            "kind": self.kind.value,
            "name": self.kind.value,
            "ref": self.ref or (f"refs/heads/{self.branch}" if self.branch else None)
                   or (f"refs/tags/{self.tag}" if self.tag else None),
            "branch": self.branch,
            "tag": self.tag,
            "sha": self.sha,
            "actor": self.actor,
            "action": self.action,
            "changed_paths": list(self.changed_paths or []),
            "payload": self.payload,
            "inputs": self.inputs,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "cron": self.cron,
            "schedule": self.cron,
        }


# ============================================================================
# RUN TIMELINE
# ============================================================================

class EventType(str, Enum):
    """Types of events that can occur during a run."""

    # Run lifecycle
    RUN_CREATED = "run_created"
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"

    # Job lifecycle
    JOB_READY = "job_ready"
    JOB_BLOCKED = "job_blocked"
    JOB_STARTED = "job_started"
    JOB_SUCCEEDED = "job_succeeded"
    JOB_FAILED = "job_failed"
    JOB_SKIPPED = "job_skipped"
    JOB_CANCELLED = "job_cancelled"
    JOB_RETRY = "job_retry"

    # Step lifecycle
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"

    # Gates
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"

    # Rollback
    ROLLBACK_SCHEDULED = "rollback_scheduled"
    ROLLBACK_SKIPPED = "rollback_skipped"
    ROLLBACK_FAILED = "rollback_failed"

    # Pipeline calls
    CALL_STARTED = "call_started"
    CALL_COMPLETED = "call_completed"

    # System
    WARNING = "warning"
    ERROR = "error"


class EventStatus(str, Enum):
    """Status/severity of an event."""
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"
    INFO = "info"


class RunEvent(BaseModel):
    """A single event in a run's execution timeline."""

    event_id: Optional[int] = None
    run_id: str = Field(..., max_length=64)
    job: Optional[str] = Field(default=None, max_length=256)
    step: Optional[str] = None

    event_type: EventType
    event_status: EventStatus = Field(default=EventStatus.INFO)
    event_data: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def run_event(
        cls,
        run_id: str,
        event_type: EventType,
        status: EventStatus = EventStatus.INFO,
        event_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> "RunEvent":
        """Create a run-level event."""
        return cls(
            run_id=run_id,
            event_type=event_type,
            event_status=status,
            event_data=event_data or {},
            error_message=error_message,
        )

    @classmethod
    def job_event(
        cls,
        run_id: str,
        job: str,
        event_type: EventType,
        status: EventStatus = EventStatus.INFO,
        step: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> "RunEvent":
        """Create a job- or step-level event."""
        return cls(
            run_id=run_id,
            job=job,
            step=step,
            event_type=event_type,
            event_status=status,
            event_data=event_data or {},
            error_message=error_message[:2000] if error_message else None,
        )


class Notification(BaseModel):
    """Message handed to a NotificationSink."""
    severity: str = Field(default="info", pattern="^(info|warning|critical)$")
    title: str
    message: str
    run_id: Optional[str] = None
    environment: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


# ============================================================================
# ARTIFACTS
# ============================================================================

class ArtifactRecord(BaseModel):
    """One write-once value keyed by (run_id, job, key)."""
    run_id: str
    job: str
    key: str
    value: Any = None
    created_at: datetime = Field(default_factory=_utcnow)


class DeployMarker(BaseModel):
    """
    Record of a succeeded deploy, indexed per environment across runs.

    Used as the 'last known good' input of a compensating rollback job.
    """
    environment: str
    run_id: str
    pipeline_id: str
    job: str
    sha: Optional[str] = None
    ref: Optional[str] = None
    outputs: Dict[str, str] = Field(default_factory=dict)
    deployed_at: datetime = Field(default_factory=_utcnow)

    def as_inputs(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "run_id": self.run_id,
            "job": self.job,
            "sha": self.sha,
            "ref": self.ref,
            "outputs": dict(self.outputs),
        }


__all__ = [
    "TriggerEvent",
    "RunEvent",
    "EventType",
    "EventStatus",
    "Notification",
    "ArtifactRecord",
    "DeployMarker",
]
