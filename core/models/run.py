# ============================================================================
# RUN MODELS
# ============================================================================
# STATUS: Core model - Run instance and job run state
# PURPOSE: Track one execution of a pipeline and each expanded job in it
# CREATED: 19 OCT 2026
# EXPORTS: RunInstance, JobRun, StepRun
# DEPENDENCIES: pydantic
# ============================================================================
"""
Run Models

A RunInstance represents one execution of a pipeline definition
triggered by a single event. It pins the definition snapshot and owns
its JobRun table; nothing else mutates it.

Key concept:
- PipelineDefinition.JobSpec = TEMPLATE (what to do)
- JobRun = INSTANCE (runtime state, one per matrix combination)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, computed_field

from core.contracts import (
    FailureCause,
    JobRole,
    JobRunData,
    JobRunStatus,
    RunData,
    RunStatus,
    StepStatus,
)
from core.errors import InvalidTransitionError
from core.models.pipeline import PipelineDefinition, StepSpec


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepRun(BaseModel):
    """Outcome of one step of a JobRun."""
    index: int
    step_id: Optional[str] = None
    name: str
    status: StepStatus = StepStatus.PENDING
    exit_code: Optional[int] = None
    outputs: Dict[str, str] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobRun(JobRunData):
    """
    Runtime state of one expanded job within a run.

    Lifecycle:
        1. Created PENDING when the run is instantiated
        2. SKIPPED if its condition is false once needs are terminal
        3. BLOCKED while an approval request is pending
        4. READY when needs are met, condition true and gate open
        5. RUNNING while holding a runner slot
        6. SUCCEEDED / FAILED when the last step reports
        7. CANCELLED from any non-terminal state
    """

    spec_name: str = Field(..., description="JobSpec this run was expanded from")
    display_name: Optional[str] = None
    status: JobRunStatus = Field(default=JobRunStatus.PENDING)
    needs: List[str] = Field(default_factory=list, description="Expanded JobRun names")
    condition: Optional[str] = None
    matrix: Dict[str, Any] = Field(default_factory=dict)
    environment: Optional[str] = None
    role: JobRole = JobRole.BUILD
    steps: List[StepSpec] = Field(default_factory=list)
    inputs: Dict[str, Any] = Field(
        default_factory=dict,
        description="Extra inputs (rollback marker) exposed as 'inputs' in expressions",
    )
    rollback_of: Optional[str] = Field(
        default=None,
        description="For compensating jobs, the failed deploy JobRun",
    )
    call: Optional[str] = Field(default=None, description="Pipeline id this job calls")
    call_revision: Optional[int] = Field(default=None, description="Callee revision pinned at run creation")
    call_inputs: Dict[str, Any] = Field(default_factory=dict, description="Unrendered 'with' of a call")
    child_run_id: Optional[str] = None

    step_runs: List[StepRun] = Field(default_factory=list)
    outputs: Dict[str, str] = Field(default_factory=dict)
    failure_cause: Optional[FailureCause] = None
    error_message: Optional[str] = None
    approval_request_id: Optional[str] = None

    attempt: int = Field(default=1, ge=1)
    max_infrastructure_retries: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @computed_field
    @property
    def is_terminal(self) -> bool:
        """Check if the job is in a terminal state."""
        return self.status.is_terminal()

    @computed_field
    @property
    def result(self) -> str:
        return self.status.result

    @property
    def is_matrix_instance(self) -> bool:
        return bool(self.matrix)

    def can_transition_to(self, new_status: JobRunStatus) -> bool:
        """
        Validate if a status transition is allowed.

        Valid transitions:
            PENDING -> READY, BLOCKED, SKIPPED, FAILED, CANCELLED
            BLOCKED -> READY, FAILED, CANCELLED
            READY -> RUNNING, FAILED, CANCELLED
            RUNNING -> SUCCEEDED, FAILED, CANCELLED
            FAILED -> READY (infrastructure retry only)
        """
        if self.status == new_status:
            return True

        allowed = {
            JobRunStatus.PENDING: {
                JobRunStatus.READY, JobRunStatus.BLOCKED, JobRunStatus.SKIPPED,
                JobRunStatus.FAILED, JobRunStatus.CANCELLED,
            },
            JobRunStatus.BLOCKED: {JobRunStatus.READY, JobRunStatus.FAILED, JobRunStatus.CANCELLED},
            JobRunStatus.READY: {JobRunStatus.RUNNING, JobRunStatus.FAILED, JobRunStatus.CANCELLED},
            JobRunStatus.RUNNING: {JobRunStatus.SUCCEEDED, JobRunStatus.FAILED, JobRunStatus.CANCELLED},
            JobRunStatus.SUCCEEDED: set(),
            JobRunStatus.FAILED: (
                {JobRunStatus.READY}
                if self.failure_cause == FailureCause.INFRASTRUCTURE
                and self.attempt <= self.max_infrastructure_retries
                else set()
            ),
            JobRunStatus.SKIPPED: set(),
            JobRunStatus.CANCELLED: set(),
        }
        return new_status in allowed.get(self.status, set())

    def _transition(self, new_status: JobRunStatus) -> None:
        if not self.can_transition_to(new_status):
            raise InvalidTransitionError(
                f"JobRun '{self.name}' cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.updated_at = _utcnow()

    def mark_blocked(self, request_id: Optional[str] = None) -> None:
        """Hold the job on an approval request, or on a wait timer when None."""
        self._transition(JobRunStatus.BLOCKED)
        self.approval_request_id = request_id

    def mark_ready(self) -> None:
        self._transition(JobRunStatus.READY)

    def mark_running(self) -> None:
        self._transition(JobRunStatus.RUNNING)
        self.started_at = _utcnow()

    def mark_succeeded(self, outputs: Optional[Dict[str, str]] = None) -> None:
        self._transition(JobRunStatus.SUCCEEDED)
        self.outputs = outputs or {}
        self.completed_at = _utcnow()

    def mark_failed(self, cause: FailureCause, error_message: str) -> None:
        self._transition(JobRunStatus.FAILED)
        self.failure_cause = cause
        self.error_message = error_message[:2000]
        self.completed_at = _utcnow()

    def mark_skipped(self, reason: Optional[str] = None) -> None:
        self._transition(JobRunStatus.SKIPPED)
        self.error_message = reason
        self.completed_at = _utcnow()

    def mark_cancelled(self, reason: str = "Run cancelled") -> None:
        self._transition(JobRunStatus.CANCELLED)
        self.failure_cause = FailureCause.CANCELLED
        self.error_message = reason
        self.completed_at = _utcnow()

    def prepare_retry(self) -> bool:
        """
        Prepare job for retry after an infrastructure failure.

        Returns True if retry is allowed. Application failures are never
        retried.
        """
        if not self.can_transition_to(JobRunStatus.READY) or self.status != JobRunStatus.FAILED:
            return False
        self.attempt += 1
        self.status = JobRunStatus.READY
        self.failure_cause = None
        self.error_message = None
        self.step_runs = []
        self.started_at = None
        self.completed_at = None
        self.updated_at = _utcnow()
        return True


class RunInstance(RunData):
    """
    One execution of a pipeline definition.

    Holds the event context, the pinned definition and the realized
    job graph (JobRun table keyed by expanded name).
    """
    status: RunStatus = Field(default=RunStatus.QUEUED)
    revision: int = Field(..., ge=1)
    definition_snapshot: Dict[str, Any] = Field(
        ...,
        description="Serialized PipelineDefinition captured at run creation (immutable)",
    )
    event: Dict[str, Any] = Field(
        default_factory=dict,
        description="Event context: kind, ref, branch, tag, sha, actor, payload, inputs",
    )
    jobs: Dict[str, JobRun] = Field(default_factory=dict)
    topo_levels: List[List[str]] = Field(
        default_factory=list,
        description="Scheduling hint only; siblings may run concurrently",
    )

    error_message: Optional[str] = None
    requires_intervention: bool = Field(
        default=False,
        description="Set when a rollback failed; the environment needs a human",
    )
    cancelled_by: Optional[str] = None
    parent_run_id: Optional[str] = Field(default=None, description="Run whose job called this one")
    parent_job: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @computed_field
    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.started_at:
            return None
        end_time = self.completed_at or _utcnow()
        return (end_time - self.started_at).total_seconds()

    def get_pinned_definition(self) -> PipelineDefinition:
        """Deserialize the pinned definition snapshot."""
        return PipelineDefinition.model_validate(self.definition_snapshot)

    def get_job(self, name: str) -> JobRun:
        if name not in self.jobs:
            raise KeyError(f"Job '{name}' not found in run {self.run_id}")
        return self.jobs[name]

    def instances_of(self, spec_name: str) -> List[JobRun]:
        """All JobRuns expanded from one JobSpec, in expansion order."""
        return [j for j in self.jobs.values() if j.spec_name == spec_name]

    def all_terminal(self) -> bool:
        return all(j.status.is_terminal() for j in self.jobs.values())

    def mark_started(self) -> None:
        if self.status == RunStatus.QUEUED:
            self.status = RunStatus.RUNNING
            self.started_at = _utcnow()

    def mark_finished(self) -> RunStatus:
        """Derive the terminal status from job states."""
        if self.status == RunStatus.CANCELLED:
            return self.status
        failed = [j.name for j in self.jobs.values() if j.status == JobRunStatus.FAILED]
        if failed:
            self.status = RunStatus.FAILED
            self.error_message = f"Failed jobs: {failed}"
        else:
            self.status = RunStatus.SUCCEEDED
        self.completed_at = _utcnow()
        return self.status

    def mark_cancelled(self, actor: Optional[str] = None) -> None:
        if self.status.is_terminal():
            raise InvalidTransitionError(f"Run {self.run_id} is already {self.status.value}")
        self.status = RunStatus.CANCELLED
        self.cancelled_by = actor
        self.completed_at = _utcnow()


__all__ = ["RunInstance", "JobRun", "StepRun"]
