# ============================================================================
# API SCHEMAS
# ============================================================================
# STATUS: Core - Request/Response schemas
# PURPOSE: Pydantic models for API validation
# CREATED: 19 OCT 2026
# ============================================================================
"""
API Schemas

Request and response models for the API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from core.contracts import (
    ApprovalState,
    EventKind,
    FailureCause,
    JobRole,
    JobRunStatus,
    RunStatus,
    StepStatus,
    TimeoutAction,
)
from core.models import TriggerEvent


# ============================================================================
# REQUEST SCHEMAS
# ============================================================================

class EventCreate(BaseModel):
    """Inbound event to evaluate against every pipeline's triggers."""
    kind: EventKind
    ref: Optional[str] = Field(None, max_length=256)
    branch: Optional[str] = Field(None, max_length=256)
    tag: Optional[str] = Field(None, max_length=256)
    sha: Optional[str] = Field(None, max_length=64)
    actor: Optional[str] = Field(None, max_length=128)
    changed_paths: Optional[List[str]] = None
    action: Optional[str] = Field(None, max_length=64)
    pipeline_id: Optional[str] = Field(None, max_length=64)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "kind": "push",
                    "ref": "refs/heads/main",
                    "sha": "9f3c2d1",
                    "actor": "alice",
                    "changed_paths": ["src/app.py"],
                },
                {
                    "kind": "workflow_dispatch",
                    "pipeline_id": "release",
                    "ref": "refs/heads/main",
                    "actor": "bob",
                    "inputs": {"environment": "staging", "dry_run": True},
                },
            ]
        }
    }

    def to_event(self) -> TriggerEvent:
        return TriggerEvent(**self.model_dump(exclude_none=True))


class ApprovalDecisionCreate(BaseModel):
    """Approve or reject a pending approval request."""
    actor: str = Field(..., min_length=1, max_length=128)
    comment: Optional[str] = Field(None, max_length=1000)


class RunCancel(BaseModel):
    actor: Optional[str] = Field(None, max_length=128)


class PipelineValidate(BaseModel):
    """Pipeline document (YAML text) to validate without registering."""
    document: str = Field(..., min_length=1)


# ============================================================================
# RESPONSE SCHEMAS
# ============================================================================

class StepRunResponse(BaseModel):
    index: int
    step_id: Optional[str] = None
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    outputs: Dict[str, str] = {}
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class JobRunResponse(BaseModel):
    """JobRun state response."""
    name: str
    spec_name: str
    display_name: Optional[str] = None
    status: JobRunStatus
    role: JobRole
    needs: List[str] = []
    condition: Optional[str] = None
    matrix: Dict[str, Any] = {}
    environment: Optional[str] = None
    outputs: Dict[str, str] = {}
    failure_cause: Optional[FailureCause] = None
    error_message: Optional[str] = None
    approval_request_id: Optional[str] = None
    rollback_of: Optional[str] = None
    call: Optional[str] = None
    child_run_id: Optional[str] = None
    attempt: int = 1
    step_runs: List[StepRunResponse] = []
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RunResponse(BaseModel):
    """Run response."""
    run_id: str
    pipeline_id: str
    revision: int
    status: RunStatus
    event: Dict[str, Any] = {}
    error_message: Optional[str] = None
    requires_intervention: bool = False
    cancelled_by: Optional[str] = None
    parent_run_id: Optional[str] = None
    parent_job: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RunDetailResponse(BaseModel):
    """Detailed run response with its job graph."""
    run: RunResponse
    jobs: List[JobRunResponse]
    topo_levels: List[List[str]] = []
    job_summary: Dict[str, int] = {}


class RunListResponse(BaseModel):
    runs: List[RunResponse]
    total: int


class IngestResponse(BaseModel):
    """Runs instantiated for one event (possibly none)."""
    run_ids: List[str]
    errors: List[str] = []


class ApprovalResponse(BaseModel):
    request_id: str
    run_id: str
    job: str
    environment: str
    state: ApprovalState
    branch: Optional[str] = None
    branch_allowed: bool = True
    required_approvals: int = 1
    approvals: List[str] = []
    decided_by: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ApprovalListResponse(BaseModel):
    approvals: List[ApprovalResponse]
    total: int


class PipelineResponse(BaseModel):
    """Pipeline definition summary."""
    pipeline_id: str
    name: str
    revision: int
    description: Optional[str] = None
    triggers: List[str] = []
    jobs: List[str] = []
    concurrency: Optional[int] = None


class PipelineListResponse(BaseModel):
    pipelines: List[PipelineResponse]
    load_errors: Dict[str, List[str]] = {}


class ValidationResponse(BaseModel):
    valid: bool
    pipeline_id: Optional[str] = None
    errors: List[str] = []


class EnvironmentResponse(BaseModel):
    name: str
    approvers: List[str] = []
    required_approvals: int = 1
    wait_timer_seconds: float = 0
    wait_timeout_seconds: Optional[float] = None
    on_timeout: TimeoutAction
    secret_scope: Optional[str] = None
    branches: List[str] = []
    allow_rollback_bypass: bool = False
    url: Optional[str] = None
    is_gated: bool = False

    model_config = {"from_attributes": True}


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: Optional[str] = None
    run_id: Optional[str] = None
