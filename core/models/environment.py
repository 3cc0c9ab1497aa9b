# ============================================================================
# ENVIRONMENT & APPROVAL MODELS
# ============================================================================
# STATUS: Core model - Deployment targets and approval requests
# PURPOSE: Environment value objects and the approval request state machine
# CREATED: 19 OCT 2026
# EXPORTS: Environment, ApprovalRequest, ApprovalDecision
# DEPENDENCIES: pydantic
# ============================================================================
"""
Environment & Approval Models

An Environment is a named deployment target selected by lookup. It is
read-only at run time; per-run mutable state lives on ApprovalRequest.

ApprovalRequest lifecycle:
    PENDING -> APPROVED   (required approvers accepted, or auto-approval rule)
    PENDING -> REJECTED   (any approver declined)
    PENDING -> TIMED_OUT  (wait timeout elapsed, on_timeout=fail)
    PENDING -> CANCELLED  (run cancelled)
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, computed_field

from core.contracts import ApprovalState, TimeoutAction
from core.errors import InvalidTransitionError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Environment(BaseModel):
    """A named deployment target with its own secret scope and gate."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., max_length=64)
    approvers: List[str] = Field(default_factory=list, description="Ordered approver identities")
    required_approvals: int = Field(default=1, ge=1)
    wait_timer_seconds: float = Field(
        default=0,
        ge=0,
        description="Minimum delay after approval before the job may run",
    )
    wait_timeout_seconds: Optional[float] = Field(
        default=None,
        ge=0,
        description="How long an approval may stay pending (None = config default)",
    )
    on_timeout: TimeoutAction = TimeoutAction.FAIL
    secret_scope: Optional[str] = None
    branches: List[str] = Field(
        default_factory=list,
        description="Only runs from matching branches may target this environment",
    )
    auto_approve: List[str] = Field(
        default_factory=list,
        description="Expressions; any true expression approves the request",
    )
    allow_rollback_bypass: bool = False
    url: Optional[str] = None

    @property
    def is_gated(self) -> bool:
        """Environment requires a human (or rule) decision."""
        return bool(self.approvers)


class ApprovalDecision(BaseModel):
    """One approver's recorded decision."""
    actor: str
    approved: bool
    comment: Optional[str] = None
    decided_at: datetime = Field(default_factory=_utcnow)


class ApprovalRequest(BaseModel):
    """
    Pending-decision record blocking one JobRun.

    Bound to exactly one (run_id, job) pair; requests for the same
    environment are independent of each other.
    """
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    run_id: str
    job: str
    environment: str
    state: ApprovalState = ApprovalState.PENDING

    # Branch restriction is evaluated once, here, and never re-checked
    branch: Optional[str] = None
    branch_allowed: bool = True

    required_approvals: int = 1
    decisions: List[ApprovalDecision] = Field(default_factory=list)
    decided_by: Optional[str] = None
    reason: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    ready_at: Optional[datetime] = Field(
        default=None,
        description="Earliest time the job may run after approval (wait timer)",
    )

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal()

    @property
    def approvals(self) -> List[str]:
        return [d.actor for d in self.decisions if d.approved]

    def is_expired(self, now: datetime) -> bool:
        return (
            self.state == ApprovalState.PENDING
            and self.expires_at is not None
            and now >= self.expires_at
        )

    def _resolve(self, state: ApprovalState, now: datetime, reason: Optional[str]) -> None:
        if self.state != ApprovalState.PENDING:
            raise InvalidTransitionError(
                f"Approval {self.request_id} is already {self.state.value}"
            )
        self.state = state
        self.resolved_at = now
        self.reason = reason

    def record_approval(
        self,
        actor: str,
        now: datetime,
        wait_timer_seconds: float = 0,
        comment: Optional[str] = None,
    ) -> bool:
        """
        Record one approval. Returns True once the request became APPROVED.
        """
        if self.state != ApprovalState.PENDING:
            raise InvalidTransitionError(
                f"Approval {self.request_id} is already {self.state.value}"
            )
        if actor not in self.approvals:
            self.decisions.append(ApprovalDecision(actor=actor, approved=True, comment=comment, decided_at=now))
        if len(self.approvals) >= self.required_approvals:
            self.approve(actor, now, wait_timer_seconds)
            return True
        return False

    def approve(self, actor: str, now: datetime, wait_timer_seconds: float = 0, reason: Optional[str] = None) -> None:
        self._resolve(ApprovalState.APPROVED, now, reason)
        self.decided_by = actor
        self.ready_at = now + timedelta(seconds=wait_timer_seconds)

    def reject(self, actor: str, now: datetime, comment: Optional[str] = None) -> None:
        self._resolve(ApprovalState.REJECTED, now, comment or f"Rejected by {actor}")
        self.decisions.append(ApprovalDecision(actor=actor, approved=False, comment=comment, decided_at=now))
        self.decided_by = actor

    def time_out(self, now: datetime) -> None:
        self._resolve(ApprovalState.TIMED_OUT, now, "Approval wait duration elapsed")

    def cancel(self, now: datetime, reason: str = "Run cancelled") -> None:
        self._resolve(ApprovalState.CANCELLED, now, reason)


__all__ = ["Environment", "ApprovalRequest", "ApprovalDecision"]
