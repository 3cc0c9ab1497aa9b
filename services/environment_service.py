# ============================================================================
# ENVIRONMENT SERVICE
# ============================================================================
# STATUS: Core - Environment registry and approval gate manager
# PURPOSE: Environment lookup, approval requests, decisions and timeouts
# CREATED: 19 OCT 2026
# ============================================================================
"""
Environment Service

Holds the Environment registry (read-only at run time) and every
ApprovalRequest. Each request is bound to one (run_id, job) pair and
transitions independently; there is no lock on the environment itself.

Gate flow:
1. Scheduler finds a job otherwise-ready and targeting a gated environment
2. create_request() evaluates the branch restriction once and applies
   auto-approval rules
3. approve()/reject() by listed approvers, or expire_overdue() applying
   the environment's on_timeout action
4. Listeners (run controllers) are told about every resolution
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from pydantic import ValidationError

from core.contracts import ApprovalState, TimeoutAction
from core.errors import ApprovalError, ApproverNotAuthorizedError, PipelineValidationError
from core.models.environment import ApprovalRequest, Environment
from orchestrator.engine.expressions import ExpressionContext, evaluate_condition
from orchestrator.engine.globs import match_ordered

logger = logging.getLogger(__name__)

AUTO_APPROVER = "auto-approval"
TIMEOUT_APPROVER = "timeout"

ApprovalListener = Callable[[ApprovalRequest], None]


class EnvironmentService:
    """Environment registry and approval gate manager."""

    def __init__(
        self,
        environments: Optional[List[Environment]] = None,
        approval_timeout_seconds: float = 24 * 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            environments: Initial environments
            approval_timeout_seconds: Used when an environment sets none
            clock: Injectable time source
        """
        self.approval_timeout_seconds = approval_timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._environments: Dict[str, Environment] = {}
        self._requests: Dict[str, ApprovalRequest] = {}
        self._listeners: List[ApprovalListener] = []
        for environment in environments or []:
            self.register(environment)

    # =========================================================================
    # REGISTRY
    # =========================================================================

    def register(self, environment: Environment) -> None:
        self._environments[environment.name] = environment
        logger.info(
            f"Registered environment: {environment.name} "
            f"(approvers={len(environment.approvers)}, branches={environment.branches or 'any'})"
        )

    def load_file(self, path: str) -> int:
        """
        Load environments from YAML.

        Accepts `environments:` as a mapping (name -> settings) or a list.

        Raises:
            PipelineValidationError: malformed file, nothing registered
        """
        with open(Path(path)) as f:
            data = yaml.safe_load(f) or {}
        entries = data.get("environments", data) if isinstance(data, dict) else data
        if isinstance(entries, dict):
            entries = [{"name": name, **(settings or {})} for name, settings in entries.items()]
        if not isinstance(entries, list):
            raise PipelineValidationError(f"Environments file {path} must hold a list or mapping")

        parsed = []
        errors = []
        for entry in entries:
            try:
                parsed.append(Environment.model_validate(entry))
            except ValidationError as e:
                errors.append(f"{entry.get('name', '?') if isinstance(entry, dict) else entry}: {e.errors()[0]['msg']}")
        if errors:
            raise PipelineValidationError(f"Invalid environments in {path}: {errors[0]}", errors)
        for environment in parsed:
            self.register(environment)
        return len(parsed)

    def get(self, name: str) -> Optional[Environment]:
        return self._environments.get(name)

    def get_or_raise(self, name: str) -> Environment:
        environment = self.get(name)
        if environment is None:
            raise KeyError(f"Environment not found: {name}")
        return environment

    def exists(self, name: str) -> bool:
        return name in self._environments

    def list_all(self) -> List[Environment]:
        return list(self._environments.values())

    def now(self) -> datetime:
        return self._clock()

    def branch_allowed(self, environment: Environment, branch: Optional[str]) -> bool:
        if not environment.branches:
            return True
        return match_ordered(environment.branches, branch)

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def add_listener(self, listener: ApprovalListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ApprovalListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, request: ApprovalRequest) -> None:
        for listener in list(self._listeners):
            try:
                listener(request)
            except Exception as e:
                logger.warning(f"Approval listener failed for {request.request_id}: {e}")

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def create_request(
        self,
        run_id: str,
        job: str,
        environment_name: str,
        branch: Optional[str] = None,
        context: Optional[ExpressionContext] = None,
        bypass: bool = False,
    ) -> ApprovalRequest:
        """
        Create the approval request of one JobRun.

        The branch restriction is evaluated here and never again. A
        violation resolves the request as REJECTED immediately. With
        `bypass` (emergency rollback) the request is approved at once.
        """
        environment = self.get_or_raise(environment_name)
        now = self._clock()
        timeout = environment.wait_timeout_seconds
        if timeout is None:
            timeout = self.approval_timeout_seconds

        request = ApprovalRequest(
            run_id=run_id,
            job=job,
            environment=environment.name,
            branch=branch,
            branch_allowed=self.branch_allowed(environment, branch),
            required_approvals=max(1, min(environment.required_approvals, len(environment.approvers) or 1)),
            created_at=now,
            expires_at=now + timedelta(seconds=timeout),
        )
        self._requests[request.request_id] = request

        if not request.branch_allowed:
            request.reject(
                "environment-protection",
                now,
                f"Branch '{branch}' may not deploy to environment '{environment.name}'",
            )
            logger.warning(f"Approval {request.request_id} rejected: {request.reason}")
        elif bypass:
            request.approve(AUTO_APPROVER, now, 0, reason="Emergency rollback bypass")
            logger.warning(
                f"Approval {request.request_id} bypassed for rollback to {environment.name}"
            )
        else:
            rule = self._matching_auto_rule(environment, context)
            if rule is not None:
                request.approve(
                    AUTO_APPROVER, now, environment.wait_timer_seconds,
                    reason=f"Auto-approved by rule '{rule}'",
                )
                logger.info(f"Approval {request.request_id} auto-approved by '{rule}'")
            else:
                logger.info(
                    f"Approval {request.request_id} pending for job '{job}' -> {environment.name} "
                    f"(expires {request.expires_at.isoformat()})"
                )

        if request.is_terminal:
            self._notify(request)
        return request

    def _matching_auto_rule(
        self,
        environment: Environment,
        context: Optional[ExpressionContext],
    ) -> Optional[str]:
        context = context or ExpressionContext()
        for rule in environment.auto_approve:
            if evaluate_condition(rule, context, implicit_success=False):
                return rule
        return None

    def get_request(self, request_id: str) -> ApprovalRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise KeyError(f"Approval request not found: {request_id}")
        return request

    def list_requests(
        self,
        state: Optional[ApprovalState] = None,
        run_id: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> List[ApprovalRequest]:
        requests = list(self._requests.values())
        if state is not None:
            requests = [r for r in requests if r.state == state]
        if run_id is not None:
            requests = [r for r in requests if r.run_id == run_id]
        if environment is not None:
            requests = [r for r in requests if r.environment == environment]
        return sorted(requests, key=lambda r: r.created_at)

    # =========================================================================
    # DECISIONS
    # =========================================================================

    def _authorize(self, request: ApprovalRequest, actor: str) -> Environment:
        environment = self.get_or_raise(request.environment)
        if actor not in environment.approvers:
            raise ApproverNotAuthorizedError(actor, environment.name)
        return environment

    def _check_open(self, request: ApprovalRequest, now: datetime) -> None:
        if request.is_expired(now):
            self._apply_timeout(request, now)
        if request.state != ApprovalState.PENDING:
            raise ApprovalError(
                f"Approval {request.request_id} is already {request.state.value}"
            )

    def approve(self, request_id: str, actor: str, comment: Optional[str] = None) -> ApprovalRequest:
        """
        Record an approval by a listed approver.

        Raises:
            KeyError: unknown request
            ApproverNotAuthorizedError: actor not in the approver list
            ApprovalError: request no longer pending
        """
        request = self.get_request(request_id)
        environment = self._authorize(request, actor)
        now = self._clock()
        self._check_open(request, now)
        if request.record_approval(actor, now, environment.wait_timer_seconds, comment):
            logger.info(f"Approval {request_id} approved by {actor}")
            self._notify(request)
        else:
            logger.info(
                f"Approval {request_id}: {actor} approved "
                f"({len(request.approvals)}/{request.required_approvals})"
            )
        return request

    def reject(self, request_id: str, actor: str, comment: Optional[str] = None) -> ApprovalRequest:
        """Reject a pending request. Same errors as approve()."""
        request = self.get_request(request_id)
        self._authorize(request, actor)
        now = self._clock()
        self._check_open(request, now)
        request.reject(actor, now, comment)
        logger.info(f"Approval {request_id} rejected by {actor}")
        self._notify(request)
        return request

    def _apply_timeout(self, request: ApprovalRequest, now: datetime) -> None:
        environment = self.get(request.environment)
        if environment is not None and environment.on_timeout == TimeoutAction.APPROVE:
            request.approve(
                TIMEOUT_APPROVER, now, environment.wait_timer_seconds,
                reason="Approved on timeout",
            )
            logger.warning(f"Approval {request.request_id} auto-approved on timeout")
        else:
            request.time_out(now)
            logger.warning(f"Approval {request.request_id} timed out")
        self._notify(request)

    def expire_overdue(self, now: Optional[datetime] = None) -> List[ApprovalRequest]:
        """Resolve every pending request past its expiry."""
        now = now or self._clock()
        expired = [r for r in self._requests.values() if r.is_expired(now)]
        for request in expired:
            self._apply_timeout(request, now)
        return expired

    def next_expiry(self, run_id: Optional[str] = None) -> Optional[datetime]:
        pending = [
            r.expires_at for r in self._requests.values()
            if r.state == ApprovalState.PENDING and r.expires_at is not None
            and (run_id is None or r.run_id == run_id)
        ]
        return min(pending) if pending else None

    def cancel_request(self, request_id: str, reason: str) -> Optional[ApprovalRequest]:
        """Release one pending request (job cancelled before a decision)."""
        request = self._requests.get(request_id)
        if request is None or request.state != ApprovalState.PENDING:
            return None
        request.cancel(self._clock(), reason)
        self._notify(request)
        return request

    def cancel_for_run(self, run_id: str, reason: str = "Run cancelled") -> List[ApprovalRequest]:
        """Release every pending request of a cancelled run."""
        now = self._clock()
        cancelled = []
        for request in self._requests.values():
            if request.run_id == run_id and request.state == ApprovalState.PENDING:
                request.cancel(now, reason)
                cancelled.append(request)
        for request in cancelled:
            self._notify(request)
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} approval requests of run {run_id}")
        return cancelled

    @property
    def stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for request in self._requests.values():
            counts[request.state.value] = counts.get(request.state.value, 0) + 1
        return {"environments": len(self._environments), "requests": counts}


__all__ = ["EnvironmentService", "AUTO_APPROVER", "TIMEOUT_APPROVER"]
