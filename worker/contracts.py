# ============================================================================
# RUNNER CONTRACTS
# ============================================================================
# STATUS: Core - Step dispatch contract between scheduler and runner
# PURPOSE: Define the step dispatch format, the outcome format, runner errors
# CREATED: 19 OCT 2026
# ============================================================================
"""
Runner Contracts

Defines the dispatch contract for step execution:

    submit(StepDispatch) -> StepOutcome

StepDispatch Format:
{
    "run_id": "run-9f2c...",
    "pipeline_id": "service-ci",
    "job": "build (linux, 3.11)",
    "step_index": 0,
    "step_id": "compile",
    "run": "make build",            # or "uses": "deploy"
    "inputs": {"target": "dist"},   # resolved `with` values
    "job_inputs": {},               # rollback marker for compensating jobs
    "env": {"CI": "true"},
    "environment": "staging",
    "secret_scope": "staging-secrets",
    "timeout_seconds": 600,
    "downloads": {"bundle": "..."},
    "declared_outputs": ["version"],
    "attempt": 1
}

Cancellation is asyncio task cancellation; the runner kills any child
process and re-raises. A lost runner is reported by raising
RunnerLostError, never through the outcome.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Conventional exit codes for failures the runner itself detects
EXIT_TIMEOUT = 124
EXIT_HANDLER_NOT_FOUND = 127


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ERRORS
# ============================================================================

class RunnerError(Exception):
    """Base exception for runner failures outside the step's control."""
    pass


class RunnerLostError(RunnerError):
    """The runner executing a step went away; the job fails with infrastructure cause."""

    def __init__(self, message: str = "Runner lost", job: Optional[str] = None):
        self.job = job
        super().__init__(message)


# ============================================================================
# STEP DISPATCH
# ============================================================================

class StepDispatch(BaseModel):
    """
    One step handed to a runner slot.

    This is the contract between scheduler and runner. Every template is
    already resolved; the runner sees plain values.
    """

    # Identity
    run_id: str = Field(..., max_length=64)
    pipeline_id: Optional[str] = Field(default=None, max_length=64)
    job: str = Field(..., max_length=256, description="Expanded job name")
    step_index: int = Field(default=0, ge=0)
    step_id: Optional[str] = Field(default=None, max_length=64)
    step_name: Optional[str] = None

    # Executable contract (exactly one)
    run: Optional[str] = Field(default=None, description="Shell command")
    uses: Optional[str] = Field(default=None, max_length=64, description="Handler name")

    inputs: Dict[str, Any] = Field(default_factory=dict)
    job_inputs: Dict[str, Any] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)
    environment: Optional[str] = None
    secret_scope: Optional[str] = None

    timeout_seconds: int = Field(default=3600, ge=1, le=86400)
    downloads: Dict[str, Any] = Field(
        default_factory=dict,
        description="Artifact values fetched before dispatch, keyed by artifact key",
    )
    declared_outputs: List[str] = Field(
        default_factory=list,
        description="Output names kept from the step (empty keeps all)",
    )
    attempt: int = Field(default=1, ge=1)
    dispatched_at: datetime = Field(default_factory=_utcnow)

    @property
    def label(self) -> str:
        return self.step_id or self.step_name or f"step-{self.step_index}"

    def filter_outputs(self, outputs: Dict[str, Any]) -> Dict[str, str]:
        """Keep declared outputs only, stringified."""
        kept = {}
        for key, value in outputs.items():
            if self.declared_outputs and key not in self.declared_outputs:
                logger.debug(f"Dropping undeclared output '{key}' of {self.job}/{self.label}")
                continue
            kept[key] = value if isinstance(value, str) else json.dumps(value, default=str)
        return kept


# ============================================================================
# STEP OUTCOME
# ============================================================================

class StepOutcome(BaseModel):
    """Result reported by the runner after a step exits."""

    exit_code: int = Field(default=0)
    outputs: Dict[str, str] = Field(default_factory=dict)
    artifacts: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = Field(default=None, max_length=2000)
    log_tail: Optional[str] = Field(default=None, description="Last lines of step output")
    timed_out: bool = False
    duration_ms: Optional[int] = Field(default=None, ge=0)

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @classmethod
    def succeeded(
        cls,
        outputs: Optional[Dict[str, str]] = None,
        artifacts: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
        log_tail: Optional[str] = None,
    ) -> "StepOutcome":
        """Create a success outcome."""
        return cls(
            exit_code=0,
            outputs=outputs or {},
            artifacts=artifacts or {},
            duration_ms=duration_ms,
            log_tail=log_tail,
        )

    @classmethod
    def failed(
        cls,
        error_message: str,
        exit_code: int = 1,
        outputs: Optional[Dict[str, str]] = None,
        duration_ms: Optional[int] = None,
        log_tail: Optional[str] = None,
        timed_out: bool = False,
    ) -> "StepOutcome":
        """Create a failure outcome. A zero exit code is coerced to 1."""
        return cls(
            exit_code=exit_code or 1,
            outputs=outputs or {},
            error_message=error_message[:2000] if error_message else None,
            duration_ms=duration_ms,
            log_tail=log_tail,
            timed_out=timed_out,
        )


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "RunnerError",
    "RunnerLostError",
    "StepDispatch",
    "StepOutcome",
    "EXIT_TIMEOUT",
    "EXIT_HANDLER_NOT_FOUND",
]
