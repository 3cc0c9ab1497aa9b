# ============================================================================
# ERROR TAXONOMY
# ============================================================================
# STATUS: Foundation - Exception hierarchy
# PURPOSE: Validation and state errors shared across the orchestrator
# CREATED: 19 OCT 2026
# ============================================================================
"""
Exceptions raised by definition loading, run creation and run control.

Validation errors are raised before anything executes; a run is never
partially created.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base exception for the pipeline orchestrator."""
    pass


class PipelineValidationError(PipelineError):
    """Definition or run-creation validation failed."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or [message]
        super().__init__(message)


class CyclicDependencyError(PipelineValidationError):
    """Job graph contains a cycle."""

    def __init__(self, jobs: List[str]):
        self.jobs = jobs
        super().__init__(f"Cycle detected involving jobs: {jobs}")


class ExpressionSyntaxError(PipelineValidationError):
    """Condition or template expression could not be parsed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Malformed expression '{expression}': {reason}")


class UnknownEnvironmentError(PipelineValidationError):
    """Job references an environment that is not registered."""

    def __init__(self, job: str, environment: str):
        self.job = job
        self.environment = environment
        super().__init__(f"Job '{job}' references unknown environment '{environment}'")


class DispatchInputError(PipelineValidationError):
    """Manual dispatch inputs do not satisfy the trigger's input schema."""
    pass


class ArtifactError(PipelineError):
    """Base exception for artifact store failures."""
    pass


class DuplicateArtifactError(ArtifactError, PipelineValidationError):
    """A (run, job, key) triple was written twice."""

    def __init__(self, run_id: str, job: str, key: str):
        self.run_id = run_id
        self.job = job
        self.key = key
        PipelineValidationError.__init__(
            self, f"Artifact already written: run={run_id} job={job} key={key}"
        )


class ArtifactNotFoundError(ArtifactError, KeyError):
    """Requested key was never produced."""

    def __init__(self, run_id: str, job: str, key: str):
        self.run_id = run_id
        self.job = job
        self.key = key
        super().__init__(f"Artifact not found: run={run_id} job={job} key={key}")

    def __str__(self) -> str:
        return self.args[0]


class ArtifactAccessError(ArtifactError, PermissionError):
    """Reader does not depend on the producer of the requested key."""

    def __init__(self, run_id: str, reader: str, producer: str, key: str):
        self.run_id = run_id
        self.reader = reader
        self.producer = producer
        self.key = key
        super().__init__(
            f"Job '{reader}' is not authorized to read '{key}' from '{producer}' "
            f"(no dependency path) in run {run_id}"
        )


class InvalidTransitionError(PipelineError, ValueError):
    """A state machine transition is not allowed."""
    pass


class ApprovalError(PipelineError):
    """Approval decision could not be applied."""
    pass


class ApproverNotAuthorizedError(ApprovalError, PermissionError):
    """Actor is not in the environment's approver list."""

    def __init__(self, actor: str, environment: str):
        self.actor = actor
        self.environment = environment
        super().__init__(f"'{actor}' is not an approver for environment '{environment}'")


__all__ = [
    "PipelineError",
    "PipelineValidationError",
    "CyclicDependencyError",
    "ExpressionSyntaxError",
    "UnknownEnvironmentError",
    "DispatchInputError",
    "ArtifactError",
    "DuplicateArtifactError",
    "ArtifactNotFoundError",
    "ArtifactAccessError",
    "InvalidTransitionError",
    "ApprovalError",
    "ApproverNotAuthorizedError",
]
