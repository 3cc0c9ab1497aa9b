# ============================================================================
# RUNNER MODULE
# ============================================================================
# STATUS: Core - Step execution components
# PURPOSE: Dispatch contract, local step runner, runner slot pool
# CREATED: 19 OCT 2026
# ============================================================================
"""
Runner Module

Components for step execution on runner slots:
- contracts: StepDispatch / StepOutcome and runner errors
- executor: local step runner and the runner slot pool
"""

from worker.contracts import (
    RunnerError,
    RunnerLostError,
    StepDispatch,
    StepOutcome,
    EXIT_TIMEOUT,
    EXIT_HANDLER_NOT_FOUND,
)
from worker.executor import (
    StepRunner,
    LocalStepRunner,
    RunnerPool,
    read_output_file,
)

__all__ = [
    # Contracts
    "RunnerError",
    "RunnerLostError",
    "StepDispatch",
    "StepOutcome",
    "EXIT_TIMEOUT",
    "EXIT_HANDLER_NOT_FOUND",
    # Executor
    "StepRunner",
    "LocalStepRunner",
    "RunnerPool",
    "read_output_file",
]
