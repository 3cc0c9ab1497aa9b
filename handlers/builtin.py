# ============================================================================
# BUILTIN HANDLERS
# ============================================================================
# STATUS: Core - Handlers available to every pipeline through `uses:`
# PURPOSE: Echo/outputs/artifacts helpers, deploy and rollback contracts
# CREATED: 19 OCT 2026
# ============================================================================
"""
Builtin Handlers

Steps reference these with `uses: <name>`. The deploy and rollback
handlers only describe what was deployed; real delivery is an opaque
command run by a `run:` step or a handler registered by the site.
"""

import asyncio
import logging
from typing import Any

from handlers.registry import (
    register_handler,
    HandlerContext,
    HandlerResult,
)
from worker.contracts import RunnerLostError

logger = logging.getLogger(__name__)


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


# ============================================================================
# BASIC HANDLERS
# ============================================================================

@register_handler(
    "echo",
    description="Echoes inputs back as outputs",
    timeout_seconds=60,
)
async def echo_handler(ctx: HandlerContext) -> HandlerResult:
    """Returns every input as an output of the same name."""
    logger.info(f"Echo handler called with inputs: {ctx.inputs}")
    outputs = dict(ctx.inputs)
    outputs.setdefault("message", "")
    return HandlerResult.success_result(outputs=outputs)


@register_handler(
    "set-output",
    description="Publishes its inputs as step outputs",
    timeout_seconds=30,
)
async def set_output_handler(ctx: HandlerContext) -> HandlerResult:
    return HandlerResult.success_result(outputs=dict(ctx.inputs))


@register_handler(
    "upload",
    description="Writes its inputs to the artifact store under the producing job",
    timeout_seconds=300,
)
async def upload_handler(ctx: HandlerContext) -> HandlerResult:
    """
    Inputs:
        any key: stored as an artifact of the same key
    """
    if not ctx.inputs:
        return HandlerResult.failure_result("upload requires at least one input")
    return HandlerResult.success_result(
        outputs={"uploaded": ",".join(sorted(ctx.inputs))},
        artifacts=dict(ctx.inputs),
    )


@register_handler(
    "sleep",
    description="Sleeps for the given duration (timeouts and cancellation)",
    timeout_seconds=3600,
)
async def sleep_handler(ctx: HandlerContext) -> HandlerResult:
    """
    Inputs:
        duration_seconds: How long to sleep (default 1)
    """
    duration = float(ctx.inputs.get("duration_seconds", 1))
    logger.info(f"Sleeping for {duration} seconds")
    await asyncio.sleep(duration)
    return HandlerResult.success_result(outputs={"slept_for": str(duration)})


@register_handler(
    "fail",
    description="Always fails",
    timeout_seconds=30,
)
async def fail_handler(ctx: HandlerContext) -> HandlerResult:
    error_message = ctx.inputs.get("error_message", "Intentional failure")
    exit_code = int(ctx.inputs.get("exit_code", 1))
    return HandlerResult.failure_result(error_message, exit_code=exit_code)


@register_handler(
    "lose-runner",
    description="Simulates a runner that disappears mid-step",
    timeout_seconds=30,
)
async def lose_runner_handler(ctx: HandlerContext) -> HandlerResult:
    """
    Raises RunnerLostError on the first `lost_attempts` attempts (default 1)
    and succeeds afterwards.
    """
    lost_attempts = int(ctx.inputs.get("lost_attempts", 1))
    if ctx.attempt <= lost_attempts:
        logger.warning(f"Simulated runner loss for {ctx.job} (attempt {ctx.attempt})")
        raise RunnerLostError(f"Runner lost during attempt {ctx.attempt}", job=ctx.job)
    return HandlerResult.success_result(outputs={"attempt": str(ctx.attempt)})


# ============================================================================
# DEPLOYMENT
# ============================================================================

@register_handler(
    "deploy",
    description="Records a deployment of a version to the job's environment",
    timeout_seconds=1800,
    tags=["deploy"],
)
async def deploy_handler(ctx: HandlerContext) -> HandlerResult:
    """
    Inputs:
        version: What is deployed (default: the event commit, if given as `sha`)
        url: Optional environment URL to publish
        fail: Truthy to simulate a failed deployment
    """
    environment = ctx.environment or ctx.inputs.get("environment")
    if not environment:
        return HandlerResult.failure_result("deploy requires a target environment")

    version = ctx.get_input("version") or ctx.get_input("sha") or "unversioned"
    if _flag(ctx.inputs.get("fail", False)):
        logger.error(f"Deploy of {version} to {environment} failed")
        return HandlerResult.failure_result(f"Deploy of {version} to {environment} failed")

    logger.info(f"Deployed {version} to {environment} (scope={ctx.secret_scope})")
    outputs = {"environment": environment, "version": str(version)}
    if ctx.inputs.get("url"):
        outputs["url"] = str(ctx.inputs["url"])
    return HandlerResult.success_result(outputs=outputs)


@register_handler(
    "rollback",
    description="Restores the last known good deployment of an environment",
    timeout_seconds=1800,
    tags=["deploy", "rollback"],
)
async def rollback_handler(ctx: HandlerContext) -> HandlerResult:
    """
    Reads the last-known-good marker from the job inputs:
    run_id, job, sha, outputs.version.

    Inputs:
        fail: Truthy to simulate a failed rollback
    """
    environment = ctx.environment or ctx.get_input("environment")
    restored_run = ctx.get_input("run_id")
    if not restored_run:
        return HandlerResult.failure_result("rollback requires a last-known-good marker")

    marker_outputs = ctx.get_input("outputs") or {}
    version = marker_outputs.get("version") if isinstance(marker_outputs, dict) else None
    version = version or ctx.get_input("sha") or "unversioned"

    if _flag(ctx.inputs.get("fail", False)):
        logger.error(f"Rollback of {environment} to {version} failed")
        return HandlerResult.failure_result(f"Rollback of {environment} to {version} failed")

    logger.warning(f"Rolled back {environment} to {version} (from run {restored_run})")
    return HandlerResult.success_result(
        outputs={
            "environment": str(environment),
            "restored_version": str(version),
            "restored_run_id": str(restored_run),
        }
    )


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "echo_handler",
    "set_output_handler",
    "upload_handler",
    "sleep_handler",
    "fail_handler",
    "lose_runner_handler",
    "deploy_handler",
    "rollback_handler",
]
