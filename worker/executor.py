# ============================================================================
# STEP RUNNER
# ============================================================================
# STATUS: Core - Step execution engine
# PURPOSE: Execute steps on local runner slots with timeout and cancellation
# CREATED: 19 OCT 2026
# ============================================================================
"""
Step Runner

Executes a StepDispatch and produces a StepOutcome:
- `uses:` steps run a handler from the registry
- `run:` steps run a shell command in a subprocess; the command writes
  outputs as `key=value` lines to the file named by $PIPELINE_OUTPUT
- Timeout enforcement (exit code 124)
- Cancellation kills the child process and propagates

RunnerPool bounds how many steps hold a runner slot at once.
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import handlers  # noqa: F401 - registers builtin handlers
from handlers.registry import (
    execute_handler,
    HandlerContext,
    HandlerNotFoundError,
)
from worker.contracts import (
    EXIT_HANDLER_NOT_FOUND,
    EXIT_TIMEOUT,
    RunnerError,
    StepDispatch,
    StepOutcome,
)

logger = logging.getLogger(__name__)

LOG_TAIL_BYTES = 4096


# ============================================================================
# RUNNER
# ============================================================================

class StepRunner:
    """Interface of a runner slot: submit one step, get its outcome."""

    async def submit(self, dispatch: StepDispatch) -> StepOutcome:
        raise NotImplementedError


class LocalStepRunner(StepRunner):
    """
    Executes steps in the orchestrator process.

    Raises RunnerError subclasses (lost runner) instead of reporting them
    in the outcome; everything else is a step failure.
    """

    def __init__(
        self,
        workdir: Optional[str] = None,
        inherit_environ: bool = True,
    ):
        """
        Args:
            workdir: Working directory of `run:` commands
            inherit_environ: Pass the orchestrator's environment to commands
        """
        self.workdir = workdir
        self.inherit_environ = inherit_environ
        self._submitted = 0
        self._failed = 0

    async def submit(self, dispatch: StepDispatch) -> StepOutcome:
        """
        Execute one step.

        Returns:
            StepOutcome with exit status, outputs and artifacts

        Raises:
            RunnerError: the runner itself failed (infrastructure)
            asyncio.CancelledError: the step was cancelled
        """
        start_time = time.time()
        self._submitted += 1
        logger.info(
            f"Executing step {dispatch.job}/{dispatch.label}: "
            f"{'uses=' + dispatch.uses if dispatch.uses else 'run'} (attempt {dispatch.attempt})"
        )

        try:
            if dispatch.uses:
                outcome = await asyncio.wait_for(
                    self._run_handler(dispatch), timeout=dispatch.timeout_seconds
                )
            else:
                outcome = await self._run_command(dispatch)

        except asyncio.TimeoutError:
            outcome = StepOutcome.failed(
                f"Step timed out after {dispatch.timeout_seconds} seconds",
                exit_code=EXIT_TIMEOUT,
                timed_out=True,
            )
        except HandlerNotFoundError as e:
            outcome = StepOutcome.failed(str(e), exit_code=EXIT_HANDLER_NOT_FOUND)
        except RunnerError:
            self._failed += 1
            raise

        outcome.duration_ms = int((time.time() - start_time) * 1000)
        if not outcome.success:
            self._failed += 1
            logger.warning(
                f"Step {dispatch.job}/{dispatch.label} failed "
                f"(exit {outcome.exit_code}): {outcome.error_message}"
            )
        return outcome

    async def _run_handler(self, dispatch: StepDispatch) -> StepOutcome:
        context = HandlerContext(
            run_id=dispatch.run_id,
            job=dispatch.job,
            step=dispatch.label,
            handler=dispatch.uses,
            inputs=dict(dispatch.inputs),
            timeout_seconds=dispatch.timeout_seconds,
            attempt=dispatch.attempt,
            pipeline_id=dispatch.pipeline_id,
            environment=dispatch.environment,
            secret_scope=dispatch.secret_scope,
            env=dict(dispatch.env),
            job_inputs=dict(dispatch.job_inputs),
            downloads=dict(dispatch.downloads),
        )
        result = await execute_handler(dispatch.uses, context, reraise=(RunnerError,))
        outputs = dispatch.filter_outputs(result.outputs)
        if result.success:
            return StepOutcome.succeeded(outputs=outputs, artifacts=result.artifacts)
        return StepOutcome.failed(
            result.error_message or f"Handler {dispatch.uses} failed",
            exit_code=result.exit_code or 1,
            outputs=outputs,
        )

    def _command_env(self, dispatch: StepDispatch, output_path: str) -> Dict[str, str]:
        env = dict(os.environ) if self.inherit_environ else {}
        env.update({
            "CI": "true",
            "PIPELINE_RUN_ID": dispatch.run_id,
            "PIPELINE_ID": dispatch.pipeline_id or "",
            "PIPELINE_JOB": dispatch.job,
            "PIPELINE_STEP": dispatch.label,
            "PIPELINE_ATTEMPT": str(dispatch.attempt),
            "PIPELINE_OUTPUT": output_path,
        })
        if dispatch.environment:
            env["PIPELINE_ENVIRONMENT"] = dispatch.environment
        if dispatch.secret_scope:
            env["PIPELINE_SECRET_SCOPE"] = dispatch.secret_scope
        if dispatch.downloads:
            env["PIPELINE_DOWNLOADS"] = json.dumps(dispatch.downloads, default=str)
        env.update({k: str(v) for k, v in dispatch.env.items()})
        return env

    async def _run_command(self, dispatch: StepDispatch) -> StepOutcome:
        fd, output_path = tempfile.mkstemp(prefix="pipeline-output-", suffix=".env")
        os.close(fd)
        process = None
        try:
            process = await asyncio.create_subprocess_shell(
                dispatch.run,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._command_env(dispatch, output_path),
                cwd=self.workdir,
            )
            try:
                stdout, _ = await asyncio.wait_for(
                    process.communicate(), timeout=dispatch.timeout_seconds
                )
            except asyncio.TimeoutError:
                await self._kill(process)
                return StepOutcome.failed(
                    f"Step timed out after {dispatch.timeout_seconds} seconds",
                    exit_code=EXIT_TIMEOUT,
                    timed_out=True,
                )
            except asyncio.CancelledError:
                await self._kill(process)
                logger.info(f"Killed step {dispatch.job}/{dispatch.label} on cancellation")
                raise

            log_tail = stdout[-LOG_TAIL_BYTES:].decode(errors="replace") if stdout else ""
            outputs = dispatch.filter_outputs(read_output_file(output_path))
            if process.returncode == 0:
                return StepOutcome.succeeded(outputs=outputs, log_tail=log_tail)

            last_line = log_tail.strip().splitlines()[-1] if log_tail.strip() else ""
            return StepOutcome.failed(
                f"Command exited with {process.returncode}" + (f": {last_line}" if last_line else ""),
                exit_code=process.returncode,
                outputs=outputs,
                log_tail=log_tail,
            )
        finally:
            try:
                os.unlink(output_path)
            except OSError:
                pass

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    @property
    def stats(self) -> Dict[str, Any]:
        return {"submitted": self._submitted, "failed": self._failed}


def read_output_file(path: str) -> Dict[str, str]:
    """Parse `key=value` lines written by a command to $PIPELINE_OUTPUT."""
    outputs: Dict[str, str] = {}
    try:
        with open(path) as f:
            lines = f.read().splitlines()
    except OSError:
        return outputs
    for line in lines:
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            logger.debug(f"Ignoring malformed output line: {line!r}")
            continue
        outputs[key.strip()] = value
    return outputs


# ============================================================================
# RUNNER POOL
# ============================================================================

class RunnerPool:
    """
    Global pool of runner slots.

    A job holds one slot for the whole time it is RUNNING; blocked and
    pending jobs hold none.
    """

    def __init__(self, slots: int = 4, runner: Optional[StepRunner] = None):
        if slots < 1:
            raise ValueError("Runner pool needs at least one slot")
        self.slots = slots
        self.runner = runner or LocalStepRunner()
        self._semaphore = asyncio.Semaphore(slots)
        self._active = 0
        self._peak = 0

    @asynccontextmanager
    async def slot(self):
        """Hold one runner slot."""
        async with self._semaphore:
            self._active += 1
            self._peak = max(self._peak, self._active)
            try:
                yield self.runner
            finally:
                self._active -= 1

    async def submit(self, dispatch: StepDispatch) -> StepOutcome:
        return await self.runner.submit(dispatch)

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "slots": self.slots,
            "active": self._active,
            "peak": self._peak,
        }


__all__ = [
    "StepRunner",
    "LocalStepRunner",
    "RunnerPool",
    "read_output_file",
]
