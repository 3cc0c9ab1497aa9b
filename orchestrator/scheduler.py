# ============================================================================
# SCHEDULER / EXECUTION CONTROLLER
# ============================================================================
# STATUS: Core - Drives the job graph of every active run
# PURPOSE: Readiness, gating, dispatch to runner slots, outcome handling
# CREATED: 19 OCT 2026
# ============================================================================
"""
Scheduler / Execution Controller

One RunController (an asyncio task) drives each RunInstance; the
Scheduler owns what runs share: the runner pool, per-pipeline
concurrency caps, the gate manager, the artifact store and the event
timeline.

Each controller cycle:
1. Resolve overdue approval requests
2. Evaluate PENDING jobs whose needs are all terminal:
   condition false -> SKIPPED, gated environment -> BLOCKED, else READY
3. Move BLOCKED jobs on approval decisions and wait timers
4. Dispatch READY jobs; each holds a pipeline slot and a runner slot
   while its steps run sequentially; a job calling another pipeline
   holds neither and waits on its child run
5. Finish the run once every job is terminal and nothing is running

Controllers wake on job completion, approval decisions, new
compensating jobs and cancellation, with a bounded poll in between.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.config import SchedulerDefaults
from core.contracts import (
    ApprovalState,
    FailureCause,
    JobRole,
    JobRunStatus,
    RunStatus,
    SkippedNeedsPolicy,
    StepStatus,
)
from core.errors import ArtifactError, ArtifactNotFoundError, InvalidTransitionError, PipelineValidationError
from core.logging import ComponentType, log_checkpoint, log_context
from core.models.environment import ApprovalRequest, Environment
from core.models.events import EventStatus, EventType, Notification
from core.models.pipeline import JobSpec, PipelineDefinition, StepSpec
from core.models.run import JobRun, RunInstance, StepRun
from orchestrator.engine.dag import ancestors_of
from orchestrator.engine.expressions import ExpressionContext, StatusFlags, evaluate_condition
from orchestrator.engine.templates import TemplateResolutionError, render_string, resolve_params
from services.artifact_service import OUTPUT_PREFIX, ArtifactStore
from services.environment_service import EnvironmentService
from services.event_service import EventService
from worker.contracts import RunnerError, StepDispatch
from worker.executor import RunnerPool, StepRunner

logger = logging.getLogger(__name__)

OutcomeListener = Callable[["RunController", JobRun], Awaitable[None]]
PipelineCaller = Callable[[RunInstance, JobRun, Dict[str, Any]], Awaitable["RunController"]]


def _aggregate_result(jobs: List[JobRun]) -> str:
    """Result of a matrix job seen as one need."""
    statuses = {j.status for j in jobs}
    if JobRunStatus.FAILED in statuses:
        return JobRunStatus.FAILED.result
    if JobRunStatus.CANCELLED in statuses:
        return JobRunStatus.CANCELLED.result
    if statuses == {JobRunStatus.SKIPPED}:
        return JobRunStatus.SKIPPED.result
    return JobRunStatus.SUCCEEDED.result


class _StepFailure(Exception):
    """Internal: a step could not be dispatched."""

    def __init__(self, cause: FailureCause, message: str):
        self.cause = cause
        super().__init__(message)


# ============================================================================
# RUN CONTROLLER
# ============================================================================

class RunController:
    """
    Logical scheduler of one RunInstance.

    Only this controller mutates the run's JobRun table; runner tasks
    report back by updating their own JobRun and waking the controller.
    """

    def __init__(self, run: RunInstance, scheduler: "Scheduler"):
        self.run = run
        self.scheduler = scheduler
        self.definition: PipelineDefinition = run.get_pinned_definition()

        policy = self.definition.skipped_needs or scheduler.defaults.skipped_needs_policy
        self.skipped_needs_policy = SkippedNeedsPolicy(policy)

        self._wake = asyncio.Event()
        self._done = asyncio.Event()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._not_before: Dict[str, datetime] = {}
        self._cancel_reasons: Dict[str, str] = {}
        self._cancelling = False
        self.task: Optional[asyncio.Task] = None

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def is_done(self) -> bool:
        return self._done.is_set()

    def wake(self) -> None:
        self._wake.set()

    def _on_approval(self, request: ApprovalRequest) -> None:
        if request.run_id == self.run_id:
            self._wake.set()

    # =========================================================================
    # MAIN LOOP
    # =========================================================================

    async def run_to_completion(self) -> RunStatus:
        """Drive the run until every job is terminal."""
        env_service = self.scheduler.environment_service
        env_service.add_listener(self._on_approval)
        try:
            with log_context(
                run_id=self.run_id,
                pipeline_id=self.run.pipeline_id,
                component=ComponentType.SCHEDULER.value,
            ):
                self.run.mark_started()
                await self._emit(EventType.RUN_STARTED, data={"jobs": len(self.run.jobs)})
                log_checkpoint("run_started", {"jobs": sorted(self.run.jobs)}, logger)

                while True:
                    self._wake.clear()
                    await self._cycle()
                    if self.run.all_terminal() and not self._tasks:
                        break
                    await self._sleep()

                return await self._finish()
        finally:
            env_service.remove_listener(self._on_approval)
            self._done.set()

    async def _cycle(self) -> None:
        self.scheduler.environment_service.expire_overdue()
        changed = True
        while changed:
            changed = False
            for job in list(self.run.jobs.values()):
                if job.status == JobRunStatus.PENDING and not self._cancelling:
                    changed |= await self._evaluate_pending(job)
                elif job.status == JobRunStatus.BLOCKED and not self._cancelling:
                    changed |= await self._evaluate_blocked(job)
        for job in list(self.run.jobs.values()):
            if job.status == JobRunStatus.READY and job.name not in self._tasks and not self._cancelling:
                self._dispatch(job)

    async def _sleep(self) -> None:
        timeout = self.scheduler.max_wait_seconds
        deadlines = list(self._not_before.values())
        expiry = self.scheduler.environment_service.next_expiry(self.run_id)
        if expiry is not None:
            deadlines.append(expiry)
        if deadlines:
            until = (min(deadlines) - self.scheduler.now()).total_seconds()
            timeout = max(0.01, min(timeout, until))
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _finish(self) -> RunStatus:
        status = self.run.mark_finished()
        self.scheduler.artifact_store.mark_run_terminal(self.run_id)
        event_type = {
            RunStatus.SUCCEEDED: EventType.RUN_COMPLETED,
            RunStatus.FAILED: EventType.RUN_FAILED,
            RunStatus.CANCELLED: EventType.RUN_CANCELLED,
        }[status]
        await self._emit(
            event_type,
            status=EventStatus.SUCCESS if status == RunStatus.SUCCEEDED else EventStatus.FAILURE,
            data={
                "results": {name: job.result for name, job in self.run.jobs.items()},
                "requires_intervention": self.run.requires_intervention,
            },
            error=self.run.error_message,
        )
        log_checkpoint("run_finished", {"status": status.value}, logger)
        logger.info(f"Run {self.run_id} finished: {status.value}")
        return status

    # =========================================================================
    # CONTEXT
    # =========================================================================

    def _spec(self, job: JobRun) -> Optional[JobSpec]:
        return self.definition.jobs.get(job.spec_name)

    def _needs_context(self, job: JobRun) -> Dict[str, Any]:
        needs: Dict[str, Any] = {}
        by_spec: Dict[str, List[JobRun]] = {}
        for name in job.needs:
            dep = self.run.jobs[name]
            needs[name] = {"result": dep.result, "outputs": dict(dep.outputs)}
            if dep.spec_name != dep.name:
                by_spec.setdefault(dep.spec_name, []).append(dep)
        # A matrix need is also addressable by its job name
        for spec_name, deps in by_spec.items():
            if spec_name in needs:
                continue
            merged: Dict[str, str] = {}
            for dep in deps:
                merged.update(dep.outputs)
            needs[spec_name] = {"result": _aggregate_result(deps), "outputs": merged}
        return needs

    def _environment(self, job: JobRun) -> Optional[Environment]:
        if not job.environment:
            return None
        return self.scheduler.environment_service.get(job.environment)

    def _variables(self, job: JobRun, steps: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        environment = self._environment(job)
        spec = self._spec(job)
        event_inputs = self.run.event.get("inputs") or {}
        return {
            "event": self.run.event,
            "inputs": {**event_inputs, **job.inputs},
            "needs": self._needs_context(job),
            "matrix": dict(job.matrix),
            "steps": steps or {},
            "env": {**self.definition.env, **(spec.env if spec else {})},
            "environment": (
                {"name": environment.name, "url": environment.url} if environment else None
            ),
            "run": {
                "id": self.run_id,
                "pipeline_id": self.run.pipeline_id,
                "revision": self.run.revision,
            },
            "job": {
                "name": job.name,
                "status": job.status.value,
                "attempt": job.attempt,
                "role": job.role.value,
            },
        }

    def _job_flags(self, job: JobRun) -> StatusFlags:
        needs_map = {name: j.needs for name, j in self.run.jobs.items()}
        ancestors = ancestors_of(job.name, needs_map)
        failed = any(self.run.jobs[a].status == JobRunStatus.FAILED for a in ancestors)
        needs_blocked = self.skipped_needs_policy == SkippedNeedsPolicy.BLOCKING and any(
            self.run.jobs[n].status == JobRunStatus.SKIPPED for n in job.needs
        )
        return StatusFlags(failed=failed, cancelled=self._cancelling, needs_blocked=needs_blocked)

    def job_context(self, job: JobRun) -> ExpressionContext:
        return ExpressionContext(variables=self._variables(job), status=self._job_flags(job))

    # =========================================================================
    # READINESS AND GATES
    # =========================================================================

    async def _evaluate_pending(self, job: JobRun) -> bool:
        if not all(self.run.jobs[n].status.is_terminal() for n in job.needs):
            return False

        context = self.job_context(job)
        if not evaluate_condition(job.condition, context):
            job.mark_skipped(f"Condition not met: {job.condition or 'success()'}")
            logger.info(f"Job {job.name} skipped ({job.error_message})")
            await self._emit(EventType.JOB_SKIPPED, job=job.name, data={"condition": job.condition})
            await self._job_terminal(job)
            return True

        environment = self._environment(job)
        if job.environment and environment is None:
            await self._fail_job(
                job, FailureCause.ENVIRONMENT_PROTECTION,
                f"Environment '{job.environment}' is not registered",
            )
            return True

        if environment is None:
            await self._mark_ready(job)
            return True

        env_service = self.scheduler.environment_service
        branch = self.run.event.get("branch")

        if environment.is_gated:
            bypass = job.role == JobRole.ROLLBACK and environment.allow_rollback_bypass
            request = env_service.create_request(
                self.run_id, job.name, environment.name,
                branch=branch, context=context, bypass=bypass,
            )
            job.mark_blocked(request.request_id)
            await self._emit(
                EventType.APPROVAL_REQUESTED, job=job.name,
                data={"request_id": request.request_id, "environment": environment.name},
            )
            await self._emit(EventType.JOB_BLOCKED, job=job.name, data={"request_id": request.request_id})
            if request.state == ApprovalState.PENDING:
                await self._notify(
                    "info",
                    f"Approval required for {environment.name}",
                    f"Job '{job.name}' of run {self.run_id} waits for approval "
                    f"(request {request.request_id})",
                    environment=environment.name,
                    data={"request_id": request.request_id, "approvers": list(environment.approvers)},
                )
            await self._evaluate_blocked(job)
            return True

        if not env_service.branch_allowed(environment, branch):
            await self._fail_job(
                job, FailureCause.ENVIRONMENT_PROTECTION,
                f"Branch '{branch}' may not deploy to environment '{environment.name}'",
            )
            return True

        if environment.wait_timer_seconds > 0:
            self._not_before[job.name] = self.scheduler.now() + timedelta(
                seconds=environment.wait_timer_seconds
            )
            job.mark_blocked(None)
            await self._emit(
                EventType.JOB_BLOCKED, job=job.name,
                data={"wait_timer_seconds": environment.wait_timer_seconds},
            )
            return True

        await self._mark_ready(job)
        return True

    async def _evaluate_blocked(self, job: JobRun) -> bool:
        if job.approval_request_id is None:
            return await self._release_timer(job)

        request = self.scheduler.environment_service.get_request(job.approval_request_id)
        if request.state == ApprovalState.PENDING:
            return False

        if request.state == ApprovalState.APPROVED:
            if job.name not in self._not_before:
                await self._emit(
                    EventType.APPROVAL_RESOLVED, job=job.name, status=EventStatus.SUCCESS,
                    data={"request_id": request.request_id, "state": request.state.value,
                          "decided_by": request.decided_by},
                )
                if request.ready_at is not None:
                    self._not_before[job.name] = request.ready_at
            return await self._release_timer(job)

        if request.state == ApprovalState.CANCELLED:
            job.mark_cancelled(request.reason or "Approval cancelled")
            await self._job_terminal(job)
            return True

        await self._emit(
            EventType.APPROVAL_RESOLVED, job=job.name, status=EventStatus.FAILURE,
            data={"request_id": request.request_id, "state": request.state.value,
                  "decided_by": request.decided_by},
        )
        cause = FailureCause.APPROVAL if request.branch_allowed else FailureCause.ENVIRONMENT_PROTECTION
        await self._fail_job(
            job, cause,
            f"Approval {request.state.value} for environment '{request.environment}': {request.reason}",
        )
        return True

    async def _release_timer(self, job: JobRun) -> bool:
        not_before = self._not_before.get(job.name)
        if not_before is not None and self.scheduler.now() < not_before:
            return False
        self._not_before.pop(job.name, None)
        await self._mark_ready(job)
        return True

    async def _mark_ready(self, job: JobRun) -> None:
        job.mark_ready()
        logger.debug(f"Job {job.name} ready")
        await self._emit(EventType.JOB_READY, job=job.name)

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def _dispatch(self, job: JobRun) -> None:
        task = asyncio.create_task(self._execute_job(job), name=f"{self.run_id}:{job.name}")
        self._tasks[job.name] = task

    async def _execute_job(self, job: JobRun) -> None:
        try:
            with log_context(job_id=job.name, environment=job.environment):
                async with AsyncExitStack() as stack:
                    runner = None
                    # A calling job waits on its child run and holds no slot
                    if not job.call:
                        gate = self.scheduler.concurrency_gate(self.run.pipeline_id, self.definition.concurrency)
                        if gate is not None:
                            await stack.enter_async_context(gate)
                        runner = await stack.enter_async_context(self.scheduler.pool.slot())
                    if self._cancelling or job.status != JobRunStatus.READY:
                        return
                    job.mark_running()
                    await self._emit(EventType.JOB_STARTED, job=job.name, data={"attempt": job.attempt})
                    if job.call:
                        await self._run_call(job)
                    else:
                        await self._run_steps(job, runner)

                if job.status == JobRunStatus.FAILED and job.failure_cause == FailureCause.INFRASTRUCTURE:
                    if job.prepare_retry():
                        logger.warning(f"Retrying job {job.name} after infrastructure failure (attempt {job.attempt})")
                        await self._emit(
                            EventType.JOB_RETRY, job=job.name, status=EventStatus.WARNING,
                            data={"attempt": job.attempt},
                        )
                        return

                await self._job_terminal(job)

        except asyncio.CancelledError:
            if not job.status.is_terminal():
                job.mark_cancelled(self._cancel_reasons.get(job.name, "Run cancelled"))
            raise
        except Exception as e:
            logger.exception(f"Unexpected error executing job {job.name}: {e}")
            if not job.status.is_terminal():
                job.mark_failed(FailureCause.INFRASTRUCTURE, f"{type(e).__name__}: {e}")
                await self._job_terminal(job)
        finally:
            self._tasks.pop(job.name, None)
            self._wake.set()

    async def _run_steps(self, job: JobRun, runner: StepRunner) -> None:
        """Run steps strictly in order; the first failure decides the job's cause."""
        steps_context: Dict[str, Any] = {}
        step_outputs: Dict[str, str] = {}
        artifacts: Dict[str, Any] = {}
        failure: Optional[Tuple[FailureCause, str]] = None

        for index, step in enumerate(job.steps):
            step_run = StepRun(index=index, step_id=step.id, name=step.display_name)
            job.step_runs.append(step_run)
            label = step.id or f"step-{index}"

            context = ExpressionContext(
                variables=self._variables(job, steps_context),
                status=StatusFlags(failed=failure is not None, cancelled=self._cancelling),
            )
            if not evaluate_condition(step.condition, context):
                step_run.status = StepStatus.SKIPPED
                self._record_step(steps_context, step, step_run)
                await self._emit(EventType.STEP_SKIPPED, job=job.name, step=label)
                continue

            step_run.status = StepStatus.RUNNING
            step_run.started_at = self.scheduler.now()
            await self._emit(EventType.STEP_STARTED, job=job.name, step=label)

            try:
                dispatch = self._build_dispatch(job, index, step, context.variables, artifacts)
                outcome = await runner.submit(dispatch)
            except _StepFailure as e:
                step_run.status = StepStatus.FAILED
                step_run.error_message = str(e)
                step_run.completed_at = self.scheduler.now()
                self._record_step(steps_context, step, step_run)
                await self._emit(EventType.STEP_FAILED, job=job.name, step=label,
                                 status=EventStatus.FAILURE, error=str(e))
                failure = failure or (e.cause, f"Step '{step_run.name}': {e}")
                continue
            except RunnerError as e:
                step_run.status = StepStatus.FAILED
                step_run.error_message = str(e)
                step_run.completed_at = self.scheduler.now()
                await self._emit(EventType.STEP_FAILED, job=job.name, step=label,
                                 status=EventStatus.FAILURE, error=str(e))
                job.mark_failed(FailureCause.INFRASTRUCTURE, f"Step '{step_run.name}': {e}")
                return
            except asyncio.CancelledError:
                step_run.status = StepStatus.CANCELLED
                step_run.completed_at = self.scheduler.now()
                raise

            step_run.exit_code = outcome.exit_code
            step_run.outputs = dict(outcome.outputs)
            step_run.completed_at = self.scheduler.now()
            if outcome.success:
                step_run.status = StepStatus.SUCCEEDED
                step_outputs.update(outcome.outputs)
                artifacts.update(outcome.artifacts)
                await self._emit(EventType.STEP_COMPLETED, job=job.name, step=label,
                                 status=EventStatus.SUCCESS, data={"outputs": sorted(outcome.outputs)})
            else:
                step_run.status = StepStatus.FAILED
                step_run.error_message = outcome.error_message
                await self._emit(EventType.STEP_FAILED, job=job.name, step=label,
                                 status=EventStatus.FAILURE,
                                 data={"exit_code": outcome.exit_code}, error=outcome.error_message)
                failure = failure or (
                    FailureCause.STEP,
                    f"Step '{step_run.name}' exited with {outcome.exit_code}: {outcome.error_message}",
                )
            self._record_step(steps_context, step, step_run)

        if failure is not None:
            job.mark_failed(*failure)
            return

        try:
            outputs = self._job_outputs(job, steps_context, step_outputs)
            values = dict(artifacts)
            values.update({f"{OUTPUT_PREFIX}{k}": v for k, v in outputs.items()})
            if values:
                self.scheduler.artifact_store.write_many(self.run_id, job.name, values)
        except TemplateResolutionError as e:
            job.mark_failed(FailureCause.TEMPLATE, f"Job outputs could not be resolved: {e}")
            return
        except (ArtifactError, PipelineValidationError) as e:
            job.mark_failed(FailureCause.ARTIFACT, str(e))
            return
        job.mark_succeeded(outputs)

    async def _run_call(self, job: JobRun) -> None:
        """Start the called pipeline as a child run and adopt its outcome."""
        caller = self.scheduler.pipeline_caller
        if caller is None:
            job.mark_failed(FailureCause.CALLED_PIPELINE, "No run service accepts pipeline calls")
            return
        try:
            inputs = resolve_params(job.call_inputs, self._variables(job))
        except TemplateResolutionError as e:
            job.mark_failed(FailureCause.TEMPLATE, f"Call inputs could not be resolved: {e}")
            return
        try:
            child = await caller(self.run, job, inputs)
        except PipelineValidationError as e:
            job.mark_failed(FailureCause.CALLED_PIPELINE, f"Call of '{job.call}' rejected: {e}")
            return

        job.child_run_id = child.run_id
        await self._emit(EventType.CALL_STARTED, job=job.name,
                         data={"pipeline_id": job.call, "child_run_id": child.run_id})
        try:
            status = await child.wait()
        except asyncio.CancelledError:
            if not child.run.is_terminal:
                await child.cancel(f"caller {self.run_id}")
            raise

        await self._emit(
            EventType.CALL_COMPLETED, job=job.name,
            status=EventStatus.SUCCESS if status == RunStatus.SUCCEEDED else EventStatus.FAILURE,
            data={"child_run_id": child.run_id, "status": status.value},
        )
        if status != RunStatus.SUCCEEDED:
            job.mark_failed(
                FailureCause.CALLED_PIPELINE,
                f"Called pipeline '{job.call}' run {child.run_id} {status.value}",
            )
            return
        try:
            outputs = child.call_outputs()
            if outputs:
                self.scheduler.artifact_store.write_many(
                    self.run_id, job.name, {f"{OUTPUT_PREFIX}{k}": v for k, v in outputs.items()}
                )
        except TemplateResolutionError as e:
            job.mark_failed(FailureCause.TEMPLATE, f"Call outputs could not be resolved: {e}")
            return
        except (ArtifactError, PipelineValidationError) as e:
            job.mark_failed(FailureCause.ARTIFACT, str(e))
            return
        job.mark_succeeded(outputs)

    def call_outputs(self) -> Dict[str, str]:
        """
        Outputs a finished called run hands back to its caller.

        Rendered from the workflow_call rule's `outputs` against
        `jobs.<name>.outputs` (matrix jobs merged under their job name).
        """
        rule = self.definition.call_rule()
        if rule is None or not rule.outputs:
            return {}
        jobs: Dict[str, Any] = {}
        for spec_name in self.definition.jobs:
            instances = self.run.instances_of(spec_name)
            merged: Dict[str, str] = {}
            for instance in instances:
                merged.update(instance.outputs)
            jobs[spec_name] = {"result": _aggregate_result(instances), "outputs": merged}
        variables = {"jobs": jobs, "inputs": self.run.event.get("inputs") or {}}
        return {name: render_string(template, variables) for name, template in rule.outputs.items()}

    def _record_step(self, steps_context: Dict[str, Any], step: StepSpec, step_run: StepRun) -> None:
        if step.id:
            steps_context[step.id] = {
                "outputs": dict(step_run.outputs),
                "outcome": step_run.status.result,
                "conclusion": step_run.status.result,
            }

    def _build_dispatch(
        self,
        job: JobRun,
        index: int,
        step: StepSpec,
        variables: Dict[str, Any],
        pending_artifacts: Dict[str, Any],
    ) -> StepDispatch:
        spec = self._spec(job)
        environment = self._environment(job)
        try:
            inputs = resolve_params(step.inputs, variables)
            command = render_string(step.run, variables) if step.run else None
            raw_env = {**self.definition.env, **(spec.env if spec else {}), **step.env}
            env = {k: render_string(str(v), variables) for k, v in raw_env.items()}
        except TemplateResolutionError as e:
            raise _StepFailure(FailureCause.TEMPLATE, str(e))

        try:
            downloads = self._fetch_downloads(job, step, pending_artifacts)
        except (ArtifactError, KeyError, PermissionError) as e:
            raise _StepFailure(FailureCause.ARTIFACT, str(e))

        return StepDispatch(
            run_id=self.run_id,
            pipeline_id=self.run.pipeline_id,
            job=job.name,
            step_index=index,
            step_id=step.id,
            step_name=step.display_name,
            run=command,
            uses=step.uses,
            inputs=inputs,
            job_inputs=dict(job.inputs),
            env=env,
            environment=job.environment,
            secret_scope=environment.secret_scope if environment else None,
            timeout_seconds=step.timeout_seconds or self.scheduler.defaults.default_step_timeout_seconds,
            downloads=downloads,
            declared_outputs=list(step.outputs),
            attempt=job.attempt,
        )

    def _fetch_downloads(self, job: JobRun, step: StepSpec, pending: Dict[str, Any]) -> Dict[str, Any]:
        """
        Resolve 'job/key' references through the artifact store.

        A matrix job name resolves to {instance name: value}. The job's own
        keys come from artifacts produced by its earlier steps.
        """
        store = self.scheduler.artifact_store
        values: Dict[str, Any] = {}
        for reference in step.download:
            producer, sep, key = reference.partition("/")
            if not sep or not producer or not key:
                raise ArtifactNotFoundError(self.run_id, producer or "?", reference)
            if producer == job.name:
                if key not in pending:
                    raise ArtifactNotFoundError(self.run_id, job.name, key)
                values[key] = pending[key]
            elif producer in self.run.jobs:
                values[key] = store.read(self.run_id, job.name, producer, key)
            else:
                instances = self.run.instances_of(producer)
                if not instances:
                    raise ArtifactNotFoundError(self.run_id, producer, key)
                values[key] = {i.name: store.read(self.run_id, job.name, i.name, key) for i in instances}
        return values

    def _job_outputs(
        self,
        job: JobRun,
        steps_context: Dict[str, Any],
        step_outputs: Dict[str, str],
    ) -> Dict[str, str]:
        spec = self._spec(job)
        if spec is None or not spec.outputs:
            return dict(step_outputs)
        variables = self._variables(job, steps_context)
        return {name: render_string(template, variables) for name, template in spec.outputs.items()}

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    async def _fail_job(self, job: JobRun, cause: FailureCause, message: str) -> None:
        job.mark_failed(cause, message)
        logger.warning(f"Job {job.name} failed ({cause.value}): {message}")
        await self._job_terminal(job)

    async def _job_terminal(self, job: JobRun) -> None:
        """Emit the outcome, apply fail-fast, hand the outcome to listeners."""
        if job.status == JobRunStatus.SUCCEEDED:
            await self._emit(EventType.JOB_SUCCEEDED, job=job.name, status=EventStatus.SUCCESS,
                             data={"outputs": sorted(job.outputs)})
        elif job.status == JobRunStatus.FAILED:
            await self._emit(EventType.JOB_FAILED, job=job.name, status=EventStatus.FAILURE,
                             data={"cause": job.failure_cause.value if job.failure_cause else None},
                             error=job.error_message)
            spec = self._spec(job)
            if spec and spec.matrix and spec.matrix.fail_fast and job.is_matrix_instance:
                for sibling in self.run.instances_of(job.spec_name):
                    if sibling.name != job.name and not sibling.status.is_terminal():
                        await self._cancel_job(sibling, f"Cancelled by fail-fast after '{job.name}' failed")
        elif job.status == JobRunStatus.CANCELLED:
            await self._emit(EventType.JOB_CANCELLED, job=job.name, data={"reason": job.error_message})

        for listener in list(self.scheduler.outcome_listeners):
            try:
                await listener(self, job)
            except Exception as e:
                logger.exception(f"Outcome listener failed for {job.name}: {e}")

    async def _cancel_job(self, job: JobRun, reason: str) -> None:
        task = self._tasks.get(job.name)
        if task is not None and not task.done():
            self._cancel_reasons[job.name] = reason
            task.cancel()
            await self._emit(EventType.JOB_CANCELLED, job=job.name, data={"reason": reason})
            return
        if job.approval_request_id:
            self.scheduler.environment_service.cancel_request(job.approval_request_id, reason)
        self._not_before.pop(job.name, None)
        job.mark_cancelled(reason)
        await self._emit(EventType.JOB_CANCELLED, job=job.name, data={"reason": reason})

    # =========================================================================
    # CONTROL
    # =========================================================================

    async def cancel(self, actor: Optional[str] = None) -> None:
        """
        Cancel the run: every non-terminal job -> CANCELLED, pending
        approvals -> CANCELLED, running steps receive cancellation.

        Raises:
            InvalidTransitionError: run already terminal
        """
        self.run.mark_cancelled(actor)
        self._cancelling = True
        reason = f"Run cancelled by {actor}" if actor else "Run cancelled"
        self.scheduler.environment_service.cancel_for_run(self.run_id, reason)
        for job in list(self.run.jobs.values()):
            if not job.status.is_terminal():
                await self._cancel_job(job, reason)
        logger.info(f"Run {self.run_id} cancelled by {actor or 'unknown'}")
        self._wake.set()

    def add_job(self, job: JobRun) -> None:
        """
        Add a compensating job to the running graph.

        Raises:
            InvalidTransitionError: run finished or being cancelled
            PipelineValidationError: duplicate name or unknown needs
        """
        if self.run.is_terminal or self._cancelling or self.is_done:
            raise InvalidTransitionError(f"Run {self.run_id} no longer accepts jobs")
        if job.name in self.run.jobs:
            raise PipelineValidationError(f"Job '{job.name}' already exists in run {self.run_id}")
        unknown = [n for n in job.needs if n not in self.run.jobs]
        if unknown:
            raise PipelineValidationError(f"Job '{job.name}' needs unknown jobs {unknown}")
        self.run.jobs[job.name] = job
        self.run.topo_levels.append([job.name])
        self.scheduler.artifact_store.add_jobs(self.run_id, {job.name: job.needs})
        logger.info(f"Added job {job.name} to run {self.run_id}")
        self._wake.set()

    async def wait(self, timeout: Optional[float] = None) -> RunStatus:
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        return self.run.status

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def _emit(
        self,
        event_type: EventType,
        job: Optional[str] = None,
        step: Optional[str] = None,
        status: EventStatus = EventStatus.INFO,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        events = self.scheduler.event_service
        if events is not None:
            await events.emit(event_type, self.run_id, job=job, step=step,
                              status=status, data=data, error_message=error)

    async def _notify(self, severity: str, title: str, message: str, **kwargs) -> None:
        events = self.scheduler.event_service
        if events is not None:
            await events.notify(Notification(
                severity=severity, title=title, message=message, run_id=self.run_id, **kwargs
            ))


# ============================================================================
# SCHEDULER
# ============================================================================

class Scheduler:
    """
    Owns the resources shared by every run controller.

    Dispatch is bounded by min(runner pool slots, per-pipeline
    concurrency cap).
    """

    def __init__(
        self,
        environment_service: EnvironmentService,
        artifact_store: ArtifactStore,
        event_service: Optional[EventService] = None,
        pool: Optional[RunnerPool] = None,
        defaults: Optional[SchedulerDefaults] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_wait_seconds: float = 1.0,
    ):
        """
        Args:
            environment_service: Environment registry and approval gates
            artifact_store: Run partitions and deploy markers
            event_service: Timeline and notifications (optional)
            pool: Runner slots (default: local runner, defaults.runner_slots)
            defaults: Scheduler configuration
            clock: Time source for wait timers (default: the gate manager's)
            max_wait_seconds: Upper bound between controller cycles
        """
        self.defaults = defaults or SchedulerDefaults.from_env()
        self.environment_service = environment_service
        self.artifact_store = artifact_store
        self.event_service = event_service
        self.pool = pool or RunnerPool(self.defaults.runner_slots)
        self._clock = clock or environment_service.now
        self.max_wait_seconds = max_wait_seconds

        self.outcome_listeners: List[OutcomeListener] = []
        self.pipeline_caller: Optional[PipelineCaller] = None
        self._controllers: Dict[str, RunController] = {}
        self._concurrency: Dict[Tuple[str, int], asyncio.Semaphore] = {}
        self._started_at = datetime.now(timezone.utc)
        self._runs_started = 0

    def now(self) -> datetime:
        return self._clock()

    def add_outcome_listener(self, listener: OutcomeListener) -> None:
        self.outcome_listeners.append(listener)

    def concurrency_gate(self, pipeline_id: str, cap: Optional[int]) -> Optional[asyncio.Semaphore]:
        """Shared semaphore of a pipeline's concurrency cap (None = uncapped)."""
        if not cap:
            return None
        key = (pipeline_id, cap)
        if key not in self._concurrency:
            self._concurrency[key] = asyncio.Semaphore(cap)
        return self._concurrency[key]

    def start_run(self, run: RunInstance) -> RunController:
        """Create the controller of a run and start driving it."""
        if run.run_id in self._controllers:
            raise PipelineValidationError(f"Run {run.run_id} is already scheduled")
        controller = RunController(run, self)
        self._controllers[run.run_id] = controller
        controller.task = asyncio.create_task(
            self._drive(controller), name=f"run:{run.run_id}"
        )
        self._runs_started += 1
        return controller

    async def _drive(self, controller: RunController) -> None:
        try:
            await controller.run_to_completion()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Run controller {controller.run_id} crashed: {e}")
            controller.run.status = RunStatus.FAILED
            controller.run.error_message = f"Scheduler error: {e}"

    def get_controller(self, run_id: str) -> RunController:
        controller = self._controllers.get(run_id)
        if controller is None:
            raise KeyError(f"Run not found: {run_id}")
        return controller

    def list_controllers(self) -> List[RunController]:
        return list(self._controllers.values())

    async def cancel_run(self, run_id: str, actor: Optional[str] = None) -> RunInstance:
        controller = self.get_controller(run_id)
        await controller.cancel(actor)
        return controller.run

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel every active run and wait for controllers to exit."""
        active = [c for c in self._controllers.values() if not c.is_done]
        for controller in active:
            if not controller.run.is_terminal:
                await controller.cancel("shutdown")
        tasks = [c.task for c in active if c.task is not None]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        logger.info(f"Scheduler stopped ({len(active)} active runs cancelled)")

    @property
    def stats(self) -> Dict[str, Any]:
        active = [c for c in self._controllers.values() if not c.is_done]
        return {
            "started_at": self._started_at.isoformat(),
            "runs_started": self._runs_started,
            "active_runs": len(active),
            "running_jobs": sum(len(c._tasks) for c in active),
            "pool": self.pool.stats,
            "skipped_needs_policy": SkippedNeedsPolicy(self.defaults.skipped_needs_policy).value,
        }


__all__ = ["Scheduler", "RunController", "OutcomeListener", "PipelineCaller"]
