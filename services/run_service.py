# ============================================================================
# RUN SERVICE
# ============================================================================
# STATUS: Service layer - Event ingestion and run lifecycle
# PURPOSE: Turn matched events into RunInstances and hand them to the scheduler
# CREATED: 19 OCT 2026
# ============================================================================
"""
Run Service

Entry point of every run:
1. ingest() matches an event against all pipelines (TriggerEvaluator)
2. create_run() pins the definition, builds the matrix-expanded job graph
   (DAGBuilder) and opens the run's artifact partition
3. the Scheduler starts a controller for the run

A job with `uses: <pipeline_id>` becomes a child run started through
call_pipeline() when the job is dispatched; callee revisions are pinned
and call cycles rejected at create_run() time.

A validation failure while building the graph rejects that run only;
nothing is created for it and the error is reported with the others.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from core.config import SchedulerDefaults
from core.contracts import EventKind, RunStatus
from core.errors import PipelineValidationError
from core.models.events import EventStatus, EventType, TriggerEvent
from core.models.pipeline import PipelineDefinition
from core.models.run import JobRun, RunInstance
from orchestrator.engine.dag import DAGBuilder
from orchestrator.engine.triggers import (
    RunSeed,
    TriggerEvaluator,
    check_call_inputs,
    validate_call_inputs,
)
from orchestrator.scheduler import RunController, Scheduler
from services.artifact_service import ArtifactStore
from services.environment_service import EnvironmentService
from services.event_service import EventService
from services.pipeline_service import PipelineService
from services.rollback_service import RollbackService

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Run ids instantiated for one event, plus reported errors."""
    run_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def generate_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


class RunService:
    """Creates runs from events and exposes run control."""

    def __init__(
        self,
        pipeline_service: PipelineService,
        environment_service: EnvironmentService,
        artifact_store: ArtifactStore,
        scheduler: Scheduler,
        event_service: Optional[EventService] = None,
        defaults: Optional[SchedulerDefaults] = None,
        rollback_service: Optional[RollbackService] = None,
    ):
        self.pipeline_service = pipeline_service
        self.environment_service = environment_service
        self.artifact_store = artifact_store
        self.scheduler = scheduler
        self.event_service = event_service
        self.rollback_service = rollback_service
        self.defaults = defaults or scheduler.defaults
        self._runs: Dict[str, RunInstance] = {}
        self._events_ingested = 0
        scheduler.pipeline_caller = self.call_pipeline

    # =========================================================================
    # INGESTION
    # =========================================================================

    async def ingest(self, event: TriggerEvent) -> IngestResult:
        """
        Evaluate an event and start every matching run.

        Returns:
            IngestResult (possibly empty: a trigger mismatch is not an error)
        """
        self._events_ingested += 1
        known = {e.name for e in self.environment_service.list_all()}
        evaluation = TriggerEvaluator(known).evaluate(event, self.pipeline_service.list_all())

        result = IngestResult(
            errors=[f"{e.pipeline_id or '?'}: {e.message}" for e in evaluation.errors]
        )
        for seed in evaluation.seeds:
            try:
                run = await self.create_run(seed)
            except PipelineValidationError as e:
                logger.warning(f"Run of pipeline '{seed.pipeline_id}' rejected: {e}")
                result.errors.append(f"{seed.pipeline_id}: {e}")
                continue
            self.scheduler.start_run(run)
            result.run_ids.append(run.run_id)

        if result.run_ids:
            logger.info(f"Event {event.kind.value} started runs {result.run_ids}")
        return result

    async def create_run(
        self,
        seed: RunSeed,
        parent_run_id: Optional[str] = None,
        parent_job: Optional[str] = None,
    ) -> RunInstance:
        """
        Instantiate a run from a seed without starting it.

        Raises:
            PipelineValidationError: cycle, unknown needs or environment,
                invalid pipeline calls
        """
        definition = seed.definition
        call_revisions = self._resolve_calls(definition)
        run_id = generate_run_id()
        event_context = seed.event.context()
        event_context["inputs"] = dict(seed.inputs)

        builder = DAGBuilder(
            environment_exists=self.environment_service.exists,
            default_infra_retries=self.defaults.max_infra_retries,
        )
        graph = builder.build(
            definition, run_id, {"event": event_context, "inputs": dict(seed.inputs)}
        )
        for job in graph.jobs.values():
            if job.call:
                job.call_revision = call_revisions[job.spec_name]

        run = RunInstance(
            run_id=run_id,
            pipeline_id=definition.pipeline_id,
            revision=definition.revision,
            definition_snapshot=definition.model_dump(by_alias=True, mode="json"),
            event=event_context,
            jobs=graph.jobs,
            topo_levels=graph.levels,
            parent_run_id=parent_run_id,
            parent_job=parent_job,
        )
        self._runs[run_id] = run
        self.artifact_store.register_run(run_id, {n: j.needs for n, j in graph.jobs.items()})

        if self.event_service is not None:
            await self.event_service.emit(
                EventType.RUN_CREATED, run_id,
                status=EventStatus.INFO,
                data={
                    "pipeline_id": definition.pipeline_id,
                    "revision": definition.revision,
                    "event": seed.event.kind.value,
                    "trigger": seed.rule_index,
                    "jobs": graph.order,
                    "parent_run_id": parent_run_id,
                },
            )
        logger.info(
            f"Created run {run_id} of {definition.pipeline_id} r{definition.revision} "
            f"({len(graph.jobs)} jobs)"
        )
        return run

    # =========================================================================
    # PIPELINE CALLS
    # =========================================================================

    def _resolve_calls(
        self,
        definition: PipelineDefinition,
        chain: Tuple[str, ...] = (),
    ) -> Dict[str, int]:
        """
        Pin the callee revision of every calling job.

        Walks callees recursively so call cycles are rejected before any
        run exists.

        Returns:
            job name -> callee revision
        """
        chain = chain + (definition.pipeline_id,)
        revisions: Dict[str, int] = {}
        errors: List[str] = []
        for job_name, job in definition.jobs.items():
            if not job.calls_pipeline:
                continue
            if job.uses in chain:
                path = " -> ".join(chain + (job.uses,))
                raise PipelineValidationError(f"Pipeline call cycle: {path}")
            callee = self.pipeline_service.get(job.uses)
            if callee is None:
                errors.append(f"Job '{job_name}' calls unknown pipeline '{job.uses}'")
                continue
            errors.extend(f"Job '{job_name}': {e}" for e in check_call_inputs(callee, job.inputs))
            self._resolve_calls(callee, chain)
            revisions[job_name] = callee.revision
        if errors:
            raise PipelineValidationError(
                f"Pipeline '{definition.pipeline_id}' has invalid calls: {errors[0]}", errors
            )
        return revisions

    async def call_pipeline(
        self,
        parent: RunInstance,
        job: JobRun,
        inputs: Dict[str, Any],
    ) -> RunController:
        """
        Start the run a calling job waits on.

        The child run inherits the caller's ref, commit and actor and gets
        its own approvals, artifact partition and rollback handling.

        Raises:
            PipelineValidationError: callee gone, bad inputs, invalid graph
        """
        try:
            callee = self.pipeline_service.get_or_raise(job.call, job.call_revision)
        except KeyError as e:
            raise PipelineValidationError(str(e))
        known = {e.name for e in self.environment_service.list_all()}
        resolved = validate_call_inputs(callee, inputs, known)

        event = TriggerEvent(
            kind=EventKind.WORKFLOW_CALL,
            ref=parent.event.get("ref"),
            sha=parent.event.get("sha"),
            actor=parent.event.get("actor"),
            pipeline_id=callee.pipeline_id,
            inputs=resolved,
            payload={
                "caller": {
                    "run_id": parent.run_id,
                    "pipeline_id": parent.pipeline_id,
                    "job": job.name,
                },
            },
        )
        seed = RunSeed(
            definition=callee,
            event=event,
            rule_index=callee.triggers.index(callee.call_rule()),
            inputs=resolved,
        )
        run = await self.create_run(seed, parent_run_id=parent.run_id, parent_job=job.name)
        logger.info(f"Job {job.name} of run {parent.run_id} called {callee.pipeline_id} as {run.run_id}")
        return self.scheduler.start_run(run)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_run(self, run_id: str) -> RunInstance:
        run = self._runs.get(run_id)
        if run is None:
            raise KeyError(f"Run not found: {run_id}")
        return run

    def list_runs(
        self,
        pipeline_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: Optional[int] = None,
    ) -> List[RunInstance]:
        """Runs newest first."""
        runs = sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)
        if pipeline_id is not None:
            runs = [r for r in runs if r.pipeline_id == pipeline_id]
        if status is not None:
            runs = [r for r in runs if r.status == status]
        return runs[:limit] if limit else runs

    # =========================================================================
    # CONTROL
    # =========================================================================

    async def cancel_run(self, run_id: str, actor: Optional[str] = None) -> RunInstance:
        """
        Raises:
            KeyError: unknown run
            InvalidTransitionError: run already terminal
        """
        self.get_run(run_id)
        return await self.scheduler.cancel_run(run_id, actor)

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> RunInstance:
        """Wait until the run's controller finishes."""
        controller = self.scheduler.get_controller(run_id)
        await controller.wait(timeout)
        return controller.run

    async def wait_for_all(self, timeout: Optional[float] = None) -> None:
        controllers = [c for c in self.scheduler.list_controllers() if not c.is_done]
        if controllers:
            await asyncio.wait_for(
                asyncio.gather(*(c.wait() for c in controllers)), timeout=timeout
            )

    def collect_garbage(self) -> List[str]:
        """Drop everything kept for expired terminal runs."""
        expired = self.artifact_store.collect_garbage()
        for run_id in expired:
            if self.event_service is not None:
                self.event_service.purge(run_id)
            if self.rollback_service is not None:
                self.rollback_service.purge(run_id)
        return expired

    @property
    def stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for run in self._runs.values():
            counts[run.status.value] = counts.get(run.status.value, 0) + 1
        return {
            "events_ingested": self._events_ingested,
            "runs": counts,
        }


__all__ = ["RunService", "IngestResult", "generate_run_id"]
