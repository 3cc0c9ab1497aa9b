# ============================================================================
# ROLLBACK SERVICE
# ============================================================================
# STATUS: Core - Compensating deploys after failed deployments
# PURPOSE: Record deploy markers, schedule rollback jobs, surface failures
# CREATED: 19 OCT 2026
# ============================================================================
"""
Rollback Service

Listens to job outcomes of every run:

- A SUCCEEDED deploy-role job records a deploy marker (run, job, commit,
  outputs) for its environment.
- A FAILED deploy-role job that actually ran looks up the last known
  good marker of its environment from a prior run. If one exists, a
  single compensating job `rollback-<environment>` is added to the same
  run, targeting the same environment, with the marker as its inputs.
  Its approval gate is bypassed only when the environment sets
  allow_rollback_bypass.
- At most one compensating job per (run, environment); later requests
  are reported as "rollback already pending".
- Cancellation never triggers a rollback.
- A FAILED compensating job is fatal: logged at CRITICAL, recorded on the
  run (requires_intervention), emitted as an event and sent to the
  notification sink. Nothing further is attempted.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from core.contracts import FailureCause, JobRole, JobRunStatus
from core.errors import InvalidTransitionError, PipelineValidationError
from core.models.events import DeployMarker, EventStatus, EventType, Notification
from core.models.pipeline import StepSpec
from core.models.run import JobRun
from services.artifact_service import ArtifactStore
from services.event_service import EventService

if TYPE_CHECKING:
    from orchestrator.scheduler import RunController, Scheduler

logger = logging.getLogger(__name__)

ROLLBACK_PREFIX = "rollback-"

# Failures that happen before anything was deployed
_NOT_DEPLOYED = {
    FailureCause.APPROVAL,
    FailureCause.ENVIRONMENT_PROTECTION,
    FailureCause.CANCELLED,
}


class RollbackDecision(str, Enum):
    """What the controller did with a failed deploy."""
    SCHEDULED = "scheduled"
    ALREADY_PENDING = "already_pending"
    NO_MARKER = "no_marker"
    NOT_ELIGIBLE = "not_eligible"


@dataclass
class RollbackRecord:
    run_id: str
    environment: str
    failed_job: str
    decision: RollbackDecision
    rollback_job: Optional[str] = None
    marker_run_id: Optional[str] = None
    message: str = ""


def default_rollback_steps() -> List[StepSpec]:
    """Compensating steps used when a deploy job declares none."""
    return [StepSpec(id="rollback", name="Restore last known good", uses="rollback")]


class RollbackService:
    """Rollback controller fed by scheduler outcomes."""

    def __init__(
        self,
        artifact_store: ArtifactStore,
        event_service: Optional[EventService] = None,
    ):
        self.artifact_store = artifact_store
        self.event_service = event_service
        self._lock = asyncio.Lock()
        # (run_id, environment) -> compensating job
        self._scheduled: Dict[Tuple[str, str], JobRun] = {}
        self._history: Dict[str, List[RollbackRecord]] = {}

    def attach(self, scheduler: "Scheduler") -> None:
        """Subscribe to job outcomes of every run."""
        scheduler.add_outcome_listener(self.on_job_outcome)

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    async def on_job_outcome(self, controller: "RunController", job: JobRun) -> None:
        if job.role == JobRole.ROLLBACK:
            if job.status == JobRunStatus.FAILED:
                await self._rollback_failed(controller, job)
            return

        if job.role != JobRole.DEPLOY or not job.environment:
            return

        if job.status == JobRunStatus.SUCCEEDED:
            self._record_marker(controller, job)
        elif job.status == JobRunStatus.FAILED:
            await self.handle_failed_deploy(controller, job)

    def _record_marker(self, controller: "RunController", job: JobRun) -> None:
        run = controller.run
        self.artifact_store.record_deploy_marker(
            DeployMarker(
                environment=job.environment,
                run_id=run.run_id,
                pipeline_id=run.pipeline_id,
                job=job.name,
                sha=run.event.get("sha"),
                ref=run.event.get("ref"),
                outputs=dict(job.outputs),
            )
        )

    async def handle_failed_deploy(self, controller: "RunController", job: JobRun) -> RollbackRecord:
        """
        Schedule the compensating job of a failed deploy.

        Idempotent per (run, environment).
        """
        run = controller.run
        environment = job.environment
        key = (run.run_id, environment)

        async with self._lock:
            if job.failure_cause in _NOT_DEPLOYED or job.started_at is None:
                return await self._record(RollbackRecord(
                    run.run_id, environment, job.name, RollbackDecision.NOT_ELIGIBLE,
                    message=f"Deploy never ran ({job.failure_cause.value if job.failure_cause else 'unknown'})",
                ))

            if key in self._scheduled:
                return await self._record(RollbackRecord(
                    run.run_id, environment, job.name, RollbackDecision.ALREADY_PENDING,
                    message=f"Rollback already pending for {environment}",
                ))

            marker = self.artifact_store.last_known_good(environment, exclude_run_id=run.run_id)
            if marker is None:
                return await self._record(RollbackRecord(
                    run.run_id, environment, job.name, RollbackDecision.NO_MARKER,
                    message=f"No prior successful deploy to {environment}",
                ))

            compensating = self._build_job(controller, job, marker)
            try:
                controller.add_job(compensating)
            except (InvalidTransitionError, PipelineValidationError) as e:
                return await self._record(RollbackRecord(
                    run.run_id, environment, job.name, RollbackDecision.NOT_ELIGIBLE,
                    message=str(e),
                ))
            self._scheduled[key] = compensating

        logger.warning(
            f"Rollback scheduled: run={run.run_id} env={environment} "
            f"to run {marker.run_id} ({marker.sha or 'no sha'})"
        )
        return await self._record(RollbackRecord(
            run.run_id, environment, job.name, RollbackDecision.SCHEDULED,
            rollback_job=compensating.name, marker_run_id=marker.run_id,
            message=f"Rolling back {environment} to run {marker.run_id}",
        ))

    def _build_job(self, controller: "RunController", failed: JobRun, marker: DeployMarker) -> JobRun:
        spec = controller.definition.jobs.get(failed.spec_name)
        steps = list(spec.rollback) if spec and spec.rollback else default_rollback_steps()
        name = f"{ROLLBACK_PREFIX}{failed.environment}"
        return JobRun(
            run_id=controller.run_id,
            name=name,
            spec_name=name,
            needs=[failed.name],
            condition="always()",
            environment=failed.environment,
            role=JobRole.ROLLBACK,
            steps=steps,
            inputs=marker.as_inputs(),
            rollback_of=failed.name,
        )

    async def _rollback_failed(self, controller: "RunController", job: JobRun) -> None:
        run = controller.run
        run.requires_intervention = True
        message = (
            f"Rollback of environment '{job.environment}' failed in run {run.run_id}: "
            f"{job.error_message}. Manual intervention required."
        )
        logger.critical(message)
        if self.event_service is not None:
            await self.event_service.emit(
                EventType.ROLLBACK_FAILED, run.run_id, job=job.name,
                status=EventStatus.FAILURE,
                data={"environment": job.environment, "rollback_of": job.rollback_of},
                error_message=job.error_message,
            )
            await self.event_service.notify(Notification(
                severity="critical",
                title=f"Rollback failed: {job.environment}",
                message=message,
                run_id=run.run_id,
                environment=job.environment,
                data={"rollback_of": job.rollback_of, "inputs": job.inputs},
            ))

    async def _record(self, record: RollbackRecord) -> RollbackRecord:
        self._history.setdefault(record.run_id, []).append(record)
        if record.decision != RollbackDecision.SCHEDULED:
            logger.info(
                f"Rollback {record.decision.value}: run={record.run_id} "
                f"env={record.environment} ({record.message})"
            )
        if self.event_service is not None:
            await self.event_service.emit(
                EventType.ROLLBACK_SCHEDULED if record.decision == RollbackDecision.SCHEDULED
                else EventType.ROLLBACK_SKIPPED,
                record.run_id,
                job=record.failed_job,
                status=EventStatus.WARNING,
                data={
                    "environment": record.environment,
                    "decision": record.decision.value,
                    "rollback_job": record.rollback_job,
                    "marker_run_id": record.marker_run_id,
                },
                error_message=record.message,
            )
        return record

    def records_for(self, run_id: str) -> List[RollbackRecord]:
        return list(self._history.get(run_id, []))

    def purge(self, run_id: str) -> None:
        """Forget decisions and scheduled rollbacks of a garbage-collected run."""
        self._history.pop(run_id, None)
        for key in [k for k in self._scheduled if k[0] == run_id]:
            del self._scheduled[key]

    @property
    def stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for records in self._history.values():
            for record in records:
                counts[record.decision.value] = counts.get(record.decision.value, 0) + 1
        pending = sum(1 for job in self._scheduled.values() if not job.status.is_terminal())
        return {"decisions": counts, "pending": pending}


__all__ = [
    "RollbackService",
    "RollbackDecision",
    "RollbackRecord",
    "default_rollback_steps",
    "ROLLBACK_PREFIX",
]
