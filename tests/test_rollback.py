# ============================================================================
# ROLLBACK CONTROLLER TESTS
# ============================================================================
# STATUS: Tests - Compensating deploys after failed deployments
# PURPOSE: Verify markers, eligibility, idempotency, bypass and fatal failures
# CREATED: 19 OCT 2026
# ============================================================================
"""
Rollback Controller Tests

Covers:
1. Deploy markers recorded only for successful deploy-role jobs
2. Failed deploy + prior marker -> one rollback-<env> job in the same run
3. No marker (or only a marker of the current run) -> nothing scheduled
4. Exactly one compensating job per (run, environment)
5. Deploys that never ran (approval, branch rules, cancel) are not rolled back
6. Approval bypass only where the environment allows it
7. A failed rollback is fatal: requires_intervention + critical notification
8. Pending count and records of garbage-collected runs

Run with:
    pytest tests/test_rollback.py -v
"""

import asyncio

import pytest

from core.config import SchedulerDefaults
from core.contracts import ApprovalState, EventKind, FailureCause, JobRole, JobRunStatus, RunStatus
from core.models import DeployMarker, Environment, EventType, PipelineDefinition, TriggerEvent
from orchestrator.engine.triggers import RunSeed
from orchestrator.scheduler import Scheduler
from services.artifact_service import ArtifactStore
from services.environment_service import AUTO_APPROVER, EnvironmentService
from services.event_service import EventService, MemoryNotificationSink
from services.pipeline_service import PipelineService
from services.rollback_service import RollbackDecision, RollbackService
from services.run_service import RunService
from worker.executor import RunnerPool


# ============================================================================
# FIXTURES
# ============================================================================

class Harness:

    def __init__(self, pipelines_dir, retention_seconds=7 * 24 * 3600):
        self.environments = EnvironmentService([
            Environment(name="staging"),
            Environment(name="prod", approvers=["alice"], allow_rollback_bypass=True),
            Environment(name="locked", approvers=["alice"]),
            Environment(name="main-only", branches=["main"]),
        ])
        self.store = ArtifactStore(retention_seconds=retention_seconds)
        self.sink = MemoryNotificationSink()
        self.events = EventService(sink=self.sink)
        self.scheduler = Scheduler(
            self.environments,
            self.store,
            self.events,
            pool=RunnerPool(4),
            defaults=SchedulerDefaults(runner_slots=4),
            max_wait_seconds=0.05,
        )
        self.rollbacks = RollbackService(self.store, self.events)
        self.rollbacks.attach(self.scheduler)
        self.runs = RunService(
            PipelineService(pipelines_dir, environment_exists=self.environments.exists),
            self.environments,
            self.store,
            self.scheduler,
            self.events,
            rollback_service=self.rollbacks,
        )

    def seed_marker(self, environment, run_id="run-previous", version="1.0.0"):
        self.store.record_deploy_marker(DeployMarker(
            environment=environment,
            run_id=run_id,
            pipeline_id="p",
            job=f"deploy-{environment}",
            sha="0ld5ha",
            outputs={"version": version},
        ))

    async def start(self, jobs, branch="main"):
        definition = PipelineDefinition.model_validate({"pipeline_id": "p", "jobs": jobs})
        event = TriggerEvent(kind=EventKind.PUSH, ref=f"refs/heads/{branch}", sha="n3wsha")
        run = await self.runs.create_run(RunSeed(definition=definition, event=event, rule_index=0))
        self.scheduler.start_run(run)
        return run

    async def execute(self, jobs, **kwargs):
        run = await self.start(jobs, **kwargs)
        return await self.runs.wait_for_run(run.run_id, 10)

    def decisions(self, run_id):
        return [r.decision for r in self.rollbacks.records_for(run_id)]


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def harness(tmp_path):
    return Harness(str(tmp_path))


def deploy_job(environment, fail=False, **extra):
    job = {
        "role": "deploy",
        "environment": environment,
        "steps": [{"uses": "deploy", "with": {"version": "2.0.0", "fail": fail}}],
    }
    job.update(extra)
    return job


# ============================================================================
# DEPLOY MARKERS
# ============================================================================

class TestMarkers:

    def test_successful_deploy_records_marker(self, harness):
        run = asyncio.run(harness.execute({"deploy-staging": deploy_job("staging")}))
        marker = harness.store.last_known_good("staging")
        assert marker.run_id == run.run_id
        assert marker.sha == "n3wsha"
        assert marker.outputs["version"] == "2.0.0"

    def test_build_jobs_record_nothing(self, harness):
        jobs = {"build": {"environment": "staging", "steps": [{"uses": "echo"}]}}
        asyncio.run(harness.execute(jobs))
        assert harness.store.last_known_good("staging") is None


# ============================================================================
# SCHEDULING
# ============================================================================

class TestScheduling:

    def test_failed_deploy_rolls_back(self, harness):
        harness.seed_marker("staging")
        run = asyncio.run(harness.execute({"deploy-staging": deploy_job("staging", fail=True)}))

        rollback = run.jobs["rollback-staging"]
        assert rollback.role == JobRole.ROLLBACK
        assert rollback.needs == ["deploy-staging"]
        assert rollback.rollback_of == "deploy-staging"
        assert rollback.environment == "staging"
        assert rollback.inputs["run_id"] == "run-previous"
        assert rollback.status == JobRunStatus.SUCCEEDED
        assert rollback.outputs["restored_version"] == "1.0.0"

        assert run.status == RunStatus.FAILED
        assert run.requires_intervention is False
        assert harness.decisions(run.run_id) == [RollbackDecision.SCHEDULED]
        types = [e.event_type for e in harness.events.get_timeline(run.run_id)]
        assert EventType.ROLLBACK_SCHEDULED in types

    def test_rollback_only_after_deploy_jobs(self, harness):
        harness.seed_marker("staging")
        jobs = {
            "deploy-staging": deploy_job("staging", fail=True),
            "smoke": {"needs": "deploy-staging", "steps": [{"uses": "echo"}]},
        }
        run = asyncio.run(harness.execute(jobs))
        assert run.jobs["smoke"].status == JobRunStatus.SKIPPED
        assert run.jobs["rollback-staging"].status == JobRunStatus.SUCCEEDED

    def test_declared_rollback_steps(self, harness):
        harness.seed_marker("staging")
        jobs = {"deploy-staging": deploy_job(
            "staging", fail=True,
            rollback=[{"id": "restore", "uses": "echo", "with": {"to": "{{ inputs.sha }}"}}],
        )}
        run = asyncio.run(harness.execute(jobs))
        assert run.jobs["rollback-staging"].step_runs[0].outputs == {"to": "0ld5ha"}

    def test_no_marker(self, harness):
        run = asyncio.run(harness.execute({"deploy-staging": deploy_job("staging", fail=True)}))
        assert "rollback-staging" not in run.jobs
        assert harness.decisions(run.run_id) == [RollbackDecision.NO_MARKER]

    def test_marker_of_current_run_ignored(self, harness):
        jobs = {
            "deploy-a": deploy_job("staging"),
            "deploy-b": deploy_job("staging", fail=True, needs="deploy-a"),
        }
        run = asyncio.run(harness.execute(jobs))
        assert "rollback-staging" not in run.jobs
        assert harness.decisions(run.run_id) == [RollbackDecision.NO_MARKER]

    def test_rollback_to_earlier_run(self, harness):
        async def scenario():
            first = await harness.execute({"deploy-staging": deploy_job("staging")})
            second = await harness.execute({"deploy-staging": deploy_job("staging", fail=True)})
            return first, second

        first, second = asyncio.run(scenario())
        assert second.jobs["rollback-staging"].inputs["run_id"] == first.run_id

    def test_one_rollback_per_environment(self, harness):
        harness.seed_marker("staging")
        jobs = {"deploy": deploy_job("staging", fail=True, matrix={"region": ["eu", "us", "ap"]})}
        run = asyncio.run(harness.execute(jobs))

        rollbacks = [j for j in run.jobs.values() if j.role == JobRole.ROLLBACK]
        assert len(rollbacks) == 1
        decisions = harness.decisions(run.run_id)
        assert decisions.count(RollbackDecision.SCHEDULED) == 1
        assert decisions.count(RollbackDecision.ALREADY_PENDING) == 2

    def test_separate_environments_each_roll_back(self, harness):
        harness.seed_marker("staging")
        harness.seed_marker("main-only")
        jobs = {
            "deploy-staging": deploy_job("staging", fail=True),
            "deploy-main": deploy_job("main-only", fail=True),
        }
        run = asyncio.run(harness.execute(jobs))
        assert run.jobs["rollback-staging"].status == JobRunStatus.SUCCEEDED
        assert run.jobs["rollback-main-only"].status == JobRunStatus.SUCCEEDED

    def test_stats(self, harness):
        harness.seed_marker("staging")
        asyncio.run(harness.execute({"deploy-staging": deploy_job("staging", fail=True)}))
        assert harness.rollbacks.stats == {"decisions": {"scheduled": 1}, "pending": 0}

    def test_pending_counts_unfinished_rollbacks(self, harness):
        harness.seed_marker("locked")

        async def scenario():
            run = await harness.start({"deploy-locked": deploy_job("locked", fail=True)})
            job = run.jobs["deploy-locked"]
            await wait_until(lambda: job.status == JobRunStatus.BLOCKED)
            harness.environments.approve(job.approval_request_id, "alice")
            await wait_until(lambda: "rollback-locked" in run.jobs
                             and run.jobs["rollback-locked"].status == JobRunStatus.BLOCKED)
            during = harness.rollbacks.stats["pending"]
            harness.environments.approve(run.jobs["rollback-locked"].approval_request_id, "alice")
            await harness.runs.wait_for_run(run.run_id, 5)
            return during

        assert asyncio.run(scenario()) == 1
        assert harness.rollbacks.stats["pending"] == 0


# ============================================================================
# ELIGIBILITY
# ============================================================================

class TestEligibility:

    def test_rejected_approval_not_rolled_back(self, harness):
        harness.seed_marker("locked")

        async def scenario():
            run = await harness.start({"deploy-locked": deploy_job("locked")})
            job = run.jobs["deploy-locked"]
            await wait_until(lambda: job.status == JobRunStatus.BLOCKED)
            harness.environments.reject(job.approval_request_id, "alice")
            return await harness.runs.wait_for_run(run.run_id, 5)

        run = asyncio.run(scenario())
        assert run.jobs["deploy-locked"].failure_cause == FailureCause.APPROVAL
        assert "rollback-locked" not in run.jobs
        assert harness.decisions(run.run_id) == [RollbackDecision.NOT_ELIGIBLE]

    def test_branch_protection_not_rolled_back(self, harness):
        harness.seed_marker("main-only")
        run = asyncio.run(harness.execute({"deploy": deploy_job("main-only")}, branch="feature/x"))
        assert run.jobs["deploy"].failure_cause == FailureCause.ENVIRONMENT_PROTECTION
        assert harness.decisions(run.run_id) == [RollbackDecision.NOT_ELIGIBLE]

    def test_cancellation_never_rolls_back(self, harness):
        harness.seed_marker("staging")

        async def scenario():
            run = await harness.start({"deploy-staging": {
                "role": "deploy",
                "environment": "staging",
                "steps": [{"uses": "sleep", "with": {"duration_seconds": 10}}],
            }})
            job = run.jobs["deploy-staging"]
            await wait_until(lambda: job.status == JobRunStatus.RUNNING)
            await harness.runs.cancel_run(run.run_id, "alice")
            return await harness.runs.wait_for_run(run.run_id, 5)

        run = asyncio.run(scenario())
        assert run.status == RunStatus.CANCELLED
        assert harness.rollbacks.records_for(run.run_id) == []


# ============================================================================
# APPROVAL BYPASS
# ============================================================================

class TestBypass:

    def test_bypass_allowed(self, harness):
        harness.seed_marker("prod")

        async def scenario():
            run = await harness.start({"deploy-prod": deploy_job("prod", fail=True)})
            job = run.jobs["deploy-prod"]
            await wait_until(lambda: job.status == JobRunStatus.BLOCKED)
            harness.environments.approve(job.approval_request_id, "alice")
            return await harness.runs.wait_for_run(run.run_id, 5)

        run = asyncio.run(scenario())
        rollback = run.jobs["rollback-prod"]
        assert rollback.status == JobRunStatus.SUCCEEDED
        request = harness.environments.get_request(rollback.approval_request_id)
        assert request.decided_by == AUTO_APPROVER

    def test_no_bypass_waits_for_approval(self, harness):
        harness.seed_marker("locked")

        async def scenario():
            run = await harness.start({"deploy-locked": deploy_job("locked", fail=True)})
            job = run.jobs["deploy-locked"]
            await wait_until(lambda: job.status == JobRunStatus.BLOCKED)
            harness.environments.approve(job.approval_request_id, "alice")

            await wait_until(lambda: "rollback-locked" in run.jobs
                             and run.jobs["rollback-locked"].status == JobRunStatus.BLOCKED)
            rollback = run.jobs["rollback-locked"]
            request = harness.environments.get_request(rollback.approval_request_id)
            assert request.state == ApprovalState.PENDING
            harness.environments.approve(request.request_id, "alice")
            return await harness.runs.wait_for_run(run.run_id, 5)

        run = asyncio.run(scenario())
        assert run.jobs["rollback-locked"].status == JobRunStatus.SUCCEEDED


# ============================================================================
# FATAL ROLLBACK FAILURE
# ============================================================================

class TestRollbackFailure:

    def test_failed_rollback_requires_intervention(self, harness):
        harness.seed_marker("staging")
        jobs = {"deploy-staging": deploy_job(
            "staging", fail=True,
            rollback=[{"uses": "rollback", "with": {"fail": True}}],
        )}
        run = asyncio.run(harness.execute(jobs))

        assert run.jobs["rollback-staging"].status == JobRunStatus.FAILED
        assert run.requires_intervention is True
        assert run.status == RunStatus.FAILED

        critical = [n for n in harness.sink.notifications if n.severity == "critical"]
        assert len(critical) == 1
        assert critical[0].environment == "staging"
        types = [e.event_type for e in harness.events.get_timeline(run.run_id)]
        assert EventType.ROLLBACK_FAILED in types

    def test_failed_rollback_is_not_retried(self, harness):
        harness.seed_marker("staging")
        jobs = {"deploy-staging": deploy_job(
            "staging", fail=True,
            rollback=[{"uses": "rollback", "with": {"fail": True}}],
        )}
        run = asyncio.run(harness.execute(jobs))
        rollbacks = [j for j in run.jobs.values() if j.role == JobRole.ROLLBACK]
        assert len(rollbacks) == 1
        assert harness.decisions(run.run_id) == [RollbackDecision.SCHEDULED]


# ============================================================================
# RETENTION
# ============================================================================

class TestRetention:

    def test_garbage_collection_forgets_rollback_records(self, tmp_path):
        harness = Harness(str(tmp_path), retention_seconds=0)
        harness.seed_marker("staging")
        run = asyncio.run(harness.execute({"deploy-staging": deploy_job("staging", fail=True)}))
        assert harness.decisions(run.run_id) == [RollbackDecision.SCHEDULED]

        assert harness.runs.collect_garbage() == [run.run_id]
        assert harness.rollbacks.records_for(run.run_id) == []
        assert harness.rollbacks.stats == {"decisions": {}, "pending": 0}

    def test_purge_keeps_other_runs(self, harness):
        harness.seed_marker("staging")

        async def scenario():
            first = await harness.execute({"deploy-staging": deploy_job("staging", fail=True)})
            second = await harness.execute({"deploy-staging": deploy_job("staging", fail=True)})
            return first, second

        first, second = asyncio.run(scenario())
        harness.rollbacks.purge(first.run_id)
        assert harness.decisions(first.run_id) == []
        assert harness.decisions(second.run_id) == [RollbackDecision.SCHEDULED]
        assert harness.rollbacks.stats["decisions"] == {"scheduled": 1}
