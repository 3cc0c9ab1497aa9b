# ============================================================================
# STEP RUNNER TESTS
# ============================================================================
# STATUS: Tests - Step execution on runner slots
# PURPOSE: Verify handler and command steps, timeouts, outputs and the pool
# CREATED: 19 OCT 2026
# ============================================================================
"""
Step Runner Tests

Covers:
1. Handler registry: registration, duplicates, lookup, sync handlers
2. Builtin handlers: echo, upload, fail, deploy, rollback, lose-runner
3. LocalStepRunner `uses:` steps: outputs filtered to declared names
4. LocalStepRunner `run:` steps: $PIPELINE_OUTPUT, exit codes, env
5. Timeouts (exit 124) and unknown handlers (exit 127)
6. Lost runners raise instead of reporting an outcome
7. RunnerPool slot accounting

Run with:
    pytest tests/test_runner.py -v
"""

import asyncio

import pytest

from handlers.registry import (
    DuplicateHandlerError,
    HandlerContext,
    HandlerResult,
    execute_handler,
    get_handler,
    get_handler_metadata,
    register_handler,
    unregister_handler,
    validate_handlers,
)
from worker.contracts import (
    EXIT_HANDLER_NOT_FOUND,
    EXIT_TIMEOUT,
    RunnerLostError,
    StepDispatch,
    StepOutcome,
)
from worker.executor import LocalStepRunner, RunnerPool, read_output_file


# ============================================================================
# FIXTURES
# ============================================================================

def make_dispatch(**overrides):
    values = {
        "run_id": "run-1",
        "pipeline_id": "release",
        "job": "build",
        "step_index": 0,
        "step_id": "compile",
    }
    values.update(overrides)
    return StepDispatch(**values)


def make_context(handler, inputs=None, **overrides):
    values = {
        "run_id": "run-1",
        "job": "deploy-prod",
        "step": "ship",
        "handler": handler,
        "inputs": inputs or {},
        "timeout_seconds": 30,
    }
    values.update(overrides)
    return HandlerContext(**values)


@pytest.fixture
def runner():
    return LocalStepRunner()


@pytest.fixture
def temp_handler():
    """Register throwaway handlers and remove them afterwards."""
    names = []

    def register(name, func):
        register_handler(name)(func)
        names.append(name)
        return func

    yield register
    for name in names:
        unregister_handler(name)


# ============================================================================
# REGISTRY
# ============================================================================

class TestRegistry:

    def test_builtins_registered(self):
        for name in ("echo", "set-output", "upload", "sleep", "fail", "lose-runner", "deploy", "rollback"):
            assert get_handler(name) is not None
        assert validate_handlers(["echo", "nope"]) == ["nope"]

    def test_duplicate_registration(self):
        with pytest.raises(DuplicateHandlerError):
            register_handler("echo")(lambda ctx: None)

    def test_metadata(self):
        meta = get_handler_metadata("deploy")
        assert meta["is_async"] is True
        assert "deploy" in meta["tags"]

    def test_sync_handler_runs_in_executor(self, temp_handler):
        def sync_handler(ctx):
            return HandlerResult.success_result({"double": ctx.inputs["n"] * 2})

        temp_handler("test-sync", sync_handler)
        result = asyncio.run(execute_handler("test-sync", make_context("test-sync", {"n": 4})))
        assert result.outputs == {"double": 8}

    def test_none_result_is_success(self, temp_handler):
        async def quiet(ctx):
            return None

        temp_handler("test-quiet", quiet)
        assert asyncio.run(execute_handler("test-quiet", make_context("test-quiet"))).success

    def test_exception_becomes_failure(self, temp_handler):
        async def broken(ctx):
            raise ValueError("bad input")

        temp_handler("test-broken", broken)
        result = asyncio.run(execute_handler("test-broken", make_context("test-broken")))
        assert result.success is False
        assert "ValueError: bad input" in result.error_message

    def test_reraise_listed_errors(self, temp_handler):
        async def lost(ctx):
            raise RunnerLostError("gone")

        temp_handler("test-lost", lost)
        with pytest.raises(RunnerLostError):
            asyncio.run(execute_handler(
                "test-lost", make_context("test-lost"), reraise=(RunnerLostError,)
            ))


# ============================================================================
# BUILTIN HANDLERS
# ============================================================================

class TestBuiltinHandlers:

    def run_handler(self, name, inputs=None, **overrides):
        return asyncio.run(execute_handler(name, make_context(name, inputs, **overrides)))

    def test_echo(self):
        result = self.run_handler("echo", {"message": "hi", "n": 1})
        assert result.outputs == {"message": "hi", "n": 1}

    def test_upload(self):
        result = self.run_handler("upload", {"bundle": "dist/app.tgz"})
        assert result.artifacts == {"bundle": "dist/app.tgz"}
        assert self.run_handler("upload").success is False

    def test_fail(self):
        result = self.run_handler("fail", {"error_message": "nope", "exit_code": 3})
        assert result.success is False
        assert result.exit_code == 3

    def test_deploy(self):
        result = self.run_handler("deploy", {"version": "1.2.0"}, environment="prod")
        assert result.outputs == {"environment": "prod", "version": "1.2.0"}

    def test_deploy_requires_environment(self):
        assert self.run_handler("deploy", {"version": "1"}).success is False

    def test_deploy_failure_flag(self):
        assert self.run_handler("deploy", {"fail": "true"}, environment="prod").success is False

    def test_rollback_reads_marker_from_job_inputs(self):
        marker = {"run_id": "run-0", "sha": "aaa", "outputs": {"version": "1.1.0"}}
        result = self.run_handler("rollback", environment="prod", job_inputs=marker)
        assert result.outputs == {
            "environment": "prod",
            "restored_version": "1.1.0",
            "restored_run_id": "run-0",
        }

    def test_rollback_without_marker(self):
        assert self.run_handler("rollback", environment="prod").success is False

    def test_lose_runner_raises_then_succeeds(self):
        context = make_context("lose-runner", {"lost_attempts": 1})
        with pytest.raises(RunnerLostError):
            asyncio.run(execute_handler("lose-runner", context, reraise=(RunnerLostError,)))
        context.attempt = 2
        assert asyncio.run(execute_handler("lose-runner", context)).success


# ============================================================================
# HANDLER STEPS
# ============================================================================

class TestHandlerSteps:

    def test_outputs_and_artifacts(self, runner):
        dispatch = make_dispatch(uses="upload", inputs={"bundle": "x"})
        outcome = asyncio.run(runner.submit(dispatch))
        assert outcome.success
        assert outcome.artifacts == {"bundle": "x"}
        assert outcome.outputs == {"uploaded": "bundle"}
        assert outcome.duration_ms is not None

    def test_undeclared_outputs_dropped(self, runner):
        dispatch = make_dispatch(
            uses="set-output", inputs={"version": "1.2", "noise": "x"}, declared_outputs=["version"],
        )
        outcome = asyncio.run(runner.submit(dispatch))
        assert outcome.outputs == {"version": "1.2"}

    def test_non_string_outputs_serialized(self, runner):
        dispatch = make_dispatch(uses="set-output", inputs={"items": [1, 2]})
        assert asyncio.run(runner.submit(dispatch)).outputs == {"items": "[1, 2]"}

    def test_failure(self, runner):
        outcome = asyncio.run(runner.submit(make_dispatch(uses="fail")))
        assert outcome.success is False
        assert outcome.exit_code == 1

    def test_unknown_handler(self, runner):
        outcome = asyncio.run(runner.submit(make_dispatch(uses="does-not-exist")))
        assert outcome.exit_code == EXIT_HANDLER_NOT_FOUND

    def test_timeout(self, runner):
        dispatch = make_dispatch(uses="sleep", inputs={"duration_seconds": 5}, timeout_seconds=1)
        outcome = asyncio.run(runner.submit(dispatch))
        assert outcome.timed_out is True
        assert outcome.exit_code == EXIT_TIMEOUT

    def test_lost_runner_raises(self, runner):
        dispatch = make_dispatch(uses="lose-runner")
        with pytest.raises(RunnerLostError):
            asyncio.run(runner.submit(dispatch))

    def test_job_inputs_reach_handler(self, runner):
        dispatch = make_dispatch(
            uses="rollback",
            environment="prod",
            job_inputs={"run_id": "run-0", "outputs": {"version": "1.0"}},
        )
        outcome = asyncio.run(runner.submit(dispatch))
        assert outcome.outputs["restored_version"] == "1.0"


# ============================================================================
# COMMAND STEPS
# ============================================================================

class TestCommandSteps:

    def test_outputs_from_output_file(self, runner):
        dispatch = make_dispatch(run='echo "version=1.2.0" >> "$PIPELINE_OUTPUT"; echo done')
        outcome = asyncio.run(runner.submit(dispatch))
        assert outcome.success
        assert outcome.outputs == {"version": "1.2.0"}
        assert "done" in outcome.log_tail

    def test_exit_code(self, runner):
        outcome = asyncio.run(runner.submit(make_dispatch(run="echo broken; exit 3")))
        assert outcome.exit_code == 3
        assert "broken" in outcome.error_message

    def test_environment_variables(self, runner):
        dispatch = make_dispatch(
            run='echo "job=$PIPELINE_JOB" >> "$PIPELINE_OUTPUT"; echo "mode=$MODE" >> "$PIPELINE_OUTPUT"',
            env={"MODE": "fast"},
            environment="staging",
        )
        outcome = asyncio.run(runner.submit(dispatch))
        assert outcome.outputs == {"job": "build", "mode": "fast"}

    def test_timeout_kills_process(self, runner):
        outcome = asyncio.run(runner.submit(make_dispatch(run="sleep 10", timeout_seconds=1)))
        assert outcome.timed_out is True
        assert outcome.exit_code == EXIT_TIMEOUT

    def test_cancellation_propagates(self, runner):
        async def scenario():
            task = asyncio.create_task(runner.submit(make_dispatch(run="sleep 10")))
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())


class TestOutputFile:

    def test_parse(self, tmp_path):
        path = tmp_path / "out.env"
        path.write_text("a=1\n# comment\n\nmalformed\nb=x=y\n")
        assert read_output_file(str(path)) == {"a": "1", "b": "x=y"}

    def test_missing_file(self, tmp_path):
        assert read_output_file(str(tmp_path / "missing")) == {}


class TestStepOutcome:

    def test_failed_coerces_zero_exit(self):
        assert StepOutcome.failed("x", exit_code=0).exit_code == 1


# ============================================================================
# RUNNER POOL
# ============================================================================

class TestRunnerPool:

    def test_requires_a_slot(self):
        with pytest.raises(ValueError):
            RunnerPool(0)

    def test_slots_bound_concurrency(self):
        async def scenario():
            pool = RunnerPool(2)

            async def hold():
                async with pool.slot():
                    await asyncio.sleep(0.05)

            await asyncio.gather(*(hold() for _ in range(5)))
            return pool

        pool = asyncio.run(scenario())
        assert pool.stats["peak"] == 2
        assert pool.active_count == 0
