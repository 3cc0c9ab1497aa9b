# ============================================================================
# LOGGING AND CONFIGURATION TESTS
# ============================================================================
# STATUS: Tests - Structured logging and environment-driven defaults
# PURPOSE: Verify log context propagation, formatters and config overrides
# CREATED: 19 OCT 2026
# ============================================================================
"""
Logging and Configuration Tests

Covers:
1. log_context nesting and reset, extra fields
2. Context isolation between asyncio tasks
3. StructuredFormatter JSON output, HumanFormatter inline context
4. configure_logging handler replacement
5. Defaults from environment variables, reset_defaults()

Run with:
    pytest tests/test_logging_config.py -v
"""

import asyncio
import json
import logging
import sys

import pytest

from core.config import Defaults, SchedulerDefaults, get_defaults, reset_defaults
from core.contracts import SkippedNeedsPolicy
from core.logging import (
    HumanFormatter,
    StructuredFormatter,
    configure_logging,
    get_current_context,
    log_checkpoint,
    log_context,
)


# ============================================================================
# FIXTURES
# ============================================================================

def make_record(message="hello", exc_info=None):
    return logging.LogRecord(
        name="orchestrator.scheduler",
        level=logging.INFO,
        pathname=__file__,
        lineno=42,
        msg=message,
        args=(),
        exc_info=exc_info,
    )


@pytest.fixture
def fresh_defaults():
    reset_defaults()
    yield
    reset_defaults()


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


# ============================================================================
# LOG CONTEXT
# ============================================================================

class TestLogContext:

    def test_nesting(self):
        with log_context(run_id="run-1"):
            with log_context(job_id="build", attempt=2):
                context = get_current_context()
                assert context.run_id == "run-1"
                assert context.job_id == "build"
                assert context.extra == {"attempt": 2}
            assert get_current_context().job_id is None
        assert get_current_context().run_id is None

    def test_to_dict_drops_empty_fields(self):
        with log_context(run_id="run-1", environment="prod", reason="gate"):
            assert get_current_context().to_dict() == {
                "run_id": "run-1",
                "environment": "prod",
                "reason": "gate",
            }

    def test_tasks_see_their_own_context(self):
        async def job(name, seen):
            with log_context(job_id=name):
                await asyncio.sleep(0.01)
                seen[name] = get_current_context().job_id

        async def scenario():
            seen = {}
            with log_context(run_id="run-1"):
                await asyncio.gather(job("a", seen), job("b", seen))
            return seen

        assert asyncio.run(scenario()) == {"a": "a", "b": "b"}


# ============================================================================
# FORMATTERS
# ============================================================================

class TestFormatters:

    def test_structured(self):
        with log_context(run_id="run-1", job_id="deploy-prod"):
            line = StructuredFormatter().format(make_record())
        data = json.loads(line)
        assert data["level"] == "INFO"
        assert data["message"] == "hello"
        assert data["context"] == {"run_id": "run-1", "job_id": "deploy-prod"}
        assert data["source"]["line"] == 42

    def test_structured_without_context(self):
        data = json.loads(StructuredFormatter(include_context=False).format(make_record()))
        assert "context" not in data

    def test_structured_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record(exc_info=sys.exc_info())
        data = json.loads(StructuredFormatter().format(record))
        assert "ValueError: boom" in data["exception"]

    def test_human(self):
        with log_context(run_id="run-1", environment="prod"):
            line = HumanFormatter().format(make_record("waiting"))
        assert "[run=run-1, env=prod]" in line
        assert line.endswith("waiting")


class TestConfigureLogging:

    def test_replaces_handlers(self, restore_root_logger):
        configure_logging("DEBUG")
        configure_logging("WARNING", json_output=True)
        root = restore_root_logger
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert root.level == logging.WARNING

    def test_log_format_env(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")
        configure_logging()
        assert isinstance(restore_root_logger.handlers[0].formatter, StructuredFormatter)

    def test_checkpoint(self, caplog):
        logger = logging.getLogger("tests.checkpoint")
        with caplog.at_level(logging.INFO, logger="tests.checkpoint"):
            with log_context(run_id="run-1"):
                log_checkpoint("run_started", {"jobs": 3}, logger)
        record = caplog.records[-1]
        assert record.getMessage() == "CHECKPOINT: run_started"
        assert record.extra["run_id"] == "run-1"
        assert record.extra["data"] == {"jobs": 3}


# ============================================================================
# DEFAULTS
# ============================================================================

class TestDefaults:

    def test_builtin_values(self):
        defaults = Defaults()
        assert defaults.scheduler.runner_slots == 4
        assert defaults.scheduler.skipped_needs_policy == SkippedNeedsPolicy.SATISFIED
        assert defaults.approvals.approval_timeout_seconds == 86400

    def test_from_env(self, monkeypatch, fresh_defaults):
        monkeypatch.setenv("RUNNER_SLOTS", "8")
        monkeypatch.setenv("SKIPPED_NEEDS_POLICY", "BLOCKING")
        monkeypatch.setenv("ARTIFACT_RETENTION_SECONDS", "60")
        monkeypatch.setenv("DEPLOY_MARKERS_PER_ENVIRONMENT", "5")
        defaults = get_defaults()
        assert defaults.scheduler.runner_slots == 8
        assert defaults.scheduler.skipped_needs_policy == SkippedNeedsPolicy.BLOCKING
        assert defaults.artifacts.retention_seconds == 60
        assert defaults.artifacts.markers_per_environment == 5

    def test_cached_until_reset(self, monkeypatch, fresh_defaults):
        first = get_defaults()
        monkeypatch.setenv("RUNNER_SLOTS", "2")
        assert get_defaults() is first
        reset_defaults()
        assert get_defaults().scheduler.runner_slots == 2

    def test_frozen(self):
        with pytest.raises(Exception):
            SchedulerDefaults().runner_slots = 1

    def test_invalid_policy(self, monkeypatch):
        monkeypatch.setenv("SKIPPED_NEEDS_POLICY", "sometimes")
        with pytest.raises(ValueError):
            SchedulerDefaults.from_env()
