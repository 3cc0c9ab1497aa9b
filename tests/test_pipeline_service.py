# ============================================================================
# PIPELINE REGISTRY TESTS
# ============================================================================
# STATUS: Tests - Pipeline definition loading and revisions
# PURPOSE: Verify YAML parsing, load-time validation and revision pinning
# CREATED: 19 OCT 2026
# ============================================================================
"""
Pipeline Registry Tests

Covers:
1. YAML parsing: the bare `on:` key, mapping and list trigger forms
2. Directory loading: malformed files rejected whole, errors recorded
3. Load-time validation: needs, cycles, cron, expressions, templates,
   static environment references
4. Revisions: unchanged definitions keep their revision, changes append
5. The shipped pipelines load cleanly
6. Job display names apart from job keys; pipeline-call jobs and their triggers

Run with:
    pytest tests/test_pipeline_service.py -v
"""

from pathlib import Path

import pytest

from core.contracts import EventKind
from core.errors import PipelineValidationError
from orchestrator.engine.dag import DAGBuilder
from services.pipeline_service import PipelineService, parse_pipeline_document


# ============================================================================
# FIXTURES
# ============================================================================

REPO_ROOT = Path(__file__).resolve().parent.parent

BASIC = """\
pipeline_id: basic
on:
  push:
    branches: [main]
jobs:
  build:
    steps:
      - run: echo ok
"""


def known_environment(name):
    return name in {"staging", "prod"}


@pytest.fixture
def service(tmp_path):
    return PipelineService(str(tmp_path), environment_exists=known_environment)


def errors_of(service, text):
    with pytest.raises(PipelineValidationError) as exc:
        service.load_text(text)
    return exc.value.errors


# ============================================================================
# PARSING
# ============================================================================

class TestParsing:

    def test_on_key(self, service):
        definition = service.load_text(BASIC)
        assert definition.triggers[0].event == EventKind.PUSH
        assert definition.triggers[0].branches == ["main"]
        assert definition.jobs["build"].name == "build"

    def test_list_trigger_form(self):
        definition = parse_pipeline_document({
            "pipeline_id": "p",
            "on": [{"event": "schedule", "cron": "0 2 * * *"}],
            "jobs": {"a": {"steps": [{"run": "x"}]}},
        })
        assert definition.triggers[0].cron == ["0 2 * * *"]

    def test_display_name_differs_from_key(self, service):
        definition = service.load_text(
            "pipeline_id: p\njobs:\n"
            "  lint:\n    name: Code Linting\n    steps: [{run: x}]\n"
            "  test:\n    name: Unit Tests\n    needs: lint\n    steps: [{run: x}]\n"
        )
        assert list(definition.jobs) == ["lint", "test"]
        assert definition.jobs["lint"].name == "lint"
        assert definition.jobs["lint"].display_name == "Code Linting"
        assert definition.jobs["test"].needs == ["lint"]

        graph = DAGBuilder().build(definition, "run-1", {"event": {}, "inputs": {}})
        assert graph.jobs["lint"].display_name == "Code Linting"
        assert graph.jobs["test"].needs == ["lint"]

    def test_display_name_survives_snapshot(self, service):
        definition = service.load_text(
            "pipeline_id: p\njobs:\n  lint:\n    name: Code Linting\n    steps: [{run: x}]\n"
        )
        snapshot = definition.model_dump(by_alias=True, mode="json")
        restored = parse_pipeline_document(snapshot)
        assert restored.jobs["lint"].name == "lint"
        assert restored.jobs["lint"].display_name == "Code Linting"

    def test_document_must_be_mapping(self):
        with pytest.raises(PipelineValidationError):
            parse_pipeline_document(["not", "a", "mapping"])

    def test_schema_errors_collected(self):
        with pytest.raises(PipelineValidationError) as exc:
            parse_pipeline_document({"jobs": {"a": {"steps": []}}})
        assert len(exc.value.errors) >= 2

    def test_malformed_yaml(self, service):
        with pytest.raises(PipelineValidationError, match="Malformed YAML"):
            service.load_text("jobs: [unclosed")


# ============================================================================
# DIRECTORY LOADING
# ============================================================================

class TestLoading:

    def test_load_all(self, tmp_path, service):
        (tmp_path / "basic.yaml").write_text(BASIC)
        (tmp_path / "broken.yml").write_text("pipeline_id: broken\njobs:\n  a:\n    needs: [ghost]\n    steps: [{run: x}]\n")
        assert service.load_all() == 1
        assert [d.pipeline_id for d in service.list_all()] == ["basic"]
        assert list(service.load_errors) == [str(tmp_path / "broken.yml")]

    def test_missing_directory(self, tmp_path):
        service = PipelineService(str(tmp_path / "nope"))
        assert service.load_all() == 0
        assert service.list_all() == []

    def test_lazy_load(self, tmp_path, service):
        (tmp_path / "basic.yaml").write_text(BASIC)
        assert service.get("basic") is not None

    def test_get_or_raise(self, service):
        with pytest.raises(KeyError):
            service.get_or_raise("nope")

    def test_shipped_pipelines(self):
        from services.environment_service import EnvironmentService

        environments = EnvironmentService()
        environments.load_file(str(REPO_ROOT / "environments.yaml"))
        service = PipelineService(str(REPO_ROOT / "pipelines"), environment_exists=environments.exists)
        assert service.load_all() == 2
        assert service.load_errors == {}
        assert {d.pipeline_id for d in service.list_all()} == {"release", "nightly"}


# ============================================================================
# VALIDATION
# ============================================================================

class TestValidation:

    def test_unknown_need(self, service):
        errors = errors_of(service, "pipeline_id: p\njobs:\n  a:\n    needs: ghost\n    steps: [{run: x}]\n")
        assert any("ghost" in e for e in errors)

    def test_cycle(self, service):
        errors = errors_of(service, (
            "pipeline_id: p\njobs:\n"
            "  a:\n    needs: b\n    steps: [{run: x}]\n"
            "  b:\n    needs: a\n    steps: [{run: x}]\n"
        ))
        assert any("a" in e and "b" in e for e in errors)
        assert service.get("p") is None

    def test_invalid_cron(self, service):
        errors = errors_of(service, (
            "pipeline_id: p\non:\n  schedule:\n    cron: ['61 * * * *']\n"
            "jobs:\n  a:\n    steps: [{run: x}]\n"
        ))
        assert any("schedule" in e for e in errors)

    def test_expression_syntax(self, service):
        errors = errors_of(service, (
            "pipeline_id: p\njobs:\n  a:\n    if: \"success() &&\"\n    steps: [{run: x}]\n"
        ))
        assert any(e.startswith("jobs.a.if") for e in errors)

    def test_unknown_string_escape(self, service):
        with pytest.raises(PipelineValidationError) as exc:
            service.load_text(
                "pipeline_id: p\njobs:\n  a:\n    if: 'event.ref == \"\\x\"'\n    steps: [{run: x}]\n"
            )
        assert any(e.startswith("jobs.a.if") and "unknown escape" in e for e in exc.value.errors)

    def test_non_ascii_condition_accepted(self, service):
        definition = service.load_text(
            "pipeline_id: p\njobs:\n  a:\n    if: 'event.actor == \"zoë\"'\n    steps: [{run: x}]\n"
        )
        assert definition.jobs["a"].condition == 'event.actor == "zoë"'

    def test_step_expression_syntax(self, service):
        errors = errors_of(service, (
            "pipeline_id: p\njobs:\n  a:\n    steps:\n      - id: s\n        run: x\n        if: \"(inputs.a\"\n"
        ))
        assert any(e.startswith("jobs.a.steps[s].if") for e in errors)

    def test_template_syntax(self, service):
        errors = errors_of(service, (
            "pipeline_id: p\njobs:\n  a:\n    steps:\n      - uses: echo\n        with:\n"
            "          message: \"{{ broken \"\n"
        ))
        assert any("with" in e for e in errors)

    def test_unknown_static_environment(self, service):
        errors = errors_of(service, (
            "pipeline_id: p\njobs:\n  a:\n    role: deploy\n    environment: moon\n    steps: [{run: x}]\n"
        ))
        assert any("unknown environment 'moon'" in e for e in errors)

    def test_templated_environment_checked_per_run(self, service):
        definition = service.load_text(
            "pipeline_id: p\njobs:\n  a:\n    role: deploy\n    environment: \"{{ inputs.target }}\"\n"
            "    steps: [{run: x}]\n"
        )
        assert definition.jobs["a"].environment == "{{ inputs.target }}"

    def test_all_errors_reported(self, service):
        errors = errors_of(service, (
            "pipeline_id: p\non:\n  schedule:\n    cron: ['bad']\n"
            "jobs:\n  a:\n    if: \"&&\"\n    environment: moon\n    steps: [{run: x}]\n"
        ))
        assert len(errors) >= 3

    def test_pipeline_call_jobs(self, service):
        definition = service.load_text(
            "pipeline_id: p\njobs:\n  call:\n    uses: other\n    with:\n      version: \"{{ event.sha }}\"\n"
        )
        assert definition.jobs["call"].calls_pipeline
        assert definition.jobs["call"].inputs == {"version": "{{ event.sha }}"}

    @pytest.mark.parametrize("job,message", [
        ("uses: other\n    steps: [{run: x}]", "steps"),
        ("with: {a: 1}\n    steps: [{run: x}]", "with"),
        ("uses: p", "calls its own pipeline"),
        ("uses: other\n    role: deploy\n    environment: staging", "cannot target an environment"),
        ("uses: other\n    outputs: {v: x}", "cannot be mapped"),
    ])
    def test_invalid_pipeline_call_jobs(self, service, job, message):
        errors = errors_of(service, f"pipeline_id: p\njobs:\n  a:\n    {job}\n")
        assert any(message in e for e in errors)

    def test_call_trigger_outputs(self, service):
        definition = service.load_text(
            "pipeline_id: p\non:\n  workflow_call:\n    outputs:\n      v:\n"
            "        value: \"{{ jobs.a.outputs.v }}\"\n"
            "jobs:\n  a:\n    steps: [{run: x}]\n"
        )
        assert definition.call_rule().outputs == {"v": "{{ jobs.a.outputs.v }}"}

    def test_outputs_only_on_call_trigger(self, service):
        errors = errors_of(service, (
            "pipeline_id: p\non:\n  push:\n    outputs: {v: x}\n"
            "jobs:\n  a:\n    steps: [{run: x}]\n"
        ))
        assert any("cannot declare outputs" in e for e in errors)

    def test_single_call_trigger(self, service):
        errors = errors_of(service, (
            "pipeline_id: p\non:\n  - event: workflow_call\n  - event: workflow_call\n"
            "jobs:\n  a:\n    steps: [{run: x}]\n"
        ))
        assert any("more than one workflow_call" in e for e in errors)

    def test_call_input_template_syntax(self, service):
        errors = errors_of(service, (
            "pipeline_id: p\njobs:\n  a:\n    uses: other\n    with:\n      v: \"{{ broken \"\n"
        ))
        assert any(e.startswith("jobs.a.with") for e in errors)


# ============================================================================
# REVISIONS
# ============================================================================

class TestRevisions:

    def test_unchanged_keeps_revision(self, service):
        first = service.load_text(BASIC)
        again = service.load_text(BASIC)
        assert first.revision == again.revision == 1
        assert service.revisions("basic") == [1]

    def test_change_appends_revision(self, service):
        service.load_text(BASIC)
        changed = service.load_text(BASIC.replace("echo ok", "echo changed"))
        assert changed.revision == 2
        assert service.get("basic").revision == 2
        assert service.get("basic", revision=1).jobs["build"].steps[0].run == "echo ok"

    def test_explicit_revision_respected(self, service):
        service.load_text(BASIC)
        bumped = service.load_text("revision: 7\n" + BASIC.replace("echo ok", "echo v7"))
        assert bumped.revision == 7

    def test_rejected_change_keeps_previous(self, service):
        service.load_text(BASIC)
        with pytest.raises(PipelineValidationError):
            service.load_text(BASIC + "    needs: ghost\n")
        assert service.revisions("basic") == [1]

    def test_reload_picks_up_changes(self, tmp_path, service):
        path = tmp_path / "basic.yaml"
        path.write_text(BASIC)
        service.load_all()
        path.write_text(BASIC.replace("echo ok", "echo reloaded"))
        assert service.reload() == 1
        assert service.revisions("basic") == [1, 2]

    def test_definitions_are_immutable(self, service):
        definition = service.load_text(BASIC)
        with pytest.raises(Exception):
            definition.pipeline_id = "other"
