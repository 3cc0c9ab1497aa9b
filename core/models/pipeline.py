# ============================================================================
# PIPELINE DEFINITION MODELS
# ============================================================================
# STATUS: Core model - Pipeline template/blueprint
# PURPOSE: Define pipeline structure loaded from YAML
# CREATED: 19 OCT 2026
# EXPORTS: PipelineDefinition, TriggerRule, JobSpec, StepSpec, MatrixSpec,
#          RetryPolicy, DispatchInput
# DEPENDENCIES: pydantic, enum
# ============================================================================
"""
Pipeline Definition Models

A PipelineDefinition is the template/blueprint for a run.
It defines:
- Which events start a run (trigger rules)
- What jobs exist and what they need
- Matrix expansion, environment targets and step contracts

Definitions are loaded from YAML files and pinned into every run that
they start. A new revision only affects runs created after it.
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.contracts import EventKind, JobRole, SkippedNeedsPolicy


def _as_list(v):
    """Allow single string as shorthand for single-item list."""
    if v is None:
        return []
    if isinstance(v, str):
        return [v]
    return v


class DispatchInput(BaseModel):
    """Typed input of a manual dispatch trigger."""
    type: str = Field(
        default="string",
        pattern="^(string|boolean|number|choice|environment)$",
    )
    required: bool = False
    default: Optional[Any] = None
    options: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class TriggerRule(BaseModel):
    """
    One entry of a pipeline's trigger set.

    A run is instantiated only if at least one rule matches the event.
    """
    model_config = ConfigDict(populate_by_name=True)

    event: EventKind
    branches: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    paths: List[str] = Field(default_factory=list)
    paths_ignore: List[str] = Field(default_factory=list)
    types: List[str] = Field(
        default_factory=list,
        description="Pull request actions or external dispatch types",
    )
    cron: List[str] = Field(default_factory=list)
    inputs: Dict[str, DispatchInput] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(
        default_factory=dict,
        description="workflow_call only: output name -> template over the called run's jobs",
    )
    condition: Optional[str] = Field(default=None, alias="if")

    @field_validator("branches", "tags", "paths", "paths_ignore", "types", "cron", mode="before")
    @classmethod
    def handle_string_input(cls, v):
        return _as_list(v)

    @field_validator("outputs", mode="before")
    @classmethod
    def flatten_outputs(cls, v):
        """Accept both `name: template` and `name: {value: template}`."""
        if isinstance(v, dict):
            return {k: o.get("value", "") if isinstance(o, dict) else o for k, o in v.items()}
        return v

    @model_validator(mode="after")
    def check_schedule(self) -> "TriggerRule":
        if self.event == EventKind.SCHEDULE and not self.cron:
            raise ValueError("schedule trigger requires at least one cron expression")
        return self


class MatrixSpec(BaseModel):
    """
    Matrix strategy of a job.

    axes: axis name -> ordered values
    exclude: partial value tuples; any combination matching every key of
             an entry is dropped
    """
    axes: Dict[str, List[Any]] = Field(default_factory=dict)
    exclude: List[Dict[str, Any]] = Field(default_factory=list)
    fail_fast: bool = False

    @model_validator(mode="before")
    @classmethod
    def collect_axes(cls, data):
        """Accept the flat YAML form: {os: [..], python: [..], exclude: [..]}."""
        if isinstance(data, dict) and "axes" not in data:
            data = dict(data)
            exclude = data.pop("exclude", [])
            fail_fast = data.pop("fail_fast", data.pop("fail-fast", False))
            return {"axes": data, "exclude": exclude, "fail_fast": fail_fast}
        return data

    @model_validator(mode="after")
    def check_axes(self) -> "MatrixSpec":
        if not self.axes:
            raise ValueError("matrix must declare at least one axis")
        for axis, values in self.axes.items():
            if not isinstance(values, list) or not values:
                raise ValueError(f"matrix axis '{axis}' must be a non-empty list")
        for entry in self.exclude:
            unknown = set(entry) - set(self.axes)
            if unknown:
                raise ValueError(f"matrix exclude references unknown axes: {sorted(unknown)}")
        return self


class RetryPolicy(BaseModel):
    """Automatic retries for infrastructure failures only."""
    infrastructure: Optional[int] = Field(default=None, ge=0, le=10)


class StepSpec(BaseModel):
    """
    A single step of a job.

    Executable contract is either `run` (shell command) or `uses`
    (registered handler name). Inputs under `with` accept {{ }} templates.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, max_length=64)
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = Field(default=None, max_length=64)
    inputs: Dict[str, Any] = Field(default_factory=dict, alias="with")
    outputs: List[str] = Field(default_factory=list, description="Output names this step may produce")
    condition: Optional[str] = Field(default=None, alias="if")
    timeout_seconds: Optional[int] = Field(default=None, ge=1, le=86400)
    download: List[str] = Field(
        default_factory=list,
        description="Artifact references 'job/key' to fetch before dispatch",
    )
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("outputs", "download", mode="before")
    @classmethod
    def handle_string_input(cls, v):
        return _as_list(v)

    @model_validator(mode="after")
    def check_contract(self) -> "StepSpec":
        if bool(self.run) == bool(self.uses):
            raise ValueError("step must declare exactly one of 'run' or 'uses'")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.id or self.uses or (self.run or "").split("\n")[0][:40]


class JobSpec(BaseModel):
    """
    Definition of a single job.

    This is the TEMPLATE - what the job does.
    JobRun (in run.py) is the INSTANCE - runtime state.

    `name` is the job's key in the pipeline's job map; the YAML `name:`
    field is a free-form label kept in `display_name`.

    A job either runs its own `steps` or calls another pipeline with
    `uses: <pipeline_id>` and `with:` inputs. The called pipeline must
    declare a workflow_call trigger.
    """
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(default="", max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=256)
    needs: List[str] = Field(default_factory=list)
    condition: Optional[str] = Field(
        default=None,
        alias="if",
        description="Expression gating the job, default success()",
    )
    matrix: Optional[MatrixSpec] = None
    environment: Optional[str] = Field(
        default=None,
        description="Environment name, may use {{ matrix.x }} templates",
    )
    role: JobRole = JobRole.BUILD
    steps: List[StepSpec] = Field(default_factory=list)
    uses: Optional[str] = Field(
        default=None,
        max_length=64,
        description="Pipeline id to call instead of running steps",
    )
    inputs: Dict[str, Any] = Field(
        default_factory=dict,
        alias="with",
        description="Inputs of the called pipeline, may use {{ }} templates",
    )
    outputs: Dict[str, str] = Field(
        default_factory=dict,
        description="Job outputs rendered from step outputs after success",
    )
    retry: Optional[RetryPolicy] = None
    rollback: List[StepSpec] = Field(
        default_factory=list,
        description="Compensating steps run when a deploy of this job fails",
    )
    env: Dict[str, str] = Field(default_factory=dict)
    description: Optional[str] = None

    @field_validator("needs", mode="before")
    @classmethod
    def handle_string_input(cls, v):
        return _as_list(v)

    @model_validator(mode="after")
    def check_steps(self) -> "JobSpec":
        if self.uses:
            if self.steps or self.rollback:
                raise ValueError("a job calling a pipeline cannot declare steps")
            return self
        if self.inputs:
            raise ValueError("'with' is only valid on a job that calls a pipeline")
        if not self.steps:
            raise ValueError("job must have at least one step")
        ids = [s.id for s in self.steps if s.id]
        if len(ids) != len(set(ids)):
            raise ValueError(f"duplicate step ids: {sorted({i for i in ids if ids.count(i) > 1})}")
        return self

    @property
    def calls_pipeline(self) -> bool:
        return bool(self.uses)


class PipelineDefinition(BaseModel):
    """
    Complete pipeline definition loaded from YAML.

    Immutable once loaded - changes require a new revision.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    pipeline_id: str = Field(..., max_length=64)
    name: str = Field(default="", max_length=128)
    revision: int = Field(default=1, ge=1)
    description: Optional[str] = None

    triggers: List[TriggerRule] = Field(default_factory=list, alias="on")
    jobs: Dict[str, JobSpec] = Field(..., description="Map of job name -> JobSpec")

    concurrency: Optional[int] = Field(
        default=None,
        ge=1,
        description="Max jobs of this pipeline running at once (across runs)",
    )
    skipped_needs: Optional[SkippedNeedsPolicy] = None
    env: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data):
        """Key jobs by their map keys and accept the mapping form of 'on'."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        jobs = data.get("jobs")
        if isinstance(jobs, dict):
            named = {}
            for job_name, job in jobs.items():
                if isinstance(job, dict):
                    label = job["display_name"] if "display_name" in job else job.get("name")
                    job = {**job, "name": job_name, "display_name": label}
                named[job_name] = job
            data["jobs"] = named
        triggers = data.get("on", data.get("triggers"))
        if isinstance(triggers, dict):
            rules = []
            for kind, rule in triggers.items():
                rules.append({"event": kind, **(rule or {})})
            data.pop("triggers", None)
            data["on"] = rules
        elif isinstance(triggers, str):
            data.pop("triggers", None)
            data["on"] = [{"event": triggers}]
        return data

    @field_validator("jobs")
    @classmethod
    def check_jobs(cls, v: Dict[str, JobSpec]) -> Dict[str, JobSpec]:
        if not v:
            raise ValueError("pipeline must define at least one job")
        return v

    def get_job(self, name: str) -> JobSpec:
        """Get a job spec by name."""
        if name not in self.jobs:
            raise KeyError(f"Job '{name}' not found in pipeline '{self.pipeline_id}'")
        return self.jobs[name]

    def validate_structure(self) -> List[str]:
        """
        Validate references that pydantic cannot see.

        Returns list of validation errors (empty if valid).
        Cycle detection and expression parsing live in the DAG builder
        and expression evaluator.
        """
        errors = []
        for job_name, job in self.jobs.items():
            for need in job.needs:
                if need not in self.jobs:
                    errors.append(f"Job '{job_name}' needs unknown job '{need}'")
                if need == job_name:
                    errors.append(f"Job '{job_name}' needs itself")
            if job.calls_pipeline:
                if job.uses == self.pipeline_id:
                    errors.append(f"Job '{job_name}' calls its own pipeline")
                if job.environment or job.role != JobRole.BUILD:
                    errors.append(
                        f"Job '{job_name}' calls pipeline '{job.uses}' and cannot "
                        f"target an environment or take a deploy role"
                    )
                if job.outputs:
                    errors.append(
                        f"Job '{job_name}' outputs come from pipeline '{job.uses}' "
                        f"and cannot be mapped"
                    )
                continue
            if job.role == JobRole.DEPLOY and not job.environment:
                errors.append(f"Deploy job '{job_name}' must target an environment")
            if not job.outputs:
                declared = [name for step in job.steps for name in step.outputs]
                dupes = sorted({n for n in declared if declared.count(n) > 1})
                if dupes:
                    errors.append(
                        f"Job '{job_name}' steps declare duplicate outputs {dupes}; "
                        f"map them explicitly under 'outputs'"
                    )
        call_rules = [r for r in self.triggers if r.event == EventKind.WORKFLOW_CALL]
        if len(call_rules) > 1:
            errors.append("Pipeline declares more than one workflow_call trigger")
        for rule in self.triggers:
            if rule.outputs and rule.event != EventKind.WORKFLOW_CALL:
                errors.append(f"Trigger {rule.event.value} cannot declare outputs")
        return errors

    def call_rule(self) -> Optional[TriggerRule]:
        """The workflow_call trigger, if this pipeline can be called."""
        for rule in self.triggers:
            if rule.event == EventKind.WORKFLOW_CALL:
                return rule
        return None


__all__ = [
    "DispatchInput",
    "TriggerRule",
    "MatrixSpec",
    "RetryPolicy",
    "StepSpec",
    "JobSpec",
    "PipelineDefinition",
]
