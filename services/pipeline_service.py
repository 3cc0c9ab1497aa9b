# ============================================================================
# PIPELINE SERVICE
# ============================================================================
# STATUS: Core - Pipeline definition management
# PURPOSE: Load, validate and version pipeline definitions
# CREATED: 19 OCT 2026
# ============================================================================
"""
Pipeline Service

Loads pipeline definitions from YAML files, validates them whole, and
keeps every revision. A new revision only affects runs created after it
is registered; running instances keep their pinned snapshot.

Pipeline files are stored in the pipelines/ directory.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from pydantic import ValidationError

from core.errors import CyclicDependencyError, ExpressionSyntaxError, PipelineValidationError
from core.models.pipeline import PipelineDefinition
from orchestrator.engine.dag import DAGBuilder
from orchestrator.engine.expressions import validate_expression
from orchestrator.engine.templates import get_resolver
from orchestrator.engine.triggers import validate_trigger_rules

logger = logging.getLogger(__name__)


def parse_pipeline_document(data: Dict[str, Any]) -> PipelineDefinition:
    """
    Build a PipelineDefinition from a parsed YAML mapping.

    YAML 1.1 reads a bare `on:` key as boolean True; it is mapped back.

    Raises:
        PipelineValidationError: schema errors (all reported)
    """
    if not isinstance(data, dict):
        raise PipelineValidationError("Pipeline document must be a mapping")
    data = dict(data)
    if True in data:
        data["on"] = data.pop(True)
    try:
        return PipelineDefinition.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise PipelineValidationError(
            f"Invalid pipeline '{data.get('pipeline_id', '?')}': {errors[0]}", errors
        )


class PipelineService:
    """Service for loading and managing pipeline definitions."""

    def __init__(
        self,
        pipelines_dir: Optional[str] = None,
        environment_exists: Optional[Callable[[str], bool]] = None,
    ):
        """
        Initialize pipeline service.

        Args:
            pipelines_dir: Directory containing pipeline YAML files.
                           Defaults to ./pipelines/
            environment_exists: Lookup for static environment references
        """
        if pipelines_dir:
            self.pipelines_dir = Path(pipelines_dir)
        else:
            self.pipelines_dir = Path(__file__).parent.parent / "pipelines"

        self.environment_exists = environment_exists
        self._revisions: Dict[str, List[PipelineDefinition]] = {}
        self.load_errors: Dict[str, List[str]] = {}
        self._loaded = False

    def load_all(self) -> int:
        """
        Load all pipeline definitions from the pipelines directory.

        Malformed files are rejected whole and recorded in load_errors.

        Returns:
            Number of pipelines loaded
        """
        if not self.pipelines_dir.exists():
            logger.warning(f"Pipelines directory not found: {self.pipelines_dir}")
            self._loaded = True
            return 0

        count = 0
        files = sorted(self.pipelines_dir.glob("*.yaml")) + sorted(self.pipelines_dir.glob("*.yml"))
        for yaml_file in files:
            try:
                pipeline = self.load_file(yaml_file)
                count += 1
                logger.info(f"Loaded pipeline: {pipeline.pipeline_id} r{pipeline.revision}")
            except PipelineValidationError as e:
                self.load_errors[str(yaml_file)] = e.errors
                logger.error(f"Failed to load {yaml_file}: {e.errors}")
            except (OSError, yaml.YAMLError) as e:
                self.load_errors[str(yaml_file)] = [str(e)]
                logger.error(f"Failed to load {yaml_file}: {e}")

        self._loaded = True
        logger.info(f"Loaded {count} pipelines from {self.pipelines_dir}")
        return count

    def load_file(self, path: Path) -> PipelineDefinition:
        with open(path) as f:
            data = yaml.safe_load(f)
        return self.register(parse_pipeline_document(data))

    def load_text(self, text: str) -> PipelineDefinition:
        """Parse, validate and register a YAML document."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise PipelineValidationError(f"Malformed YAML: {e}")
        return self.register(parse_pipeline_document(data))

    def validate(self, definition: PipelineDefinition) -> List[str]:
        """
        Full load-time validation.

        Returns:
            List of errors (empty if valid)
        """
        errors = list(definition.validate_structure())
        if not errors:
            try:
                DAGBuilder().validate_definition(definition)
            except CyclicDependencyError as e:
                errors.append(str(e))

        errors.extend(validate_trigger_rules(definition))

        resolver = get_resolver()
        for job_name, job in definition.jobs.items():
            expressions = [(f"jobs.{job_name}.if", job.condition)]
            for index, step in enumerate(job.steps + job.rollback):
                where = f"jobs.{job_name}.steps[{step.id or index}]"
                expressions.append((f"{where}.if", step.condition))
                errors.extend(resolver.syntax_errors(step.inputs, f"{where}.with"))
                errors.extend(resolver.syntax_errors(step.run, f"{where}.run"))
            errors.extend(resolver.syntax_errors(job.outputs, f"jobs.{job_name}.outputs"))
            errors.extend(resolver.syntax_errors(job.inputs, f"jobs.{job_name}.with"))
            for where, expression in expressions:
                try:
                    validate_expression(expression)
                except ExpressionSyntaxError as e:
                    errors.append(f"{where}: {e}")

            if job.environment:
                errors.extend(resolver.syntax_errors(job.environment, f"jobs.{job_name}.environment"))
                static = not resolver.has_templates(job.environment)
                if static and self.environment_exists and not self.environment_exists(job.environment):
                    errors.append(
                        f"Job '{job_name}' references unknown environment '{job.environment}'"
                    )

        call_rule = definition.call_rule()
        if call_rule is not None:
            errors.extend(resolver.syntax_errors(call_rule.outputs, "on.workflow_call.outputs"))
        return errors

    def register(self, definition: PipelineDefinition) -> PipelineDefinition:
        """
        Validate and register a definition as the next revision.

        Re-registering an unchanged definition returns the current revision.

        Raises:
            PipelineValidationError: definition rejected, nothing registered
        """
        errors = self.validate(definition)
        if errors:
            raise PipelineValidationError(
                f"Invalid pipeline '{definition.pipeline_id}': {errors[0]}", errors
            )

        history = self._revisions.setdefault(definition.pipeline_id, [])
        if history:
            latest = history[-1]
            if latest.model_dump(exclude={"revision"}) == definition.model_dump(exclude={"revision"}):
                return latest
            revision = max(definition.revision, latest.revision + 1)
        else:
            revision = definition.revision
        pinned = definition.model_copy(update={"revision": revision})
        history.append(pinned)
        logger.info(f"Registered pipeline: {pinned.pipeline_id} r{revision}")
        return pinned

    def get(self, pipeline_id: str, revision: Optional[int] = None) -> Optional[PipelineDefinition]:
        """
        Get a pipeline definition by ID (latest revision by default).
        """
        if not self._loaded and not self._revisions:
            self.load_all()

        history = self._revisions.get(pipeline_id)
        if not history:
            return None
        if revision is None:
            return history[-1]
        for definition in history:
            if definition.revision == revision:
                return definition
        return None

    def get_or_raise(self, pipeline_id: str, revision: Optional[int] = None) -> PipelineDefinition:
        """
        Raises:
            KeyError if pipeline (or revision) not found
        """
        pipeline = self.get(pipeline_id, revision)
        if pipeline is None:
            raise KeyError(f"Pipeline not found: {pipeline_id}")
        return pipeline

    def list_all(self) -> List[PipelineDefinition]:
        """Latest revision of every pipeline."""
        if not self._loaded and not self._revisions:
            self.load_all()
        return [history[-1] for history in self._revisions.values() if history]

    def revisions(self, pipeline_id: str) -> List[int]:
        return [d.revision for d in self._revisions.get(pipeline_id, [])]

    def reload(self) -> int:
        """
        Reload all pipelines from disk.

        Files that changed become new revisions; history is kept.
        """
        self.load_errors.clear()
        self._loaded = False
        return self.load_all()


__all__ = ["PipelineService", "parse_pipeline_document"]
