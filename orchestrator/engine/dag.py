# ============================================================================
# DAG BUILDER
# ============================================================================
# STATUS: Core - Job graph expansion and validation
# PURPOSE: Matrix expansion, needs rewriting, cycle detection, levels
# CREATED: 19 OCT 2026
# ============================================================================
"""
DAG Builder

Turns a PipelineDefinition's job map into the realized job graph of one
run. The graph is an arena: JobRuns indexed by expanded name, with
explicit in-degree counts and dependent lists.

Steps:
1. Expand matrix jobs (Cartesian product minus exclude matches), with
   stable names like "build (linux, 3.11)"
2. Rewrite needs: depending on a matrix job means depending on all of
   its instances
3. Kahn's algorithm: a cycle is a hard validation error
4. Topological levels, a scheduling hint only

The builder is stateless - it takes a definition and context and returns
a graph or raises.
"""

import itertools
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from core.contracts import JobRole
from core.errors import CyclicDependencyError, PipelineValidationError, UnknownEnvironmentError
from core.models.pipeline import JobSpec, MatrixSpec, PipelineDefinition
from core.models.run import JobRun
from orchestrator.engine.templates import TemplateResolutionError, render_string

logger = logging.getLogger(__name__)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class JobGraph:
    """
    Realized job graph of one run.

    A -> B in `dependents` means "B needs A".
    """
    jobs: Dict[str, JobRun] = field(default_factory=dict)
    in_degree: Dict[str, int] = field(default_factory=dict)
    dependents: Dict[str, List[str]] = field(default_factory=lambda: defaultdict(list))
    instances: Dict[str, List[str]] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)
    levels: List[List[str]] = field(default_factory=list)

    def needs_of(self, name: str) -> List[str]:
        return self.jobs[name].needs

    def ancestors(self, name: str) -> Set[str]:
        """All jobs `name` depends on, directly or transitively."""
        return ancestors_of(name, {n: j.needs for n, j in self.jobs.items()})


def ancestors_of(name: str, needs: Dict[str, List[str]]) -> Set[str]:
    seen: Set[str] = set()
    stack = list(needs.get(name, []))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(needs.get(current, []))
    return seen


# ============================================================================
# MATRIX EXPANSION
# ============================================================================

def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _excluded(combo: Dict[str, Any], exclude: List[Dict[str, Any]]) -> bool:
    """An exclude entry drops combinations matching every key it names."""
    for entry in exclude:
        if all(_format_value(combo.get(axis)) == _format_value(value) for axis, value in entry.items()):
            return True
    return False


def expand_matrix(job_name: str, matrix: Optional[MatrixSpec]) -> List[Tuple[str, Dict[str, Any]]]:
    """
    Expand a matrix into (instance name, axis values) pairs.

    Order follows the declared axis order and value order, so names and
    ordering are deterministic for a given definition.
    """
    if matrix is None:
        return [(job_name, {})]
    axes = list(matrix.axes.keys())
    expanded = []
    for values in itertools.product(*(matrix.axes[a] for a in axes)):
        combo = dict(zip(axes, values))
        if _excluded(combo, matrix.exclude):
            continue
        label = ", ".join(_format_value(v) for v in values)
        expanded.append((f"{job_name} ({label})", combo))
    return expanded


# ============================================================================
# TOPOLOGICAL SORT / CYCLE DETECTION
# ============================================================================

def topological_levels(needs: Dict[str, List[str]]) -> Tuple[List[str], List[List[str]]]:
    """
    Kahn's algorithm over a name -> needs mapping.

    Returns:
        (order, levels); level k holds nodes whose longest need chain is k

    Raises:
        CyclicDependencyError: with the nodes left unsorted
    """
    in_degree = {name: 0 for name in needs}
    dependents: Dict[str, List[str]] = defaultdict(list)
    for name, deps in needs.items():
        for dep in deps:
            if dep in in_degree:
                in_degree[name] += 1
                dependents[dep].append(name)

    level_of: Dict[str, int] = {}
    queue = deque(name for name, degree in in_degree.items() if degree == 0)
    for name in queue:
        level_of[name] = 0
    order: List[str] = []

    while queue:
        name = queue.popleft()
        order.append(name)
        for dependent in dependents[name]:
            level_of[dependent] = max(level_of.get(dependent, 0), level_of[name] + 1)
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(needs):
        remaining = sorted(n for n in needs if n not in set(order))
        raise CyclicDependencyError(remaining)

    levels: List[List[str]] = []
    for name in order:
        level = level_of[name]
        while len(levels) <= level:
            levels.append([])
        levels[level].append(name)
    return order, levels


# ============================================================================
# BUILDER
# ============================================================================

class DAGBuilder:
    """
    Builds the realized job graph of a run.

    Args:
        environment_exists: lookup used to reject unknown environment
            references after matrix templating (None skips the check)
        default_infra_retries: retry count for jobs without a retry policy
    """

    def __init__(
        self,
        environment_exists: Optional[Callable[[str], bool]] = None,
        default_infra_retries: int = 0,
    ):
        self.environment_exists = environment_exists
        self.default_infra_retries = default_infra_retries

    def validate_definition(self, definition: PipelineDefinition) -> List[str]:
        """
        Load-time structural validation of the un-expanded job map.

        Raises:
            CyclicDependencyError: if the needs graph has a cycle
        """
        errors = definition.validate_structure()
        if errors:
            return errors
        topological_levels({name: list(job.needs) for name, job in definition.jobs.items()})
        return []

    def build(
        self,
        definition: PipelineDefinition,
        run_id: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> JobGraph:
        """
        Expand and validate the job graph for one run.

        Args:
            definition: Pinned definition
            run_id: Run the JobRuns belong to
            variables: event/inputs context used to template environments

        Raises:
            PipelineValidationError: unknown needs, duplicate names,
                unknown environment (UnknownEnvironmentError) or a cycle
                (CyclicDependencyError). Nothing is created on failure.
        """
        variables = variables or {}
        errors = definition.validate_structure()
        if errors:
            raise PipelineValidationError(
                f"Pipeline '{definition.pipeline_id}' failed validation: {errors[0]}", errors
            )

        graph = JobGraph()

        # Step 1: matrix expansion
        for spec_name, spec in definition.jobs.items():
            names = []
            for instance_name, combo in expand_matrix(spec_name, spec.matrix):
                if instance_name in graph.jobs:
                    raise PipelineValidationError(
                        f"Duplicate expanded job name '{instance_name}'"
                    )
                environment = self._resolve_environment(spec, combo, variables)
                graph.jobs[instance_name] = self._make_job_run(
                    run_id, instance_name, spec, combo, environment
                )
                names.append(instance_name)
            if not names:
                raise PipelineValidationError(
                    f"Matrix of job '{spec_name}' excludes every combination"
                )
            graph.instances[spec_name] = names

        # Step 2: fan-out / fan-in needs rewriting
        for spec_name, spec in definition.jobs.items():
            expanded_needs = [
                instance for need in spec.needs for instance in graph.instances[need]
            ]
            for instance_name in graph.instances[spec_name]:
                graph.jobs[instance_name].needs = list(expanded_needs)

        # Step 3 + 4: cycle detection and levels
        order, levels = topological_levels({n: j.needs for n, j in graph.jobs.items()})
        graph.order = order
        graph.levels = levels
        for name, job in graph.jobs.items():
            graph.in_degree[name] = len(job.needs)
            for need in job.needs:
                graph.dependents[need].append(name)

        logger.info(
            f"Built job graph for run {run_id}: {len(graph.jobs)} jobs from "
            f"{len(definition.jobs)} specs, {len(levels)} levels"
        )
        return graph

    def _resolve_environment(
        self,
        spec: JobSpec,
        combo: Dict[str, Any],
        variables: Dict[str, Any],
    ) -> Optional[str]:
        if not spec.environment:
            return None
        try:
            name = render_string(spec.environment, {**variables, "matrix": combo}).strip()
        except TemplateResolutionError as e:
            raise PipelineValidationError(
                f"Job '{spec.name}' environment could not be resolved: {e}"
            )
        if not name:
            raise UnknownEnvironmentError(spec.name, spec.environment)
        if self.environment_exists is not None and not self.environment_exists(name):
            raise UnknownEnvironmentError(spec.name, name)
        return name

    def _make_job_run(
        self,
        run_id: str,
        name: str,
        spec: JobSpec,
        combo: Dict[str, Any],
        environment: Optional[str],
    ) -> JobRun:
        retries = self.default_infra_retries
        if spec.retry and spec.retry.infrastructure is not None:
            retries = spec.retry.infrastructure
        return JobRun(
            run_id=run_id,
            name=name,
            spec_name=spec.name,
            display_name=spec.display_name,
            condition=spec.condition,
            matrix=combo,
            environment=environment,
            role=spec.role,
            steps=list(spec.steps),
            call=spec.uses,
            call_inputs=dict(spec.inputs),
            max_infrastructure_retries=retries,
        )


__all__ = [
    "JobGraph",
    "DAGBuilder",
    "expand_matrix",
    "topological_levels",
    "ancestors_of",
]
