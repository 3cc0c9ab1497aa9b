# ============================================================================
# ORCHESTRATOR ENGINE
# ============================================================================
# STATUS: Core - Engine components
# PURPOSE: Expressions, templates, trigger matching, DAG building
# CREATED: 19 OCT 2026
# ============================================================================
"""
Orchestrator Engine Components

Pure building blocks used by the scheduler and the services:
- expressions: condition AST, parser and total evaluator
- templates: Jinja2-based `{{ }}` resolution of step inputs and commands
- globs: branch/tag/path glob matching with ordered negation
- cron: five-field cron schedules
- triggers: event -> pipeline matching and the schedule ticker
- dag: matrix expansion, cycle detection, topological levels
"""

from orchestrator.engine.expressions import (
    ExpressionContext,
    StatusFlags,
    parse,
    evaluate,
    evaluate_condition,
    validate_expression,
)
from orchestrator.engine.templates import (
    TemplateResolver,
    TemplateResolutionError,
    get_resolver,
    resolve_params,
    render_string,
)
from orchestrator.engine.globs import match_ordered, paths_match
from orchestrator.engine.cron import CronError, CronSchedule, parse_cron
from orchestrator.engine.triggers import (
    RunSeed,
    TriggerError,
    TriggerResult,
    TriggerEvaluator,
    ScheduleTicker,
    validate_dispatch_inputs,
)
from orchestrator.engine.dag import (
    JobGraph,
    DAGBuilder,
    expand_matrix,
    topological_levels,
    ancestors_of,
)

__all__ = [
    # Expressions
    "ExpressionContext",
    "StatusFlags",
    "parse",
    "evaluate",
    "evaluate_condition",
    "validate_expression",
    # Templates
    "TemplateResolver",
    "TemplateResolutionError",
    "get_resolver",
    "resolve_params",
    "render_string",
    # Globs / cron
    "match_ordered",
    "paths_match",
    "CronError",
    "CronSchedule",
    "parse_cron",
    # Triggers
    "RunSeed",
    "TriggerError",
    "TriggerResult",
    "TriggerEvaluator",
    "ScheduleTicker",
    "validate_dispatch_inputs",
    # DAG
    "JobGraph",
    "DAGBuilder",
    "expand_matrix",
    "topological_levels",
    "ancestors_of",
]
