# ============================================================================
# TRIGGER EVALUATOR
# ============================================================================
# STATUS: Core - Event to pipeline matching
# PURPOSE: Match inbound events against trigger rules, emit run seeds
# CREATED: 19 OCT 2026
# ============================================================================
"""
Trigger Evaluator

Matches an inbound TriggerEvent against every known PipelineDefinition.
A definition produces one RunSeed if at least one of its rules matches
(the first matching rule wins). Nothing runs here; seeds are handed to
the run service which builds the job graph.

Matching per event kind:
- push:                branches XOR tags (by ref kind), then paths
- pull_request:        base branch, action `types`, then paths
- schedule:            exact cron tick boundary of `scheduled_at`; the
                       seed event carries the matching `cron`
- workflow_dispatch:   target pipeline id, typed inputs validated
- repository_dispatch: event `types`
- workflow_call:       never matched here; calling jobs start the run

Errors (bad dispatch inputs, unknown target pipeline, broken rule
conditions) are reported in the result, never silently dropped.

The ScheduleTicker emits one schedule event per minute boundary and
never backfills ticks missed while the engine was down.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from core.contracts import EventKind
from core.errors import DispatchInputError, ExpressionSyntaxError
from core.models.events import TriggerEvent
from core.models.pipeline import DispatchInput, PipelineDefinition, TriggerRule
from orchestrator.engine.cron import CronError, floor_minute, parse_cron
from orchestrator.engine.expressions import ExpressionContext, evaluate_condition, parse
from orchestrator.engine.globs import match_ordered, paths_match

logger = logging.getLogger(__name__)


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass
class RunSeed:
    """A matched (definition, event) pair ready to become a RunInstance."""
    definition: PipelineDefinition
    event: TriggerEvent
    rule_index: int
    inputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def pipeline_id(self) -> str:
        return self.definition.pipeline_id


@dataclass
class TriggerError:
    pipeline_id: Optional[str]
    message: str


@dataclass
class TriggerResult:
    seeds: List[RunSeed] = field(default_factory=list)
    errors: List[TriggerError] = field(default_factory=list)


# ============================================================================
# DISPATCH INPUTS
# ============================================================================

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def _coerce_input(
    name: str,
    spec: DispatchInput,
    value: Any,
    known_environments: Optional[Set[str]],
) -> Any:
    if spec.type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in _TRUE | _FALSE:
            return value.lower() in _TRUE
        raise DispatchInputError(f"Input '{name}' must be a boolean, got {value!r}")
    if spec.type == "number":
        if isinstance(value, bool):
            raise DispatchInputError(f"Input '{name}' must be a number, got {value!r}")
        if isinstance(value, (int, float)):
            return value
        try:
            text = str(value)
            return float(text) if "." in text else int(text)
        except ValueError:
            raise DispatchInputError(f"Input '{name}' must be a number, got {value!r}")
    if spec.type == "choice":
        if str(value) not in spec.options:
            raise DispatchInputError(
                f"Input '{name}' must be one of {spec.options}, got {value!r}"
            )
        return str(value)
    if spec.type == "environment":
        if known_environments is not None and str(value) not in known_environments:
            raise DispatchInputError(f"Input '{name}' references unknown environment {value!r}")
        return str(value)
    return value if isinstance(value, str) else str(value)


def validate_dispatch_inputs(
    schema: Dict[str, DispatchInput],
    provided: Dict[str, Any],
    known_environments: Optional[Set[str]] = None,
) -> Dict[str, Any]:
    """
    Validate manual dispatch inputs against a rule's schema.

    Returns the resolved inputs with defaults applied.

    Raises:
        DispatchInputError: unknown, missing or mistyped inputs (all reported)
    """
    errors = []
    resolved: Dict[str, Any] = {}

    unknown = sorted(set(provided) - set(schema))
    if unknown:
        errors.append(f"Unknown inputs: {unknown}")

    for name, spec in schema.items():
        value = provided.get(name, spec.default)
        if value is None or value == "":
            if spec.required:
                errors.append(f"Input '{name}' is required")
            elif spec.type == "boolean":
                resolved[name] = False
            else:
                resolved[name] = value
            continue
        try:
            resolved[name] = _coerce_input(name, spec, value, known_environments)
        except DispatchInputError as e:
            errors.append(str(e))

    if errors:
        raise DispatchInputError("; ".join(errors), errors)
    return resolved


def check_call_inputs(callee: PipelineDefinition, provided: Iterable[str]) -> List[str]:
    """
    Static checks of a calling job's `with` keys.

    Values may still hold templates, so only names are checked here;
    types are validated when the call is made.
    """
    rule = callee.call_rule()
    if rule is None:
        return [f"Pipeline '{callee.pipeline_id}' has no workflow_call trigger"]
    provided = set(provided)
    errors = []
    unknown = sorted(provided - set(rule.inputs))
    if unknown:
        errors.append(f"Unknown inputs for '{callee.pipeline_id}': {unknown}")
    for name, spec in rule.inputs.items():
        if spec.required and spec.default is None and name not in provided:
            errors.append(f"Input '{name}' of '{callee.pipeline_id}' is required")
    return errors


def validate_call_inputs(
    callee: PipelineDefinition,
    provided: Dict[str, Any],
    known_environments: Optional[Set[str]] = None,
) -> Dict[str, Any]:
    """
    Validate rendered call inputs against the callee's workflow_call schema.

    Raises:
        DispatchInputError: no workflow_call trigger, or bad inputs
    """
    rule = callee.call_rule()
    if rule is None:
        raise DispatchInputError(f"Pipeline '{callee.pipeline_id}' has no workflow_call trigger")
    return validate_dispatch_inputs(rule.inputs, provided, known_environments)


# ============================================================================
# EVALUATOR
# ============================================================================

class TriggerEvaluator:
    """Stateless matcher of events to pipeline definitions."""

    def __init__(self, known_environments: Optional[Set[str]] = None):
        self.known_environments = known_environments

    def evaluate(
        self,
        event: TriggerEvent,
        definitions: Iterable[PipelineDefinition],
    ) -> TriggerResult:
        """
        Match an event against definitions.

        Args:
            event: Inbound event
            definitions: Latest revision of every known pipeline

        Returns:
            TriggerResult with zero or more seeds and reported errors
        """
        result = TriggerResult()

        if event.kind == EventKind.WORKFLOW_CALL:
            result.errors.append(
                TriggerError(event.pipeline_id, "workflow_call events are raised by calling jobs only")
            )
            return result
        definitions = list(definitions)

        if event.pipeline_id is not None:
            targeted = [d for d in definitions if d.pipeline_id == event.pipeline_id]
            if not targeted:
                result.errors.append(
                    TriggerError(event.pipeline_id, f"Unknown pipeline '{event.pipeline_id}'")
                )
                return result
            definitions = targeted

        for definition in definitions:
            try:
                seed = self.match_definition(event, definition)
            except DispatchInputError as e:
                result.errors.append(TriggerError(definition.pipeline_id, str(e)))
                continue
            if seed:
                result.seeds.append(seed)

        if event.pipeline_id is not None and not result.seeds and not result.errors:
            result.errors.append(
                TriggerError(
                    event.pipeline_id,
                    f"Pipeline '{event.pipeline_id}' has no {event.kind.value} trigger matching this event",
                )
            )

        logger.info(
            f"Trigger evaluation: kind={event.kind.value} ref={event.branch or event.tag} "
            f"seeds={[s.pipeline_id for s in result.seeds]} errors={len(result.errors)}"
        )
        return result

    def match_definition(
        self,
        event: TriggerEvent,
        definition: PipelineDefinition,
    ) -> Optional[RunSeed]:
        """First matching rule of a definition, as a seed."""
        for index, rule in enumerate(definition.triggers):
            if rule.event != event.kind:
                continue
            if not self.match_rule(rule, event):
                continue
            matched = event
            if rule.event == EventKind.SCHEDULE:
                matched = event.model_copy(update={"cron": self._matching_cron(rule, event.scheduled_at)})
            inputs: Dict[str, Any] = {}
            if rule.event == EventKind.WORKFLOW_DISPATCH:
                inputs = validate_dispatch_inputs(rule.inputs, event.inputs, self.known_environments)
            else:
                inputs = dict(event.inputs)
            if rule.condition and not self._condition_holds(rule, matched, inputs):
                continue
            return RunSeed(definition=definition, event=matched, rule_index=index, inputs=inputs)
        return None

    def match_rule(self, rule: TriggerRule, event: TriggerEvent) -> bool:
        """Filter checks for one rule; the event kind must already match."""
        if event.kind == EventKind.PUSH:
            return self._match_ref(rule, event) and paths_match(
                event.changed_paths, rule.paths, rule.paths_ignore
            )

        if event.kind == EventKind.PULL_REQUEST:
            if rule.types and event.action not in rule.types:
                return False
            if rule.branches and not match_ordered(rule.branches, event.branch):
                return False
            return paths_match(event.changed_paths, rule.paths, rule.paths_ignore)

        if event.kind == EventKind.SCHEDULE:
            return self._matching_cron(rule, event.scheduled_at) is not None

        if event.kind == EventKind.REPOSITORY_DISPATCH:
            return not rule.types or event.action in rule.types

        if event.kind == EventKind.WORKFLOW_DISPATCH:
            if rule.branches and event.branch is not None:
                return match_ordered(rule.branches, event.branch)
            return True

        return False

    def _matching_cron(self, rule: TriggerRule, when: Optional[datetime]) -> Optional[str]:
        """First cron expression of the rule ticking at `when`."""
        if when is None:
            return None
        for expression in rule.cron:
            try:
                if parse_cron(expression).is_tick(when):
                    return expression
            except CronError as e:
                logger.warning(f"Ignoring malformed cron '{expression}': {e}")
        return None

    def _match_ref(self, rule: TriggerRule, event: TriggerEvent) -> bool:
        if not rule.branches and not rule.tags:
            return True
        if event.tag is not None:
            return bool(rule.tags) and match_ordered(rule.tags, event.tag)
        if event.branch is not None:
            return bool(rule.branches) and match_ordered(rule.branches, event.branch)
        return False

    def _condition_holds(self, rule: TriggerRule, event: TriggerEvent, inputs: Dict[str, Any]) -> bool:
        context = ExpressionContext(variables={"event": event.context(), "inputs": inputs})
        return evaluate_condition(rule.condition, context, implicit_success=False)


def validate_trigger_rules(definition: PipelineDefinition) -> List[str]:
    """Load-time checks of cron expressions and rule conditions."""
    errors = []
    for index, rule in enumerate(definition.triggers):
        for expression in rule.cron:
            try:
                parse_cron(expression)
            except CronError as e:
                errors.append(f"Trigger {index} ({rule.event.value}): {e}")
        if rule.condition:
            try:
                parse(rule.condition)
            except ExpressionSyntaxError as e:
                errors.append(f"Trigger {index} ({rule.event.value}): {e}")
        for name, spec in rule.inputs.items():
            if spec.type == "choice" and not spec.options:
                errors.append(f"Trigger {index}: choice input '{name}' declares no options")
    return errors


# ============================================================================
# SCHEDULE TICKER
# ============================================================================

class ScheduleTicker:
    """
    Emits one schedule event per minute boundary.

    After downtime the ticker resumes at the current boundary; ticks
    between the last emitted boundary and now are dropped.
    """

    def __init__(
        self,
        on_tick: Callable[[TriggerEvent], Awaitable[Any]],
        clock: Optional[Callable[[], datetime]] = None,
        poll_seconds: float = 1.0,
    ):
        self._on_tick = on_tick
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.poll_seconds = poll_seconds
        self._last_boundary: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._ticks = 0

    def due(self, now: datetime) -> Optional[TriggerEvent]:
        """Schedule event for the current boundary, if not yet emitted."""
        boundary = floor_minute(now)
        if self._last_boundary is not None and boundary <= self._last_boundary:
            return None
        self._last_boundary = boundary
        return TriggerEvent(kind=EventKind.SCHEDULE, scheduled_at=boundary, actor="scheduler")

    async def tick(self) -> Optional[TriggerEvent]:
        event = self.due(self._clock())
        if event is None:
            return None
        self._ticks += 1
        try:
            await self._on_tick(event)
        except Exception as e:
            logger.exception(f"Schedule tick {event.scheduled_at.isoformat()} failed: {e}")
        return event

    async def start(self) -> None:
        if self._task:
            logger.warning("Schedule ticker already running")
            return
        self._stop_event.clear()
        # The boundary in progress at startup is treated as already past
        self._last_boundary = floor_minute(self._clock())
        self._task = asyncio.create_task(self._loop(), name="schedule-ticker")
        logger.info("Schedule ticker started")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            await self.tick()
            now = self._clock()
            until_next = (floor_minute(now) + timedelta(minutes=1) - now).total_seconds()
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=max(0.05, min(self.poll_seconds, until_next)),
                )
                break
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Schedule ticker stopped (ticks={self._ticks})")

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._task is not None,
            "ticks": self._ticks,
            "last_boundary": self._last_boundary.isoformat() if self._last_boundary else None,
        }


__all__ = [
    "RunSeed",
    "TriggerError",
    "TriggerResult",
    "TriggerEvaluator",
    "ScheduleTicker",
    "validate_dispatch_inputs",
    "validate_call_inputs",
    "check_call_inputs",
    "validate_trigger_rules",
]
