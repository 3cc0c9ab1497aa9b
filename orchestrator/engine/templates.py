# ============================================================================
# TEMPLATE RESOLUTION ENGINE
# ============================================================================
# STATUS: Core - Template resolution with Jinja2
# PURPOSE: Resolve {{ }} expressions in step inputs, commands and outputs
# CREATED: 19 OCT 2026
# ============================================================================
"""
Template Resolution Engine

Resolves template expressions in pipeline definitions at run time.

Supported patterns:
- {{ event.branch }} / {{ event.sha }} - Triggering event variables
- {{ inputs.name }} - Dispatch inputs (or rollback marker inputs)
- {{ needs.build.outputs.image }} - Outputs of a job in `needs`
- {{ needs['deploy-staging'].result }} - Names with hyphens use brackets
- {{ matrix.os }} - Matrix values of the current instance
- {{ steps.setup.outputs.version }} - Outputs of earlier steps in the job
- {{ env.NAME }} - Pipeline/job/step env mapping
- {{ environment.name }} / {{ environment.url }} - Target environment

Examples:
    with:
      image: "{{ needs.build.outputs.image }}"
      target: "{{ environment.url }}"
    run: ./deploy.sh --version {{ steps.meta.outputs.version }}
"""

import ast
import re
import logging
from typing import Any, Dict, List, Optional
from jinja2 import Environment, BaseLoader, TemplateSyntaxError, UndefinedError, StrictUndefined

logger = logging.getLogger(__name__)


class TemplateResolver:
    """
    Jinja2-based template resolver for pipeline values.

    Thread-safe, can be reused across multiple resolutions.
    """

    def __init__(self):
        """Initialize the template resolver with Jinja2 environment."""
        self._env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            # Missing references fail the job instead of rendering empty
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        self._template_pattern = re.compile(r'\{\{.*?\}\}', re.DOTALL)

    def resolve(
        self,
        params: Dict[str, Any],
        context: "TemplateContext",
    ) -> Dict[str, Any]:
        """
        Resolve all template expressions in a params dict.

        Args:
            params: Dictionary containing template expressions
            context: Template context built for the current job/step

        Returns:
            New dict with all templates resolved

        Raises:
            TemplateResolutionError: If template cannot be resolved
        """
        return self._resolve_value(params, context.to_dict())

    def render(self, value: str, context: "TemplateContext") -> str:
        """Render a string template, always returning a string."""
        if '{{' not in value:
            return value
        try:
            return self._env.from_string(value).render(context.to_dict())
        except (TemplateSyntaxError, UndefinedError) as e:
            raise TemplateResolutionError(f"Failed to resolve '{value}': {e}")

    def _resolve_value(
        self,
        value: Any,
        context: Dict[str, Any],
    ) -> Any:
        """Recursively resolve template expressions in a value."""
        if isinstance(value, str):
            return self._resolve_string(value, context)
        elif isinstance(value, dict):
            return {k: self._resolve_value(v, context) for k, v in value.items()}
        elif isinstance(value, list):
            return [self._resolve_value(item, context) for item in value]
        else:
            return value

    def _resolve_string(self, value: str, context: Dict[str, Any]) -> Any:
        """Resolve template expressions in a string value."""
        if '{{' not in value:
            return value

        try:
            template = self._env.from_string(value)
            result = template.render(context)
        except (TemplateSyntaxError, UndefinedError) as e:
            raise TemplateResolutionError(f"Failed to resolve '{value}': {e}")

        # A value that is a single expression may keep its non-string type
        stripped = value.strip()
        inner = stripped[2:-2]
        if stripped.startswith('{{') and stripped.endswith('}}') and '{{' not in inner and '}}' not in inner:
            return self._maybe_parse_result(result)
        return result

    def _maybe_parse_result(self, result: str) -> Any:
        """Try to parse result as Python literal (for lists, dicts, numbers)."""
        result = result.strip()
        if not result:
            return result

        if (result.startswith('[') and result.endswith(']')) or \
           (result.startswith('{') and result.endswith('}')):
            try:
                return ast.literal_eval(result)
            except (ValueError, SyntaxError):
                pass

        try:
            if '.' in result:
                return float(result)
            return int(result)
        except ValueError:
            pass

        return result

    def has_templates(self, value: Any) -> bool:
        """Recursively check for template expressions."""
        if isinstance(value, str):
            return bool(self._template_pattern.search(value))
        elif isinstance(value, dict):
            return any(self.has_templates(v) for v in value.values())
        elif isinstance(value, list):
            return any(self.has_templates(item) for item in value)
        return False

    def syntax_errors(self, value: Any, where: str = "") -> List[str]:
        """Collect Jinja2 syntax errors without rendering (load-time check)."""
        errors = []
        if isinstance(value, str):
            if '{{' in value or '{%' in value:
                try:
                    self._env.parse(value)
                except TemplateSyntaxError as e:
                    errors.append(f"{where}: invalid template '{value}': {e.message}")
        elif isinstance(value, dict):
            for k, v in value.items():
                errors.extend(self.syntax_errors(v, f"{where}.{k}" if where else str(k)))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                errors.extend(self.syntax_errors(item, f"{where}[{i}]"))
        return errors


class TemplateContext:
    """
    Context for template resolution.

    Holds the same top-level names the expression evaluator sees, so
    `{{ needs.build.outputs.x }}` and `if: needs.build.outputs.x == 'y'`
    read identical data.
    """

    def __init__(
        self,
        event: Optional[Dict[str, Any]] = None,
        inputs: Optional[Dict[str, Any]] = None,
        needs: Optional[Dict[str, Any]] = None,
        matrix: Optional[Dict[str, Any]] = None,
        steps: Optional[Dict[str, Any]] = None,
        env: Optional[Dict[str, str]] = None,
        environment: Optional[Dict[str, Any]] = None,
        run: Optional[Dict[str, Any]] = None,
        job: Optional[Dict[str, Any]] = None,
    ):
        self.event = event or {}
        self.inputs = inputs or {}
        self.needs = needs or {}
        self.matrix = matrix or {}
        self.steps = steps or {}
        self.env = env or {}
        self.environment = environment
        self.run = run or {}
        self.job = job or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for Jinja2 rendering."""
        result = {
            "event": self.event,
            "inputs": self.inputs,
            "needs": self.needs,
            "matrix": self.matrix,
            "steps": self.steps,
            "env": self.env,
            "run": self.run,
            "job": self.job,
        }
        if self.environment is not None:
            result["environment"] = self.environment
        return result

    @classmethod
    def from_variables(cls, variables: Dict[str, Any]) -> "TemplateContext":
        """Create context from an expression variable mapping."""
        return cls(
            event=variables.get("event"),
            inputs=variables.get("inputs"),
            needs=variables.get("needs"),
            matrix=variables.get("matrix"),
            steps=variables.get("steps"),
            env=variables.get("env"),
            environment=variables.get("environment"),
            run=variables.get("run"),
            job=variables.get("job"),
        )


class TemplateResolutionError(Exception):
    """Raised when template resolution fails."""
    pass


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

_resolver: Optional[TemplateResolver] = None


def get_resolver() -> TemplateResolver:
    """Get shared template resolver instance."""
    global _resolver
    if _resolver is None:
        _resolver = TemplateResolver()
    return _resolver


def resolve_params(
    params: Dict[str, Any],
    variables: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Convenience function to resolve params against expression variables.
    """
    return get_resolver().resolve(params, TemplateContext.from_variables(variables))


def render_string(value: str, variables: Dict[str, Any]) -> str:
    """Render one string template against expression variables."""
    return get_resolver().render(value, TemplateContext.from_variables(variables))


__all__ = [
    "TemplateResolver",
    "TemplateContext",
    "TemplateResolutionError",
    "get_resolver",
    "resolve_params",
    "render_string",
]
