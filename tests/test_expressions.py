# ============================================================================
# EXPRESSION LANGUAGE TESTS
# ============================================================================
# STATUS: Tests - Condition parsing and evaluation
# PURPOSE: Verify status functions, operators, functions and total evaluation
# CREATED: 19 OCT 2026
# ============================================================================
"""
Expression Language Tests

Covers:
1. Parsing: syntax errors at load time, unknown functions, arity
2. Status functions: success/failure/always/cancelled and implicit success()
3. Operators: case-insensitive equality, ordering, short-circuit values
4. Value functions: contains, startsWith, format, join, fromJSON
5. evaluate_condition() never raises; undefined references are null
6. Double-quoted string escapes; non-ASCII literals

Run with:
    pytest tests/test_expressions.py -v
"""

import pytest

from core.errors import ExpressionSyntaxError
from orchestrator.engine.expressions import (
    ExpressionContext,
    StatusFlags,
    evaluate,
    evaluate_condition,
    parse,
    uses_status_function,
    validate_expression,
)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def context():
    return ExpressionContext(
        variables={
            "event": {"kind": "push", "branch": "main", "actor": "Alice"},
            "inputs": {"dry_run": False, "count": "3", "target": "staging"},
            "needs": {
                "build": {"result": "success", "outputs": {"version": "1.2.0"}},
                "lint": {"result": "skipped", "outputs": {}},
            },
            "matrix": {"python": "3.11", "suite": "unit"},
            "labels": ["deploy", "urgent"],
        }
    )


def with_status(context, **flags):
    return ExpressionContext(variables=context.variables, status=StatusFlags(**flags))


# ============================================================================
# PARSING
# ============================================================================

class TestParsing:
    """Malformed expressions are rejected when parsed, not when evaluated."""

    @pytest.mark.parametrize("source", [
        "success(",
        "a ==",
        "needs.build.",
        "&& true",
        "",
        "(a == b",
    ])
    def test_syntax_errors(self, source):
        with pytest.raises(ExpressionSyntaxError):
            parse(source)

    def test_unknown_function(self):
        with pytest.raises(ExpressionSyntaxError, match="unknown function"):
            parse("deploy()")

    def test_wrong_arity(self):
        with pytest.raises(ExpressionSyntaxError):
            parse("contains('a')")
        with pytest.raises(ExpressionSyntaxError):
            parse("success(1)")

    def test_wrapper_is_stripped(self, context):
        assert evaluate("${{ event.branch == 'main' }}", context) is True

    def test_function_names_are_case_insensitive(self, context):
        assert evaluate("startsWith(event.branch, 'ma')", context) is True

    def test_validate_expression_accepts_none(self):
        validate_expression(None)
        validate_expression("   ")

    def test_uses_status_function(self):
        assert uses_status_function(parse("always()"))
        assert uses_status_function(parse("!cancelled() && inputs.x"))
        assert not uses_status_function(parse("inputs.x == 'y'"))


class TestStringLiterals:
    """Double-quoted literals decode a fixed escape set and keep unicode text."""

    def test_non_ascii_text_is_preserved(self):
        context = ExpressionContext(variables={"event": {"actor": "zoë"}})
        assert evaluate_condition('event.actor == "zoë"', context) is True
        assert evaluate("'zoë'", context) == "zoë"

    def test_known_escapes(self, context):
        assert evaluate(r'"a\"b"', context) == 'a"b'
        assert evaluate(r'"tab\there"', context) == "tab\there"
        assert evaluate(r'"back\\slash"', context) == "back\\slash"
        assert evaluate(r'"line\nbreak"', context) == "line\nbreak"

    @pytest.mark.parametrize("source", [r'"\x"', r'"\u00e9"', r'"\q"'])
    def test_unknown_escape_is_a_syntax_error(self, source):
        with pytest.raises(ExpressionSyntaxError, match="unknown escape"):
            parse(source)

    def test_unknown_escape_rejected_at_validation(self):
        with pytest.raises(ExpressionSyntaxError):
            validate_expression(r'event.ref == "\x"')

    def test_single_quoted_literal_keeps_backslashes(self, context):
        assert evaluate(r"'C:\path'", context) == "C:\\path"


# ============================================================================
# STATUS FUNCTIONS
# ============================================================================

class TestStatusFunctions:

    def test_default_condition_is_success(self, context):
        assert evaluate_condition(None, context) is True
        assert evaluate_condition(None, with_status(context, failed=True)) is False

    def test_failure_only_when_an_ancestor_failed(self, context):
        assert evaluate_condition("failure()", context) is False
        assert evaluate_condition("failure()", with_status(context, failed=True)) is True

    def test_failure_is_false_while_cancelling(self, context):
        flags = with_status(context, failed=True, cancelled=True)
        assert evaluate_condition("failure()", flags) is False
        assert evaluate_condition("cancelled()", flags) is True

    def test_always_ignores_status(self, context):
        flags = with_status(context, failed=True, cancelled=True, needs_blocked=True)
        assert evaluate_condition("always()", flags) is True

    def test_needs_blocked_fails_success(self, context):
        assert evaluate_condition("success()", with_status(context, needs_blocked=True)) is False

    def test_implicit_success_added_without_status_function(self, context):
        failed = with_status(context, failed=True)
        assert evaluate_condition("event.branch == 'main'", context) is True
        assert evaluate_condition("event.branch == 'main'", failed) is False

    def test_explicit_status_function_disables_implicit_success(self, context):
        failed = with_status(context, failed=True)
        assert evaluate_condition("always() && event.branch == 'main'", failed) is True

    def test_implicit_success_can_be_disabled(self, context):
        failed = with_status(context, failed=True)
        assert evaluate_condition("event.branch == 'main'", failed, implicit_success=False) is True


# ============================================================================
# OPERATORS
# ============================================================================

class TestOperators:

    def test_string_equality_is_case_insensitive(self, context):
        assert evaluate("event.actor == 'alice'", context) is True
        assert evaluate("event.actor != 'ALICE'", context) is False

    def test_numeric_coercion(self, context):
        assert evaluate("inputs.count == 3", context) is True
        assert evaluate("inputs.count > 2", context) is True
        assert evaluate("inputs.count <= 2.5", context) is False

    def test_null_comparisons(self, context):
        assert evaluate("inputs.missing == null", context) is True
        assert evaluate("inputs.missing == ''", context) is False

    def test_and_or_return_operand_values(self, context):
        assert evaluate("inputs.target || 'default'", context) == "staging"
        assert evaluate("inputs.missing || 'default'", context) == "default"
        assert evaluate("inputs.dry_run && 'never'", context) is False

    def test_negation(self, context):
        assert evaluate("!inputs.dry_run", context) is True
        assert evaluate_condition("success() && !inputs.dry_run", context) is True

    def test_property_and_index_access(self, context):
        assert evaluate("needs.build.outputs.version", context) == "1.2.0"
        assert evaluate("needs['build'].result", context) == "success"
        assert evaluate("labels[1]", context) == "urgent"
        assert evaluate("labels[5]", context) is None

    def test_property_access_is_case_insensitive(self, context):
        assert evaluate("needs.build.Outputs.VERSION", context) == "1.2.0"

    def test_undefined_reference_is_null(self, context):
        assert evaluate("nothing.here.at.all", context) is None

    def test_precedence(self, context):
        assert evaluate("false && false || true", context) is True
        assert evaluate("!(event.branch == 'main') || matrix.python == '3.11'", context) is True


# ============================================================================
# VALUE FUNCTIONS
# ============================================================================

class TestFunctions:

    def test_contains_string_and_array(self, context):
        assert evaluate("contains(event.branch, 'AI')", context) is True
        assert evaluate("contains(labels, 'DEPLOY')", context) is True
        assert evaluate("contains(labels, 'docs')", context) is False

    def test_starts_and_ends_with(self, context):
        assert evaluate("endsWith(matrix.suite, 'IT')", context) is True

    def test_format(self, context):
        assert evaluate("format('{0}-{1}', matrix.python, matrix.suite)", context) == "3.11-unit"
        assert evaluate("format('{{literal}} {0}', 1)", context) == "{literal} 1"

    def test_join(self, context):
        assert evaluate("join(labels, '+')", context) == "deploy+urgent"
        assert evaluate("join(labels)", context) == "deploy,urgent"

    def test_from_json(self, context):
        assert evaluate("fromJSON('{\"a\": [1, 2]}').a[1]", context) == 2


# ============================================================================
# TOTALITY
# ============================================================================

class TestEvaluateConditionNeverRaises:

    def test_malformed_condition_is_false(self, context):
        assert evaluate_condition("success(", context) is False

    def test_type_error_is_false(self, context):
        assert evaluate_condition("event.branch > 3", context) is False

    def test_bad_json_is_false(self, context):
        assert evaluate_condition("fromJSON('not json')", context) is False

    def test_format_index_out_of_range_is_false(self, context):
        assert evaluate_condition("format('{3}', 'a') == 'x'", context) is False
