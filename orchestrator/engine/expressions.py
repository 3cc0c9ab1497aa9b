# ============================================================================
# EXPRESSION EVALUATOR
# ============================================================================
# STATUS: Core - Condition parsing and evaluation
# PURPOSE: Typed AST for job/step/trigger/auto-approval conditions
# CREATED: 19 OCT 2026
# ============================================================================
"""
Expression Evaluator

Conditions are parsed once into a small typed AST and evaluated against an
explicit context. Evaluation is total: undefined references evaluate to
None, and type errors make the whole condition false.

Grammar (lowest to highest precedence):
    or        := and (('||' | 'or') and)*
    and       := not (('&&' | 'and') not)*
    not       := 'not' not | equality
    equality  := relational (('==' | '!=') relational)*
    relational:= unary (('<' | '<=' | '>' | '>=') unary)*
    unary     := '!' unary | postfix
    postfix   := primary ('.' IDENT | '[' or ']')*
    primary   := literal | IDENT '(' args ')' | IDENT | '(' or ')'

String equality is case-insensitive. A condition that calls none of the
status functions is implicitly `success() && <condition>`.

Builtins:
    always() success() failure() cancelled()
    contains(search, item) startsWith(s, prefix) endsWith(s, suffix)
    format(fmt, *args) join(array, sep=',') toJSON(value) fromJSON(text)
"""

import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.errors import ExpressionSyntaxError

logger = logging.getLogger(__name__)


# ============================================================================
# AST
# ============================================================================

class Node:
    """Base class of expression AST nodes."""
    pass


@dataclass(frozen=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True)
class Reference(Node):
    name: str


@dataclass(frozen=True)
class Property(Node):
    target: Node
    name: str


@dataclass(frozen=True)
class Index(Node):
    target: Node
    index: Node


@dataclass(frozen=True)
class Unary(Node):
    op: str
    operand: Node


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: Tuple[Node, ...]


STATUS_FUNCTIONS = frozenset({"always", "success", "failure", "cancelled"})

# name -> (min args, max args or None)
FUNCTION_ARITY: Dict[str, Tuple[int, Optional[int]]] = {
    "always": (0, 0),
    "success": (0, 0),
    "failure": (0, 0),
    "cancelled": (0, 0),
    "contains": (2, 2),
    "startswith": (2, 2),
    "endswith": (2, 2),
    "format": (1, None),
    "join": (1, 2),
    "tojson": (1, 1),
    "fromjson": (1, 1),
}


# ============================================================================
# TOKENIZER
# ============================================================================

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<number>-?\d+\.\d+|-?\d+)
    |(?P<string>'(?:[^']|'')*'|"(?:[^"\\]|\\.)*")
    |(?P<op>&&|\|\||==|!=|<=|>=|<|>|!|\(|\)|\[|\]|,|\.)
    |(?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}
_WORD_OPS = {"and": "&&", "or": "||"}
_ESCAPES = {"\\": "\\", "\"": "\"", "'": "'", "n": "\n", "t": "\t", "r": "\r", "0": "\0"}


@dataclass(frozen=True)
class Token:
    kind: str
    value: Any
    pos: int


def _unescape(source: str, body: str, pos: int) -> str:
    """Decode the backslash escapes of a double-quoted literal."""
    chars = []
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\":
            escape = body[index + 1]
            if escape not in _ESCAPES:
                raise ExpressionSyntaxError(
                    source, f"unknown escape '\\{escape}' in string at {pos}"
                )
            chars.append(_ESCAPES[escape])
            index += 2
        else:
            chars.append(char)
            index += 1
    return "".join(chars)


def tokenize(source: str) -> List[Token]:
    tokens = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise ExpressionSyntaxError(source, f"unexpected character {source[pos]!r} at {pos}")
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "number":
            tokens.append(Token("literal", float(text) if "." in text else int(text), pos))
        elif kind == "string":
            if text[0] == "'":
                value = text[1:-1].replace("''", "'")
            else:
                value = _unescape(source, text[1:-1], pos)
            tokens.append(Token("literal", value, pos))
        elif kind == "op":
            tokens.append(Token("op", text, pos))
        elif kind == "ident":
            lowered = text.lower()
            if lowered in _KEYWORDS:
                tokens.append(Token("literal", _KEYWORDS[lowered], pos))
            elif lowered in _WORD_OPS:
                tokens.append(Token("op", _WORD_OPS[lowered], pos))
            elif lowered == "not":
                tokens.append(Token("not", text, pos))
            else:
                tokens.append(Token("ident", text, pos))
        pos = match.end()
    tokens.append(Token("eof", None, pos))
    return tokens


# ============================================================================
# PARSER
# ============================================================================

class Parser:
    """Recursive-descent parser producing an AST."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.pos = 0

    def parse(self) -> Node:
        if self.tokens[0].kind == "eof":
            raise ExpressionSyntaxError(self.source, "empty expression")
        node = self._or()
        token = self._peek()
        if token.kind != "eof":
            self._error(f"unexpected {token.value!r}", token)
        return node

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _next(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _accept(self, *ops: str) -> Optional[str]:
        token = self._peek()
        if token.kind == "op" and token.value in ops:
            self.pos += 1
            return token.value
        return None

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            token = self._peek()
            self._error(f"expected {op!r}, found {token.value!r}", token)

    def _error(self, reason: str, token: Token):
        raise ExpressionSyntaxError(self.source, f"{reason} at {token.pos}")

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Binary("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._not()
        while self._accept("&&"):
            node = Binary("&&", node, self._not())
        return node

    def _not(self) -> Node:
        if self._peek().kind == "not":
            self._next()
            return Unary("!", self._not())
        return self._equality()

    def _equality(self) -> Node:
        node = self._relational()
        while True:
            op = self._accept("==", "!=")
            if not op:
                return node
            node = Binary(op, node, self._relational())

    def _relational(self) -> Node:
        node = self._unary()
        while True:
            op = self._accept("<", "<=", ">", ">=")
            if not op:
                return node
            node = Binary(op, node, self._unary())

    def _unary(self) -> Node:
        if self._accept("!"):
            return Unary("!", self._unary())
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._accept("."):
                token = self._next()
                if token.kind != "ident":
                    self._error("expected property name after '.'", token)
                node = Property(node, token.value)
            elif self._accept("["):
                node = Index(node, self._or())
                self._expect("]")
            else:
                return node

    def _primary(self) -> Node:
        token = self._next()
        if token.kind == "literal":
            return Literal(token.value)
        if token.kind == "op" and token.value == "(":
            node = self._or()
            self._expect(")")
            return node
        if token.kind == "ident":
            if self._accept("("):
                return self._call(token)
            return Reference(token.value)
        self._error(f"unexpected {token.value!r}" if token.value is not None else "unexpected end", token)

    def _call(self, name_token: Token) -> Node:
        name = name_token.value.lower()
        if name not in FUNCTION_ARITY:
            self._error(f"unknown function '{name_token.value}'", name_token)
        args: List[Node] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        low, high = FUNCTION_ARITY[name]
        if len(args) < low or (high is not None and len(args) > high):
            self._error(f"{name_token.value}() takes {low}..{high if high is not None else 'n'} arguments, got {len(args)}", name_token)
        return Call(name, tuple(args))


def _strip_wrapper(expression: str) -> str:
    text = expression.strip()
    if text.startswith("${{") and text.endswith("}}"):
        return text[3:-2].strip()
    return text


@lru_cache(maxsize=1024)
def parse(expression: str) -> Node:
    """
    Parse an expression into an AST.

    Raises:
        ExpressionSyntaxError: malformed expression, unknown function or
            wrong argument count. Raised at load time, never at evaluation.
    """
    return Parser(_strip_wrapper(expression)).parse()


def uses_status_function(node: Node) -> bool:
    """True if the AST calls always/success/failure/cancelled anywhere."""
    if isinstance(node, Call):
        return node.name in STATUS_FUNCTIONS or any(uses_status_function(a) for a in node.args)
    if isinstance(node, Unary):
        return uses_status_function(node.operand)
    if isinstance(node, Binary):
        return uses_status_function(node.left) or uses_status_function(node.right)
    if isinstance(node, Property):
        return uses_status_function(node.target)
    if isinstance(node, Index):
        return uses_status_function(node.target) or uses_status_function(node.index)
    return False


def validate_expression(expression: Optional[str]) -> None:
    """Raise ExpressionSyntaxError if the expression does not parse."""
    if expression is not None and str(expression).strip():
        parse(str(expression))


# ============================================================================
# CONTEXT
# ============================================================================

@dataclass
class StatusFlags:
    """
    Inputs to the status functions.

    failed:        an ancestor job (or a prior step) failed
    cancelled:     the run is being cancelled
    needs_blocked: a direct need was skipped under the blocking policy
    """
    failed: bool = False
    cancelled: bool = False
    needs_blocked: bool = False


@dataclass
class ExpressionContext:
    """
    Explicit evaluation context.

    variables holds the top-level names: event, inputs, needs, matrix,
    steps, env, environment, run, job.
    """
    variables: Dict[str, Any] = field(default_factory=dict)
    status: StatusFlags = field(default_factory=StatusFlags)

    def with_variables(self, **extra: Any) -> "ExpressionContext":
        merged = dict(self.variables)
        merged.update(extra)
        return ExpressionContext(variables=merged, status=self.status)


class EvaluationError(Exception):
    """Raised inside evaluation; never escapes evaluate_condition()."""
    pass


# ============================================================================
# EVALUATION
# ============================================================================

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0
        try:
            return float(text)
        except ValueError:
            raise EvaluationError(f"cannot compare {value!r} as a number")
    raise EvaluationError(f"cannot compare {type(value).__name__} as a number")


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return left.lower() == right.lower()
    if left is None or right is None:
        return left is right
    if type(left) is not type(right) and (
        isinstance(left, (int, float, bool)) or isinstance(right, (int, float, bool))
    ):
        try:
            return _to_number(left) == _to_number(right)
        except EvaluationError:
            return False
    return left == right


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a, b = left.lower(), right.lower()
    else:
        a, b = _to_number(left), _to_number(right)
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


def _access(target: Any, key: Any) -> Any:
    if target is None:
        return None
    if isinstance(target, dict):
        if key in target:
            return target[key]
        if isinstance(key, str):
            lowered = key.lower()
            for k, v in target.items():
                if isinstance(k, str) and k.lower() == lowered:
                    return v
        return None
    if isinstance(target, (list, tuple)):
        if isinstance(key, bool) or not isinstance(key, (int, float)):
            return None
        idx = int(key)
        return target[idx] if 0 <= idx < len(target) else None
    return None


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _fn_contains(search: Any, item: Any) -> bool:
    if isinstance(search, str):
        return _stringify(item).lower() in search.lower()
    if isinstance(search, (list, tuple)):
        return any(_equals(element, item) for element in search)
    return False


def _fn_format(fmt: Any, *args: Any) -> str:
    text = _stringify(fmt)

    def replace(match):
        token = match.group(0)
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        idx = int(match.group(1))
        if idx >= len(args):
            raise EvaluationError(f"format index {idx} out of range")
        return _stringify(args[idx])

    return re.sub(r"\{\{|\}\}|\{(\d+)\}", replace, text)


def _fn_join(array: Any, separator: Any = ",") -> str:
    if isinstance(array, (list, tuple)):
        return _stringify(separator).join(_stringify(v) for v in array)
    return _stringify(array)


def _fn_from_json(text: Any) -> Any:
    try:
        return json.loads(_stringify(text))
    except ValueError as e:
        raise EvaluationError(f"fromJSON: {e}")


_VALUE_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _fn_contains,
    "startswith": lambda s, p: _stringify(s).lower().startswith(_stringify(p).lower()),
    "endswith": lambda s, p: _stringify(s).lower().endswith(_stringify(p).lower()),
    "format": _fn_format,
    "join": _fn_join,
    "tojson": lambda v: json.dumps(v, indent=2, default=str),
    "fromjson": _fn_from_json,
}


class Evaluator:
    """Walks an AST against an ExpressionContext."""

    def __init__(self, context: ExpressionContext):
        self.context = context

    def evaluate(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Reference):
            return _access(self.context.variables, node.name)
        if isinstance(node, Property):
            return _access(self.evaluate(node.target), node.name)
        if isinstance(node, Index):
            return _access(self.evaluate(node.target), self.evaluate(node.index))
        if isinstance(node, Unary):
            return not truthy(self.evaluate(node.operand))
        if isinstance(node, Binary):
            return self._binary(node)
        if isinstance(node, Call):
            return self._call(node)
        raise EvaluationError(f"unknown node {type(node).__name__}")

    def _binary(self, node: Binary) -> Any:
        left = self.evaluate(node.left)
        if node.op == "&&":
            return self.evaluate(node.right) if truthy(left) else left
        if node.op == "||":
            return left if truthy(left) else self.evaluate(node.right)
        right = self.evaluate(node.right)
        if node.op == "==":
            return _equals(left, right)
        if node.op == "!=":
            return not _equals(left, right)
        return _compare(node.op, left, right)

    def _call(self, node: Call) -> Any:
        status = self.context.status
        if node.name == "always":
            return True
        if node.name == "success":
            return not (status.failed or status.cancelled or status.needs_blocked)
        if node.name == "failure":
            return status.failed and not status.cancelled
        if node.name == "cancelled":
            return status.cancelled
        args = [self.evaluate(a) for a in node.args]
        return _VALUE_FUNCTIONS[node.name](*args)


def evaluate(expression: str, context: ExpressionContext) -> Any:
    """
    Evaluate an expression to a value.

    Raises ExpressionSyntaxError for malformed input and EvaluationError
    for type errors; callers needing a total boolean use
    evaluate_condition().
    """
    return Evaluator(context).evaluate(parse(expression))


def evaluate_condition(
    expression: Optional[str],
    context: ExpressionContext,
    implicit_success: bool = True,
) -> bool:
    """
    Evaluate a condition to a boolean. Never raises.

    An empty condition means success(). With implicit_success, a condition
    without any status function only holds if success() also holds.
    """
    if expression is None or not str(expression).strip():
        expression = "success()"
    try:
        node = parse(str(expression))
        result = truthy(Evaluator(context).evaluate(node))
        if implicit_success and not uses_status_function(node):
            result = result and truthy(Evaluator(context).evaluate(Call("success", ())))
        return result
    except ExpressionSyntaxError as e:
        logger.warning(f"Malformed condition evaluated as false: {e}")
        return False
    except (EvaluationError, TypeError, ValueError, RecursionError) as e:
        logger.debug(f"Condition '{expression}' degraded to false: {e}")
        return False


__all__ = [
    "Node",
    "Literal",
    "Reference",
    "Property",
    "Index",
    "Unary",
    "Binary",
    "Call",
    "Parser",
    "tokenize",
    "parse",
    "uses_status_function",
    "validate_expression",
    "StatusFlags",
    "ExpressionContext",
    "EvaluationError",
    "Evaluator",
    "truthy",
    "evaluate",
    "evaluate_condition",
]
