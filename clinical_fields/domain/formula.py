"""Formula Evaluator.

Formulas are parsed once into an abstract syntax tree and evaluated against a
resolved variable map. Field references are written ``{field_name}`` and
measure references ``{measure:measure_name}``; they are looked up in the
variable map, never substituted into the formula text.

Grammar (Pratt parser, lowest to highest binding):
    comparison  ``< <= > >= == !=``
    additive    ``+ -``
    multiplicative ``* /``
    unary       ``+x -x``
    power       ``^`` (right-associative)
    primary     number, 'string', {reference}, function(args), (expression)

Evaluation outcomes:
    - A value (float, bool or str)
    - "Unresolvable": a reference has no value, text cannot be used as a
      number, division by zero, square root of a negative number or a
      non-finite result. Unresolvable is reported through ``Result`` and is
      never raised to callers.

Malformed formulas raise ``FormulaSyntaxError`` when parsed, which happens
when a definition is validated.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from clinical_fields.domain.models import MEASURE_PREFIX, REFERENCE_NAME_PATTERN
from clinical_fields.domain.ports import Result

logger = logging.getLogger(__name__)

UNRESOLVABLE = "Unresolvable"
EPOCH = date(1970, 1, 1)

_NUMERIC_TEXT = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_ISO_DATE_TEXT = re.compile(r"^(\d{4}-\d{2}-\d{2})([T ].*)?$")

_TOKEN_PATTERN = re.compile(r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)
  | (?P<string>'[^']*'|"[^"]*")
  | (?P<ref>\{[^{}]*\})
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op><=|>=|==|!=|<|>|\+|-|\*|/|\^|\(|\)|,)
""", re.VERBOSE)


class FormulaSyntaxError(ValueError):
    """Raised when a formula cannot be parsed.

    Attributes:
        formula: The offending formula text
        position: Character offset of the problem, when known
    """

    def __init__(self, message: str, formula: Optional[str] = None, position: Optional[int] = None):
        super().__init__(message)
        self.formula = formula
        self.position = position


class Unresolvable(Exception):
    """Internal signal: the formula cannot be evaluated with the current inputs."""

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.reference = reference


# ============================================================================
# Coercion helpers
# ============================================================================

def days_since_epoch(value: Union[date, datetime]) -> int:
    if isinstance(value, datetime):
        value = value.date()
    return (value - EPOCH).days


def _parse_iso_date(text: str) -> Optional[date]:
    match = _ISO_DATE_TEXT.match(text.strip())
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        return None


def to_number(value: Any, reference: Optional[str] = None) -> float:
    """Coerce a value for arithmetic.

    Booleans become 1 or 0, numeric text becomes a number and ISO dates become
    days since 1970-01-01.

    Raises:
        Unresolvable: The value cannot be used as a number
    """
    if value is None:
        raise Unresolvable(f"Missing value for '{reference}'", reference)
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        if not math.isfinite(number):
            raise Unresolvable("Non-finite number", reference)
        return number
    if isinstance(value, (date, datetime)):
        return float(days_since_epoch(value))
    if isinstance(value, str):
        text = value.strip()
        if _NUMERIC_TEXT.match(text):
            return float(text)
        parsed = _parse_iso_date(text)
        if parsed is not None:
            return float(days_since_epoch(parsed))
    raise Unresolvable(f"Value {value!r} is not numeric", reference)


def to_date(value: Any) -> date:
    """Coerce an ISO date string, date or day count since epoch to a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        parsed = _parse_iso_date(value)
        if parsed is not None:
            return parsed
    number = to_number(value)
    try:
        return date.fromordinal(EPOCH.toordinal() + int(math.floor(number)))
    except (ValueError, OverflowError):
        raise Unresolvable(f"Value {value!r} is not a date")


def round_half_up(value: float, decimal_places: int = 0) -> float:
    """Round half away from zero (2.5 -> 3, -2.5 -> -3)."""
    try:
        quantum = Decimal(1).scaleb(-int(decimal_places))
        return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        raise Unresolvable(f"Cannot round {value!r}")


def _finite(value: Any) -> float:
    if isinstance(value, complex) or not math.isfinite(value):
        raise Unresolvable("Result is not a finite real number")
    return float(value)


# ============================================================================
# Built-in functions
# ============================================================================

@dataclass(frozen=True)
class FunctionSpec:
    """A built-in formula function.

    Attributes:
        name: Name used in formulas
        min_args: Minimum argument count
        max_args: Maximum argument count (None for variadic)
        implementation: Callable receiving the evaluation context and argument values
        volatile: Output depends on ambient state (the current date)
        description: Human-readable summary
    """

    name: str
    min_args: int
    max_args: Optional[int]
    implementation: Callable[["EvaluationContext", List[Any]], Any]
    volatile: bool = False
    description: str = ""


def _fn_sqrt(ctx, args):
    number = to_number(args[0])
    if number < 0:
        raise Unresolvable("Square root of a negative number")
    return math.sqrt(number)


def _fn_round(ctx, args):
    decimals = int(to_number(args[1])) if len(args) > 1 else 0
    if decimals < 0:
        raise Unresolvable("Negative decimal count")
    return round_half_up(to_number(args[0]), decimals)


def _fn_age_years(ctx, args):
    born = to_date(args[0])
    today = ctx.today
    years = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        years -= 1
    return float(years)


FUNCTIONS: Dict[str, FunctionSpec] = {
    function.name: function for function in (
        FunctionSpec("sqrt", 1, 1, _fn_sqrt, description="Square root"),
        FunctionSpec("abs", 1, 1, lambda ctx, a: abs(to_number(a[0])), description="Absolute value"),
        FunctionSpec("round", 1, 2, _fn_round, description="Round half up to N decimals (default 0)"),
        FunctionSpec("floor", 1, 1, lambda ctx, a: float(math.floor(to_number(a[0]))), description="Round down"),
        FunctionSpec("ceil", 1, 1, lambda ctx, a: float(math.ceil(to_number(a[0]))), description="Round up"),
        FunctionSpec("min", 1, None, lambda ctx, a: min(to_number(v) for v in a), description="Smallest argument"),
        FunctionSpec("max", 1, None, lambda ctx, a: max(to_number(v) for v in a), description="Largest argument"),
        FunctionSpec(
            "today", 0, 0, lambda ctx, a: float(days_since_epoch(ctx.today)),
            volatile=True, description="Days since 1970-01-01 for the current date"
        ),
        FunctionSpec("year", 1, 1, lambda ctx, a: float(to_date(a[0]).year), description="Year of a date"),
        FunctionSpec("month", 1, 1, lambda ctx, a: float(to_date(a[0]).month), description="Month of a date"),
        FunctionSpec("day", 1, 1, lambda ctx, a: float(to_date(a[0]).day), description="Day of month of a date"),
        FunctionSpec(
            "age_years", 1, 1, _fn_age_years,
            volatile=True, description="Full years elapsed since a date"
        ),
    )
}

OPERATORS: List[Dict[str, str]] = [
    {"symbol": "+", "description": "Addition"},
    {"symbol": "-", "description": "Subtraction or negation"},
    {"symbol": "*", "description": "Multiplication"},
    {"symbol": "/", "description": "Division"},
    {"symbol": "^", "description": "Exponentiation (right-associative)"},
    {"symbol": "( )", "description": "Grouping"},
    {"symbol": "< <= > >=", "description": "Numeric comparison"},
    {"symbol": "== !=", "description": "Equality"},
]


# ============================================================================
# Syntax tree
# ============================================================================

class EvaluationContext:
    """Variables and ambient state for one evaluation."""

    def __init__(self, variables: Mapping[str, Any], today: Optional[date] = None):
        self.variables = variables
        self.today = today or date.today()

    def lookup(self, key: str) -> Any:
        value = self.variables.get(key)
        if value is None:
            raise Unresolvable(f"Missing value for '{key}'", key)
        return value


@dataclass(frozen=True)
class Literal:
    value: Any

    def evaluate(self, ctx: EvaluationContext) -> Any:
        return self.value


@dataclass(frozen=True)
class VariableRef:
    name: str

    @property
    def key(self) -> str:
        return self.name

    def evaluate(self, ctx: EvaluationContext) -> Any:
        return ctx.lookup(self.key)


@dataclass(frozen=True)
class MeasureRef:
    name: str

    @property
    def key(self) -> str:
        return f"{MEASURE_PREFIX}{self.name}"

    def evaluate(self, ctx: EvaluationContext) -> Any:
        return ctx.lookup(self.key)


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: Any

    def evaluate(self, ctx: EvaluationContext) -> Any:
        number = to_number(self.operand.evaluate(ctx))
        return -number if self.op == "-" else number


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Any
    right: Any

    def evaluate(self, ctx: EvaluationContext) -> Any:
        left = self.left.evaluate(ctx)
        right = self.right.evaluate(ctx)
        if self.op in ("==", "!="):
            return self._equality(left, right)

        a = to_number(left)
        b = to_number(right)
        if self.op == "+":
            return _finite(a + b)
        if self.op == "-":
            return _finite(a - b)
        if self.op == "*":
            return _finite(a * b)
        if self.op == "/":
            if b == 0:
                raise Unresolvable("Division by zero")
            return _finite(a / b)
        if self.op == "^":
            try:
                return _finite(a ** b)
            except (OverflowError, ZeroDivisionError):
                raise Unresolvable("Exponentiation out of range")
        if self.op == "<":
            return a < b
        if self.op == "<=":
            return a <= b
        if self.op == ">":
            return a > b
        if self.op == ">=":
            return a >= b
        raise Unresolvable(f"Unknown operator {self.op}")

    def _equality(self, left: Any, right: Any) -> bool:
        try:
            equal = to_number(left) == to_number(right)
        except Unresolvable:
            if isinstance(left, str) and isinstance(right, str):
                equal = left == right
            else:
                raise
        return equal if self.op == "==" else not equal


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]

    def evaluate(self, ctx: EvaluationContext) -> Any:
        values = [arg.evaluate(ctx) for arg in self.args]
        return FUNCTIONS[self.name].implementation(ctx, values)


Node = Union[Literal, VariableRef, MeasureRef, UnaryOp, BinaryOp, Call]


def _children(node: Node) -> Tuple[Node, ...]:
    if isinstance(node, UnaryOp):
        return (node.operand,)
    if isinstance(node, BinaryOp):
        return (node.left, node.right)
    if isinstance(node, Call):
        return tuple(node.args)
    return ()


def _walk(root: Node):
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(_children(node)))


def _height(root: Node) -> int:
    deepest = 0
    stack = [(root, 1)]
    while stack:
        node, level = stack.pop()
        deepest = max(deepest, level)
        stack.extend((child, level + 1) for child in _children(node))
    return deepest


# ============================================================================
# Tokenizer and parser
# ============================================================================

@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    position: int


_EOF = "eof"

_BINDING_POWER = {
    "<": 10, "<=": 10, ">": 10, ">=": 10, "==": 10, "!=": 10,
    "+": 20, "-": 20,
    "*": 30, "/": 30,
    "^": 40,
}
_UNARY_BINDING_POWER = 35
MAX_NESTING_DEPTH = 200


def _check_braces(source: str) -> None:
    depth = 0
    for position, char in enumerate(source):
        if char == "{":
            if depth:
                raise FormulaSyntaxError(f"Nested brace at position {position}", source, position)
            depth += 1
        elif char == "}":
            if not depth:
                raise FormulaSyntaxError(f"Unbalanced closing brace at position {position}", source, position)
            depth -= 1
    if depth:
        raise FormulaSyntaxError("Unbalanced braces: missing closing brace", source)


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    position = 0
    while position < len(source):
        match = _TOKEN_PATTERN.match(source, position)
        if not match:
            raise FormulaSyntaxError(
                f"Unexpected character '{source[position]}' at position {position}", source, position
            )
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), position))
        position = match.end()
    tokens.append(_Token(_EOF, "", len(source)))
    return tokens


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.index = 0
        self.depth = 0

    def parse(self) -> Node:
        node = self._expression(0)
        token = self._peek()
        if token.kind != _EOF:
            self._fail(f"Unexpected '{token.text}' at position {token.position}", token)
        if _height(node) > MAX_NESTING_DEPTH:
            self._fail(f"Formula nests deeper than {MAX_NESTING_DEPTH} levels", self.tokens[0])
        return node

    def _peek(self) -> _Token:
        return self.tokens[self.index]

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        if token.kind != _EOF:
            self.index += 1
        return token

    def _expect(self, text: str, message: str) -> _Token:
        token = self._peek()
        if token.kind != "op" or token.text != text:
            self._fail(message, token)
        return self._advance()

    def _fail(self, message: str, token: _Token):
        raise FormulaSyntaxError(message, self.source, token.position)

    def _left_binding_power(self, token: _Token) -> int:
        if token.kind != "op":
            return 0
        return _BINDING_POWER.get(token.text, 0)

    def _expression(self, right_binding_power: int) -> Node:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            self._fail(f"Formula nests deeper than {MAX_NESTING_DEPTH} levels", self._peek())
        left = self._prefix(self._advance())
        while right_binding_power < self._left_binding_power(self._peek()):
            left = self._infix(self._advance(), left)
        self.depth -= 1
        return left

    def _prefix(self, token: _Token) -> Node:
        if token.kind == "number":
            return Literal(float(token.text))
        if token.kind == "string":
            return Literal(token.text[1:-1])
        if token.kind == "ref":
            return self._reference(token)
        if token.kind == "ident":
            return self._call(token)
        if token.kind == "op" and token.text in ("+", "-"):
            return UnaryOp(token.text, self._expression(_UNARY_BINDING_POWER))
        if token.kind == "op" and token.text == "(":
            node = self._expression(0)
            self._expect(")", f"Missing closing parenthesis for '(' at position {token.position}")
            return node
        if token.kind == _EOF:
            self._fail("Unexpected end of formula", token)
        self._fail(f"Unexpected '{token.text}' at position {token.position}", token)

    def _infix(self, token: _Token, left: Node) -> Node:
        if token.text == "^":
            # right-associative
            return BinaryOp("^", left, self._expression(_BINDING_POWER["^"] - 1))
        return BinaryOp(token.text, left, self._expression(_BINDING_POWER[token.text]))

    def _reference(self, token: _Token) -> Node:
        inner = token.text[1:-1].strip()
        if not inner:
            self._fail(f"Empty variable reference at position {token.position}", token)
        if inner.startswith(MEASURE_PREFIX):
            name = inner[len(MEASURE_PREFIX):].strip()
            if not REFERENCE_NAME_PATTERN.match(name):
                self._fail(f"Invalid measure name '{name}' in formula", token)
            return MeasureRef(name)
        if not REFERENCE_NAME_PATTERN.match(inner):
            self._fail(f"Invalid variable name '{inner}' in formula", token)
        return VariableRef(inner)

    def _call(self, token: _Token) -> Node:
        name = token.text
        nxt = self._peek()
        if nxt.kind != "op" or nxt.text != "(":
            self._fail(
                f"Unexpected identifier '{name}' at position {token.position}; "
                f"field references must be written {{{name}}}",
                token
            )
        function = FUNCTIONS.get(name)
        if function is None:
            self._fail(f"Unknown function '{name}'", token)
        self._advance()

        args: List[Node] = []
        if not (self._peek().kind == "op" and self._peek().text == ")"):
            while True:
                args.append(self._expression(0))
                if self._peek().kind == "op" and self._peek().text == ",":
                    self._advance()
                    continue
                break
        self._expect(")", f"Missing closing parenthesis for {name}()")

        if len(args) < function.min_args or (function.max_args is not None and len(args) > function.max_args):
            expected = str(function.min_args) if function.min_args == function.max_args else (
                f"{function.min_args}+" if function.max_args is None else f"{function.min_args}-{function.max_args}"
            )
            self._fail(f"Function {name}() expects {expected} argument(s), got {len(args)}", token)
        return Call(name, tuple(args))


# ============================================================================
# Public API
# ============================================================================

class Formula:
    """A parsed formula.

    Attributes:
        source: Formula text
        root: Root node of the syntax tree
        references: Ordered unique reference keys (``name`` or ``measure:name``)
        is_volatile: Uses a function whose output depends on the current date
    """

    def __init__(self, source: str, root: Node):
        self.source = source
        self.root = root

        references: List[str] = []
        volatile = False
        for node in _walk(root):
            if isinstance(node, (VariableRef, MeasureRef)) and node.key not in references:
                references.append(node.key)
            elif isinstance(node, Call) and FUNCTIONS[node.name].volatile:
                volatile = True
        self.references: Tuple[str, ...] = tuple(references)
        self.is_volatile = volatile

    @property
    def field_references(self) -> Tuple[str, ...]:
        return tuple(r for r in self.references if not r.startswith(MEASURE_PREFIX))

    @property
    def measure_references(self) -> Tuple[str, ...]:
        return tuple(r[len(MEASURE_PREFIX):] for r in self.references if r.startswith(MEASURE_PREFIX))

    def evaluate(self, variables: Mapping[str, Any], today: Optional[date] = None) -> Any:
        """Evaluate against a variable map.

        Raises:
            Unresolvable: A required input is missing or unusable
        """
        return self.root.evaluate(EvaluationContext(variables, today))

    def __repr__(self) -> str:
        return f"Formula({self.source!r})"


@lru_cache(maxsize=1024)
def parse_formula(source: str) -> Formula:
    """Parse formula text, caching the result by text.

    Raises:
        FormulaSyntaxError: Empty or malformed formula
    """
    if source is None or not source.strip():
        raise FormulaSyntaxError("Formula cannot be empty", source)
    _check_braces(source)
    return Formula(source, _Parser(source).parse())


def evaluate_formula(
    formula: Union[str, Formula],
    variables: Mapping[str, Any],
    decimal_places: int = 2,
    today: Optional[date] = None
) -> Result[Any]:
    """Evaluate a formula against a variable map.

    Parameters:
        formula: Formula text or parsed formula
        variables: Values keyed by field name or ``measure:<name>``
        decimal_places: Half-up rounding applied to numeric results
        today: Date used by volatile functions (defaults to the current date)

    Returns:
        Result: Success with the value, or failure with error_type "Unresolvable"

    Raises:
        FormulaSyntaxError: Formula text cannot be parsed
    """
    parsed = formula if isinstance(formula, Formula) else parse_formula(formula)
    try:
        value = parsed.evaluate(variables, today)
        if isinstance(value, float):
            value = round_half_up(_finite(value), decimal_places)
    except Unresolvable as e:
        logger.debug(f"Formula {parsed.source!r} is unresolvable: {e}")
        return Result.failure_result(
            str(e),
            error_type=UNRESOLVABLE,
            error_details={"formula": parsed.source, "reference": e.reference}
        )
    return Result.success_result(value)


def validate_formula(formula: str) -> Dict[str, Any]:
    """Check formula syntax without evaluating it.

    Returns:
        Dictionary with ``valid``, ``error``, ``dependencies`` and ``volatile``
    """
    try:
        parsed = parse_formula(formula)
    except FormulaSyntaxError as e:
        return {"valid": False, "error": str(e), "dependencies": [], "volatile": False}
    return {
        "valid": True,
        "error": None,
        "dependencies": list(parsed.references),
        "volatile": parsed.is_volatile,
    }


def extract_dependencies(formula: str) -> List[str]:
    """Return the reference keys used by a formula, in order of appearance."""
    return list(parse_formula(formula).references)


def available_operators() -> Dict[str, List[Dict[str, Any]]]:
    """Describe the operators and functions usable in formulas."""
    return {
        "operators": list(OPERATORS),
        "functions": [
            {
                "name": function.name,
                "min_args": function.min_args,
                "max_args": function.max_args,
                "volatile": function.volatile,
                "description": function.description,
            }
            for function in FUNCTIONS.values()
        ],
    }
