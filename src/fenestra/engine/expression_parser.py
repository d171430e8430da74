# src/fenestra/engine/expression_parser.py
"""Safe expression evaluator for conditional units and decision tables.

Uses Python's ast module to parse expressions in a restricted subset of
Python. This is NOT eval() - it's a secure whitelist-based parser.

The parser operates in three phases:
1. Parse: ast.parse in "eval" mode
2. Validate: reject forbidden constructs, collecting every violation
3. Lower: convert the validated Python AST into a small tree of typed nodes

Evaluation walks the typed tree with an exhaustive match, so adding a node
kind without teaching the evaluator about it is a type error, not a silent
fallthrough.

Bare names resolve against the attempt's RunVariableBag:

    parser = ExpressionParser("region == 'eu' and row_count > 1000")
    parser.evaluate({"region": "eu", "row_count": 5000})  # True
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeAlias, assert_never


class ExpressionSecurityError(Exception):
    """Raised when expression contains forbidden constructs."""


class ExpressionSyntaxError(Exception):
    """Raised when expression is not valid Python syntax."""


class ExpressionEvaluationError(Exception):
    """Raised when expression evaluation fails at runtime.

    Wraps operational errors (unknown variable, ZeroDivisionError, TypeError)
    that occur when a valid expression meets the variable bag. The original
    exception is chained via __cause__ for debugging.
    """


class CompareOp(StrEnum):
    EQ = "=="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    IN = "in"
    NOT_IN = "not in"
    IS = "is"
    IS_NOT = "is not"


class ArithOp(StrEnum):
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    FLOOR_DIV = "//"
    MOD = "%"


class BoolOperator(StrEnum):
    AND = "and"
    OR = "or"


class UnaryArith(StrEnum):
    NEG = "-"
    POS = "+"


_AST_COMPARE: dict[type[ast.cmpop], CompareOp] = {
    ast.Eq: CompareOp.EQ,
    ast.NotEq: CompareOp.NE,
    ast.Lt: CompareOp.LT,
    ast.LtE: CompareOp.LE,
    ast.Gt: CompareOp.GT,
    ast.GtE: CompareOp.GE,
    ast.In: CompareOp.IN,
    ast.NotIn: CompareOp.NOT_IN,
    ast.Is: CompareOp.IS,
    ast.IsNot: CompareOp.IS_NOT,
}

_AST_ARITH: dict[type[ast.operator], ArithOp] = {
    ast.Add: ArithOp.ADD,
    ast.Sub: ArithOp.SUB,
    ast.Mult: ArithOp.MUL,
    ast.Div: ArithOp.DIV,
    ast.FloorDiv: ArithOp.FLOOR_DIV,
    ast.Mod: ArithOp.MOD,
}

_AST_BOOL: dict[type[ast.boolop], BoolOperator] = {
    ast.And: BoolOperator.AND,
    ast.Or: BoolOperator.OR,
}

_COMPARE_FUNCS: dict[CompareOp, Callable[[Any, Any], bool]] = {
    CompareOp.EQ: operator.eq,
    CompareOp.NE: operator.ne,
    CompareOp.LT: operator.lt,
    CompareOp.LE: operator.le,
    CompareOp.GT: operator.gt,
    CompareOp.GE: operator.ge,
    CompareOp.IN: lambda a, b: a in b,
    CompareOp.NOT_IN: lambda a, b: a not in b,
    CompareOp.IS: operator.is_,
    CompareOp.IS_NOT: operator.is_not,
}

_ARITH_FUNCS: dict[ArithOp, Callable[[Any, Any], Any]] = {
    ArithOp.ADD: operator.add,
    ArithOp.SUB: operator.sub,
    ArithOp.MUL: operator.mul,
    ArithOp.DIV: operator.truediv,
    ArithOp.FLOOR_DIV: operator.floordiv,
    ArithOp.MOD: operator.mod,
}

# Whitelisted helper functions. Pure, total on their documented inputs.
FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "abs": abs,
    "min": min,
    "max": max,
    "lower": lambda s: s.lower(),
    "upper": lambda s: s.upper(),
    "startswith": lambda s, prefix: s.startswith(prefix),
    "endswith": lambda s, suffix: s.endswith(suffix),
    "contains": lambda s, part: part in s,
}

LiteralValue: TypeAlias = str | int | float | bool | None


# === Typed expression tree ===


@dataclass(frozen=True, slots=True)
class Literal:
    value: LiteralValue


@dataclass(frozen=True, slots=True)
class VarRef:
    """Lookup of a variable in the RunVariableBag."""

    name: str


@dataclass(frozen=True, slots=True)
class Index:
    """``target[key]`` on a list or mapping value."""

    target: Node
    key: Node


@dataclass(frozen=True, slots=True)
class ListLiteral:
    items: tuple[Node, ...]


@dataclass(frozen=True, slots=True)
class Compare:
    """A comparison chain: ``a < b <= c`` is ``left=a, rest=((LT, b), (LE, c))``."""

    left: Node
    rest: tuple[tuple[CompareOp, Node], ...]


@dataclass(frozen=True, slots=True)
class BoolOp:
    op: BoolOperator
    operands: tuple[Node, ...]


@dataclass(frozen=True, slots=True)
class Not:
    operand: Node


@dataclass(frozen=True, slots=True)
class Arith:
    op: ArithOp
    left: Node
    right: Node


@dataclass(frozen=True, slots=True)
class Unary:
    op: UnaryArith
    operand: Node


@dataclass(frozen=True, slots=True)
class Conditional:
    """``body if test else orelse``."""

    test: Node
    body: Node
    orelse: Node


@dataclass(frozen=True, slots=True)
class Call:
    """Call of a whitelisted helper from FUNCTIONS."""

    func: str
    args: tuple[Node, ...]


Node: TypeAlias = Literal | VarRef | Index | ListLiteral | Compare | BoolOp | Not | Arith | Unary | Conditional | Call


class _ExpressionValidator(ast.NodeVisitor):
    """AST visitor that validates expressions for security.

    Collects every violation so a config author sees all problems at once.
    """

    def __init__(self) -> None:
        self.errors: list[str] = []

    def _is_none_constant(self, node: ast.expr) -> bool:
        return isinstance(node, ast.Constant) and node.value is None

    def visit_Expression(self, node: ast.Expression) -> None:
        self.visit(node.body)

    def visit_Name(self, node: ast.Name) -> None:
        """Variables are any public identifier; no dunder or private names."""
        if node.id.startswith("_"):
            self.errors.append(f"Forbidden name: {node.id!r}")
        elif node.id in FUNCTIONS:
            self.errors.append(f"Function {node.id!r} must be called, not referenced")

    def visit_Subscript(self, node: ast.Subscript) -> None:
        if isinstance(node.slice, ast.Slice):
            self.errors.append("Slice syntax (e.g., [1:3]) is forbidden")
            return
        self.generic_visit(node)

    def visit_Slice(self, node: ast.Slice) -> None:
        self.errors.append("Slice syntax (e.g., [1:3]) is forbidden")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        self.errors.append(f"Forbidden attribute access: {node.attr!r}")

    def visit_Call(self, node: ast.Call) -> None:
        """Allow only whitelisted helper functions, positional arguments only."""
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            self.errors.append(f"Forbidden function call: {ast.unparse(node.func)}")
            return
        if node.keywords:
            self.errors.append(f"{node.func.id}() does not accept keyword arguments")
        for arg in node.args:
            self.visit(arg)

    def visit_Compare(self, node: ast.Compare) -> None:
        all_operands = [node.left, *node.comparators]
        for i, op in enumerate(node.ops):
            if type(op) not in _AST_COMPARE:
                self.errors.append(f"Forbidden comparison operator: {type(op).__name__}")
            # Restrict is/is not to None checks only
            elif isinstance(op, ast.Is | ast.IsNot):
                if not (self._is_none_constant(all_operands[i]) or self._is_none_constant(all_operands[i + 1])):
                    self.errors.append("'is' and 'is not' operators are only allowed for None checks")
        self.generic_visit(node)

    def visit_BoolOp(self, node: ast.BoolOp) -> None:
        if type(node.op) not in _AST_BOOL:
            self.errors.append(f"Forbidden boolean operator: {type(node.op).__name__}")
        self.generic_visit(node)

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if type(node.op) not in _AST_ARITH:
            self.errors.append(f"Forbidden binary operator: {type(node.op).__name__}")
        self.generic_visit(node)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if not isinstance(node.op, ast.Not | ast.USub | ast.UAdd):
            self.errors.append(f"Forbidden unary operator: {type(node.op).__name__}")
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if node.value is None or isinstance(node.value, str | int | float | bool):
            return
        self.errors.append(f"Forbidden constant type: {type(node.value).__name__}")

    def visit_List(self, node: ast.List) -> None:
        self.generic_visit(node)

    def visit_Tuple(self, node: ast.Tuple) -> None:
        # Tuples behave as list literals for membership checks
        self.generic_visit(node)

    def visit_IfExp(self, node: ast.IfExp) -> None:
        self.generic_visit(node)

    def generic_visit(self, node: ast.AST) -> None:
        # Expression kinds without a visit_ method above are forbidden:
        # lambda, comprehensions, await, yield, :=, f-strings, starred, dict, set
        if isinstance(node, ast.expr) and not isinstance(node, _ALLOWED_EXPR_TYPES):
            self.errors.append(f"Forbidden construct: {type(node).__name__}")
            return
        if isinstance(node, ast.expr_context | ast.cmpop | ast.operator | ast.boolop | ast.unaryop):
            return
        super().generic_visit(node)


_ALLOWED_EXPR_TYPES = (
    ast.Name,
    ast.Subscript,
    ast.Call,
    ast.Compare,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Constant,
    ast.List,
    ast.Tuple,
    ast.IfExp,
)


def _lower(node: ast.expr) -> Node:
    """Convert a validated Python AST node into the typed tree."""
    if isinstance(node, ast.Constant):
        return Literal(node.value)
    if isinstance(node, ast.Name):
        return VarRef(node.id)
    if isinstance(node, ast.Subscript):
        return Index(_lower(node.value), _lower(node.slice))
    if isinstance(node, ast.List | ast.Tuple):
        return ListLiteral(tuple(_lower(elt) for elt in node.elts))
    if isinstance(node, ast.Compare):
        rest = tuple(
            (_AST_COMPARE[type(op)], _lower(comparator)) for op, comparator in zip(node.ops, node.comparators, strict=True)
        )
        return Compare(_lower(node.left), rest)
    if isinstance(node, ast.BoolOp):
        return BoolOp(_AST_BOOL[type(node.op)], tuple(_lower(v) for v in node.values))
    if isinstance(node, ast.UnaryOp):
        if isinstance(node.op, ast.Not):
            return Not(_lower(node.operand))
        op = UnaryArith.NEG if isinstance(node.op, ast.USub) else UnaryArith.POS
        return Unary(op, _lower(node.operand))
    if isinstance(node, ast.BinOp):
        return Arith(_AST_ARITH[type(node.op)], _lower(node.left), _lower(node.right))
    if isinstance(node, ast.IfExp):
        return Conditional(_lower(node.test), _lower(node.body), _lower(node.orelse))
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
        return Call(node.func.id, tuple(_lower(arg) for arg in node.args))
    # Validation guarantees we never get here
    raise ExpressionSecurityError(f"Unsupported construct: {type(node).__name__}")


def evaluate_node(node: Node, variables: Mapping[str, Any]) -> Any:
    """Evaluate a typed expression tree against a variable bag."""
    match node:
        case Literal(value=value):
            return value
        case VarRef(name=name):
            try:
                return variables[name]
            except KeyError as e:
                msg = f"Variable '{name}' not found. Available variables: {sorted(variables)}"
                raise ExpressionEvaluationError(msg) from e
        case Index(target=target, key=key_node):
            value = evaluate_node(target, variables)
            key = evaluate_node(key_node, variables)
            try:
                return value[key]
            except KeyError as e:
                msg = f"Key '{key}' not found in {type(value).__name__}"
                raise ExpressionEvaluationError(msg) from e
            except IndexError as e:
                msg = f"Index {key} out of range for {type(value).__name__} of length {len(value)}"
                raise ExpressionEvaluationError(msg) from e
            except TypeError as e:
                msg = f"Cannot access '{key}' on {type(value).__name__}: {e}"
                raise ExpressionEvaluationError(msg) from e
        case ListLiteral(items=items):
            return [evaluate_node(item, variables) for item in items]
        case Compare(left=left_node, rest=rest):
            left = evaluate_node(left_node, variables)
            for op, right_node in rest:
                right = evaluate_node(right_node, variables)
                try:
                    if not _COMPARE_FUNCS[op](left, right):
                        return False
                except TypeError as e:
                    msg = f"type error in comparison ({op.value}): cannot compare {type(left).__name__} and {type(right).__name__}"
                    raise ExpressionEvaluationError(msg) from e
                left = right
            return True
        case BoolOp(op=BoolOperator.AND, operands=operands):
            result: Any = True
            for operand in operands:
                result = evaluate_node(operand, variables)
                if not result:
                    return result
            return result
        case BoolOp(op=BoolOperator.OR, operands=operands):
            result = False
            for operand in operands:
                result = evaluate_node(operand, variables)
                if result:
                    return result
            return result
        case BoolOp():
            raise ExpressionSecurityError(f"Unknown boolean operator: {node.op}")
        case Not(operand=operand):
            return not evaluate_node(operand, variables)
        case Arith(op=op, left=left_node, right=right_node):
            left = evaluate_node(left_node, variables)
            right = evaluate_node(right_node, variables)
            try:
                return _ARITH_FUNCS[op](left, right)
            except ZeroDivisionError as e:
                raise ExpressionEvaluationError(f"division by zero in '{op.value}' operation") from e
            except TypeError as e:
                msg = f"type error in '{op.value}': cannot apply to {type(left).__name__} and {type(right).__name__}"
                raise ExpressionEvaluationError(msg) from e
        case Unary(op=op, operand=operand_node):
            operand_value = evaluate_node(operand_node, variables)
            try:
                return -operand_value if op is UnaryArith.NEG else +operand_value
            except TypeError as e:
                msg = f"type error in unary '{op.value}': cannot apply to {type(operand_value).__name__}"
                raise ExpressionEvaluationError(msg) from e
        case Conditional(test=test, body=body, orelse=orelse):
            if evaluate_node(test, variables):
                return evaluate_node(body, variables)
            return evaluate_node(orelse, variables)
        case Call(func=func, args=arg_nodes):
            args = [evaluate_node(arg, variables) for arg in arg_nodes]
            try:
                return FUNCTIONS[func](*args)
            except (TypeError, ValueError, AttributeError) as e:
                raise ExpressionEvaluationError(f"{func}() failed: {e}") from e
        case _:
            assert_never(node)


def _is_boolean_node(node: Node) -> bool:
    match node:
        case Compare() | Not():
            return True
        # `x or 'default'` returns a string, so BoolOp is only boolean if all operands are
        case BoolOp(operands=operands):
            return all(_is_boolean_node(o) for o in operands)
        case Literal(value=value):
            return isinstance(value, bool)
        case Conditional(body=body, orelse=orelse):
            return _is_boolean_node(body) and _is_boolean_node(orelse)
        case Call(func=func):
            return func in ("startswith", "endswith", "contains")
        case VarRef() | Index() | ListLiteral() | Arith() | Unary():
            return False
        case _:
            assert_never(node)


def _collect_variables(node: Node, into: set[str]) -> None:
    match node:
        case VarRef(name=name):
            into.add(name)
        case Literal():
            pass
        case Index(target=target, key=key):
            _collect_variables(target, into)
            _collect_variables(key, into)
        case ListLiteral(items=items) | BoolOp(operands=items) | Call(args=items):
            for item in items:
                _collect_variables(item, into)
        case Compare(left=left, rest=rest):
            _collect_variables(left, into)
            for _, right in rest:
                _collect_variables(right, into)
        case Not(operand=operand) | Unary(operand=operand):
            _collect_variables(operand, into)
        case Arith(left=left, right=right):
            _collect_variables(left, into)
            _collect_variables(right, into)
        case Conditional(test=test, body=body, orelse=orelse):
            _collect_variables(test, into)
            _collect_variables(body, into)
            _collect_variables(orelse, into)
        case _:
            assert_never(node)


class ExpressionParser:
    """Safe expression parser over a RunVariableBag.

    Parses, validates and lowers the expression at construction time, so a
    bad expression fails configuration loading rather than an attempt.

    Allowed operations:
    - Variable lookup by bare name: region, row_count
    - Indexing: tables[0], limits['eu']
    - Comparisons: ==, !=, <, >, <=, >= (chained)
    - Boolean operators: and, or, not
    - Membership: in, not in
    - Identity: is, is not (for None checks)
    - Literals: strings, numbers, booleans, None, lists
    - Ternary expressions: x if condition else y
    - Arithmetic and string concatenation: +, -, *, /, //, %
    - Helpers: len, str, int, abs, min, max, lower, upper, startswith,
      endswith, contains

    Forbidden operations:
    - Any other function call, attribute access
    - Lambda expressions, comprehensions
    - Assignment expressions (:=), await, yield
    - f-strings, starred expressions, dict and set literals
    - Names starting with an underscore
    """

    def __init__(self, expression: str) -> None:
        """Parse and validate expression at construction time.

        Raises:
            ExpressionSecurityError: If expression contains forbidden constructs
            ExpressionSyntaxError: If expression is not valid Python syntax
        """
        self._expression = expression

        try:
            tree = ast.parse(expression, mode="eval")
        except SyntaxError as e:
            msg = f"Invalid syntax: {e.msg}"
            raise ExpressionSyntaxError(msg) from e

        validator = _ExpressionValidator()
        validator.visit(tree)
        if validator.errors:
            raise ExpressionSecurityError("; ".join(validator.errors))

        self._node = _lower(tree.body)

    @property
    def expression(self) -> str:
        """Return the original expression string."""
        return self._expression

    @property
    def node(self) -> Node:
        """Return the typed expression tree."""
        return self._node

    def is_boolean_expression(self) -> bool:
        """Check if the expression statically returns a boolean.

        Used at config validation: conditions and decision rules must be
        boolean expressions.
        """
        return _is_boolean_node(self._node)

    def variables(self) -> frozenset[str]:
        """Names of all variables the expression reads."""
        names: set[str] = set()
        _collect_variables(self._node, names)
        return frozenset(names)

    def evaluate(self, variables: Mapping[str, Any]) -> Any:
        """Evaluate expression against the variable bag."""
        return evaluate_node(self._node, variables)

    def __repr__(self) -> str:
        return f"ExpressionParser({self._expression!r})"
