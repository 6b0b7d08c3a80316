"""Expression evaluation for edge conditions and variable mappings.

Expressions are a safe subset of Python expression syntax, parsed with :mod:`ast`
and interpreted by walking the tree. Only whitelisted node types are accepted, so
evaluating an expression can never perform I/O or mutate state.

Supported:
    - literals, lists, tuples and dicts, plus ``true``/``false``/``null``
    - variable lookup by dotted path (``order.status``) and subscripts (``items[0]``)
    - arithmetic ``+ - * / // % **``, comparisons, ``in``/``not in``
    - ``and``/``or``/``not`` (``&&``/``||``/``!`` are accepted as aliases)
    - conditional expressions ``a if cond else b``
    - the pure builtins ``len min max abs round str int float bool``

Example:
    >>> evaluator = ExpressionEvaluator()
    >>> evaluator.evaluate("input.x + 1", {"input": {"x": 1}})
    2
    >>> evaluator.evaluate_condition("order.total >= 100 && !order.flagged", variables)
    True
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Mapping, MutableMapping
from functools import lru_cache
from types import MappingProxyType
from typing import Any

from litestar_orchestration.exceptions import (
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    UnknownVariableError,
)

__all__ = ["ExpressionEvaluator", "set_path"]

_BINARY_OPERATORS = MappingProxyType(
    {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
        ast.Pow: operator.pow,
    }
)

_COMPARE_OPERATORS = MappingProxyType(
    {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.In: lambda a, b: a in b,
        ast.NotIn: lambda a, b: a not in b,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
    }
)

_UNARY_OPERATORS = MappingProxyType(
    {
        ast.Not: operator.not_,
        ast.USub: operator.neg,
        ast.UAdd: operator.pos,
    }
)

_BUILTINS = MappingProxyType(
    {
        "len": len,
        "min": min,
        "max": max,
        "abs": abs,
        "round": round,
        "str": str,
        "int": int,
        "float": float,
        "bool": bool,
    }
)

_LITERALS = MappingProxyType({"true": True, "false": False, "null": None})

# Evaluation runs on the scheduler's event loop, so results must stay small.
_MAX_POWER_BITS = 4096
_MAX_SEQUENCE_LENGTH = 100_000

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.IfExp,
    ast.Call,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.Dict,
    *_BINARY_OPERATORS,
    *_COMPARE_OPERATORS,
    *_UNARY_OPERATORS,
)


def _normalize(expression: str) -> str:
    """Rewrite C-style boolean operators outside of string literals."""
    out: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(expression):
        char = expression[i]
        pair = expression[i : i + 2]
        if quote:
            out.append(char)
            if char == "\\" and i + 1 < len(expression):
                out.append(expression[i + 1])
                i += 1
            elif char == quote:
                quote = None
        elif char in "'\"":
            quote = char
            out.append(char)
        elif pair == "&&":
            out.append(" and ")
            i += 1
        elif pair == "||":
            out.append(" or ")
            i += 1
        elif char == "!" and pair != "!=":
            out.append(" not ")
        else:
            out.append(char)
        i += 1
    return "".join(out)


@lru_cache(maxsize=2048)
def _parse(expression: str) -> ast.Expression:
    try:
        tree = ast.parse(_normalize(expression).strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionSyntaxError(expression, f"Invalid syntax ({exc.msg})") from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionSyntaxError(expression, f"Unsupported construct '{type(node).__name__}'")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _BUILTINS:
                raise ExpressionSyntaxError(expression, "Only whitelisted builtin functions may be called")
            if node.keywords:
                raise ExpressionSyntaxError(expression, "Keyword arguments are not supported")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionSyntaxError(expression, f"Private attribute '{node.attr}' is not accessible")
    return tree


class ExpressionEvaluator:
    """Evaluates expressions against an instance's variables.

    The evaluator holds no mutable state; parsed trees are cached in a module level
    LRU cache, so a single evaluator can be shared by every scheduler worker.
    """

    def compile(self, expression: str) -> None:
        """Check that an expression parses and only uses supported constructs.

        Raises:
            ExpressionSyntaxError: If the expression is malformed.
        """
        _parse(expression)

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> Any:
        """Evaluate ``expression`` and return its value.

        Args:
            expression: The expression source text.
            variables: Variables visible to the expression.

        Returns:
            The value the expression evaluates to.

        Raises:
            ExpressionSyntaxError: If the expression is malformed.
            UnknownVariableError: If a referenced variable or path does not exist.
            ExpressionEvaluationError: If an operation fails, e.g. comparing ``str`` to ``int``.
        """
        tree = _parse(expression)
        return _Interpreter(expression, variables).visit(tree.body)

    def evaluate_condition(self, expression: str | None, variables: Mapping[str, Any]) -> bool:
        """Evaluate an edge condition. An empty condition is always true."""
        if expression is None or not expression.strip():
            return True
        return bool(self.evaluate(expression, variables))


class _Interpreter:
    __slots__ = ("expression", "variables")

    def __init__(self, expression: str, variables: Mapping[str, Any]) -> None:
        self.expression = expression
        self.variables = variables

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}")
        return method(node)

    def _fail(self, exc: Exception) -> ExpressionEvaluationError:
        return ExpressionEvaluationError(self.expression, f"{type(exc).__name__}: {exc}")

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.variables:
            return self.variables[node.id]
        if node.id in _LITERALS:
            return _LITERALS[node.id]
        raise UnknownVariableError(self.expression, node.id)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        base = self.visit(node.value)
        if isinstance(base, Mapping) and node.attr in base:
            return base[node.attr]
        raise UnknownVariableError(self.expression, ast.unparse(node))

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        base = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return base[key]
        except (KeyError, IndexError) as exc:
            raise UnknownVariableError(self.expression, ast.unparse(node)) from exc
        except TypeError as exc:
            raise self._fail(exc) from exc

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        value: Any = None
        for operand in node.values:
            value = self.visit(operand)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        try:
            return _UNARY_OPERATORS[type(node.op)](operand)
        except TypeError as exc:
            raise self._fail(exc) from exc

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        self._check_size(node.op, left, right)
        try:
            return _BINARY_OPERATORS[type(node.op)](left, right)
        except (TypeError, ZeroDivisionError, OverflowError) as exc:
            raise self._fail(exc) from exc

    def _check_size(self, op: ast.operator, left: Any, right: Any) -> None:
        """Reject operations whose result would be too large to compute."""
        if isinstance(op, ast.Pow) and _is_number(left) and _is_number(right):
            base_bits = max(abs(int(left)).bit_length(), 1) if isinstance(left, int) else 1
            if abs(left) > 1 and abs(right) * base_bits > _MAX_POWER_BITS:
                raise ExpressionEvaluationError(self.expression, "Exponent is too large")
        elif isinstance(op, ast.Mult):
            for sequence, count in ((left, right), (right, left)):
                if isinstance(sequence, (str, list, tuple)) and isinstance(count, int):
                    if len(sequence) * count > _MAX_SEQUENCE_LENGTH:
                        raise ExpressionEvaluationError(self.expression, "Repeated sequence is too long")
        elif isinstance(op, ast.Mod) and isinstance(left, str):
            raise ExpressionEvaluationError(self.expression, "String formatting is not supported")

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            try:
                ok = _COMPARE_OPERATORS[type(op)](left, right)
            except TypeError as exc:
                raise self._fail(exc) from exc
            if not ok:
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        func = _BUILTINS[node.func.id]  # type: ignore[attr-defined]
        args = [self.visit(arg) for arg in node.args]
        try:
            return func(*args)
        except (TypeError, ValueError) as exc:
            raise self._fail(exc) from exc

    def visit_List(self, node: ast.List) -> list[Any]:
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(element) for element in node.elts)

    def visit_Dict(self, node: ast.Dict) -> dict[Any, Any]:
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values) if k is not None}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def set_path(target: MutableMapping[str, Any], path: str, value: Any) -> None:
    """Assign ``value`` at a dotted ``path`` inside ``target``, creating nested dicts.

    Example:
        >>> variables = {}
        >>> set_path(variables, "patient.status", "admitted")
        >>> variables
        {'patient': {'status': 'admitted'}}
    """
    *parents, leaf = path.split(".")
    current = target
    for part in parents:
        child = current.get(part)
        if not isinstance(child, MutableMapping):
            child = {}
            current[part] = child
        current = child
    current[leaf] = value
