"""Restricted evaluation of author-supplied expressions and function bodies.

Conditional and function nodes never reach the host ``eval``. Source text is
parsed with :mod:`ast` and walked against an allowlist: literals, names bound
by the caller, boolean/numeric/comparison operators, subscripts, conditional
expressions and calls to explicitly allowed helpers. Attribute access,
comprehensions, lambdas and definitions are rejected before evaluation.
"""
from __future__ import annotations

import ast
import operator
import re
import string
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from flowkernel.logging import get_logger

logger = get_logger(__name__)


class ExpressionError(ValueError):
    """Raised when source text is rejected or fails during evaluation."""


_MAX_NESTING = 100
_MAX_EXPONENT = 1000
# Caps on values an expression may build
_MAX_SEQUENCE_LENGTH = 100_000
_MAX_INT_BITS = 100_000

_SEQUENCES = (str, bytes, list, tuple)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_int(value: Any) -> Any:
    if _is_int(value) and value.bit_length() > _MAX_INT_BITS:
        raise ExpressionError("integer result too large")
    return value


def _bounded_pow(base: Any, exponent: Any) -> Any:
    if isinstance(exponent, (int, float)) and abs(exponent) > _MAX_EXPONENT:
        raise ExpressionError("exponent too large")
    if _is_int(base) and _is_int(exponent) and exponent > 0:
        if base.bit_length() * exponent > _MAX_INT_BITS:
            raise ExpressionError("integer result too large")
    return base**exponent


def _bounded_mul(left: Any, right: Any) -> Any:
    for sequence, count in ((left, right), (right, left)):
        if isinstance(sequence, _SEQUENCES) and _is_int(count):
            if len(sequence) * max(count, 0) > _MAX_SEQUENCE_LENGTH:
                raise ExpressionError("repeated sequence too long")
    if _is_int(left) and _is_int(right):
        if left.bit_length() + right.bit_length() > _MAX_INT_BITS:
            raise ExpressionError("integer result too large")
    return left * right


def _bounded_add(left: Any, right: Any) -> Any:
    if isinstance(left, _SEQUENCES) and isinstance(right, _SEQUENCES):
        if len(left) + len(right) > _MAX_SEQUENCE_LENGTH:
            raise ExpressionError("concatenated sequence too long")
    return _check_int(left + right)


def _bounded_mod(left: Any, right: Any) -> Any:
    if isinstance(left, (str, bytes)):
        raise ExpressionError("printf-style formatting is not permitted; use format_string")
    return left % right


_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: _bounded_add,
    ast.Sub: lambda left, right: _check_int(left - right),
    ast.Mult: _bounded_mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: _bounded_mod,
    ast.Pow: _bounded_pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_CMP_OPS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda item, container: item in container,
    ast.NotIn: lambda item, container: item not in container,
}

# Rejected anywhere in the tree, before evaluation starts
_FORBIDDEN_SYNTAX = (
    ast.Attribute,
    ast.Starred,
    ast.NamedExpr,
    ast.Lambda,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.FunctionDef,
    ast.AsyncFunctionDef,
    ast.ClassDef,
    ast.Import,
    ast.ImportFrom,
    ast.Global,
    ast.Nonlocal,
)


class _Walker:
    """Evaluates one parsed tree; ``depth`` tracks nesting across visits."""

    def __init__(
        self,
        names: Mapping[str, Any],
        helpers: Mapping[str, Any] | None,
    ) -> None:
        self.names = names
        self.helpers = helpers or {}
        self.depth = 0

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"unsupported expression node: {type(node).__name__}")
        self.depth += 1
        if self.depth > _MAX_NESTING:
            raise ExpressionError("expression too deeply nested")
        try:
            return method(node)
        finally:
            self.depth -= 1

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        try:
            return self.names[node.id]
        except KeyError:
            raise ExpressionError(f"unknown name {node.id}") from None

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        # Returns the deciding operand, as Python does
        stop_on = not isinstance(node.op, ast.And)
        result: Any = not stop_on
        for operand in node.values:
            result = self.visit(operand)
            if bool(result) is stop_on:
                break
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        unary = _UNARY_OPS.get(type(node.op))
        if unary is None:
            raise ExpressionError("unsupported unary operator")
        try:
            return unary(self.visit(node.operand))
        except TypeError as exc:
            raise ExpressionError(str(exc)) from exc

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        binary = _BIN_OPS.get(type(node.op))
        if binary is None:
            raise ExpressionError("unsupported binary operator")
        lhs, rhs = self.visit(node.left), self.visit(node.right)
        try:
            return binary(lhs, rhs)
        except (TypeError, ZeroDivisionError, OverflowError) as exc:
            raise ExpressionError(str(exc)) from exc

    def visit_Compare(self, node: ast.Compare) -> bool:
        lhs = self.visit(node.left)
        for op, operand in zip(node.ops, node.comparators):
            compare = _CMP_OPS.get(type(op))
            if compare is None:
                raise ExpressionError("unsupported comparator")
            rhs = self.visit(operand)
            try:
                holds = compare(lhs, rhs)
            except TypeError as exc:
                raise ExpressionError(str(exc)) from exc
            if not holds:
                return False
            lhs = rhs
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        branch = node.body if self.visit(node.test) else node.orelse
        return self.visit(branch)

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name):
            raise ExpressionError("only named helpers can be called")
        helper = self.helpers.get(node.func.id)
        if helper is None or not callable(helper):
            raise ExpressionError(f"callable {node.func.id} is not permitted")
        if any(keyword.arg is None for keyword in node.keywords):
            raise ExpressionError("keyword unpacking (**kwargs) not permitted")
        args = [self.visit(arg) for arg in node.args]
        kwargs = {keyword.arg: self.visit(keyword.value) for keyword in node.keywords}
        return helper(*args, **kwargs)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        container = self.visit(node.value)
        if not isinstance(container, (Mapping, Sequence, str, bytes)):
            raise ExpressionError("subscript targets must be sequences or mappings")
        key = self.visit(node.slice)
        try:
            return container[key]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExpressionError(f"invalid subscript access: {exc}") from exc

    def visit_Slice(self, node: ast.Slice) -> slice:
        bounds = (node.lower, node.upper, node.step)
        return slice(*(None if part is None else self.visit(part) for part in bounds))

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(item) for item in node.elts)

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(item) for item in node.elts]

    def visit_Dict(self, node: ast.Dict) -> dict:
        if None in node.keys:
            raise ExpressionError("dict unpacking not permitted")
        return {self.visit(key): self.visit(value) for key, value in zip(node.keys, node.values)}


def _parse(source: str, mode: str, what: str) -> ast.AST:
    try:
        tree = ast.parse(source.strip(), mode=mode)
    except SyntaxError as exc:
        raise ExpressionError(f"invalid {what}: {exc.msg}") from exc
    for node in ast.walk(tree):
        if isinstance(node, _FORBIDDEN_SYNTAX):
            raise ExpressionError(f"disallowed syntax in expression: {type(node).__name__}")
    return tree


def safe_eval_expr(
    expr: str,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any] | None = None,
) -> Any:
    """Evaluate one expression against ``names`` and the allowed helpers."""
    return _Walker(names, allowed_callables).visit(_parse(expr, "eval", "expression"))


def safe_eval_block(
    source: str,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any] | None = None,
) -> Any:
    """Evaluate ``name = expr`` lines followed by a final expression.

    Assignments bind into a local scope layered over ``names``; the value of
    the last statement is returned. A block ending in an assignment returns
    the assigned value, and an empty block returns ``None``.
    """
    tree = _parse(source, "exec", "function body")
    scope: Dict[str, Any] = dict(names)
    walker = _Walker(scope, allowed_callables)
    result: Any = None
    for statement in tree.body:
        if isinstance(statement, ast.Pass):
            continue
        if isinstance(statement, ast.Return):
            return None if statement.value is None else walker.visit(statement.value)
        if isinstance(statement, ast.Expr):
            result = walker.visit(statement.value)
        elif isinstance(statement, ast.Assign):
            targets = statement.targets
            if len(targets) != 1 or not isinstance(targets[0], ast.Name):
                raise ExpressionError("only single-name assignment is permitted")
            result = scope[targets[0].id] = walker.visit(statement.value)
        else:
            raise ExpressionError(f"unsupported statement: {type(statement).__name__}")
    return result


# Helpers exposed to function bodies

_FORMATTER = string.Formatter()


def format_string(template: str, *args: Any, **kwargs: Any) -> str:
    """Positional ``{0}`` and named ``{name}`` substitution.

    Fields may not reach into attributes or items (``{0.x}``, ``{0[k]}``),
    nest fields inside a format spec, or pad beyond the sequence cap.
    """
    text = str(template)
    try:
        fields = list(_FORMATTER.parse(text))
    except ValueError as exc:
        raise ExpressionError(f"invalid format string: {exc}") from exc
    for _literal, field, spec, _conversion in fields:
        if field is None:
            continue
        if "." in field or "[" in field:
            raise ExpressionError(f"format field {field!r} is not permitted")
        if spec and ("{" in spec or any(
            int(width) > _MAX_SEQUENCE_LENGTH for width in re.findall(r"\d+", spec)
        )):
            raise ExpressionError(f"format spec {spec!r} is not permitted")
    result = text.format(*args, **kwargs)
    if len(result) > _MAX_SEQUENCE_LENGTH:
        raise ExpressionError("formatted string too long")
    return result


def unique(items: Sequence[Any]) -> list:
    seen: list = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def group_by(items: Sequence[Mapping[str, Any]], key: str) -> dict:
    groups: dict = {}
    for item in items:
        groups.setdefault(item.get(key) if isinstance(item, Mapping) else None, []).append(item)
    return groups


def pick(mapping: Mapping[str, Any], *keys: str) -> dict:
    return {key: mapping[key] for key in keys if key in mapping}


def omit(mapping: Mapping[str, Any], *keys: str) -> dict:
    return {key: value for key, value in mapping.items() if key not in keys}


def get_path(value: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path through mappings and sequences."""
    current = value
    for part in str(path).split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def format_date(value: Any = None, fmt: str = "%Y-%m-%d") -> str:
    if value is None:
        moment = datetime.now(timezone.utc)
    elif isinstance(value, datetime):
        moment = value
    elif isinstance(value, (int, float)):
        moment = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        moment = datetime.fromisoformat(str(value))
    return moment.strftime(fmt)


def _join(items: Sequence[Any], separator: str = "") -> str:
    return str(separator).join(str(item) for item in items)


def _split(text: str, separator: Optional[str] = None) -> list:
    return str(text).split(separator)


DEFAULT_HELPERS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "round": round,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "sorted": sorted,
    "list": list,
    "dict": dict,
    "lower": lambda text: str(text).lower(),
    "upper": lambda text: str(text).upper(),
    "strip": lambda text: str(text).strip(),
    "join": _join,
    "split": _split,
    "format_string": format_string,
    "unique": unique,
    "group_by": group_by,
    "pick": pick,
    "omit": omit,
    "get": get_path,
    "format_date": format_date,
}

LITERAL_NAMES: Dict[str, Any] = {"true": True, "false": False, "null": None}


class SafeExpressionEvaluator:
    """Evaluator used by conditional and function nodes.

    ``evaluate`` treats ``source`` as a single expression when it parses as one
    and as a block of assignments otherwise. Errors raised by helpers are
    wrapped in :class:`ExpressionError` so callers see one failure type.
    """

    def __init__(self, helpers: Optional[Mapping[str, Callable[..., Any]]] = None) -> None:
        self.helpers: Dict[str, Callable[..., Any]] = dict(DEFAULT_HELPERS)
        if helpers:
            self.helpers.update(helpers)

    def evaluate(self, source: str, bindings: Mapping[str, Any]) -> Any:
        if not isinstance(source, str) or not source.strip():
            raise ExpressionError("empty expression")
        names = {**LITERAL_NAMES, **bindings}
        try:
            ast.parse(source.strip(), mode="eval")
        except SyntaxError:
            runner = safe_eval_block
        else:
            runner = safe_eval_expr
        try:
            return runner(source, names, self.helpers)
        except ExpressionError:
            raise
        except (TypeError, ValueError, KeyError, IndexError, ZeroDivisionError) as exc:
            logger.debug("expression_helper_failed", error=str(exc))
            raise ExpressionError(str(exc)) from exc


__all__ = [
    "ExpressionError",
    "SafeExpressionEvaluator",
    "safe_eval_expr",
    "safe_eval_block",
    "DEFAULT_HELPERS",
]
