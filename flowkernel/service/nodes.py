"""Per-type node handlers.

``NodeDispatcher.execute`` runs one node against an ``ExecutionContext`` and
returns the node's output, raising ``NodeExecutionError`` (or any other
exception) when the node cannot produce one. The orchestrator owns error
isolation, timing and retries; handlers stay testable with a bare context.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import keyword
import re
from collections.abc import Mapping, Sequence
from typing import Any, Callable, Dict, Optional

from flowkernel.config import Settings
from flowkernel.logging import get_logger
from flowkernel.models import Node, NodeType
from flowkernel.service.context import (
    PLACEHOLDER_PATTERN,
    ExecutionContext,
    input_key,
    lookup_path,
    resolve,
    stringify,
)
from flowkernel.service.errors import NodeExecutionError, UnsupportedNodeType
from flowkernel.service.llm import CompletionService
from flowkernel.service.rag import RetrievalService
from flowkernel.service.sandbox import ExpressionError, SafeExpressionEvaluator
from flowkernel.service.web_search import WebSearchService

logger = get_logger(__name__)

COMPARISON_OPERATORS = (
    "==",
    "===",
    "!=",
    "!==",
    ">",
    ">=",
    "<",
    "<=",
    "contains",
    "startsWith",
    "endsWith",
    "matches",
)

# Quoted literals in a condition; operator rewriting skips them
_STRING_LITERAL = re.compile(r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")""")

_JS_OPERATORS = (("===", "=="), ("!==", "!="), ("&&", " and "), ("||", " or "))

_NUMBER_PATTERN = re.compile(r"^\s*-?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?\s*$")


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def call_off_loop(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Await coroutine functions; run anything else in a worker thread.

    Keeps blocking collaborators and evaluator work off the event loop so the
    orchestrator's node timeout can fire while they run.
    """
    if inspect.iscoroutinefunction(func):
        return await func(*args, **kwargs)
    return await maybe_await(await asyncio.to_thread(func, *args, **kwargs))


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _coerce_number(value: Any) -> Any:
    if isinstance(value, str) and _NUMBER_PATTERN.match(value):
        number = float(value)
        return int(number) if number.is_integer() and "." not in value else number
    return value


def _same_kind(left: Any, right: Any) -> bool:
    numeric = (int, float)
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right)
    if isinstance(left, numeric) and isinstance(right, numeric):
        return True
    return type(left) is type(right)


def compare(left: Any, operator: str, right: Any) -> bool:
    """Apply a comparison operator after numeric-string coercion."""
    left = _coerce_number(left)
    right = _coerce_number(right)
    try:
        if operator == "==":
            return left == right
        if operator == "===":
            return _same_kind(left, right) and left == right
        if operator == "!=":
            return left != right
        if operator == "!==":
            return not (_same_kind(left, right) and left == right)
        if operator == ">":
            return left > right
        if operator == ">=":
            return left >= right
        if operator == "<":
            return left < right
        if operator == "<=":
            return left <= right
    except TypeError as exc:
        raise NodeExecutionError(
            f"Cannot compare {type(left).__name__} {operator} {type(right).__name__}"
        ) from exc
    if operator == "contains":
        if isinstance(left, str):
            return stringify(right) in left
        if isinstance(left, (list, tuple, set, Mapping)):
            return right in left
        return False
    if operator == "startsWith":
        return isinstance(left, str) and left.startswith(stringify(right))
    if operator == "endsWith":
        return isinstance(left, str) and left.endswith(stringify(right))
    if operator == "matches":
        if not isinstance(left, str):
            return False
        try:
            return re.search(stringify(right), left) is not None
        except re.error as exc:
            raise NodeExecutionError(f"Invalid pattern: {exc}") from exc
    raise NodeExecutionError(f"Unsupported operator: {operator}")


def _operand(raw: Any, context: ExecutionContext) -> Any:
    """Resolve a comparison operand.

    A whole-string ``{{path}}`` yields the raw context value, a bare context
    key yields its value, anything else is interpolated as a literal.
    """
    if not isinstance(raw, str):
        return raw
    whole = PLACEHOLDER_PATTERN.fullmatch(raw.strip())
    if whole:
        found, value = lookup_path(context, whole.group(1))
        if found:
            return value
    if raw in context:
        return context[raw]
    return resolve(raw, context)


def _python_literal(value: Any) -> str:
    if isinstance(value, (str, int, float, bool, type(None), list, dict, tuple)):
        return repr(value)
    return repr(stringify(value))


def _name_bindings(context: ExecutionContext) -> Dict[str, Any]:
    return {
        key: context[key]
        for key in context
        if key.isidentifier() and not keyword.iskeyword(key)
    }


def _convert(value: Any, data_type: Optional[str]) -> Any:
    if value is None:
        return None
    if not data_type:
        if isinstance(value, Mapping) and "text" in value:
            return value["text"]
        return value
    if data_type == "string":
        if isinstance(value, Mapping) and "text" in value:
            return stringify(value["text"])
        return stringify(value)
    if data_type == "number":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        coerced = _coerce_number(str(value).strip())
        if isinstance(coerced, (int, float)):
            return coerced
        raise NodeExecutionError(f"Cannot convert {stringify(value)!r} to number")
    if data_type == "boolean":
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "1", "yes"}:
                return True
            if lowered in {"false", "0", "no", ""}:
                return False
        return bool(value)
    if data_type == "object":
        if isinstance(value, Mapping):
            return dict(value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                return parsed
        return {"value": value}
    if data_type == "array":
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return parsed
        return [value]
    raise NodeExecutionError(f"Unsupported dataType: {data_type}")


class NodeDispatcher:
    """Runs a single node of any known type."""

    def __init__(
        self,
        *,
        completion: Optional[CompletionService] = None,
        retrieval: Optional[RetrievalService] = None,
        web_search: Optional[WebSearchService] = None,
        evaluator: Optional[SafeExpressionEvaluator] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.completion = completion
        self.retrieval = retrieval
        self.web_search = web_search
        self.evaluator = evaluator or SafeExpressionEvaluator()
        self.settings = settings or Settings()
        self.functions = self._build_function_registry()

    async def execute(self, node: Node, context: ExecutionContext) -> Any:
        try:
            node_type = node.node_type
        except ValueError as exc:
            raise UnsupportedNodeType(f"Unsupported node type: {node.type}") from exc
        handler = getattr(self, _HANDLERS[node_type])
        return await maybe_await(handler(node, context))

    # trigger / input / output

    def _run_trigger(self, node: Node, context: ExecutionContext) -> Any:
        configured = node.data.get("payload")
        staged = context.get(input_key(node.id))
        if isinstance(configured, Mapping) and isinstance(staged, Mapping):
            payload: Any = {**configured, **staged}
        elif staged is not None:
            payload = staged
        elif configured is not None:
            payload = configured
        else:
            payload = {}
        if isinstance(payload, Mapping):
            for key, value in payload.items():
                context.setdefault(str(key), value, writer=node.id)
        output_variable = node.data.get("outputVariable")
        if output_variable:
            context.set(output_variable, payload, writer=node.id)
        return payload

    def _run_input(self, node: Node, context: ExecutionContext) -> Any:
        data = node.data
        value = data.get("value")
        if _is_blank(value):
            variable = data.get("variableName")
            value = context.lookup(variable) if variable else None
        if _is_blank(value):
            value = data.get("defaultValue")
        if _is_blank(value):
            if data.get("required"):
                raise NodeExecutionError(
                    f"Input {data.get('variableName') or node.id} is required"
                )
            value = {}
        if isinstance(value, str):
            value = resolve(value, context)
        return value

    def _run_output(self, node: Node, context: ExecutionContext) -> Any:
        data = node.data
        if "value" in data and data["value"] is not None:
            raw = data["value"]
            value = resolve(raw, context) if isinstance(raw, str) else raw
        else:
            value = context.get(input_key(node.id))
        value = _convert(value, data.get("dataType"))
        variable = data.get("variableName") or node.id
        context.set(variable, value, writer=node.id)
        return value

    # conditional

    async def _run_conditional(self, node: Node, context: ExecutionContext) -> dict:
        data = node.data
        mode = data.get("conditionType")
        if not mode:
            if data.get("operator"):
                mode = "comparison"
            elif data.get("variable"):
                mode = "exists"
            else:
                mode = "expression"

        if mode == "comparison":
            operator = data.get("operator") or "=="
            if operator not in COMPARISON_OPERATORS:
                raise NodeExecutionError(f"Unsupported operator: {operator}")
            raw_left = data.get("left", data.get("leftValue"))
            raw_right = data.get("right", data.get("rightValue"))
            left = _operand(raw_left, context)
            right = _operand(raw_right, context)
            result = compare(left, operator, right)
            condition = f"{stringify(raw_left)} {operator} {stringify(raw_right)}"
            evaluated = f"{stringify(left)} {operator} {stringify(right)}"
        elif mode == "exists":
            variable = data.get("variable")
            if not variable:
                raise NodeExecutionError("Exists condition requires a variable")
            found, value = lookup_path(context, str(variable))
            result = found and value is not None
            condition = f"exists {variable}"
            evaluated = condition
        elif mode == "expression":
            condition = data.get("condition") or data.get("expression")
            if _is_blank(condition):
                raise NodeExecutionError("Conditional node requires a condition")
            evaluated = self._substitute_literals(str(condition), context)
            try:
                outcome = await call_off_loop(
                    self.evaluator.evaluate, evaluated, _name_bindings(context)
                )
            except ExpressionError as exc:
                raise NodeExecutionError(f"Condition evaluation failed: {exc}") from exc
            result = bool(outcome)
        else:
            raise NodeExecutionError(f"Unsupported condition type: {mode}")

        logger.debug("conditional_evaluated", node=node.id, mode=mode, result=result)
        return {
            "result": result,
            "condition": condition,
            "path": "true" if result else "false",
            "evaluatedExpression": evaluated,
        }

    @staticmethod
    def _substitute_literals(expression: str, context: ExecutionContext) -> str:
        def _replace(match: re.Match) -> str:
            found, value = lookup_path(context, match.group(1))
            return _python_literal(value if found else None)

        # Operators are rewritten in the author's text only, never inside
        # quoted literals or substituted values
        parts = _STRING_LITERAL.split(expression)
        for index in range(0, len(parts), 2):
            for source, target in _JS_OPERATORS:
                parts[index] = parts[index].replace(source, target)
        return PLACEHOLDER_PATTERN.sub(_replace, "".join(parts))

    # function

    async def _run_function(self, node: Node, context: ExecutionContext) -> Any:
        data = node.data
        code = data.get("code")
        if not _is_blank(code):
            bindings = _name_bindings(context)
            selected = data.get("inputVariables") or []
            bindings["inputs"] = {name: context.lookup(name) for name in selected}
            bindings["context"] = context.snapshot()
            bindings["upstream"] = context.get(input_key(node.id))
            try:
                result = await call_off_loop(self.evaluator.evaluate, str(code), bindings)
            except ExpressionError as exc:
                raise NodeExecutionError(f"Function execution failed: {exc}") from exc
        elif data.get("functionName"):
            result = await self._call_registered(
                data["functionName"], data.get("params"), context
            )
        else:
            raise NodeExecutionError("Function node requires code or a function name")

        output_variable = data.get("outputVariable")
        if output_variable:
            context.set(output_variable, result, writer=node.id)
        return result

    async def _call_registered(
        self, name: str, params: Any, context: ExecutionContext
    ) -> Any:
        func = self.functions.get(name)
        if func is None:
            raise NodeExecutionError(f'Function "{name}" not found in registry')
        resolved = self._resolve_params(params or {}, context)
        args = list(resolved.values()) if isinstance(resolved, Mapping) else list(resolved)
        try:
            return await call_off_loop(func, *args)
        except (TypeError, ValueError, KeyError, IndexError, ZeroDivisionError) as exc:
            raise NodeExecutionError(f"Function execution failed: {exc}") from exc

    def _resolve_params(self, params: Any, context: ExecutionContext) -> Any:
        if isinstance(params, str):
            return _operand(params, context)
        if isinstance(params, Mapping):
            return {key: self._resolve_params(value, context) for key, value in params.items()}
        if isinstance(params, list):
            return [self._resolve_params(value, context) for value in params]
        return params

    def _build_function_registry(self) -> Dict[str, Callable[..., Any]]:
        evaluate = self.evaluator.evaluate

        def _filter(items: Sequence[Any], predicate: str) -> list:
            return [item for item in items if evaluate(predicate, {"item": item})]

        def _map(items: Sequence[Any], mapper: str) -> list:
            return [evaluate(mapper, {"item": item}) for item in items]

        def _sort(items: Sequence[Any], key: Optional[str] = None) -> list:
            if key:
                return sorted(items, key=lambda item: item[key])
            return sorted(items)

        def _pick(mapping: Mapping[str, Any], keys: Sequence[str]) -> dict:
            return {key: mapping[key] for key in keys if key in mapping}

        def _omit(mapping: Mapping[str, Any], keys: Sequence[str]) -> dict:
            return {key: value for key, value in mapping.items() if key not in keys}

        def _round(number: float, decimals: int = 0) -> float:
            return round(float(number), int(decimals))

        return {
            "toUpperCase": lambda text: str(text).upper(),
            "toLowerCase": lambda text: str(text).lower(),
            "trim": lambda text: str(text).strip(),
            "replace": lambda text, pattern, replacement: re.sub(
                str(pattern), str(replacement), str(text)
            ),
            "filter": _filter,
            "map": _map,
            "sort": _sort,
            "pick": _pick,
            "omit": _omit,
            "add": lambda a, b: _coerce_number(a) + _coerce_number(b),
            "subtract": lambda a, b: _coerce_number(a) - _coerce_number(b),
            "multiply": lambda a, b: _coerce_number(a) * _coerce_number(b),
            "divide": lambda a, b: _coerce_number(a) / _coerce_number(b),
            "round": _round,
        }

    # collaborators

    def _staged_query(self, node: Node, context: ExecutionContext) -> str:
        configured = node.data.get("query")
        if not _is_blank(configured):
            return resolve(str(configured), context).strip()
        staged = context.get(input_key(node.id))
        if isinstance(staged, Mapping) and not _is_blank(staged.get("query")):
            return stringify(staged["query"]).strip()
        if isinstance(staged, str) and staged.strip():
            return staged.strip()
        fallback = context.get("query")
        if not _is_blank(fallback):
            return stringify(fallback).strip()
        return ""

    async def _run_llm(self, node: Node, context: ExecutionContext) -> Any:
        data = node.data
        prompt = data.get("prompt")
        if _is_blank(prompt):
            raise NodeExecutionError("LLM node requires a prompt")
        if self.completion is None:
            raise NodeExecutionError("No completion service configured")
        system_prompt = data.get("systemPrompt")
        temperature = data.get("temperature")
        max_tokens = data.get("maxTokens")
        return await call_off_loop(
            self.completion.complete,
            resolve(str(prompt), context),
            data.get("model") or self.settings.default_model,
            self.settings.default_temperature if temperature is None else float(temperature),
            self.settings.default_max_tokens if max_tokens is None else int(max_tokens),
            system_prompt=resolve(str(system_prompt), context) if system_prompt else None,
        )

    async def _run_rag(self, node: Node, context: ExecutionContext) -> Any:
        query = self._staged_query(node, context)
        if not query:
            raise NodeExecutionError("RAG node requires a query")
        if self.retrieval is None:
            raise NodeExecutionError("No retrieval service configured")
        top_k = node.data.get("topK")
        return await call_off_loop(
            self.retrieval.retrieve,
            query,
            self.settings.default_top_k if top_k is None else int(top_k),
            method=node.data.get("retrievalMethod") or "similarity",
        )

    async def _run_web_search(self, node: Node, context: ExecutionContext) -> Any:
        query = self._staged_query(node, context)
        if not query:
            raise NodeExecutionError("Web search node requires a query")
        if self.web_search is None:
            raise NodeExecutionError("No web search service configured")
        count = node.data.get("resultCount", node.data.get("maxResults"))
        return await call_off_loop(
            self.web_search.search,
            query,
            self.settings.default_result_count if count is None else int(count),
            node.data.get("provider"),
        )


_HANDLERS: Dict[NodeType, str] = {
    NodeType.TRIGGER: "_run_trigger",
    NodeType.INPUT: "_run_input",
    NodeType.OUTPUT: "_run_output",
    NodeType.CONDITIONAL: "_run_conditional",
    NodeType.FUNCTION: "_run_function",
    NodeType.LLM: "_run_llm",
    NodeType.RAG: "_run_rag",
    NodeType.WEB_SEARCH: "_run_web_search",
}

_missing = set(NodeType) - set(_HANDLERS)
if _missing:
    raise RuntimeError(
        f"node types without handlers: {sorted(member.value for member in _missing)}"
    )
