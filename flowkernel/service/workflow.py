from __future__ import annotations

import asyncio
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from flowkernel.config import Settings, get_settings
from flowkernel.logging import (
    get_logger,
    log_workflow_trace,
    run_log_context,
    sanitize_workflow_trace,
)
from flowkernel.models import (
    Node,
    NodeExecutionResult,
    NodeType,
    RunState,
    Workflow,
    WorkflowExecutionResult,
)
from flowkernel.service.context import ExecutionContext, input_key
from flowkernel.service.errors import UnsupportedNodeType, WorkflowValidationError
from flowkernel.service.llm import CompletionService
from flowkernel.service.nodes import NodeDispatcher, maybe_await
from flowkernel.service.rag import RetrievalService
from flowkernel.service.sandbox import SafeExpressionEvaluator
from flowkernel.service.scheduler import execution_order
from flowkernel.service.validation import validate_workflow
from flowkernel.service.web_search import WebSearchService

MAX_RETRIES_HARD_CAP = 3
RUN_IN_PROGRESS = "run already in progress"
CANCELLED = "cancelled"
NODE_TIMEOUT = "Timeout"


@dataclass
class WorkflowCallbacks:
    """Optional lifecycle hooks; each may be a plain function or a coroutine."""

    on_node_start: Optional[Callable[[str], Any]] = None
    on_node_complete: Optional[Callable[[str, Any], Any]] = None
    on_node_error: Optional[Callable[[str, str], Any]] = None
    on_log_update: Optional[Callable[[str], Any]] = None
    on_workflow_complete: Optional[Callable[[WorkflowExecutionResult], Any]] = None


class _RunCancelled(Exception):
    pass


class WorkflowEngine:
    """Runs one workflow at a time, node by node in topological order.

    Each call to :meth:`execute` starts from a fresh context, result map and
    log buffer. Node failures are recorded and the run moves on; structural
    and run-level failures end the run early. ``execute`` always returns a
    :class:`WorkflowExecutionResult` and never raises.
    """

    def __init__(
        self,
        dispatcher: Optional[NodeDispatcher] = None,
        *,
        settings: Optional[Settings] = None,
        completion: Optional[CompletionService] = None,
        retrieval: Optional[RetrievalService] = None,
        web_search: Optional[WebSearchService] = None,
        evaluator: Optional[SafeExpressionEvaluator] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher or NodeDispatcher(
            completion=completion,
            retrieval=retrieval,
            web_search=web_search,
            evaluator=evaluator,
            settings=self.settings,
        )
        self.logger = get_logger(__name__)
        self.state = RunState.IDLE
        self.context = ExecutionContext()
        self.node_results: Dict[str, NodeExecutionResult] = {}
        self.logs: List[str] = []
        self._callbacks = WorkflowCallbacks()
        self._cancel_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self.state is RunState.RUNNING

    def cancel(self) -> bool:
        """Ask the active run to stop before its next node."""
        if not self.is_running or self._cancel_event is None:
            return False
        self._cancel_event.set()
        return True

    async def execute(
        self,
        workflow: Workflow,
        callbacks: Optional[WorkflowCallbacks] = None,
        *,
        initial_context: Optional[Mapping[str, Any]] = None,
        payload: Any = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> WorkflowExecutionResult:
        if self.is_running:
            self.logger.warning("workflow_run_rejected", workflow_id=workflow.id)
            return WorkflowExecutionResult(
                success=False,
                status=RunState.FAILED,
                error=RUN_IN_PROGRESS,
                workflow_id=workflow.id,
            )

        self.state = RunState.RUNNING
        self.context = ExecutionContext(initial_context)
        self.node_results = {}
        self.logs = []
        self._callbacks = callbacks or WorkflowCallbacks()
        self._cancel_event = cancel_event or asyncio.Event()
        run_id = str(uuid.uuid4())
        started = time.monotonic()

        with run_log_context(run_id, workflow.id):
            self.logger.info(
                "workflow_run_started", nodes=len(workflow.nodes), edges=len(workflow.edges)
            )
            try:
                result = await self._run(workflow, run_id, started, payload)
            except Exception as exc:
                self.logger.error(
                    "workflow_run_failed", error=str(exc), error_type=type(exc).__name__
                )
                await self._log(f"Workflow execution failed: {exc}")
                result = self._result(
                    workflow,
                    run_id,
                    started,
                    success=False,
                    error=str(exc) or type(exc).__name__,
                )

            self.state = result.status
            self.logger.info(
                "workflow_run_finished",
                success=result.success,
                status=result.status.value,
                cancelled=result.cancelled,
                elapsed_ms=round(result.elapsed_ms, 3),
            )
            log_workflow_trace(sanitize_workflow_trace(self._trace()), self.logger)
            await self._emit("on_workflow_complete", result)
        return result

    async def _run(
        self,
        workflow: Workflow,
        run_id: str,
        started: float,
        payload: Any,
    ) -> WorkflowExecutionResult:
        await self._log(f"Starting execution of workflow: {workflow.id} - {workflow.name}")

        try:
            validate_workflow(workflow)
        except WorkflowValidationError as exc:
            self.logger.warning(
                "workflow_validation_failed",
                workflow_id=workflow.id,
                kind=exc.kind,
                nodes=exc.nodes,
            )
            await self._log(f"Workflow validation failed: {exc.message}")
            return self._result(workflow, run_id, started, success=False, error=exc.message)

        order = execution_order(workflow, strict=self.settings.strict_scheduling)
        await self._log(f"Execution order: {' → '.join(order)}")
        if len(order) < len(workflow.nodes):
            skipped = [node.id for node in workflow.nodes if node.id not in set(order)]
            await self._log(f"Skipping unscheduled nodes: {', '.join(skipped)}")

        if payload is not None:
            for trigger in workflow.nodes_of_type(NodeType.TRIGGER):
                self.context.set(input_key(trigger.id), payload, writer="caller")

        node_map = workflow.node_map()
        workflow_timeout_ms = self.settings.workflow_timeout_ms
        for node_id in order:
            if self._cancel_event is not None and self._cancel_event.is_set():
                await self._log("Workflow execution cancelled")
                return self._result(
                    workflow, run_id, started, success=False, error=CANCELLED, cancelled=True
                )
            if (time.monotonic() - started) * 1000 > workflow_timeout_ms:
                await self._log(f"Workflow timed out after {workflow_timeout_ms}ms")
                return self._result(
                    workflow, run_id, started, success=False, error="Workflow timeout"
                )

            node = node_map[node_id]
            for edge in workflow.incoming(node_id):
                source_result = self.node_results.get(edge.source)
                if source_result is None or not source_result.success:
                    continue
                self.context.set(input_key(node_id), source_result.output, writer=edge.source)
                if edge.handle_name:
                    self.context.set(edge.handle_name, source_result.output, writer=edge.source)

            await self._log(f"Starting execution of node: {node.id} ({node.type})")
            await self._emit("on_node_start", node.id)
            try:
                result = await self._execute_node(node)
            except _RunCancelled:
                await self._log("Workflow execution cancelled")
                return self._result(
                    workflow, run_id, started, success=False, error=CANCELLED, cancelled=True
                )
            self.node_results[node.id] = result

            if result.success:
                self.context.set(node.id, result.output, writer=node.id)
                await self._log(f"Node {node.id} completed in {result.elapsed_ms / 1000:.2f}s")
                await self._emit("on_node_complete", node.id, result.output)
            else:
                await self._log(f"Error in node {node.id}: {result.error}")
                await self._emit("on_node_error", node.id, result.error)
                await self._log(f"Node {node.id} failed, continuing with other nodes")

        output: Dict[str, Any] = {}
        for node in workflow.nodes_of_type(NodeType.OUTPUT):
            variable = node.data.get("variableName") or node.id
            value = self.context.get(variable)
            if value is not None:
                output[variable] = value

        success = all(result.success for result in self.node_results.values())
        elapsed_s = time.monotonic() - started
        if success:
            await self._log(f"Workflow completed successfully in {elapsed_s:.2f}s")
        else:
            failed = [nid for nid, result in self.node_results.items() if not result.success]
            await self._log(
                f"Workflow completed with errors in {elapsed_s:.2f}s: {', '.join(failed)}"
            )
        return self._result(workflow, run_id, started, success=success, output=output)

    async def _execute_node(self, node: Node) -> NodeExecutionResult:
        """Dispatch one node with timeout, retries and exponential backoff."""

        started = time.perf_counter()
        try:
            max_retries, backoff_ms, timeout_ms = self._node_limits(node.data)
        except (TypeError, ValueError) as exc:
            error = f"Invalid node configuration: {exc}"
            self.logger.warning("workflow_node_misconfigured", node=node.id, error=error)
            return NodeExecutionResult(
                success=False,
                error=error,
                elapsed_ms=(time.perf_counter() - started) * 1000,
                attempts=0,
                node_type=node.type,
            )

        attempt = 0
        error = "unknown error"
        while True:
            attempt += 1
            try:
                output = await asyncio.wait_for(
                    self.dispatcher.execute(node, self.context),
                    timeout=timeout_ms / 1000.0,
                )
                return NodeExecutionResult(
                    success=True,
                    output=output,
                    elapsed_ms=(time.perf_counter() - started) * 1000,
                    attempts=attempt,
                    node_type=node.type,
                )
            except asyncio.TimeoutError:
                error = NODE_TIMEOUT
                self.logger.warning(
                    "workflow_node_timeout",
                    node=node.id,
                    attempt=attempt,
                    timeout_ms=timeout_ms,
                )
            except UnsupportedNodeType as exc:
                error = str(exc)
                self.logger.error("workflow_node_unsupported", node=node.id, type=node.type)
                break
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                self.logger.warning(
                    "workflow_node_failed",
                    node=node.id,
                    attempt=attempt,
                    max_retries=max_retries,
                    error=error,
                )

            if attempt > max_retries:
                break

            # backoff_ms * 4^(attempt-1): 1s, 4s, 16s with the default base
            sleep_ms = backoff_ms * (4 ** (attempt - 1))
            self.logger.info(
                "workflow_node_backoff", node=node.id, attempt=attempt, backoff_ms=sleep_ms
            )
            await self._log(f"Retrying node {node.id} (attempt {attempt + 1})")
            if await self._wait_or_cancel(sleep_ms / 1000.0):
                raise _RunCancelled()

        if attempt > 1:
            self.logger.error(
                "workflow_node_retries_exhausted", node=node.id, attempts=attempt, error=error
            )
        return NodeExecutionResult(
            success=False,
            error=error,
            elapsed_ms=(time.perf_counter() - started) * 1000,
            attempts=attempt,
            node_type=node.type,
        )

    def _node_limits(self, data: Mapping[str, Any]) -> Tuple[int, float, float]:
        """Read ``maxRetries``, ``backoffMs`` and ``timeoutMs`` with settings fallbacks.

        Missing or null values fall back to settings. Values that are not
        finite numbers raise ``ValueError``.
        """

        def number(key: str, default: float) -> float:
            raw = data.get(key)
            if raw is None:
                return float(default)
            if isinstance(raw, bool):
                raise ValueError(f"{key} must be a number, got {raw!r}")
            try:
                value = float(raw)
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be a number, got {raw!r}") from None
            if not math.isfinite(value):
                raise ValueError(f"{key} must be finite, got {raw!r}")
            return value

        retries = int(number("maxRetries", self.settings.node_max_retries))
        backoff_ms = max(number("backoffMs", self.settings.node_backoff_ms), 0.0)
        timeout_ms = number("timeoutMs", self.settings.node_timeout_ms)
        if timeout_ms <= 0:
            timeout_ms = float(self.settings.node_timeout_ms)
        return (
            min(max(retries, 0), MAX_RETRIES_HARD_CAP),
            backoff_ms,
            min(timeout_ms, float(self.settings.max_node_timeout_ms)),
        )

    async def _wait_or_cancel(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return True if cancellation arrived first."""
        if self._cancel_event is None:
            await asyncio.sleep(seconds)
            return False
        if self._cancel_event.is_set():
            return True
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def _result(
        self,
        workflow: Workflow,
        run_id: str,
        started: float,
        *,
        success: bool,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        cancelled: bool = False,
    ) -> WorkflowExecutionResult:
        return WorkflowExecutionResult(
            success=success,
            status=RunState.COMPLETED if success else RunState.FAILED,
            output=output or {},
            node_results=dict(self.node_results),
            elapsed_ms=(time.monotonic() - started) * 1000,
            error=error,
            logs=tuple(self.logs),
            cancelled=cancelled,
            workflow_id=workflow.id,
            run_id=run_id,
        )

    def _trace(self) -> List[dict]:
        return [
            {
                "node_id": node_id,
                "status": "ok" if result.success else "error",
                "elapsed_ms": round(result.elapsed_ms, 3),
                "error": result.error,
                "output": result.output,
            }
            for node_id, result in self.node_results.items()
        ]

    async def _log(self, message: str) -> None:
        stamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        line = f"[{stamp}] {message}"
        self.logs.append(line)
        await self._emit("on_log_update", line)

    async def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            await maybe_await(callback(*args))
        except Exception as exc:
            self.logger.warning("workflow_callback_failed", callback=name, error=str(exc))


def run_workflow_sync(
    workflow: Workflow,
    callbacks: Optional[WorkflowCallbacks] = None,
    *,
    engine: Optional[WorkflowEngine] = None,
    initial_context: Optional[Mapping[str, Any]] = None,
    payload: Any = None,
) -> WorkflowExecutionResult:
    """Blocking wrapper around :meth:`WorkflowEngine.execute` for scripts."""
    runner = engine or WorkflowEngine()
    return asyncio.run(
        runner.execute(
            workflow,
            callbacks,
            initial_context=initial_context,
            payload=payload,
        )
    )
