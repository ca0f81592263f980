"""Retry backoff, timeouts, cancellation and run exclusivity."""

from __future__ import annotations

import asyncio
import time

import pytest

from conftest import make_workflow
from flowkernel.config import Settings
from flowkernel.models import RunState
from flowkernel.service.errors import CollaboratorError
from flowkernel.service.workflow import (
    CANCELLED,
    MAX_RETRIES_HARD_CAP,
    NODE_TIMEOUT,
    RUN_IN_PROGRESS,
    WorkflowCallbacks,
    WorkflowEngine,
)


class FlakyCompletion:
    """Fails a fixed number of times before answering."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def complete(self, prompt, model_id, temperature, max_tokens, *, system_prompt=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise CollaboratorError(f"upstream unavailable ({self.calls})")
        return {"text": f"ok after {self.calls}"}


class SlowCompletion:
    """Sleeps before answering."""

    def __init__(self, delay: float):
        self.delay = delay

    async def complete(self, prompt, model_id, temperature, max_tokens, *, system_prompt=None):
        await asyncio.sleep(self.delay)
        return {"text": "slow"}


class BlockingCompletion:
    """Synchronous collaborator that blocks its thread before answering."""

    def __init__(self, delay: float):
        self.delay = delay

    def complete(self, prompt, model_id, temperature, max_tokens, *, system_prompt=None):
        time.sleep(self.delay)
        return {"text": "late"}


class GatedCompletion:
    """Blocks until the test opens the gate."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def complete(self, prompt, model_id, temperature, max_tokens, *, system_prompt=None):
        self.entered.set()
        await self.gate.wait()
        return {"text": "released"}


def _llm_workflow(**llm_data):
    return make_workflow(
        [
            ("t", "trigger", {}),
            ("l", "llm", {"prompt": "hello", **llm_data}),
            ("o", "output", {"variableName": "reply"}),
        ],
        [("t", "l"), ("l", "o")],
    )


def test_retry_cap():
    assert MAX_RETRIES_HARD_CAP == 3


async def test_retries_until_success():
    completion = FlakyCompletion(failures=2)
    engine = WorkflowEngine(settings=Settings(), completion=completion)

    result = await engine.execute(_llm_workflow(maxRetries=2, backoffMs=1))

    assert result.success is True
    assert result.node_results["l"].attempts == 3
    assert result.output == {"reply": "ok after 3"}
    assert sum("Retrying node l" in line for line in result.logs) == 2


async def test_retries_exhausted_keep_last_error():
    completion = FlakyCompletion(failures=10)
    engine = WorkflowEngine(settings=Settings(), completion=completion)

    result = await engine.execute(_llm_workflow(maxRetries=1, backoffMs=1))

    node = result.node_results["l"]
    assert node.success is False
    assert node.attempts == 2
    assert node.error == "upstream unavailable (2)"
    assert completion.calls == 2


async def test_retries_capped_at_hard_limit():
    completion = FlakyCompletion(failures=10)
    engine = WorkflowEngine(settings=Settings(), completion=completion)

    result = await engine.execute(_llm_workflow(maxRetries=9, backoffMs=0))

    assert result.node_results["l"].attempts == MAX_RETRIES_HARD_CAP + 1


async def test_no_retry_by_default():
    completion = FlakyCompletion(failures=1)
    engine = WorkflowEngine(settings=Settings(), completion=completion)

    result = await engine.execute(_llm_workflow())

    assert result.node_results["l"].attempts == 1
    assert result.success is False


async def test_node_timeout():
    engine = WorkflowEngine(settings=Settings(), completion=SlowCompletion(delay=1.0))

    result = await engine.execute(_llm_workflow(timeoutMs=20))

    assert result.node_results["l"].success is False
    assert result.node_results["l"].error == NODE_TIMEOUT
    assert result.node_results["o"].success is True


async def test_blocking_sync_collaborator_times_out():
    engine = WorkflowEngine(settings=Settings(), completion=BlockingCompletion(delay=0.5))

    started = time.monotonic()
    result = await engine.execute(_llm_workflow(timeoutMs=50))

    assert time.monotonic() - started < 0.4
    assert result.node_results["l"].success is False
    assert result.node_results["l"].error == NODE_TIMEOUT
    assert result.node_results["o"].success is True


async def test_sync_collaborator_within_timeout():
    engine = WorkflowEngine(settings=Settings(), completion=BlockingCompletion(delay=0))

    result = await engine.execute(_llm_workflow())

    assert result.success is True
    assert result.output == {"reply": "late"}


async def test_malformed_backoff_fails_only_that_node():
    failed = []
    engine = WorkflowEngine(settings=Settings(), completion=FlakyCompletion(failures=0))

    result = await engine.execute(
        _llm_workflow(backoffMs="fast"),
        WorkflowCallbacks(on_node_error=lambda node_id, error: failed.append((node_id, error))),
    )

    node = result.node_results["l"]
    assert node.success is False
    assert node.attempts == 0
    assert node.error.startswith("Invalid node configuration: backoffMs")
    assert failed == [("l", node.error)]
    assert result.error is None
    assert result.node_results["o"].success is True
    assert result.status is RunState.FAILED


@pytest.mark.parametrize(
    "limits",
    [{"maxRetries": "many"}, {"timeoutMs": float("nan")}, {"timeoutMs": True}],
)
async def test_malformed_limits_recorded_per_node(limits):
    engine = WorkflowEngine(settings=Settings(), completion=FlakyCompletion(failures=0))

    result = await engine.execute(_llm_workflow(**limits))

    assert result.node_results["l"].error.startswith("Invalid node configuration")
    assert list(result.node_results) == ["t", "l", "o"]


async def test_null_limits_fall_back_to_settings():
    completion = FlakyCompletion(failures=1)
    engine = WorkflowEngine(
        settings=Settings(node_max_retries=1, node_backoff_ms=1), completion=completion
    )

    result = await engine.execute(_llm_workflow(maxRetries=None, backoffMs=None, timeoutMs=None))

    assert result.success is True
    assert result.node_results["l"].attempts == 2


async def test_node_timeout_capped_by_settings():
    settings = Settings(max_node_timeout_ms=20)
    engine = WorkflowEngine(settings=settings, completion=SlowCompletion(delay=1.0))

    result = await engine.execute(_llm_workflow(timeoutMs=50000))

    assert result.node_results["l"].error == NODE_TIMEOUT


async def test_workflow_timeout_checked_between_nodes():
    settings = Settings(workflow_timeout_ms=5)
    engine = WorkflowEngine(settings=settings, completion=SlowCompletion(delay=0.05))

    result = await engine.execute(_llm_workflow())

    assert result.success is False
    assert result.error == "Workflow timeout"
    assert "o" not in result.node_results


async def test_cancel_before_next_node():
    engine = WorkflowEngine(settings=Settings(), completion=SlowCompletion(delay=0))
    cancel_event = asyncio.Event()

    def on_complete(node_id, _output):
        if node_id == "t":
            cancel_event.set()

    result = await engine.execute(
        _llm_workflow(),
        WorkflowCallbacks(on_node_complete=on_complete),
        cancel_event=cancel_event,
    )

    assert result.cancelled is True
    assert result.error == CANCELLED
    assert result.status is RunState.FAILED
    assert list(result.node_results) == ["t"]


async def test_cancel_interrupts_backoff():
    completion = FlakyCompletion(failures=10)
    engine = WorkflowEngine(settings=Settings(), completion=completion)

    def on_log(line):
        if "Retrying node l" in line:
            engine.cancel()

    result = await asyncio.wait_for(
        engine.execute(
            _llm_workflow(maxRetries=3, backoffMs=60000),
            WorkflowCallbacks(on_log_update=on_log),
        ),
        timeout=5,
    )

    assert result.cancelled is True
    assert completion.calls == 1
    assert engine.is_running is False


async def test_cancel_when_idle_is_noop():
    engine = WorkflowEngine(settings=Settings())
    assert engine.cancel() is False


async def test_concurrent_run_rejected():
    completion = GatedCompletion()
    engine = WorkflowEngine(settings=Settings(), completion=completion)

    first = asyncio.create_task(engine.execute(_llm_workflow()))
    await asyncio.wait_for(completion.entered.wait(), timeout=5)

    rejected = await engine.execute(_llm_workflow())
    assert rejected.success is False
    assert rejected.error == RUN_IN_PROGRESS
    assert rejected.node_results == {}

    completion.gate.set()
    finished = await first
    assert finished.success is True
    assert finished.output == {"reply": "released"}


@pytest.mark.parametrize("node_retries", [0, 1])
def test_settings_retry_default_applies(node_retries):
    completion = FlakyCompletion(failures=1)
    engine = WorkflowEngine(
        settings=Settings(node_max_retries=node_retries, node_backoff_ms=1),
        completion=completion,
    )
    result = asyncio.run(engine.execute(_llm_workflow()))
    assert result.success is bool(node_retries)
