"""End-to-end behaviour of WorkflowEngine.execute."""

import re

import pytest

from conftest import make_workflow
from flowkernel.config import Settings
from flowkernel.models import RunState
from flowkernel.service.context import input_key
from flowkernel.service.llm import StubCompletionService
from flowkernel.service.rag import InMemoryRetrievalService
from flowkernel.service.web_search import StubWebSearchService
from flowkernel.service.workflow import WorkflowCallbacks, WorkflowEngine, run_workflow_sync


class Recorder:
    """Collects callback invocations in order."""

    def __init__(self):
        self.events = []
        self.logs = []
        self.completed = []

    def callbacks(self):
        return WorkflowCallbacks(
            on_node_start=lambda node_id: self.events.append(("start", node_id)),
            on_node_complete=lambda node_id, output: self.events.append(("complete", node_id)),
            on_node_error=lambda node_id, error: self.events.append(("error", node_id, error)),
            on_log_update=self.logs.append,
            on_workflow_complete=self.completed.append,
        )


@pytest.fixture
def completion():
    return StubCompletionService()


@pytest.fixture
def retrieval():
    return InMemoryRetrievalService(
        [
            {"id": "d1", "content": "Workflow engines order nodes topologically"},
            {"id": "d2", "content": "A topological order respects every edge"},
            {"id": "d3", "content": "Bananas are yellow"},
        ]
    )


@pytest.fixture
def engine(completion, retrieval):
    return WorkflowEngine(
        settings=Settings(),
        completion=completion,
        retrieval=retrieval,
        web_search=StubWebSearchService(),
    )


def _rag_chain():
    return make_workflow(
        [
            ("t1", "trigger", {}),
            ("r1", "rag", {"topK": 2}),
            ("l1", "llm", {"prompt": "Answer: {{query}}"}),
            ("o1", "output", {"variableName": "answer"}),
        ],
        [("t1", "r1"), ("r1", "l1"), ("l1", "o1")],
    )


async def test_rag_chain_end_to_end(engine, completion, retrieval):
    recorder = Recorder()
    result = await engine.execute(
        _rag_chain(),
        recorder.callbacks(),
        initial_context={"query": "what is a topological order"},
    )

    assert result.success is True
    assert result.status is RunState.COMPLETED
    assert result.output == {"answer": "[stub:gpt-4o-mini] Answer: what is a topological order"}
    assert retrieval.calls == [
        {"query": "what is a topological order", "top_k": 2, "method": "similarity"}
    ]
    assert len(result.node_results["r1"].output["documents"]) == 2
    assert completion.calls[0]["prompt"] == "Answer: what is a topological order"
    assert [event for event in recorder.events if event[0] == "start"] == [
        ("start", "t1"),
        ("start", "r1"),
        ("start", "l1"),
        ("start", "o1"),
    ]
    assert recorder.completed == [result]
    assert engine.state is RunState.COMPLETED


async def test_payload_staged_at_trigger(engine, completion):
    result = await engine.execute(_rag_chain(), payload={"query": "edges"})
    assert result.success
    assert completion.calls[0]["prompt"] == "Answer: edges"
    assert engine.context.writer_of(input_key("t1")) == "caller"


async def test_missing_trigger_runs_nothing(engine):
    recorder = Recorder()
    workflow = make_workflow(
        [("f", "function", {"code": "1"}), ("o", "output", {})],
        [("f", "o")],
    )
    result = await engine.execute(workflow, recorder.callbacks())

    assert result.success is False
    assert result.error == "Workflow must have a trigger node"
    assert result.node_results == {}
    assert recorder.events == []
    assert recorder.completed == [result]


async def test_missing_output_runs_nothing(engine):
    recorder = Recorder()
    workflow = make_workflow(
        [("t", "trigger", {}), ("f", "function", {"code": "1"})],
        [("t", "f")],
    )
    result = await engine.execute(workflow, recorder.callbacks())

    assert result.success is False
    assert "output" in result.error
    assert recorder.events == []


async def test_cycle_runs_nothing(engine, completion):
    workflow = make_workflow(
        [
            ("t", "trigger", {}),
            ("a", "llm", {"prompt": "x"}),
            ("b", "llm", {"prompt": "y"}),
            ("o", "output", {}),
        ],
        [("t", "a"), ("a", "b"), ("b", "a"), ("b", "o")],
    )
    result = await engine.execute(workflow)

    assert result.success is False
    assert result.error.startswith("Workflow contains a cycle")
    assert result.node_results == {}
    assert completion.calls == []


async def test_nodes_run_in_topological_order(engine):
    recorder = Recorder()
    workflow = make_workflow(
        [
            ("o", "output", {}),
            ("b", "function", {"code": "2"}),
            ("a", "function", {"code": "1"}),
            ("t", "trigger", {}),
        ],
        [("t", "a"), ("a", "b"), ("b", "o")],
    )
    await engine.execute(workflow, recorder.callbacks())

    started = [event[1] for event in recorder.events if event[0] == "start"]
    assert started == ["t", "a", "b", "o"]


async def test_comparison_routes_true(engine):
    workflow = make_workflow(
        [
            ("t", "trigger", {}),
            ("c", "conditional", {"left": "5", "operator": ">", "right": "3"}),
            ("o", "output", {"variableName": "decision"}),
        ],
        [("t", "c"), ("c", "o")],
    )
    result = await engine.execute(workflow)

    assert result.node_results["c"].output["result"] is True
    assert result.output["decision"]["path"] == "true"


async def test_failed_node_does_not_stage_its_successor(engine):
    workflow = make_workflow(
        [
            ("t", "trigger", {}),
            ("a", "function", {"code": "unknown_name + 1"}),
            ("b", "output", {}),
        ],
        [("t", "a"), ("a", "b")],
    )
    result = await engine.execute(workflow)

    assert result.success is False
    assert result.node_results["a"].success is False
    assert input_key("b") not in engine.context
    assert result.node_results["b"].success is True
    assert result.output == {}


async def test_failure_isolated_from_siblings(engine):
    recorder = Recorder()
    workflow = make_workflow(
        [
            ("t", "trigger", {}),
            ("bad", "function", {"code": "1 / 0"}),
            ("good", "function", {"code": "2 + 3", "outputVariable": "sum"}),
            ("o", "output", {"variableName": "result"}),
        ],
        [("t", "bad"), ("t", "good"), ("bad", "o"), ("good", "o")],
    )
    result = await engine.execute(workflow, recorder.callbacks())

    assert result.success is False
    assert result.status is RunState.FAILED
    assert result.node_results["bad"].error == "Function execution failed: division by zero"
    assert result.node_results["good"].output == 5
    assert result.output == {"result": 5}
    assert ("error", "bad", "Function execution failed: division by zero") in recorder.events
    assert any("Node bad failed, continuing with other nodes" in line for line in result.logs)


async def test_identical_runs_give_identical_outputs(engine):
    first = await engine.execute(_rag_chain(), payload={"query": "topological"})
    second = await engine.execute(_rag_chain(), payload={"query": "topological"})

    assert first.output == second.output
    assert first.run_id != second.run_id
    assert {k: v.output for k, v in first.node_results.items()} == {
        k: v.output for k, v in second.node_results.items()
    }


async def test_state_reset_between_runs(engine):
    await engine.execute(_rag_chain(), initial_context={"query": "first", "leftover": 1})
    await engine.execute(_rag_chain(), initial_context={"query": "second"})
    assert "leftover" not in engine.context


async def test_source_handle_binds_named_variable(engine):
    workflow = make_workflow(
        [
            ("t", "trigger", {"payload": {"n": 4}}),
            ("f", "function", {"code": "n * 2"}),
            ("g", "function", {"code": "doubled + 1"}),
            ("o", "output", {}),
        ],
        [("t", "f"), ("f", "g", "handle-doubled"), ("g", "o")],
    )
    result = await engine.execute(workflow)

    assert result.success, result.node_results
    assert result.output == {"o": 9}


async def test_log_lines_are_timestamped(engine):
    recorder = Recorder()
    result = await engine.execute(_rag_chain(), recorder.callbacks(), payload={"query": "q"})

    assert recorder.logs == list(result.logs)
    assert all(re.match(r"^\[\d{2}:\d{2}:\d{2}\.\d{3}\] ", line) for line in result.logs)
    assert "Execution order: t1 → r1 → l1 → o1" in result.logs[1]
    assert "Starting execution of node: r1 (rag)" in " ".join(result.logs)


async def test_async_callbacks_awaited(engine):
    seen = []

    async def on_start(node_id):
        seen.append(node_id)

    await engine.execute(_rag_chain(), WorkflowCallbacks(on_node_start=on_start), payload={"query": "q"})
    assert seen == ["t1", "r1", "l1", "o1"]


async def test_failing_callback_does_not_break_run(engine):
    def explode(*_args):
        raise RuntimeError("listener broke")

    result = await engine.execute(
        _rag_chain(),
        WorkflowCallbacks(on_node_start=explode, on_node_complete=explode),
        payload={"query": "q"},
    )
    assert result.success is True


async def test_result_serializes(engine):
    result = await engine.execute(_rag_chain(), payload={"query": "q"})
    data = result.to_dict()
    assert data["status"] == "completed"
    assert set(data["node_results"]) == {"t1", "r1", "l1", "o1"}
    assert data["node_results"]["l1"]["node_type"] == "llm"


def test_run_workflow_sync():
    engine = WorkflowEngine(settings=Settings(), completion=StubCompletionService("done"))
    workflow = make_workflow(
        [
            ("t", "trigger", {}),
            ("l", "llm", {"prompt": "go"}),
            ("o", "output", {"variableName": "reply", "dataType": "string"}),
        ],
        [("t", "l"), ("l", "o")],
    )
    result = run_workflow_sync(workflow, engine=engine)
    assert result.output == {"reply": "done"}
