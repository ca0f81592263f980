import asyncio
import inspect
import os
import sys
from pathlib import Path

# Stub collaborators everywhere; must be set before the runtime is imported
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("WEB_SEARCH_PROVIDER", "stub")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from flowkernel.models import Workflow  # noqa: E402
from flowkernel.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def make_workflow(nodes, edges, *, workflow_id="wf-test", name="Test workflow") -> Workflow:
    """Build a Workflow from compact ``(id, type, data)`` and ``(source, target)`` tuples."""
    return Workflow.from_dict(
        {
            "id": workflow_id,
            "name": name,
            "nodes": [
                {"id": node_id, "type": node_type, "data": dict(data or {})}
                for node_id, node_type, data in nodes
            ],
            "edges": [
                {"id": f"e-{edge[0]}-{edge[1]}", "source": edge[0], "target": edge[1]}
                if len(edge) == 2
                else {
                    "id": f"e-{edge[0]}-{edge[1]}",
                    "source": edge[0],
                    "target": edge[1],
                    "sourceHandle": edge[2],
                }
                for edge in edges
            ],
        }
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
