"""Structural checks run before a workflow is scheduled."""

from __future__ import annotations

from collections import Counter
from typing import Dict, List

from flowkernel.logging import get_logger
from flowkernel.models import NodeType, Workflow
from flowkernel.service.errors import (
    CyclicGraph,
    DanglingEdge,
    DisconnectedNodes,
    DuplicateNodeId,
    EmptyWorkflow,
    MissingOutput,
    MissingTrigger,
    UnknownNodeType,
    WorkflowValidationError,
)

logger = get_logger(__name__)

_VISITING = 1
_VISITED = 2


def validate_workflow(workflow: Workflow) -> None:
    """Raise the first structural violation found, or return ``None``.

    Checks run in a fixed order and never mutate ``workflow``.
    """

    if not workflow.nodes:
        raise EmptyWorkflow("Workflow has no nodes")

    counts = Counter(node.id for node in workflow.nodes)
    duplicates = sorted(node_id for node_id, count in counts.items() if count > 1)
    if duplicates:
        raise DuplicateNodeId(
            f"Duplicate node ids: {', '.join(duplicates)}", nodes=duplicates
        )

    known = set(NodeType.values())
    unknown = [node for node in workflow.nodes if node.type not in known]
    if unknown:
        raise UnknownNodeType(
            "Unknown node type(s): "
            + ", ".join(f"{node.label} ({node.type})" for node in unknown),
            nodes=[node.id for node in unknown],
        )

    if not workflow.nodes_of_type(NodeType.TRIGGER):
        raise MissingTrigger("Workflow must have a trigger node")
    if not workflow.nodes_of_type(NodeType.OUTPUT):
        raise MissingOutput("Workflow must have an output node")

    node_map = workflow.node_map()
    dangling = [
        edge
        for edge in workflow.edges
        if edge.source not in node_map or edge.target not in node_map
    ]
    if dangling:
        missing = sorted(
            {
                endpoint
                for edge in dangling
                for endpoint in (edge.source, edge.target)
                if endpoint not in node_map
            }
        )
        raise DanglingEdge(
            f"Edges reference missing nodes: {', '.join(missing)}", nodes=missing
        )

    connected = set()
    for edge in workflow.edges:
        connected.add(edge.source)
        connected.add(edge.target)
    disconnected = [node for node in workflow.nodes if node.id not in connected]
    if disconnected:
        raise DisconnectedNodes(
            "Disconnected nodes: " + ", ".join(node.label for node in disconnected),
            nodes=[node.id for node in disconnected],
        )

    cycle = find_cycle(workflow)
    if cycle:
        raise CyclicGraph(
            "Workflow contains a cycle: " + " -> ".join(cycle), nodes=cycle
        )

    logger.debug(
        "workflow_validated",
        workflow_id=workflow.id,
        nodes=len(workflow.nodes),
        edges=len(workflow.edges),
    )


def find_cycle(workflow: Workflow) -> List[str]:
    """Return the node ids of one cycle, closed on its first node, or ``[]``.

    Depth-first search from every unvisited node in list order, iterative so
    long chains do not hit the interpreter recursion limit.
    """

    successors: Dict[str, List[str]] = {node.id: [] for node in workflow.nodes}
    for edge in workflow.edges:
        if edge.source in successors:
            successors[edge.source].append(edge.target)

    marks: Dict[str, int] = {}
    for root in successors:
        if root in marks:
            continue
        path: List[str] = [root]
        iterators = [iter(successors[root])]
        marks[root] = _VISITING
        while iterators:
            advanced = False
            for child in iterators[-1]:
                state = marks.get(child)
                if state == _VISITING:
                    start = path.index(child)
                    return path[start:] + [child]
                if state is None and child in successors:
                    marks[child] = _VISITING
                    path.append(child)
                    iterators.append(iter(successors[child]))
                    advanced = True
                    break
            if not advanced:
                marks[path.pop()] = _VISITED
                iterators.pop()
    return []


def is_valid(workflow: Workflow) -> bool:
    try:
        validate_workflow(workflow)
    except WorkflowValidationError:
        return False
    return True
