from __future__ import annotations

from collections import deque
from typing import Dict, List

from flowkernel.logging import get_logger
from flowkernel.models import Workflow
from flowkernel.service.errors import SchedulingError

logger = get_logger(__name__)


def execution_order(workflow: Workflow, *, strict: bool = True) -> List[str]:
    """Topologically order node ids so every edge source precedes its target.

    The ready queue is seeded in node-list order and drained first in first
    out, so identical input always yields the identical order. When nodes are
    left over (a cycle or an edge to an unknown node that slipped past
    validation) the residue is logged; ``strict`` turns that into
    :class:`SchedulingError`, otherwise the partial order is returned.
    """

    in_degree: Dict[str, int] = {node.id: 0 for node in workflow.nodes}
    successors: Dict[str, List[str]] = {node.id: [] for node in workflow.nodes}
    for edge in workflow.edges:
        if edge.source not in in_degree or edge.target not in in_degree:
            continue
        successors[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    ready = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
    order: List[str] = []
    while ready:
        node_id = ready.popleft()
        order.append(node_id)
        for child in successors[node_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                ready.append(child)

    if len(order) < len(in_degree):
        scheduled = set(order)
        residue = [node_id for node_id in in_degree if node_id not in scheduled]
        logger.warning(
            "workflow_nodes_unscheduled",
            workflow_id=workflow.id,
            unscheduled=residue,
            strict=strict,
        )
        if strict:
            raise SchedulingError(
                f"Could not schedule nodes: {', '.join(residue)}",
                unscheduled=residue,
            )
    return order
