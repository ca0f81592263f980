"""Graph model and result types for workflow runs."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

HANDLE_PREFIX = "handle-"


class NodeType(str, Enum):
    """Closed set of node type tags the engine can dispatch."""

    TRIGGER = "trigger"
    INPUT = "input"
    OUTPUT = "output"
    LLM = "llm"
    RAG = "rag"
    WEB_SEARCH = "web-search"
    CONDITIONAL = "conditional"
    FUNCTION = "function"

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Node:
    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        label = self.data.get("label") if isinstance(self.data, dict) else None
        return label if isinstance(label, str) and label else self.id

    @property
    def node_type(self) -> NodeType:
        """The parsed type tag; raises ValueError for unknown tags."""
        return NodeType(self.type)


@dataclass
class Edge:
    source: str
    target: str
    source_handle: Optional[str] = None
    id: Optional[str] = None
    label: Optional[str] = None

    @property
    def handle_name(self) -> Optional[str]:
        """Context variable name carried by the source handle, if any."""
        if not self.source_handle:
            return None
        if self.source_handle.startswith(HANDLE_PREFIX):
            return self.source_handle[len(HANDLE_PREFIX):] or None
        return self.source_handle


@dataclass
class Workflow:
    id: str
    name: str
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    description: Optional[str] = None

    def node_map(self) -> Dict[str, Node]:
        return {node.id: node for node in self.nodes}

    def incoming(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def outgoing(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def nodes_of_type(self, node_type: NodeType) -> List[Node]:
        return [node for node in self.nodes if node.type == node_type.value]

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "Workflow":
        """Build graph values from an editor-shaped document.

        No structural validation happens here; see ``service.documents`` for
        schema checks and ``service.validation`` for graph checks.
        """
        nodes = [
            Node(
                id=str(raw["id"]),
                type=str(raw["type"]),
                data=dict(raw.get("data") or {}),
            )
            for raw in doc.get("nodes") or []
        ]
        edges = []
        for raw in doc.get("edges") or []:
            handle = raw.get("sourceHandle", raw.get("source_handle"))
            edges.append(
                Edge(
                    source=str(raw["source"]),
                    target=str(raw["target"]),
                    source_handle=str(handle) if handle else None,
                    id=raw.get("id"),
                    label=raw.get("label"),
                )
            )
        return cls(
            id=str(doc.get("id") or uuid.uuid4()),
            name=str(doc.get("name") or "untitled"),
            nodes=nodes,
            edges=edges,
            description=doc.get("description"),
        )


@dataclass(frozen=True)
class NodeExecutionResult:
    success: bool
    output: Any = None
    error: Optional[str] = None
    elapsed_ms: float = 0.0
    attempts: int = 1
    node_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "attempts": self.attempts,
            "node_type": self.node_type,
        }


@dataclass(frozen=True)
class WorkflowExecutionResult:
    success: bool
    status: RunState
    output: Dict[str, Any] = field(default_factory=dict)
    node_results: Dict[str, NodeExecutionResult] = field(default_factory=dict)
    elapsed_ms: float = 0.0
    error: Optional[str] = None
    logs: Tuple[str, ...] = ()
    cancelled: bool = False
    workflow_id: Optional[str] = None
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "success": self.success,
            "status": self.status.value,
            "output": dict(self.output),
            "node_results": {
                node_id: result.to_dict()
                for node_id, result in self.node_results.items()
            },
            "elapsed_ms": round(self.elapsed_ms, 3),
            "error": self.error,
            "logs": list(self.logs),
            "cancelled": self.cancelled,
        }
