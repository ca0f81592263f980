from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class ServiceError(Exception):
    """Error surfaced to API callers as an error envelope.

    Subclasses pin ``status_code`` and ``error_code``; callers can override
    either per instance. ``detail`` is carried into ``error.details``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


class InvalidWorkflowRequest(ServiceError):
    pass


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class WorkflowDocumentError(InvalidWorkflowRequest):
    """A workflow document does not match the expected shape."""

    def __init__(self, message: str, errors: Iterable[str] = ()) -> None:
        self.errors = list(errors)
        super().__init__(message, detail={"errors": self.errors})


class WorkflowValidationError(InvalidWorkflowRequest):
    """Structural problem found before any node runs.

    ``kind`` names the violation (``EmptyWorkflow``, ``CyclicGraph``...) and
    ``nodes`` lists the offending node identifiers where there are any.
    """

    kind: str = "InvalidWorkflow"

    def __init__(self, message: str, *, nodes: Iterable[str] = ()) -> None:
        self.nodes = list(nodes)
        super().__init__(message, detail={"kind": self.kind, "nodes": self.nodes})


class EmptyWorkflow(WorkflowValidationError):
    kind = "EmptyWorkflow"


class DuplicateNodeId(WorkflowValidationError):
    kind = "DuplicateNodeId"


class UnknownNodeType(WorkflowValidationError):
    kind = "UnknownNodeType"


class MissingTrigger(WorkflowValidationError):
    kind = "MissingTrigger"


class MissingOutput(WorkflowValidationError):
    kind = "MissingOutput"


class DanglingEdge(WorkflowValidationError):
    kind = "DanglingEdge"


class DisconnectedNodes(WorkflowValidationError):
    kind = "DisconnectedNodes"


class CyclicGraph(WorkflowValidationError):
    kind = "CyclicGraph"


class SchedulingError(ServiceError):
    """Topological sort finished with nodes still unordered."""

    status_code = 500
    error_code = "server_error"

    def __init__(self, message: str, *, unscheduled: Iterable[str] = ()) -> None:
        self.unscheduled = list(unscheduled)
        super().__init__(message, detail={"unscheduled": self.unscheduled})


# Node-level failures. These never reach HTTP callers directly; the engine
# records them on the node result and moves on.


class NodeExecutionError(Exception):
    """A node handler could not produce an output."""


class UnsupportedNodeType(NodeExecutionError):
    """The dispatcher has no handler for the node's type tag."""


class CollaboratorError(NodeExecutionError):
    """A completion, retrieval or web search backend call failed."""
