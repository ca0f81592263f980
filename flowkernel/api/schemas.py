from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class WorkflowSource(BaseModel):
    """Either an inline workflow document or the id of a built-in template."""

    workflow: Optional[Dict[str, Any]] = None
    template_id: Optional[str] = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def _exactly_one_source(self) -> "WorkflowSource":
        if (self.workflow is None) == (self.template_id is None):
            raise ValueError("provide exactly one of workflow or template_id")
        return self


class WorkflowValidateRequest(WorkflowSource):
    pass


class WorkflowRunRequest(WorkflowSource):
    payload: Optional[Any] = None
    initial_context: Optional[Dict[str, Any]] = None


class ValidationReport(BaseModel):
    valid: bool
    kind: Optional[str] = None
    message: Optional[str] = None
    nodes: List[str] = Field(default_factory=list)
    order: List[str] = Field(default_factory=list)


class NodeResultResponse(BaseModel):
    success: bool
    output: Optional[Any] = None
    error: Optional[str] = None
    elapsed_ms: float
    attempts: int = 1
    node_type: Optional[str] = None


class WorkflowRunResponse(BaseModel):
    run_id: str
    workflow_id: Optional[str] = None
    success: bool
    status: str
    output: Dict[str, Any] = Field(default_factory=dict)
    node_results: Dict[str, NodeResultResponse] = Field(default_factory=dict)
    elapsed_ms: float
    error: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    cancelled: bool = False


class TemplateSummary(BaseModel):
    id: str
    name: str
    description: str
    category: str


class KnowledgeDocumentIn(BaseModel):
    id: Optional[str] = Field(default=None, max_length=256)
    content: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class KnowledgeDocumentsRequest(BaseModel):
    documents: List[KnowledgeDocumentIn] = Field(..., min_length=1, max_length=500)


class KnowledgeDocumentsResponse(BaseModel):
    indexed: List[str]
    total: int
