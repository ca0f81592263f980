from __future__ import annotations

from typing import Any, Dict

from jsonschema import Draft202012Validator

from flowkernel.models import Workflow
from flowkernel.service.errors import WorkflowDocumentError

_NODE_DATA_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "label": {"type": "string"},
        "prompt": {"type": "string"},
        "systemPrompt": {"type": "string"},
        "model": {"type": "string"},
        "temperature": {"type": "number", "minimum": 0, "maximum": 2},
        "maxTokens": {"type": "integer", "minimum": 1},
        "query": {"type": "string"},
        "topK": {"type": "integer", "minimum": 1},
        "resultCount": {"type": "integer", "minimum": 1},
        "retrievalMethod": {"type": "string"},
        "variableName": {"type": "string"},
        "outputVariable": {"type": "string"},
        "dataType": {
            "enum": ["string", "number", "boolean", "object", "array"],
        },
        "conditionType": {"enum": ["expression", "comparison", "exists"]},
        "operator": {"type": "string"},
        "code": {"type": "string"},
        "inputVariables": {"type": "array", "items": {"type": "string"}},
        "required": {"type": "boolean"},
        "timeoutMs": {"type": "integer", "exclusiveMinimum": 0},
        "maxRetries": {"type": "integer", "minimum": 0, "maximum": 3},
        "backoffMs": {"type": "number", "minimum": 0},
    },
    "additionalProperties": True,
}

WORKFLOW_DOCUMENT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"type": "string", "minLength": 1},
                    "data": _NODE_DATA_SCHEMA,
                    "position": {"type": "object"},
                },
                "required": ["id", "type"],
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "source": {"type": "string", "minLength": 1},
                    "target": {"type": "string", "minLength": 1},
                    "sourceHandle": {"type": ["string", "null"]},
                    "source_handle": {"type": ["string", "null"]},
                    "label": {"type": ["string", "null"]},
                },
                "required": ["source", "target"],
            },
        },
    },
    "required": ["nodes"],
}

_VALIDATOR = Draft202012Validator(WORKFLOW_DOCUMENT_SCHEMA)


def validate_workflow_document(document: Any) -> None:
    """Check an editor-shaped workflow document against the schema.

    Only shape is checked here. Graph rules (trigger/output presence,
    connectivity, cycles) belong to ``validation.validate_workflow``.
    """
    errors = sorted(_VALIDATOR.iter_errors(document), key=lambda e: [str(p) for p in e.path])
    if errors:
        messages = []
        for error in errors:
            location = "/".join(str(part) for part in error.path)
            messages.append(f"{location}: {error.message}" if location else error.message)
        raise WorkflowDocumentError("workflow document validation failed", messages)


def load_workflow(document: Any) -> Workflow:
    validate_workflow_document(document)
    return Workflow.from_dict(document)
