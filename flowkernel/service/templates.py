"""Ready-made workflow documents."""

from __future__ import annotations

import copy
from typing import Any, Dict, List

from flowkernel.models import Workflow
from flowkernel.service.documents import load_workflow
from flowkernel.service.errors import NotFoundError


def _trigger() -> Dict[str, Any]:
    return {
        "id": "trigger-1",
        "type": "trigger",
        "data": {
            "label": "Start",
            "description": "Workflow entry point",
            "triggerType": "manual",
            "outputVariable": "input",
        },
    }


def _string_output() -> Dict[str, Any]:
    return {
        "id": "output-1",
        "type": "output",
        "data": {
            "label": "Output",
            "description": "Workflow output",
            "variableName": "result",
            "dataType": "string",
        },
    }


def _chain(*node_ids: str) -> List[Dict[str, Any]]:
    return [
        {"id": f"e-{source}-{target}", "source": source, "target": target}
        for source, target in zip(node_ids, node_ids[1:])
    ]


_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "rag-qa": {
        "id": "rag-qa",
        "name": "Simple RAG Workflow",
        "description": "Retrieve relevant documents and answer from them",
        "category": "RAG",
        "nodes": [
            _trigger(),
            {
                "id": "rag-1",
                "type": "rag",
                "data": {
                    "label": "RAG",
                    "description": "Retrieve relevant documents",
                    "query": "{{input.query}}",
                    "topK": 3,
                    "retrievalMethod": "similarity",
                },
            },
            {
                "id": "llm-1",
                "type": "llm",
                "data": {
                    "label": "LLM",
                    "description": "Answer using the retrieved documents",
                    "prompt": (
                        "Answer the following question using the provided context. "
                        "If the answer is not in the context, say so.\n\n"
                        "Context: {{rag-1.documents}}\n\n"
                        "Question: {{input.query}}\n\nAnswer:"
                    ),
                    "systemPrompt": (
                        "You are a helpful assistant that answers questions "
                        "based on the provided context."
                    ),
                    "temperature": 0.7,
                    "maxTokens": 500,
                },
            },
            _string_output(),
        ],
        "edges": _chain("trigger-1", "rag-1", "llm-1", "output-1"),
    },
    "web-research": {
        "id": "web-research",
        "name": "Web Search Agent",
        "description": "Search the web and answer from the results",
        "category": "Web Search",
        "nodes": [
            _trigger(),
            {
                "id": "web-search-1",
                "type": "web-search",
                "data": {
                    "label": "Web Search",
                    "description": "Search the web for information",
                    "query": "{{input.query}}",
                    "resultCount": 5,
                },
            },
            {
                "id": "llm-1",
                "type": "llm",
                "data": {
                    "label": "LLM",
                    "description": "Answer using the search results",
                    "prompt": (
                        "Answer the following question using the provided search "
                        "results. If the answer is not in the results, say so.\n\n"
                        "Search Results:\n{{web-search-1.results}}\n\n"
                        "Question: {{input.query}}\n\nAnswer:"
                    ),
                    "systemPrompt": (
                        "You are a helpful assistant that answers questions "
                        "based on web search results."
                    ),
                    "temperature": 0.7,
                    "maxTokens": 500,
                },
            },
            _string_output(),
        ],
        "edges": _chain("trigger-1", "web-search-1", "llm-1", "output-1"),
    },
    "conditional-routing": {
        "id": "conditional-routing",
        "name": "Priority Routing",
        "description": "Tag a request by priority before returning it",
        "category": "Logic",
        "nodes": [
            _trigger(),
            {
                "id": "condition-1",
                "type": "conditional",
                "data": {
                    "label": "Is urgent?",
                    "conditionType": "comparison",
                    "left": "{{input.priority}}",
                    "operator": "==",
                    "right": "high",
                },
            },
            {
                "id": "function-1",
                "type": "function",
                "data": {
                    "label": "Tag request",
                    "code": (
                        'label = "urgent" if upstream["result"] else "normal"\n'
                        'format_string("[{0}] {1}", label, get(input, "query", ""))'
                    ),
                    "outputVariable": "routed",
                },
            },
            _string_output(),
        ],
        "edges": _chain("trigger-1", "condition-1", "function-1", "output-1"),
    },
}


def list_templates() -> List[Dict[str, Any]]:
    return [
        {
            "id": template["id"],
            "name": template["name"],
            "description": template["description"],
            "category": template["category"],
        }
        for template in _TEMPLATES.values()
    ]


def get_template(template_id: str) -> Dict[str, Any]:
    """Return a deep copy of a template document so callers may edit it."""
    template = _TEMPLATES.get(template_id)
    if template is None:
        raise NotFoundError(
            f"unknown workflow template: {template_id}",
            detail={"template_id": template_id},
        )
    return copy.deepcopy(template)


def build_template_workflow(template_id: str) -> Workflow:
    return load_workflow(get_template(template_id))
