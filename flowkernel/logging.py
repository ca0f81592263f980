"""structlog setup shared by the engine, collaborators and the HTTP layer.

Every event carries the request correlation id when one is set, and events
emitted inside :func:`run_log_context` also carry the run and workflow ids.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Event keys whose string values are masked
_SECRET_KEY_PARTS = ("password", "secret", "token", "api_key", "authorization")

# Author content that can be large or private; logged as a length only
_CONTENT_KEYS = frozenset({"prompt", "system_prompt", "text", "content", "code"})

_MAX_ERROR_LENGTH = 500


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the correlation id for the current context, generating one if needed."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextmanager
def run_log_context(run_id: str, workflow_id: Optional[str]) -> Iterator[None]:
    """Bind ``run_id`` and ``workflow_id`` to every event logged in the block."""
    with structlog.contextvars.bound_contextvars(run_id=run_id, workflow_id=workflow_id):
        yield


def _add_correlation_id(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_secrets(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(part in key.lower() for part in _SECRET_KEY_PARTS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _summarize_content(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in _CONTENT_KEYS & event_dict.keys():
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = f"<{len(value)} chars>"
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    dev_mode: bool = False,
) -> None:
    """(Re)configure structlog.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render events as JSON lines
        dev_mode: Render colored console output regardless of ``json_output``
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _mask_secrets,
        _summarize_content,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_workflow_trace(trace: list, logger: Optional[Any] = None) -> None:
    """Emit one ``workflow_trace`` event summarizing the nodes a run executed."""
    log = logger or get_logger("flowkernel.workflow")
    failed = [entry["node_id"] for entry in trace if entry.get("status") == "error"]
    log.info("workflow_trace", nodes=len(trace), failed=failed, trace=trace)


_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|root)/[^\s]+"),
    re.compile(r"(?i)[a-z]:\\[^\s]+"),
    re.compile(r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)bearer\s+[a-z0-9._\-]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip paths, credentials and traceback markers from a node error.

    Node errors can echo collaborator responses and evaluator messages, so
    they are cleaned before being logged in a trace. The result is capped at
    500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result


def sanitize_workflow_trace(trace: list) -> list:
    """Keep node ids, status, timings, sanitized errors and output keys."""
    sanitized = []
    for entry in trace:
        if not isinstance(entry, dict):
            continue
        safe_entry = {
            "node_id": entry.get("node_id"),
            "status": entry.get("status"),
            "elapsed_ms": entry.get("elapsed_ms"),
        }
        if entry.get("error"):
            safe_entry["error"] = sanitize_error_message(str(entry["error"]))
        if isinstance(entry.get("output"), dict):
            safe_entry["output_keys"] = list(entry["output"].keys())
        sanitized.append(safe_entry)
    return sanitized
