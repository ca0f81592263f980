import structlog

from flowkernel.logging import (
    _mask_secrets,
    _summarize_content,
    get_correlation_id,
    run_log_context,
    sanitize_error_message,
    sanitize_workflow_trace,
    set_correlation_id,
)


def test_correlation_id_roundtrip():
    assert set_correlation_id("run-42") == "run-42"
    assert get_correlation_id() == "run-42"
    generated = set_correlation_id()
    assert generated and generated != "run-42"


def test_secrets_redacted():
    event = _mask_secrets(None, "info", {"api_key": "sk-abcdefgh", "node": "llm-1"})
    assert event == {"api_key": "sk***gh", "node": "llm-1"}


def test_error_message_sanitized():
    message = sanitize_error_message("failed reading /home/ada/.config/key api_key=sk-123")
    assert "/home/ada" not in message
    assert "sk-123" not in message
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 900)) == 500


def test_trace_keeps_shape_not_values():
    trace = [
        {"node_id": "l1", "status": "ok", "elapsed_ms": 1.5, "error": None, "output": {"text": "secret answer"}},
        {"node_id": "f1", "status": "error", "elapsed_ms": 0.2, "error": "boom", "output": None},
        "not-a-dict",
    ]
    assert sanitize_workflow_trace(trace) == [
        {"node_id": "l1", "status": "ok", "elapsed_ms": 1.5, "output_keys": ["text"]},
        {"node_id": "f1", "status": "error", "elapsed_ms": 0.2, "error": "boom"},
    ]


def test_run_context_bound_only_inside_block():
    with run_log_context("run-1", "wf-1"):
        bound = structlog.contextvars.get_contextvars()
        assert bound["run_id"] == "run-1"
        assert bound["workflow_id"] == "wf-1"
    assert "run_id" not in structlog.contextvars.get_contextvars()


def test_content_logged_as_length():
    event = _summarize_content(None, "info", {"prompt": "Answer: test", "node": "l1", "code": 3})
    assert event == {"prompt": "<12 chars>", "node": "l1", "code": 3}
