"""Error envelope shape shared by every failing HTTP response."""

import json

import pytest
from pydantic import ValidationError

from flowkernel.api.error_handling import ERROR_CODES, envelope_error, error_code_for
from flowkernel.api.schemas import Envelope, ErrorBody, WorkflowRunRequest
from flowkernel.logging import set_correlation_id
from flowkernel.service.errors import (
    NotFoundError,
    SchedulingError,
    ServiceError,
    WorkflowDocumentError,
)


class TestErrorBody:
    def test_known_codes_accepted(self):
        for code in ("not_found", "validation_error", "conflict", "server_error"):
            assert ErrorBody(code=code, message="m").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="m")

    def test_details_optional(self):
        assert ErrorBody(code="not_found", message="m").details is None


class TestEnvelope:
    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id


def test_status_mapping():
    assert ERROR_CODES[404] == "not_found"
    assert error_code_for(422) == "validation_error"
    assert error_code_for(418) == "server_error"


def test_error_response_shape():
    response = envelope_error(409, "busy", {"run": "r1"})
    body = json.loads(response.body)
    assert response.status_code == 409
    assert body["status"] == "error"
    assert body["error"] == {"code": "conflict", "message": "busy", "details": {"run": "r1"}}
    assert body["data"] is None


def test_service_error_codes():
    assert NotFoundError("x").status_code == 404
    assert ServiceError("x", status_code=404, error_code="not_found").error_code == "not_found"
    assert SchedulingError("x", unscheduled=["a"]).detail == {"unscheduled": ["a"]}
    assert SchedulingError("x").error_code == "server_error"
    assert WorkflowDocumentError("bad", ["nodes: required"]).detail == {"errors": ["nodes: required"]}


def test_run_request_accepts_template_only():
    request = WorkflowRunRequest(template_id="rag-qa", payload={"query": "q"})
    assert request.workflow is None


def test_error_response_carries_correlation_id():
    set_correlation_id("req-7")
    body = json.loads(envelope_error(404, "gone").body)
    assert body["request_id"] == "req-7"
    assert body["error"]["details"] is None
