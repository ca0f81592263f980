from __future__ import annotations

import asyncio
from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError as PydanticValidationError

from flowkernel.api.schemas import (
    Envelope,
    KnowledgeDocumentsRequest,
    KnowledgeDocumentsResponse,
    TemplateSummary,
    ValidationReport,
    WorkflowRunRequest,
    WorkflowRunResponse,
    WorkflowSource,
    WorkflowValidateRequest,
)
from flowkernel.logging import get_logger, set_correlation_id
from flowkernel.models import NodeType, Workflow, WorkflowExecutionResult
from flowkernel.service.documents import load_workflow
from flowkernel.service.errors import (
    SchedulingError,
    ServiceError,
    WorkflowValidationError,
)
from flowkernel.service.rag import Document
from flowkernel.service.runtime import get_runtime
from flowkernel.service.scheduler import execution_order
from flowkernel.service.templates import (
    build_template_workflow,
    get_template,
    list_templates,
)
from flowkernel.service.validation import validate_workflow
from flowkernel.service.workflow import WorkflowCallbacks

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Custom close code for a rejected stream request
WS_CLOSE_INVALID_REQUEST = 4400


def _resolve_workflow(source: WorkflowSource) -> Workflow:
    if source.template_id is not None:
        return build_template_workflow(source.template_id)
    return load_workflow(source.workflow)


def _run_response(result: WorkflowExecutionResult) -> dict:
    return WorkflowRunResponse(**jsonable_encoder(result.to_dict())).model_dump()


@router.get("/workflows/node-types", response_model=Envelope, tags=["workflows"])
async def list_node_types():
    return Envelope(status="ok", data={"node_types": NodeType.values()})


@router.get("/workflows/templates", response_model=Envelope, tags=["workflows"])
async def list_workflow_templates():
    items = [TemplateSummary(**item).model_dump() for item in list_templates()]
    return Envelope(status="ok", data={"items": items})


@router.get("/workflows/templates/{template_id}", response_model=Envelope, tags=["workflows"])
async def get_workflow_template(template_id: str):
    return Envelope(status="ok", data=get_template(template_id))


@router.post("/workflows/validate", response_model=Envelope, tags=["workflows"])
async def validate_workflow_route(body: WorkflowValidateRequest):
    workflow = _resolve_workflow(body)
    runtime = get_runtime()
    try:
        validate_workflow(workflow)
        order = execution_order(workflow, strict=runtime.settings.strict_scheduling)
    except WorkflowValidationError as exc:
        report = ValidationReport(
            valid=False, kind=exc.kind, message=exc.message, nodes=exc.nodes
        )
    except SchedulingError as exc:
        report = ValidationReport(
            valid=False,
            kind="SchedulingError",
            message=exc.message,
            nodes=exc.unscheduled,
        )
    else:
        report = ValidationReport(valid=True, order=order)
    return Envelope(status="ok", data=report.model_dump())


@router.post("/workflows/run", response_model=Envelope, tags=["workflows"])
async def run_workflow(body: WorkflowRunRequest):
    workflow = _resolve_workflow(body)
    engine = get_runtime().new_engine()
    result = await engine.execute(
        workflow,
        initial_context=body.initial_context,
        payload=body.payload,
    )
    return Envelope(status="ok", data=_run_response(result))


@router.post("/knowledge/documents", response_model=Envelope, status_code=201, tags=["knowledge"])
async def index_documents(body: KnowledgeDocumentsRequest):
    retrieval = get_runtime().retrieval
    indexed = []
    for item in body.documents:
        document = retrieval.add(
            Document(
                id=item.id or str(uuid4()),
                content=item.content,
                metadata=item.metadata,
            )
        )
        indexed.append(document.id)
    logger.info("knowledge_documents_indexed", count=len(indexed), total=len(retrieval))
    return Envelope(
        status="ok",
        data=KnowledgeDocumentsResponse(indexed=indexed, total=len(retrieval)).model_dump(),
    )


@router.websocket("/workflows/run/stream")
async def stream_workflow_run(ws: WebSocket):
    """Run a workflow and stream its lifecycle events.

    The first client message is a run request. The server then sends
    ``node_start``, ``node_complete``, ``node_error`` and ``log`` events as
    they happen and finishes with ``workflow_complete`` carrying the result
    envelope. ``{"action": "cancel"}`` stops the run before its next node.
    """
    await ws.accept()
    request_id = str(uuid4())
    try:
        init = await ws.receive_json()
        if not isinstance(init, dict):
            raise ValueError("stream request must be a JSON object")
        request_id = init.get("request_id") or request_id
        set_correlation_id(request_id)
        body = WorkflowRunRequest(**init)
        workflow = _resolve_workflow(body)
    except WebSocketDisconnect:
        return
    except (PydanticValidationError, ServiceError, ValueError) as exc:
        if isinstance(exc, ServiceError):
            error = {"code": exc.error_code, "message": exc.message, "details": exc.detail}
        elif isinstance(exc, PydanticValidationError):
            error = {
                "code": "validation_error",
                "message": "invalid request",
                "details": {"errors": jsonable_encoder(exc.errors(include_context=False))},
            }
        else:
            error = {"code": "validation_error", "message": str(exc), "details": None}
        logger.warning("workflow_stream_rejected", request_id=request_id, error=error["message"])
        await ws.send_json({"event": "error", "data": error, "request_id": request_id})
        await ws.close(code=WS_CLOSE_INVALID_REQUEST)
        return

    engine = get_runtime().new_engine()
    cancel_event = asyncio.Event()

    async def send(event: str, data: Any) -> None:
        await ws.send_json({"event": event, "data": jsonable_encoder(data)})

    callbacks = WorkflowCallbacks(
        on_node_start=lambda node_id: send("node_start", {"node_id": node_id}),
        on_node_complete=lambda node_id, output: send(
            "node_complete", {"node_id": node_id, "output": output}
        ),
        on_node_error=lambda node_id, error: send(
            "node_error", {"node_id": node_id, "error": error}
        ),
        on_log_update=lambda line: send("log", {"line": line}),
    )

    async def listen_for_cancel() -> None:
        while not cancel_event.is_set():
            try:
                message: Optional[dict] = await ws.receive_json()
            except WebSocketDisconnect:
                cancel_event.set()
                return
            except ValueError as exc:
                logger.warning(
                    "workflow_stream_message_ignored", request_id=request_id, error=str(exc)
                )
                continue
            if isinstance(message, dict) and message.get("action") == "cancel":
                logger.info("workflow_stream_cancel_requested", request_id=request_id)
                cancel_event.set()
                return

    cancel_listener = asyncio.create_task(listen_for_cancel())
    try:
        result = await engine.execute(
            workflow,
            callbacks,
            initial_context=body.initial_context,
            payload=body.payload,
            cancel_event=cancel_event,
        )
    finally:
        cancel_listener.cancel()

    try:
        envelope = Envelope(status="ok", data=_run_response(result), request_id=request_id)
        await ws.send_json({"event": "workflow_complete", "data": envelope.model_dump()})
        await ws.close(code=1000)
    except WebSocketDisconnect:
        logger.info("workflow_stream_client_gone", request_id=request_id)
