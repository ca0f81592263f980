"""Map every failure an HTTP route can raise onto the error envelope."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from flowkernel.api.schemas import Envelope, ErrorBody
from flowkernel.logging import get_correlation_id, get_logger
from flowkernel.service.errors import ServiceError

logger = get_logger(__name__)

ERROR_CODES = {
    400: "validation_error",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
}


def error_code_for(status_code: int) -> str:
    return ERROR_CODES.get(status_code, "server_error")


def envelope_error(
    status_code: int,
    message: str,
    details: Any = None,
    *,
    code: Optional[str] = None,
) -> JSONResponse:
    body = ErrorBody(code=code or error_code_for(status_code), message=message, details=details)
    envelope = Envelope(status="error", error=body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _where(request: Request) -> Dict[str, str]:
    return {"path": request.url.path, "method": request.method}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        emit = logger.error if exc.status_code >= 500 else logger.warning
        emit(
            "request_rejected",
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            **_where(request),
        )
        return envelope_error(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def on_invalid_body(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        logger.warning("request_body_invalid", errors=len(errors), **_where(request))
        return envelope_error(400, "invalid request", {"errors": errors})

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, str):
            message, details = exc.detail, None
        else:
            message, details = "http error", exc.detail
        if exc.status_code >= 500:
            logger.error("http_exception", status_code=exc.status_code, **_where(request))
        return envelope_error(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception):
        logger.exception(
            "request_crashed",
            error_type=type(exc).__name__,
            error=str(exc),
            **_where(request),
        )
        return envelope_error(500, "internal server error")
