from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from flowkernel.api.error_handling import register_exception_handlers
from flowkernel.api.routes import router
from flowkernel.config import get_settings
from flowkernel.logging import get_logger, set_correlation_id
from flowkernel.models import NodeType
from flowkernel.service.runtime import get_runtime

__version__ = "0.1.0"

logger = get_logger(__name__)

# Used when CORS_ALLOW_ORIGINS is unset: the usual local editor dev servers
_DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_STATIC_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "API-Version": __version__,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    logger.info(
        "flowkernel_started",
        version=__version__,
        test_mode=runtime.settings.test_mode,
        documents=len(runtime.retrieval),
    )
    yield
    try:
        await get_runtime().aclose()
    except Exception as exc:
        logger.error("flowkernel_shutdown_failed", error=str(exc))
    else:
        logger.info("flowkernel_stopped")


app = FastAPI(title="Flowkernel", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins or _DEV_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def stamp_response_headers(request: Request, call_next):
    """Bind the caller's X-Request-ID (or a fresh one) and echo it back."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in _STATIC_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.url.path == "/healthz" or request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    checks = {
        "completion": {"backend": type(runtime.completion).__name__},
        "retrieval": {
            "backend": type(runtime.retrieval).__name__,
            "documents": len(runtime.retrieval),
        },
        "web_search": {"backend": type(runtime.web_search).__name__},
    }
    return {
        "status": "healthy",
        "version": __version__,
        "checks": checks,
        "node_types": NodeType.values(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
