"""
FastAPI Application — Entry Point

Document RAG Service API

Architecture:
  - All routes are versioned under /api/v1/
  - Every document, chunk and conversation row is owned by a user_id;
    retrieval is always scoped to the conversation owner
  - Ingestion runs in the background (Celery worker or in-process registry)
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Gzip — compress responses > 1 KB
  3. Request ID + logging — X-Request-ID header, one log line per request
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.documents import router as documents_router
from app.api.v1.folders import router as folders_router
from app.api.v1.query import router as query_router
from app.core.config import settings
from app.core.errors import (
    ConversationNotFound,
    DocumentDeleted,
    DocumentNotFound,
    InvalidCredentials,
    InvalidSourceUrl,
    JobAlreadyRunning,
    RAGServiceError,
    RateLimited,
)
from app.db.session import check_db_health
from app.schemas.documents import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Domain error → HTTP status (first match wins; subclasses before bases)
# ---------------------------------------------------------------------------

ERROR_STATUS: list[tuple[type[RAGServiceError], int, str]] = [
    (InvalidSourceUrl,     status.HTTP_400_BAD_REQUEST,  "INVALID_URL"),
    (DocumentNotFound,     status.HTTP_404_NOT_FOUND,    "DOCUMENT_NOT_FOUND"),
    (DocumentDeleted,      status.HTTP_404_NOT_FOUND,    "DOCUMENT_NOT_FOUND"),
    (ConversationNotFound, status.HTTP_404_NOT_FOUND,    "CONVERSATION_NOT_FOUND"),
    (JobAlreadyRunning,    status.HTTP_409_CONFLICT,     "JOB_ALREADY_RUNNING"),
    (RateLimited,          status.HTTP_429_TOO_MANY_REQUESTS, "RATE_LIMITED"),
    (InvalidCredentials,   status.HTTP_502_BAD_GATEWAY,  "INVALID_CREDENTIALS"),
]


def error_status(exc: RAGServiceError) -> tuple[int, str]:
    for cls, code, error_code in ERROR_STATUS:
        if isinstance(exc, cls):
            return code, error_code
    # every other typed failure comes from an upstream provider
    return status.HTTP_502_BAD_GATEWAY, "PROVIDER_ERROR"


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: optionally create the schema, log config summary.
    Run on shutdown: cancel in-process jobs, clean up connection pools.
    """
    logger.info(
        "Starting Document RAG Service | env=%s executor=%s embedding_model=%s llm_model=%s",
        settings.app_env, settings.ingestion_executor, settings.embedding_model, settings.llm_model,
    )

    if settings.db_auto_create:
        from app.db.session import init_models
        await init_models()

    yield

    logger.info("Shutting down Document RAG Service")
    from app.workers.registry import get_job_registry
    await get_job_registry().shutdown()

    from app.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document RAG Service",
        description=(
            "Document ingestion (PDF, DOCX, text, images, web pages) and "
            "retrieval-augmented question answering over a user's own documents."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if not settings.is_production else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RAGServiceError)
    async def service_exception_handler(request: Request, exc: RAGServiceError):
        status_code, error_code = error_status(exc)
        if status_code >= 500:
            logger.error(
                "Upstream failure | path=%s error=%s: %s",
                request.url.path, type(exc).__name__, exc.user_message,
            )
        body = ErrorResponse(
            error_code=error_code,
            message=exc.user_message,
            request_id=getattr(request.state, "request_id", None),
        )
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions; stack traces are only logged."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(folders_router,   prefix="/api/v1")
    app.include_router(query_router,     prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "document-rag-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
