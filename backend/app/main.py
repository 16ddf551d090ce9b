"""
FastAPI Application — Entry Point

Document Ingestion & Enrichment Pipeline API

Architecture:
  - All routes are versioned under /api/v1/
  - Pipeline services are built once in the lifespan hook and stored on
    app.state.services; routes read them through app.api.deps
  - The owner id is supplied by the caller (no authentication layer)
  - Structured JSON error responses on all 4xx/5xx

Error mapping (pipeline taxonomy → HTTP):
  ValidationError                           400
  DocumentNotFoundError                     404
  PermanentServiceError                     502
  RetryExhaustedError / TransientService    503
  PersistenceError                          500
  anything else                             500 (catch-all, no stack trace)

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Request ID injection — X-Request-ID header on every response
  3. Gzip — compress responses > 1 KB
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
from app.api.v1.translation import router as translation_router
from app.core.config import settings
from app.core.exceptions import (
    DocumentNotFoundError,
    PermanentServiceError,
    PersistenceError,
    RetryExhaustedError,
    TransientServiceError,
    ValidationError,
)
from app.db.session import check_db_health
from app.schemas.documents import ErrorDetail, ErrorResponse, PipelineErrors
from app.services.factory import build_services

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: build the pipeline services, validate DB connectivity.
    Run on shutdown: close provider clients and connection pools.
    """
    logger.info(
        "Starting document pipeline | env=%s storage=%s metadata=%s",
        settings.app_env, settings.storage_backend, settings.metadata_backend,
    )

    if settings.metadata_backend == "sql":
        db_health = await check_db_health()
        if db_health["status"] != "ok":
            logger.critical("Database health check failed at startup: %s", db_health)
            raise RuntimeError(f"DB unavailable: {db_health}")
        logger.info("Database: connected")

    app.state.services = build_services(settings)
    logger.info("S3 bucket: %s", settings.s3_bucket)

    yield

    logger.info("Shutting down document pipeline")
    await app.state.services.aclose()
    if settings.metadata_backend == "sql":
        from app.db.session import engine
        await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def _error(status_code: int, body: ErrorResponse, request: Request) -> JSONResponse:
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    body.request_id = body.request_id or request_id
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Ingestion & Enrichment Pipeline",
        description=(
            "Stages uploads, enriches them with AI-derived metadata, converts "
            "them to PDF and stores them durably. Supports two-engine reprocessing."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order — last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = ["*"] if settings.app_env == "development" else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
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
        )
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, body, request)

    @app.exception_handler(ValidationError)
    async def pipeline_validation_handler(request: Request, exc: ValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, PipelineErrors.validation(str(exc), exc.field), request)

    @app.exception_handler(DocumentNotFoundError)
    async def not_found_handler(request: Request, exc: DocumentNotFoundError):
        body = ErrorResponse(error_code="DOCUMENT_NOT_FOUND", message=str(exc))
        return _error(status.HTTP_404_NOT_FOUND, body, request)

    @app.exception_handler(PermanentServiceError)
    async def upstream_rejected_handler(request: Request, exc: PermanentServiceError):
        logger.warning("Upstream rejected | path=%s service=%s error=%s", request.url.path, exc.service, exc)
        return _error(status.HTTP_502_BAD_GATEWAY, PipelineErrors.upstream_rejected(str(exc)), request)

    async def unavailable_handler(request: Request, exc: Exception):
        logger.warning("Upstream unavailable | path=%s error=%s", request.url.path, exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, PipelineErrors.service_unavailable(str(exc)), request)

    app.add_exception_handler(RetryExhaustedError, unavailable_handler)
    app.add_exception_handler(TransientServiceError, unavailable_handler)

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError):
        logger.error("Persistence failed | path=%s stage=%s error=%s", request.url.path, exc.stage, exc)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            PipelineErrors.storage_error(exc.stage, str(exc)),
            request,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            PipelineErrors.internal_error(request_id),
            request,
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router,   prefix="/api/v1")
    app.include_router(translation_router, prefix="/api/v1")

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
        return {"status": "ok", "service": "document-pipeline-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the metadata database is reachable.",
    )
    async def readiness() -> JSONResponse:
        if settings.metadata_backend != "sql":
            return JSONResponse(
                status_code=status.HTTP_200_OK,
                content={"status": "ready", "database": {"status": "skipped"}},
            )
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
