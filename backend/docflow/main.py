"""
FastAPI Application — Entry Point

Document ingestion pipeline API

Architecture:
  - All routes are versioned under /api/v1/
  - Owner identity comes from the upstream auth gateway (X-Owner-ID)
  - One IngestionRuntime per process: repository, job queue + worker pool,
    event broadcaster, watchdog; started and stopped by the lifespan
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. Request ID injection — X-Request-ID header on every response
  2. CORS — restrict to configured origins
  3. Gzip — compress responses > 1 KB (SSE streams are excluded by GZip itself)
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
from starlette.exceptions import HTTPException as StarletteHTTPException

from docflow.api.v1.documents import router as documents_router
from docflow.api.v1.jobs import router as jobs_router
from docflow.api.v1.realtime import router as realtime_router
from docflow.core.config import settings
from docflow.core.errors import DocflowError
from docflow.db.session import check_db_health
from docflow.schemas.documents import ErrorResponse, UploadErrors
from docflow.services.runtime import IngestionRuntime, build_runtime

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: start the ingestion runtime (workers, heartbeat, watchdog).
    Run on shutdown: drain workers, close streams, release storage.
    """
    runtime: IngestionRuntime = app.state.runtime
    logger.info(
        "Starting docflow | env=%s backend=%s workers=%d",
        runtime.settings.app_env,
        runtime.settings.repository_backend,
        runtime.settings.worker_pool_size,
    )
    await runtime.start()

    yield

    logger.info("Shutting down docflow")
    await runtime.stop()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(runtime: IngestionRuntime | None = None) -> FastAPI:
    runtime = runtime or build_runtime(settings)
    app_settings = runtime.settings

    app = FastAPI(
        title="docflow",
        description=(
            "Document ingestion pipeline: queued processing with retry and backoff, "
            "lifecycle tracking, deterministic chunking and live status streaming."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not app_settings.is_production else None,
        redoc_url="/api/redoc" if not app_settings.is_production else None,
        openapi_url="/api/openapi.json" if not app_settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order, last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if app_settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID", "X-Owner-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
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
            "HTTP %s %s %d %.1fms | owner=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.headers.get("X-Owner-ID", "-"),
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(DocflowError)
    async def docflow_exception_handler(request: Request, exc: DocflowError):
        """Map pipeline errors (validation, ownership, not found, ...) to ErrorResponse."""
        request_id = _request_id(request)
        if exc.http_status >= 500:
            logger.error("Request failed | path=%s code=%s error=%s", request.url.path, exc.error_code, exc)
        else:
            logger.info("Request rejected | path=%s code=%s error=%s", request.url.path, exc.error_code, exc)
        return JSONResponse(
            status_code=exc.http_status,
            content=UploadErrors.from_exception(exc, request_id).model_dump(mode="json"),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """HTTPException details built from UploadErrors pass through unchanged."""
        if isinstance(exc.detail, dict) and "error_code" in exc.detail:
            body = ErrorResponse(**exc.detail)
        else:
            body = ErrorResponse(
                error_code="HTTP_ERROR",
                message=str(exc.detail),
            )
        body.request_id = _request_id(request)
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(mode="json"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        body = UploadErrors.request_validation(list(exc.errors()), _request_id(request))
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = _request_id(request)
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=UploadErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(jobs_router,      prefix="/api/v1")
    app.include_router(realtime_router,  prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth, used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "docflow-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 when workers are running and storage is reachable, plus pipeline stats.",
    )
    async def readiness(request: Request) -> JSONResponse:
        rt: IngestionRuntime = request.app.state.runtime
        storage = {"status": "ok", "backend": rt.settings.repository_backend}
        engine = getattr(rt.repository, "engine", None)
        if engine is not None:
            storage.update(await check_db_health(engine))

        ready = rt.started and not rt.queue.is_closed and storage["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status":  "ready" if ready else "not_ready",
                "storage": storage,
                "stats":   await rt.stats(),
            },
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
        "docflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
