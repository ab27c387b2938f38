"""Gradewise API server.

Run locally with ``uvicorn main:app --reload``; on Cloud Run the container
starts the same app object.
"""
import sys

# Model output is UTF-8; keep console logging from choking on it
if hasattr(sys.stdout, "reconfigure"):
    sys.stdout.reconfigure(encoding='utf-8')

from contextlib import asynccontextmanager
import time
import uuid

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from gradewise import __version__
from gradewise.api.dependencies import ServiceContainer, get_services
from gradewise.api.routes import router
from gradewise.core.config import settings
from gradewise.core.errors import (
    AccessDeniedError,
    ConfigurationError,
    DataInconsistencyError,
    GradewiseError,
    NotFoundError,
    TransactionConflictError,
    TransientIntegrationError,
)
from gradewise.core.logging import get_logger, setup_logging

setup_logging(level=settings.log_level, json_format=settings.environment == "production")
logger = get_logger(__name__)

APP_NAME = "Gradewise Teaching Assistant"

# Most specific first; the first matching class wins
ERROR_STATUS = (
    (ConfigurationError, 400),
    (AccessDeniedError, 403),
    (NotFoundError, 404),
    (TransactionConflictError, 409),
    (DataInconsistencyError, 502),
    (TransientIntegrationError, 503),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{APP_NAME} {__version__} starting", extra={"operation": "startup"})
    yield
    if get_services.cache_info().currsize:
        await get_services().indexer.drain()
    logger.info(f"{APP_NAME} stopped", extra={"operation": "shutdown"})


app = FastAPI(
    title=APP_NAME,
    description="Grade analytics, semantic search and a retrieval-grounded assistant for teachers",
    version=__version__,
    docs_url=None if settings.environment == "production" else "/docs",
    redoc_url=None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Tag each request with an id and log its outcome and latency."""
    request_id = uuid.uuid4().hex
    request.state.request_id = request_id
    log = get_logger(__name__, {
        "request_id": request_id,
        "method": request.method,
        "endpoint": request.url.path,
    })
    started = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        log.error(
            f"{request.method} {request.url.path} crashed",
            extra={"duration_ms": round((time.perf_counter() - started) * 1000, 2)},
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error", "request_id": request_id})

    log.info(
        f"{request.method} {request.url.path} -> {response.status_code}",
        extra={"status_code": response.status_code, "duration_ms": round((time.perf_counter() - started) * 1000, 2)},
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(GradewiseError)
async def gradewise_error_handler(request: Request, exc: GradewiseError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.warning(str(exc), extra={"error_type": type(exc).__name__, "endpoint": request.url.path})
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error_type": type(exc).__name__})


app.include_router(router)


@app.get("/")
def root():
    return {"service": APP_NAME, "version": __version__, "status": "running", "environment": settings.environment}


@app.get("/health")
def health_check():
    """Liveness probe."""
    return {
        "status": "healthy",
        "version": __version__,
        "checks": {"api": "ok", "config": "ok" if settings.project_id else "missing"},
    }


@app.get("/ready")
async def readiness_check(services: ServiceContainer = Depends(get_services)):
    """Readiness probe: configuration present and the store answering."""
    checks = {
        "config": "ok" if settings.project_id else "error",
        "store": settings.store_backend,
        "store_reachable": "ok" if await services.store.ping() else "error",
    }
    ready = checks["config"] == "ok" and checks["store_reachable"] == "ok"
    return {"status": "ready" if ready else "degraded", "checks": checks}
