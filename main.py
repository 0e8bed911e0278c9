"""
FastAPI application for the Adaptive Optimization Engine

Self-tuning performance optimization service: ingests request execution
metrics, derives health and bottleneck insight, gates optimization
recommendations through policy validation and verifies applied optimizations
against measured outcomes.

Key Features:
- Recommendation validation (confidence, risk, strategy rules)
- Outcome verification feeding back into the confidence model
- Stability validation from live performance insights
- Prometheus metrics for HTTP traffic and engine health
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.settings import settings
from src.api.routers import health, optimization
from src.core.cancellation import OperationCancelledError
from src.core.optimization_engine import EngineDisposedError
from src.services.runtime import get_runtime, initialize_runtime, shutdown_runtime

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Client closed request; nginx convention
HTTP_499_CLIENT_CLOSED_REQUEST = 499

# Prometheus metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info(f"Starting {settings.app_name}...")

    runtime_status = await initialize_runtime(settings.start_background_tasks)
    app.state.runtime_status = runtime_status
    app.state.start_time = datetime.utcnow()
    app.state.request_count = 0

    logger.info(f"{settings.app_name} startup complete")

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    try:
        await shutdown_runtime()
    except Exception as e:
        logger.error(f"Error during runtime shutdown: {e}")
    logger.info(f"{settings.app_name} shutdown complete")


app = FastAPI(
    title="Adaptive Optimization Engine API",
    description="""
    Self-tuning performance optimization service.

    Key features:
    - Validation of drafted optimization recommendations before they are applied
    - Verification of applied optimizations against before/after metrics
    - Stability validation and performance insights
    """,
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Middleware for collecting Prometheus metrics"""
    start_time = time.time()

    if "x-request-id" not in request.headers:
        request.state.trace_id = str(uuid.uuid4())
    else:
        request.state.trace_id = request.headers["x-request-id"]

    response = await call_next(request)

    duration = time.time() - start_time
    endpoint = request.url.path
    method = request.method

    REQUEST_COUNT.labels(
        method=method,
        endpoint=endpoint,
        status_code=str(response.status_code)
    ).inc()

    REQUEST_DURATION.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration)

    response.headers["X-Response-Time-Ms"] = str(int(duration * 1000))
    response.headers["X-Request-ID"] = request.state.trace_id

    return response


def _error_response(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "trace_id": trace_id}},
        headers={"X-Request-ID": trace_id}
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with consistent error format"""
    logger.warning(f"HTTP {exc.status_code}: {exc.detail}")
    return _error_response(request, exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning(f"Invalid input on {request.url.path}: {exc}")
    return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, "INVALID_INPUT", str(exc))


@app.exception_handler(OperationCancelledError)
async def cancelled_handler(request: Request, exc: OperationCancelledError):
    logger.info(f"Request cancelled on {request.url.path}: {exc}")
    return _error_response(request, HTTP_499_CLIENT_CLOSED_REQUEST, "CANCELLED", str(exc))


@app.exception_handler(EngineDisposedError)
async def disposed_handler(request: Request, exc: EngineDisposedError):
    logger.warning(f"Request on disposed engine: {request.url.path}")
    return _error_response(request, status.HTTP_503_SERVICE_UNAVAILABLE, "ENGINE_DISPOSED", str(exc))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR,
                           "INTERNAL_ERROR", "An internal error occurred")


app.include_router(
    health.router,
    tags=["Health"]
)

app.include_router(
    optimization.router,
    prefix="/api/v1",
    tags=["Optimization"]
)


@app.get("/metrics", response_class=Response)
async def prometheus_metrics():
    """Prometheus metrics endpoint (HTTP metrics plus engine gauges)"""
    if not settings.prometheus_enabled:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics endpoint disabled"
        )

    content = generate_latest() + get_runtime().publisher.export()
    return Response(content=content, media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "status": "operational",
        "endpoints": {
            "docs": "/docs" if settings.debug else "disabled",
            "health": "/health",
            "metrics": "/metrics" if settings.prometheus_enabled else "disabled"
        }
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        log_level="info",
        reload=settings.debug,
        access_log=True
    )
