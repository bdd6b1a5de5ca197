from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.router import api_router
from app.core.document_store import StorePermissionError, StoreUnavailableError
from app.core.security import InvalidSecretError
from app.database import init_db
from app.schemas.operations import HealthResponse
from app.services.engine import build_returns_engine
from app.services.return_record_service import AllocationError, RecordNotFoundError
from app.services.return_state_machine import InvalidTransitionError


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create the documents table (SQL backend)
    - Start the engine (snapshot subscriptions)

    Shutdown:
    - Stop subscriptions and flush pending notifications
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} (store: {settings.STORE_BACKEND})")

    if settings.STORE_BACKEND == "sql":
        await init_db()

    engine = build_returns_engine()
    await engine.start()
    app.state.engine = engine

    yield

    await engine.stop()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Return Records", "description": "Intake, workflow transitions, split, disposition and pickup"},
    {"name": "NCR Reports", "description": "Non-conformance reports and their derived return records"},
    {"name": "Admin", "description": "Reconciliation sweeps and counters (X-Admin-Secret)"},
    {"name": "Health", "description": "Liveness"},
]

API_DESCRIPTION = """
## Return Lifecycle Engine API

Drives return items through the collection and NCR/hub workflows,
allocates document numbers, enforces the document lock rule and keeps NCR
reports and their return records consistent.

### Error Codes

| Code | Description |
|------|-------------|
| 403 | Wrong shared secret, or storage access denied |
| 404 | Record or report not found |
| 409 | Document locked / duplicate, or invalid (stale) transition |
| 422 | Validation failed (split, disposition, payload) |
| 503 | Number allocation failed or storage unreachable; retry |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


def _error_response(request: Request, status_code: int, message, exc: Exception) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content={
            "detail": message,
            "type": type(exc).__name__,
            "path": str(request.url.path),
        },
    )

    # Error responses bypass CORSMiddleware when raised from handlers
    origin = request.headers.get("origin", "")
    if origin and (origin in settings.CORS_ORIGINS or "*" in settings.CORS_ORIGINS):
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


@app.exception_handler(RecordNotFoundError)
async def not_found_handler(request: Request, exc: RecordNotFoundError):
    return _error_response(request, 404, str(exc), exc)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return _error_response(request, 409, str(exc), exc)


@app.exception_handler(ValueError)
async def validation_error_handler(request: Request, exc: ValueError):
    # SplitError, DispositionError and pydantic ValidationError are ValueErrors
    return _error_response(request, 422, str(exc), exc)


@app.exception_handler(InvalidSecretError)
async def invalid_secret_handler(request: Request, exc: InvalidSecretError):
    return _error_response(request, 403, str(exc), exc)


@app.exception_handler(StorePermissionError)
async def store_permission_handler(request: Request, exc: StorePermissionError):
    logger.error(f"Store permission denied on {request.method} {request.url.path}: {exc}")
    return _error_response(
        request, 403, "Storage access denied. Check the document store access rules.", exc
    )


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    logger.error(f"Store unavailable on {request.method} {request.url.path}: {exc}")
    return _error_response(request, 503, "Storage is unreachable, please retry", exc)


@app.exception_handler(AllocationError)
async def allocation_error_handler(request: Request, exc: AllocationError):
    return _error_response(request, 503, str(exc), exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unexpected faults: logged with traceback, reported generically."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return _error_response(request, 500, "Internal server error", exc)


# Health check endpoint
@app.get("/health", tags=["Health"], response_model=HealthResponse)
async def health_check():
    return HealthResponse(
        status="healthy",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        store=settings.STORE_BACKEND,
    )


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
