"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
registers the ingestion routers and maps domain errors to HTTP responses.
"""
import logging
import os
from contextlib import asynccontextmanager
from http import HTTPStatus

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import settings
from .core.logging_config import configure_logging
from .db.models import utcnow
from .db.session import TransactionTimeoutError
from .domain.ingest.errors import IngestionError
from .domain.ingest.quota import build_upload_limiter

# Import routers
from .api.routers import admin, cron, csv, staging, uploads

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    app.state.upload_limiter = build_upload_limiter(settings)

    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    try:
        # Models must be imported so their tables are registered on Base.
        from .core import security  # noqa: F401
        from .db import models  # noqa: F401
        from .db.session import Base, get_engine

        logger.info("Initializing database tables...")
        Base.metadata.create_all(bind=get_engine())
        logger.info("All database tables initialized successfully")
    except Exception:
        logger.exception("Failed to initialize database tables; the application cannot start")
        raise

    yield


# Initialize FastAPI application
app = FastAPI(
    title="Tradebook Ingest API",
    version="1.0.0",
    description="Broker CSV ingestion with AI-assisted column mapping, order staging and format approval",
    lifespan=lifespan,
)

allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IngestionError)
async def ingestion_error_handler(request: Request, exc: IngestionError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    content = {"error": exc.message}
    if exc.details is not None:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(TransactionTimeoutError)
async def transaction_timeout_handler(request: Request, exc: TransactionTimeoutError):
    logger.error("Transaction timeout on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"error": "Database is busy, please retry", "details": {"retryable": True}},
        headers={"Retry-After": "5"},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "Validation error", "details": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Auth, routing and method errors in the same ``{error, details?}`` shape."""
    if isinstance(exc.detail, str):
        content = {"error": exc.detail}
    else:
        content = {"error": HTTPStatus(exc.status_code).phrase, "details": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Register routers
app.include_router(csv.router)
app.include_router(staging.router)
app.include_router(uploads.router)
app.include_router(admin.router)
app.include_router(cron.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Tradebook Ingest API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for deployment monitoring."""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "service": "tradebook-ingest"
    }
