"""Main FastAPI application"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
import logging
import time
import traceback
import uuid

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy.exc import SQLAlchemyError

from authbackend.config import settings
from authbackend.core.database import check_connection, init_db
from authbackend.core.exceptions import BaseAPIException, ReauthenticationRequired, ServiceUnavailableError
from authbackend.core.metrics import REQUEST_COUNT, REQUEST_LATENCY
from authbackend.api.deps import get_auth_service
from authbackend.api.v1 import auth as auth_routes
from authbackend.schemas.response import HealthResponse
from authbackend.services.auth_service import AuthService

# Configure logging - ensure log directory exists
_log_file = settings.get_log_file()
Path(_log_file).parent.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(_log_file),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

SLOW_REQUEST_SECONDS = 1.0


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    code: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Uniform error envelope: success flag, message, machine code"""
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "success": False,
            "error": message,
            "code": code,
            "details": details or {},
            "path": request.url.path,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)


@app.middleware("http")
async def secure_and_measure(request: Request, call_next):
    """Stamp security headers, forbid caching of credentials, record metrics"""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers.update({
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
        "Cache-Control": "no-store",
        "Pragma": "no-cache",
        "X-Request-ID": request_id,
    })

    REQUEST_COUNT.labels(request.method, request.url.path, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, request.url.path).observe(elapsed)

    if elapsed > SLOW_REQUEST_SECONDS:
        logger.warning(
            "Slow request: %s %s took %.2fs request_id=%s",
            request.method, request.url.path, elapsed, request_id,
        )

    return response


@app.exception_handler(BaseAPIException)
async def api_exception_handler(request: Request, exc: BaseAPIException):
    """Map domain errors to their status and code"""
    if isinstance(exc, ReauthenticationRequired):
        # The cause stays in the log; every client sees the same message
        logger.warning("Re-authentication required (%s) path=%s", exc.reason, request.url.path)
    elif isinstance(exc, ServiceUnavailableError):
        logger.error("%s on %s %s", exc.__class__.__name__, request.method, request.url.path)
    else:
        logger.info("%s (%d) on %s %s", exc.code, exc.status_code, request.method, request.url.path)

    headers = {"Retry-After": "1"} if isinstance(exc, ServiceUnavailableError) else None
    return _error_response(request, exc.status_code, exc.message, exc.code, exc.details, headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies field by field"""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    # Field values are left out of the log; they may hold passwords
    logger.warning(
        "Validation error on %s: %s",
        request.url.path,
        [(e["field"], e["type"]) for e in errors],
    )
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation failed",
        "validation_error",
        {"errors": errors},
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.error(
        "Database error %s on %s %s\n%s",
        exc.__class__.__name__, request.method, request.url.path, traceback.format_exc(),
    )
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "A database error occurred. Please try again later.",
        "internal_error",
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.critical(
        "Unhandled %s on %s %s\n%s",
        exc.__class__.__name__, request.method, request.url.path, traceback.format_exc(),
    )
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred.",
        "internal_error",
    )


@app.on_event("startup")
async def startup_event():
    """Refuse insecure production config, check schema, wire services"""
    settings.validate_security_settings()
    logger.info("Starting %s v%s (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)

    try:
        init_db()
    except Exception:
        logger.exception("Database initialization failed")
        raise

    # Dummy hash and cache client exist before the first request
    get_auth_service()
    logger.info("Auth service ready (session cache: %s)", settings.SESSION_CACHE_BACKEND)


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down %s", settings.APP_NAME)


@app.get("/health", response_model=HealthResponse)
def health_check(auth: AuthService = Depends(get_auth_service)):
    """Liveness plus readiness of the credential store and session cache"""
    readiness = {}
    for name, probe in (("database", check_connection), ("session_cache", auth.engine.cache.ping)):
        try:
            probe()
            readiness[name] = {"ok": True, "error": None}
        except ServiceUnavailableError as exc:
            readiness[name] = {"ok": False, "error": exc.message}

    healthy = all(entry["ok"] for entry in readiness.values())
    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "readiness": readiness,
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/api/docs" if settings.DEBUG else "disabled"
    }


app.include_router(auth_routes.router, prefix="/api/v1/auth", tags=["Authentication"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "authbackend.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS
    )
