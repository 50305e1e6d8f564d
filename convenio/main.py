"""FastAPI application entry point."""

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from convenio.core.config import settings
from convenio.core.errors import DomainError
from convenio.core.monitoring import init_sentry, report_exception
from convenio.core.rate_limit import limiter
from convenio.core.structured_logging import build_log_context
from convenio.db.session import engine

logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

init_sentry("api")

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Convênio API",
    description="Healthcare convênio portal: subscriptions, affiliates and professional agenda",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    if response.status_code >= 500:
        logger.error(
            "Request failed with %s",
            response.status_code,
            extra=build_log_context(
                request_id=request_id,
                route=request.url.path,
                method=request.method,
            ),
        )
    return response


# ============================================================================
# Error rendering: every error body is {message, code, ...}
# ============================================================================

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"message": str(exc.detail), "code": f"HTTP_{exc.status_code}"}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"message": "Dados inválidos", "code": "VALIDATION_ERROR", "errors": errors},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error",
        extra=build_log_context(
            request_id=getattr(request.state, "request_id", None),
            route=request.url.path,
            method=request.method,
        ),
    )
    report_exception(exc)
    return JSONResponse(
        status_code=500,
        content={"message": "Erro interno do servidor", "code": "INTERNAL_ERROR"},
    )


# ============================================================================
# Schema bootstrap (dev / single-node deployments)
# ============================================================================

if settings.AUTO_CREATE_TABLES:
    from convenio.db import models  # noqa: F401  registers every table
    from convenio.db.base import Base

    Base.metadata.create_all(bind=engine)

# ============================================================================
# Routers
# ============================================================================

from convenio.routers import (  # noqa: E402
    admin,
    affiliate_tracking,
    auth,
    coupons,
    dependents,
    internal,
    notifications,
    payments,
    reports,
    scheduling,
    webhooks,
)

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])

# Coupons: /validate-coupon and /admin/coupons
app.include_router(coupons.router, prefix="/api", tags=["coupons"])

# Checkout (mixed paths: /create-subscription, /payment/..., /professional/...)
app.include_router(payments.router, prefix="/api", tags=["payments"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
app.include_router(dependents.router, prefix="/api/dependents", tags=["dependents"])

app.include_router(affiliate_tracking.router, prefix="/api/affiliate-tracking", tags=["affiliates"])

# Agenda
app.include_router(scheduling.router, prefix="/api/scheduling", tags=["scheduling"])
app.include_router(scheduling.access_router, prefix="/api/professional", tags=["scheduling"])

app.include_router(reports.router, prefix="/api/reports", tags=["reports"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])

# Internal endpoints (scheduled/cron jobs - protected by INTERNAL_SECRET)
app.include_router(internal.router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
