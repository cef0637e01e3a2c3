"""FastAPI application factory."""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from creditflow import __version__
from creditflow.api.rate_limit import limiter
from creditflow.api.v1 import admin, auth, credits, marketplace, referral
from creditflow.errors import CreditflowError
from creditflow.logging_config import bind_request_context, clear_request_context, configure_logging, get_logger
from creditflow.settings import settings
from creditflow.storage.db import db

logger = get_logger(__name__)

API_PREFIX = "/api/v1"

# JSON-only API: nothing may be framed, sniffed or scripted
SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cache-Control": "no-store",
}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id for structured logs and add security headers."""

    async def dispatch(self, request: Request, call_next):
        clear_request_context()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        bind_request_context(request_id=request_id, path=request.url.path)

        response = await call_next(request)

        response.headers.update(SECURITY_HEADERS)
        response.headers["X-Request-ID"] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("app_starting", env=settings.env, kv_url=settings.kv_url.split("@")[-1])
    db.create_tables()
    yield
    logger.info("app_shutting_down")


def _cors_origins(is_production: bool) -> list[str]:
    origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]
    if is_production and "*" in origins:
        logger.error("cors_wildcard_blocked")
        return []
    return origins


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RateLimitExceeded)
    async def rate_limited(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"error": {"message": "Too many requests. Please try again later.", "code": "RATE_LIMITED"}},
        )

    @app.exception_handler(CreditflowError)
    async def domain_error(request: Request, exc: CreditflowError):
        if exc.status_code >= 500:
            logger.error("domain_error", code=exc.code, message=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"message": exc.message, "code": exc.code, **exc.details}},
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        # Internal details stay in the logs
        logger.exception("unhandled_error")
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "An unexpected error occurred", "code": "INTERNAL_ERROR"}},
        )


def create_app() -> FastAPI:
    """Build the API app: middleware, error handlers and the v1 routers."""
    configure_logging()
    is_production = settings.env == "production"

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Credit ledger, referral bonuses and marketplace purchases",
        version=__version__,
        docs_url=None if is_production else "/api/docs",
        redoc_url=None,
        openapi_url=None if is_production else "/api/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(is_production),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
        max_age=3600,
    )
    app.state.limiter = limiter
    _register_error_handlers(app)

    for module in (auth, credits, referral, marketplace, admin):
        app.include_router(module.router, prefix=API_PREFIX)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": __version__, "env": settings.env}

    return app


app = create_app()
