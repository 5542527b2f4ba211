import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.statements import router as statements_router
from app.core.config import get_settings
from app.core.dependencies import init_db
from app.services.statement.progress import ProgressBroadcaster

settings = get_settings()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Statement Ingest API",
    version="0.1.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)
app.state.progress_broadcaster = ProgressBroadcaster()


@app.on_event("startup")
async def _startup_jobs():
    environment = os.getenv("ENVIRONMENT", "development").strip().lower()
    errors = settings.validate_required_config()
    if errors:
        for error in errors:
            logger.error("Config error: %s", error)
        if environment == "production":
            raise RuntimeError("Configuration validation failed in production environment")
        logger.warning("Starting with %d config error(s) in %s environment", len(errors), environment)
    init_db()


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(statements_router, prefix="/api/v1", tags=["statements"])


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal Server Error"})
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    if "X-Content-Type-Options" not in headers:
        headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in headers:
        headers["X-Frame-Options"] = "DENY"
    if "Referrer-Policy" not in headers:
        headers["Referrer-Policy"] = "no-referrer"
    if "Content-Security-Policy" not in headers:
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

    return response


@app.get("/health")
async def health_check():
    return {"status": "ok", "statement_parse_enabled": settings.enable_statement_parse}
