#!/usr/bin/env python3
"""
main.py

FastAPI app for the AVIF conversion service.

``create_app()`` builds the batch converter (kept on ``app.state``) and wires
the conversions router, request-id aware logging, security headers, the
Prometheus /metrics endpoint and (optionally) a static mount of the media
root so that converted files and their WebP siblings can be served directly.
The module level ``app`` is what uvicorn imports.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import make_asgi_app
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.middleware.base import BaseHTTPMiddleware

from avif_backend import __version__
from avif_backend.routers import conversions
from avif_backend.services import env_utils
from avif_backend.services import observability_utils as obs
from avif_backend.services.orchestrator import BatchConverter, build_local_converter, health_check

_request_id_ctx: ContextVar[str] = ContextVar("_request_id", default="-")


class AppSettings(BaseSettings):
    """HTTP-layer settings; pipeline settings live in services.settings."""

    ENVIRONMENT: str = "local_dev"
    ALLOWED_ORIGINS: Optional[str] = None
    ALLOWED_HOSTS: Optional[str] = None
    BACKEND_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    SERVE_MEDIA: bool = True

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    @field_validator("BACKEND_PORT")
    @classmethod
    def validate_port(cls, v):
        if not 1024 <= v <= 65535:
            raise ValueError("BACKEND_PORT must be between 1024 and 65535")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid LOG_LEVEL: {v}")
        return v.upper()

    @property
    def is_prod(self) -> bool:
        return self.ENVIRONMENT.lower() == "prod"


# ---------- Logging ----------
class JsonFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class RequestIDFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_ctx.get()
        return True


def setup_logging(app_settings: AppSettings) -> logging.Logger:
    """One stdout handler on the ``avif_backend`` logger; JSON lines in prod."""
    package_logger = logging.getLogger("avif_backend")
    if not any(getattr(h, "_avif_app", False) for h in package_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler._avif_app = True  # type: ignore[attr-defined]
        if app_settings.is_prod:
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(logging.Formatter("[%(request_id)s] %(asctime)s %(levelname)s %(name)s: %(message)s"))
        handler.addFilter(RequestIDFilter())
        package_logger.addHandler(handler)
        package_logger.propagate = False
    package_logger.setLevel(getattr(logging, app_settings.LOG_LEVEL, logging.INFO))
    return obs.get_logger("avif_backend.main")


# ---------- Middleware ----------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate (or mint) X-Request-ID and expose it to log records."""

    async def dispatch(self, request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        token = _request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            _request_id_ctx.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, hsts: bool = False):
        super().__init__(app)
        self.hsts = hsts

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        for header, value in (
            ("X-Frame-Options", "DENY"),
            ("X-Content-Type-Options", "nosniff"),
            ("Referrer-Policy", "no-referrer"),
        ):
            response.headers.setdefault(header, value)
        if self.hsts:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response


def _split_csv(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def _cors_origins(app_settings: AppSettings) -> List[str]:
    if app_settings.ALLOWED_ORIGINS:
        return _split_csv(app_settings.ALLOWED_ORIGINS)
    if app_settings.is_prod:
        return []
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


# ---------- Lifespan ----------
@asynccontextmanager
async def lifespan(app: FastAPI):
    log = obs.get_logger("avif_backend.main")
    report = health_check(app.state.converter.settings)
    if report["status"] == "unhealthy":
        # items will fail with EncodeError until the codec is installed
        log.warning("Starting without a working AVIF codec: %s", report["checks"])
    else:
        log.info("Startup checks %s", report["status"])
    obs.audit_log("app.startup", "avif_backend.main", report["status"], report["checks"])
    yield
    app.state.converter.publisher.close()
    log.info("Application shutting down")


def create_app(app_settings: Optional[AppSettings] = None, converter: Optional[BatchConverter] = None) -> FastAPI:
    app_settings = app_settings or AppSettings(ENVIRONMENT=env_utils.get_environment())
    log = setup_logging(app_settings)

    docs = not app_settings.is_prod
    app = FastAPI(
        title="AVIF Backend",
        version=__version__,
        docs_url="/docs" if docs else None,
        redoc_url=None,
        openapi_url="/openapi.json" if docs else None,
        lifespan=lifespan,
    )

    if app_settings.is_prod and app_settings.ALLOWED_HOSTS:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=_split_csv(app_settings.ALLOWED_HOSTS))
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, hsts=app_settings.is_prod)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(app_settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.state.converter = converter or build_local_converter()
    app.include_router(conversions.router)
    app.mount("/metrics", make_asgi_app(registry=obs.PROM_REGISTRY))

    media_dir = Path(app.state.converter.settings.MEDIA_ROOT or env_utils.get_media_root())
    if app_settings.SERVE_MEDIA and media_dir.is_dir():
        app.mount("/media", StaticFiles(directory=str(media_dir)), name="media")
        log.info("Serving /media from %s", media_dir)

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", "-")
        log.exception("Unhandled exception [req_id=%s]", request_id)
        obs.metrics_inc("app.unhandled_exception")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error", "request_id": request_id},
        )

    app.state.settings = app_settings
    log.info("App created: ENVIRONMENT=%s", app_settings.ENVIRONMENT)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=AppSettings().BACKEND_PORT)
