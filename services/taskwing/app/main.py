"""FastAPI application entrypoint."""
from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import activity, knowledge, plans
from .config import TaskWingSettings, get_settings
from .domain.pipeline import TaskWingPipeline, build_pipeline
from .errors import TaskWingError
from .observability.logging import configure_logging
from .observability.otel import configure_telemetry

logger = structlog.get_logger(__name__)


def create_app(settings: TaskWingSettings | None = None, pipeline: TaskWingPipeline | None = None) -> FastAPI:
    settings = settings or get_settings()
    pipeline = pipeline or build_pipeline(settings)
    app = FastAPI(
        title="TaskWing",
        version="0.1.0",
        docs_url="/docs",
        redoc_url=None,
    )
    app.state.pipeline = pipeline

    configure_logging(settings)
    configure_telemetry(settings)

    allowed_origins = set(settings.server.cors_allow_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(allowed_origins),
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def _reject_foreign_preflight(request: Request, call_next):
        origin = request.headers.get("origin")
        is_preflight = request.method == "OPTIONS" and "access-control-request-method" in request.headers
        if is_preflight and origin not in allowed_origins and "*" not in allowed_origins:
            logger.info("cors.preflight_rejected", origin=origin, path=request.url.path)
            return JSONResponse(status_code=403, content={"error": "origin not allowed"})
        return await call_next(request)

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - FastAPI lifecycle
        await pipeline.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - FastAPI lifecycle
        await pipeline.close()

    @app.exception_handler(TaskWingError)
    async def _taskwing_error_handler(request: Request, exc: TaskWingError):
        if exc.status_code >= 500:
            logger.error("api.error", path=request.url.path, error=exc.message, error_type=type(exc).__name__)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
            for error in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": f"invalid request: {problems}"})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def _generic_exception_handler(request: Request, exc: Exception):  # pragma: no cover - fallback
        logger.exception("api.unhandled", path=request.url.path)
        return JSONResponse(status_code=500, content={"error": "internal server error"})

    app.include_router(knowledge.router)
    app.include_router(plans.router)
    app.include_router(activity.router)

    @app.get("/healthz")
    async def healthcheck():
        return {"status": "ok", "environment": settings.environment}

    return app


app = create_app()


__all__ = ["app", "create_app"]
