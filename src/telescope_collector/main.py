"""FastAPI application factory for the Telescope collector."""

from __future__ import annotations

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from telescope_collector.api import entries, metrics, otlp
from telescope_collector.api.dependencies import lifespan_dependencies, settings
from telescope_collector.config import Settings
from telescope_collector.utils.diagnostics import DiagnosticError, StorageError
from telescope_collector.utils.logging import configure_logging


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    app_settings = app_settings or settings()
    logger = configure_logging(app_settings.api.log_level)
    logger.info(
        "starting telescope collector",
        extra={"port": app_settings.api.port, "storage": app_settings.storage.backend},
    )

    async def lifespan(app: FastAPI):
        async with lifespan_dependencies(app_settings) as state:
            app.state.telescope_state = state
            yield
            del app.state.telescope_state

    app = FastAPI(title="Telescope Collector", lifespan=lifespan)

    if app_settings.api.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=app_settings.api.allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(DiagnosticError)
    async def diagnostic_error(request: Request, exc: DiagnosticError) -> JSONResponse:
        status_code = 503 if isinstance(exc, StorageError) else 500
        logger.error("request_failed", extra={"route": request.url.path, **exc.to_extra()})
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    dashboard = app_settings.collector.path.rstrip("/")
    app.include_router(entries.router, prefix=dashboard)
    app.include_router(metrics.router, prefix=dashboard)
    app.include_router(otlp.router)

    @app.get("/healthz")
    async def readiness() -> dict[str, str]:  # pragma: no cover - trivial
        return {"status": "ok"}

    return app


app = create_app()


def run(app_settings: Settings | None = None) -> None:
    """Serve the collector with uvicorn on the configured host and port."""

    target = app if app_settings is None else create_app(app_settings)
    app_settings = app_settings or settings()
    uvicorn.run(
        target,
        host=app_settings.api.host,
        port=app_settings.api.port,
        log_level=app_settings.api.log_level.lower(),
    )


__all__ = ["create_app", "app", "run"]
