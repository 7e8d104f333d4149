"""Shared FastAPI dependency providers and application lifespan management."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import Depends, Request

from telescope_collector.config import Settings, get_settings
from telescope_collector.otlp.forwarder import HttpMetricsForwarder
from telescope_collector.otlp.receiver import OtlpReceiver
from telescope_collector.services.metrics_aggregator import MetricsAggregator
from telescope_collector.services.telescope import Telescope
from telescope_collector.storage.base import Storage
from telescope_collector.storage.factory import create_storage
from telescope_collector.storage.sql import SqlStorage
from telescope_collector.utils.logging import get_logger


@dataclass(slots=True)
class AppState:
    """Holds singletons that should be reused across requests."""

    settings: Settings
    storage: Storage
    telescope: Telescope
    receiver: OtlpReceiver
    forwarder: HttpMetricsForwarder | None = None


def settings() -> Settings:
    """Expose the cached settings instance for dependency injection."""

    return get_settings()


@asynccontextmanager
async def lifespan_dependencies(app_settings: Settings) -> AsyncIterator[AppState]:
    """Construct the collector once at startup and dispose it during shutdown."""

    logger = get_logger()
    storage = create_storage(app_settings.storage, logger=logger)
    telescope = Telescope(
        storage,
        app_settings.collector,
        aggregator=MetricsAggregator.from_settings(app_settings.metrics),
        logger=logger,
    )
    forwarder = HttpMetricsForwarder.from_settings(app_settings.otlp, logger=logger)
    receiver = OtlpReceiver(
        telescope,
        on_metrics=forwarder,
        log_metrics=app_settings.otlp.log_metrics,
        logger=logger,
    )

    await telescope.start()

    try:
        yield AppState(
            settings=app_settings,
            storage=storage,
            telescope=telescope,
            receiver=receiver,
            forwarder=forwarder,
        )
    finally:
        await telescope.aclose()
        if forwarder is not None:
            await forwarder.aclose()
        if isinstance(storage, SqlStorage):
            storage.dispose()


def app_state(request: Request) -> AppState:
    """Fetch the :class:`AppState` created by FastAPI's lifespan."""

    state = getattr(request.app.state, "telescope_state", None)
    assert isinstance(state, AppState), "App state missing; ensure lifespan wiring executed."
    return state


def telescope_dep(state: AppState = Depends(app_state)) -> Telescope:
    """Return the coordinator singleton."""

    return state.telescope


def receiver_dep(state: AppState = Depends(app_state)) -> OtlpReceiver:
    """Return the OTLP receiver singleton."""

    return state.receiver


__all__ = [
    "AppState",
    "settings",
    "lifespan_dependencies",
    "app_state",
    "telescope_dep",
    "receiver_dep",
]
