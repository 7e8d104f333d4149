"""Backend selection from configuration."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, NoSuchModuleError

from telescope_collector.config import StorageSettings
from telescope_collector.storage.base import Storage
from telescope_collector.storage.memory import InMemoryStorage
from telescope_collector.storage.sql import SqlStorage
from telescope_collector.utils.diagnostics import ConfigurationError
from telescope_collector.utils.logging import Logger, get_logger, log_structured
from telescope_collector.utils.serialization import dumps


def create_storage(settings: StorageSettings, logger: Logger | None = None) -> Storage:
    """Build the configured backend.

    Raises:
        ConfigurationError: for an unknown backend or when the ``sql`` backend has no usable ``database_url``.
    """

    logger = logger or get_logger("storage")
    if settings.backend == "memory":
        log_structured(logger, "storage_selected", backend="memory", max_entries=settings.max_entries)
        return InMemoryStorage(max_entries=settings.max_entries)
    if settings.backend != "sql":
        raise ConfigurationError("UnknownStorageBackend", f"Unsupported storage backend {settings.backend!r}.")

    if not settings.database_url:
        raise ConfigurationError(
            "MissingDatabaseUrl",
            "The sql storage backend requires TELESCOPE_STORAGE_DATABASE_URL.",
        )
    try:
        url = make_url(settings.database_url)
        engine_kwargs: dict[str, object] = {"json_serializer": dumps, "pool_pre_ping": True}
        if url.get_backend_name() == "sqlite":
            # Worker threads share the engine; sqlite connections must allow cross-thread use.
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine = create_engine(url, **engine_kwargs)
    except (ArgumentError, NoSuchModuleError) as exc:
        raise ConfigurationError(
            "InvalidDatabaseUrl",
            "TELESCOPE_STORAGE_DATABASE_URL could not be used to create a database engine.",
            detail=str(exc),
        ) from exc

    storage = SqlStorage(engine, table_prefix=settings.table_prefix, logger=logger)
    if settings.create_tables:
        storage.create_tables()
    log_structured(
        logger, "storage_selected", backend="sql", dialect=url.get_backend_name(), table_prefix=settings.table_prefix
    )
    return storage


__all__ = ["create_storage"]
