"""Relational storage built on SQLAlchemy Core."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    cast,
    delete,
    false,
    func,
    or_,
    select,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Connection, Engine, RowMapping
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import Select

from telescope_collector.services.models import (
    ExceptionEntry,
    LogEntry,
    QueryOptions,
    RequestEntry,
    SourceContext,
    SourceLine,
    StackFrame,
    TelescopeStats,
)
from telescope_collector.storage.base import parse_status_filter
from telescope_collector.utils.diagnostics import StorageError
from telescope_collector.utils.logging import Logger, get_logger
from telescope_collector.utils.serialization import decode_payload, dumps, encode_payload, loads_lenient, to_jsonable

_T = TypeVar("_T")

# JSONB on PostgreSQL, JSON text elsewhere.
_JsonType = JSON().with_variant(JSONB(), "postgresql")


def build_tables(metadata: MetaData, prefix: str = "telescope") -> tuple[Table, Table, Table]:
    """Declare the request, exception and log tables for ``prefix``."""

    requests = Table(
        f"{prefix}_requests",
        metadata,
        Column("id", String(64), primary_key=True),
        Column("method", String(16), nullable=False),
        Column("path", Text, nullable=False),
        Column("url", Text, nullable=False),
        Column("headers", _JsonType, nullable=False),
        Column("body", _JsonType, nullable=True),
        Column("query", _JsonType, nullable=True),
        Column("status", Integer, nullable=False),
        Column("response_headers", _JsonType, nullable=False),
        Column("response_body", _JsonType, nullable=True),
        Column("duration", Float, nullable=False),
        Column("timestamp", DateTime(timezone=True), nullable=False),
        Column("ip", String(45), nullable=True),
        Column("user_id", String(255), nullable=True),
        Column("tags", _JsonType, nullable=True),
    )
    Index(f"idx_{prefix}_requests_timestamp", requests.c.timestamp.desc())
    Index(f"idx_{prefix}_requests_path", requests.c.path)
    Index(f"idx_{prefix}_requests_status", requests.c.status)

    exceptions = Table(
        f"{prefix}_exceptions",
        metadata,
        Column("id", String(64), primary_key=True),
        Column("name", String(255), nullable=False),
        Column("message", Text, nullable=False),
        Column("stack", _JsonType, nullable=False),
        Column("source", _JsonType, nullable=True),
        Column("request_id", String(64), nullable=True),
        Column("timestamp", DateTime(timezone=True), nullable=False),
        Column("handled", Boolean, nullable=False, default=False),
        Column("tags", _JsonType, nullable=True),
    )
    Index(f"idx_{prefix}_exceptions_timestamp", exceptions.c.timestamp.desc())
    Index(f"idx_{prefix}_exceptions_request_id", exceptions.c.request_id)

    logs = Table(
        f"{prefix}_logs",
        metadata,
        Column("id", String(64), primary_key=True),
        Column("level", String(10), nullable=False),
        Column("message", Text, nullable=False),
        Column("context", _JsonType, nullable=True),
        Column("request_id", String(64), nullable=True),
        Column("timestamp", DateTime(timezone=True), nullable=False),
    )
    Index(f"idx_{prefix}_logs_timestamp", logs.c.timestamp.desc())
    Index(f"idx_{prefix}_logs_level", logs.c.level)
    Index(f"idx_{prefix}_logs_request_id", logs.c.request_id)

    return requests, exceptions, logs


class SqlStorage:
    """Stores the three streams in ``{prefix}_requests``, ``{prefix}_exceptions`` and ``{prefix}_logs``.

    The engine is synchronous; each operation runs in a worker thread through :func:`asyncio.to_thread` so the event
    loop never blocks on database I/O. Any :class:`~sqlalchemy.exc.SQLAlchemyError` is re-raised as
    :class:`StorageError`.
    """

    # Columns searched case-insensitively by ``QueryOptions.search``.
    _SEARCH_COLUMNS: Mapping[str, tuple[str, ...]] = {
        "requests": ("path", "url"),
        "exceptions": ("name", "message"),
        "logs": ("message",),
    }

    def __init__(self, engine: Engine, table_prefix: str = "telescope", logger: Logger | None = None) -> None:
        self._engine = engine
        self._logger = logger or get_logger("storage")
        self._metadata = MetaData()
        self._requests, self._exceptions, self._logs = build_tables(self._metadata, table_prefix)

    @property
    def tables(self) -> tuple[Table, Table, Table]:
        return self._requests, self._exceptions, self._logs

    def create_tables(self) -> None:
        """Create missing tables and indexes."""

        self._metadata.create_all(self._engine, checkfirst=True)

    def drop_tables(self) -> None:
        self._metadata.drop_all(self._engine, checkfirst=True)

    def dispose(self) -> None:
        self._engine.dispose()

    # Requests

    async def save_request(self, entry: RequestEntry) -> None:
        await self._insert(self._requests, [_request_to_row(entry)])

    async def save_requests(self, entries: Sequence[RequestEntry]) -> None:
        await self._insert(self._requests, [_request_to_row(entry) for entry in entries])

    async def get_requests(self, options: QueryOptions | None = None) -> list[RequestEntry]:
        options = options or QueryOptions()
        table = self._requests
        query = select(table)
        if options.method:
            query = query.where(func.upper(table.c.method) == options.method.upper())
        status_filter = parse_status_filter(options.status)
        if status_filter is not None:
            if status_filter.low == status_filter.high:
                query = query.where(table.c.status == status_filter.low)
            else:
                query = query.where(table.c.status >= status_filter.low, table.c.status <= status_filter.high)
        query = self._apply_query_options(query, table, "requests", options)
        rows = await self._fetch(query)
        return [_row_to_request(row) for row in rows]

    async def get_request(self, entry_id: str) -> RequestEntry | None:
        rows = await self._fetch(select(self._requests).where(self._requests.c.id == entry_id))
        return _row_to_request(rows[0]) if rows else None

    # Exceptions

    async def save_exception(self, entry: ExceptionEntry) -> None:
        await self._insert(self._exceptions, [_exception_to_row(entry)])

    async def save_exceptions(self, entries: Sequence[ExceptionEntry]) -> None:
        await self._insert(self._exceptions, [_exception_to_row(entry) for entry in entries])

    async def get_exceptions(self, options: QueryOptions | None = None) -> list[ExceptionEntry]:
        options = options or QueryOptions()
        query = self._apply_query_options(select(self._exceptions), self._exceptions, "exceptions", options)
        rows = await self._fetch(query)
        return [_row_to_exception(row) for row in rows]

    async def get_exception(self, entry_id: str) -> ExceptionEntry | None:
        rows = await self._fetch(select(self._exceptions).where(self._exceptions.c.id == entry_id))
        return _row_to_exception(rows[0]) if rows else None

    # Logs

    async def save_log(self, entry: LogEntry) -> None:
        await self._insert(self._logs, [_log_to_row(entry)])

    async def save_logs(self, entries: Sequence[LogEntry]) -> None:
        await self._insert(self._logs, [_log_to_row(entry) for entry in entries])

    async def get_logs(self, options: QueryOptions | None = None) -> list[LogEntry]:
        options = options or QueryOptions()
        query = select(self._logs)
        if options.level:
            query = query.where(self._logs.c.level == options.level)
        query = self._apply_query_options(query, self._logs, "logs", options)
        rows = await self._fetch(query)
        return [_row_to_log(row) for row in rows]

    # Maintenance

    async def prune(self, older_than: datetime) -> int:
        cutoff = _to_utc(older_than)

        def _prune(connection: Connection) -> int:
            removed = 0
            for table in (self._requests, self._exceptions, self._logs):
                result = connection.execute(delete(table).where(table.c.timestamp < cutoff))
                removed += max(result.rowcount or 0, 0)
            return removed

        return await self._run(_prune, write=True)

    async def get_stats(self) -> TelescopeStats:
        def _stats(connection: Connection) -> list[tuple[int, Any, Any]]:
            results = []
            for table in (self._requests, self._exceptions, self._logs):
                row = connection.execute(
                    select(func.count(table.c.id), func.min(table.c.timestamp), func.max(table.c.timestamp))
                ).one()
                results.append((int(row[0] or 0), row[1], row[2]))
            return results

        (requests, req_old, req_new), (exceptions, exc_old, exc_new), (logs, log_old, log_new) = await self._run(_stats)
        bounds = [_parse_timestamp(value) for value in (req_old, req_new, exc_old, exc_new, log_old, log_new) if value]
        return TelescopeStats(
            requests=requests,
            exceptions=exceptions,
            logs=logs,
            oldest_entry=min(bounds) if bounds else None,
            newest_entry=max(bounds) if bounds else None,
        )

    # Internals

    def _apply_query_options(self, query: Select, table: Table, stream: str, options: QueryOptions) -> Select:
        if options.after is not None:
            query = query.where(table.c.timestamp >= _to_utc(options.after))
        if options.before is not None:
            query = query.where(table.c.timestamp <= _to_utc(options.before))
        if options.search:
            pattern = f"%{_escape_like(options.search)}%"
            query = query.where(
                or_(*(table.c[name].ilike(pattern, escape="\\") for name in self._SEARCH_COLUMNS[stream]))
            )
        if options.tags:
            if "tags" in table.c:
                # Tags are stored as a JSON array; match the quoted tag inside its serialized form.
                serialized = cast(table.c.tags, Text)
                query = query.where(
                    or_(*(serialized.contains(dumps(tag), autoescape=True) for tag in options.tags))
                )
            else:
                query = query.where(false())
        return (
            query.order_by(table.c.timestamp.desc())
            .offset(max(options.offset, 0))
            .limit(max(options.limit, 0))
        )

    async def _insert(self, table: Table, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return

        def _execute(connection: Connection) -> None:
            connection.execute(table.insert(), rows)

        await self._run(_execute, write=True)

    async def _fetch(self, query: Select) -> list[RowMapping]:
        def _execute(connection: Connection) -> list[RowMapping]:
            return list(connection.execute(query).mappings())

        return await self._run(_execute)

    async def _run(self, work: Callable[[Connection], _T], write: bool = False) -> _T:
        def _in_thread() -> _T:
            context = self._engine.begin() if write else self._engine.connect()
            with context as connection:
                return work(connection)

        try:
            return await asyncio.to_thread(_in_thread)
        except SQLAlchemyError as exc:
            self._logger.warning("storage_query_failed", extra={"error": str(exc)})
            raise StorageError(
                "StorageUnavailable",
                "The relational storage backend failed to complete the operation.",
                detail=str(exc),
            ) from exc


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    """Normalize driver output (aware, naive or ISO text) to an aware UTC datetime."""

    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return _to_utc(value)


def _json_or_none(value: Any) -> Any:
    return None if value is None else to_jsonable(value)


def _request_to_row(entry: RequestEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "method": entry.method,
        "path": entry.path,
        "url": entry.url,
        "headers": to_jsonable(entry.headers),
        "body": encode_payload(entry.body),
        "query": _json_or_none(entry.query),
        "status": entry.status,
        "response_headers": to_jsonable(entry.response_headers),
        "response_body": encode_payload(entry.response_body),
        "duration": entry.duration,
        "timestamp": _to_utc(entry.timestamp),
        "ip": entry.ip,
        "user_id": entry.user_id,
        "tags": _json_or_none(entry.tags),
    }


def _row_to_request(row: RowMapping) -> RequestEntry:
    tags = loads_lenient(row["tags"])
    query = loads_lenient(row["query"])
    return RequestEntry(
        id=row["id"],
        method=row["method"],
        path=row["path"],
        url=row["url"],
        status=int(row["status"]),
        duration=float(row["duration"]),
        timestamp=_parse_timestamp(row["timestamp"]),
        headers=loads_lenient(row["headers"]) or {},
        body=decode_payload(row["body"]),
        query=query,
        response_headers=loads_lenient(row["response_headers"]) or {},
        response_body=decode_payload(row["response_body"]),
        ip=row["ip"],
        user_id=row["user_id"],
        tags=list(tags) if tags is not None else None,
    )


def _exception_to_row(entry: ExceptionEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "name": entry.name,
        "message": entry.message,
        "stack": to_jsonable(list(entry.stack)),
        "source": _json_or_none(entry.source),
        "request_id": entry.request_id,
        "timestamp": _to_utc(entry.timestamp),
        "handled": entry.handled,
        "tags": _json_or_none(entry.tags),
    }


def _row_to_exception(row: RowMapping) -> ExceptionEntry:
    stack = loads_lenient(row["stack"]) or []
    source = loads_lenient(row["source"])
    tags = loads_lenient(row["tags"])
    return ExceptionEntry(
        id=row["id"],
        name=row["name"],
        message=row["message"],
        timestamp=_parse_timestamp(row["timestamp"]),
        stack=tuple(StackFrame(**frame) for frame in stack),
        source=_source_from_json(source) if source else None,
        request_id=row["request_id"],
        handled=bool(row["handled"]),
        tags=list(tags) if tags is not None else None,
    )


def _source_from_json(data: Mapping[str, Any]) -> SourceContext:
    return SourceContext(
        file=data["file"],
        line=int(data["line"]),
        column=int(data.get("column", 0)),
        lines=tuple(SourceLine(**line) for line in data.get("lines", ())),
    )


def _log_to_row(entry: LogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "level": entry.level,
        "message": entry.message,
        "context": _json_or_none(entry.context),
        "request_id": entry.request_id,
        "timestamp": _to_utc(entry.timestamp),
    }


def _row_to_log(row: RowMapping) -> LogEntry:
    return LogEntry(
        id=row["id"],
        level=row["level"],
        message=row["message"],
        timestamp=_parse_timestamp(row["timestamp"]),
        context=loads_lenient(row["context"]),
        request_id=row["request_id"],
    )


__all__ = ["SqlStorage", "build_tables"]
