"""The Telescope coordinator: recording policy, storage write-through, metrics and real-time fan-out."""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import linecache
import re
import sysconfig
import threading
import traceback
import uuid
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from telescope_collector.config import CollectorSettings
from telescope_collector.services.metrics_aggregator import MetricsAggregator, empty_metrics
from telescope_collector.services.models import (
    EndpointDetails,
    EndpointMetrics,
    EventType,
    ExceptionEntry,
    LogDraft,
    LogEntry,
    LogLevel,
    Payload,
    QueryOptions,
    RequestDraft,
    RequestEntry,
    RequestMetrics,
    SourceContext,
    SourceLine,
    StackFrame,
    StatusDistribution,
    TelescopeEvent,
    TelescopeStats,
    TimeRange,
)
from telescope_collector.services.redaction import RedactSetting, Redactor, create_redactor, redact_entry
from telescope_collector.storage.base import Storage
from telescope_collector.utils.diagnostics import DiagnosticError
from telescope_collector.utils.logging import Logger, get_logger, log_structured
from telescope_collector.utils.serialization import dumps

Clock = Callable[[], datetime]
RequestIdFactory = Callable[[], "str | None"]

SOURCE_CONTEXT_LINES = 5

_LIBRARY_PATHS = tuple(
    path for path in {sysconfig.get_paths().get("stdlib"), sysconfig.get_paths().get("platstdlib")} if path
)


class ClientSink(Protocol):
    """Anything that can receive serialized events, typically a WebSocket wrapper."""

    def send(self, data: str) -> Any: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Telescope:
    """Front door for recording and querying telemetry.

    The instance is running from construction until :meth:`destroy`. After that every call is a no-op that returns
    an empty value, so shutdown never races with in-flight recorders.
    """

    def __init__(
        self,
        storage: Storage,
        settings: CollectorSettings | None = None,
        *,
        aggregator: MetricsAggregator | None = None,
        redact: RedactSetting = None,
        get_request_id: RequestIdFactory | None = None,
        clock: Clock | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._settings = settings or CollectorSettings()
        self._storage = storage
        self._aggregator = aggregator or MetricsAggregator()
        self._logger = logger or get_logger()
        self._clock = clock or _utcnow
        self._get_request_id = get_request_id

        if redact is None:
            redact = self._settings.redact
        self._redactor: Redactor | None = create_redactor(redact, censor=self._settings.redact_censor)
        self._ignore_matchers = [_compile_ignore_pattern(pattern) for pattern in self._settings.ignore_patterns]

        self._clients: list[ClientSink] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._deliveries: dict[int, asyncio.Task[None]] = {}
        self._destroyed = False
        self._time_lock = threading.Lock()
        self._last_timestamp: datetime | None = None

    # Configuration

    @property
    def path(self) -> str:
        return self._settings.path

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    @property
    def record_body(self) -> bool:
        return self._settings.record_body

    @property
    def max_body_size(self) -> int:
        return self._settings.max_body_size

    @property
    def default_limit(self) -> int:
        return self._settings.default_limit

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def storage(self) -> Storage:
        return self._storage

    @property
    def aggregator(self) -> MetricsAggregator:
        return self._aggregator

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def should_ignore(self, path: str) -> bool:
        """Whether requests to ``path`` are skipped.

        The dashboard's own routes are always skipped. Patterns without wildcards match the exact path only;
        ``*`` and ``?`` behave like shell globs.
        """

        dashboard = self._settings.path.rstrip("/")
        if dashboard and (path == dashboard or path.startswith(dashboard + "/")):
            return True
        return any(matches(path) for matches in self._ignore_matchers)

    # Recording

    async def record_request(self, draft: RequestDraft) -> str:
        """Record a finished HTTP exchange and return its id, or ``""`` if it was not recorded."""

        if self._destroyed or not self._settings.enabled or self.should_ignore(draft.path):
            return ""

        draft = self._apply_body_policy(draft)
        draft = redact_entry(draft, self._redactor)
        entry = RequestEntry.from_draft(draft, entry_id=self._request_id(), timestamp=self._next_timestamp())

        self._aggregator.record(entry)
        await self._storage.save_request(entry)
        self._emit("request", entry)
        return entry.id

    async def log(self, drafts: Sequence[LogDraft]) -> None:
        """Record a batch of log lines with a single storage call."""

        if self._destroyed or not self._settings.enabled or not drafts:
            return

        entries = [
            LogEntry(
                id=self._new_id(),
                level=draft.level,
                message=draft.message,
                timestamp=self._next_timestamp(),
                context=draft.context,
                request_id=draft.request_id,
            )
            for draft in drafts
        ]
        entries = [redact_entry(entry, self._redactor) for entry in entries]

        if len(entries) == 1:
            await self._storage.save_log(entries[0])
        else:
            await self._storage.save_logs(entries)
        for entry in entries:
            self._emit("log", entry)

    async def debug(
        self, message: str, context: dict[str, Payload] | None = None, request_id: str | None = None
    ) -> None:
        await self._log_single("debug", message, context, request_id)

    async def info(
        self, message: str, context: dict[str, Payload] | None = None, request_id: str | None = None
    ) -> None:
        await self._log_single("info", message, context, request_id)

    async def warn(
        self, message: str, context: dict[str, Payload] | None = None, request_id: str | None = None
    ) -> None:
        await self._log_single("warn", message, context, request_id)

    async def error(
        self, message: str, context: dict[str, Payload] | None = None, request_id: str | None = None
    ) -> None:
        await self._log_single("error", message, context, request_id)

    async def _log_single(
        self, level: LogLevel, message: str, context: dict[str, Payload] | None, request_id: str | None
    ) -> None:
        await self.log([LogDraft(level=level, message=message, context=context, request_id=request_id)])

    async def exception(
        self,
        error: BaseException,
        request_id: str | None = None,
        *,
        handled: bool = False,
        tags: Sequence[str] | None = None,
    ) -> str:
        """Record an exception with its parsed traceback; returns the entry id or ``""``."""

        if self._destroyed or not self._settings.enabled:
            return ""

        stack = parse_traceback(error)
        entry = ExceptionEntry(
            id=self._new_id(),
            name=type(error).__name__,
            message=str(error),
            timestamp=self._next_timestamp(),
            stack=stack,
            source=source_context(stack),
            request_id=request_id,
            handled=handled,
            tags=list(tags) if tags is not None else None,
        )
        await self._storage.save_exception(entry)
        self._emit("exception", entry)
        return entry.id

    # Queries

    async def get_requests(self, options: QueryOptions | None = None) -> list[RequestEntry]:
        if self._destroyed:
            return []
        return await self._storage.get_requests(self._bounded(options))

    async def get_request(self, entry_id: str) -> RequestEntry | None:
        if self._destroyed:
            return None
        return await self._storage.get_request(entry_id)

    async def get_exceptions(self, options: QueryOptions | None = None) -> list[ExceptionEntry]:
        if self._destroyed:
            return []
        return await self._storage.get_exceptions(self._bounded(options))

    async def get_exception(self, entry_id: str) -> ExceptionEntry | None:
        if self._destroyed:
            return None
        return await self._storage.get_exception(entry_id)

    async def get_logs(self, options: QueryOptions | None = None) -> list[LogEntry]:
        if self._destroyed:
            return []
        return await self._storage.get_logs(self._bounded(options))

    async def get_stats(self) -> TelescopeStats:
        if self._destroyed:
            return TelescopeStats()
        return await self._storage.get_stats()

    async def prune(self, older_than: datetime) -> int:
        """Delete entries older than ``older_than`` and return how many were removed."""

        if self._destroyed:
            return 0
        removed = await self._storage.prune(older_than)
        log_structured(self._logger, "entries_pruned", older_than=older_than.isoformat(), removed=removed)
        return removed

    # Metrics

    def get_metrics(self, time_range: TimeRange | None = None, bucket_size: int | None = None) -> RequestMetrics:
        if self._destroyed:
            return empty_metrics()
        return self._aggregator.get_metrics(time_range, bucket_size)

    def get_endpoint_metrics(self, limit: int = 50) -> list[EndpointMetrics]:
        if self._destroyed:
            return []
        return self._aggregator.get_endpoint_metrics(limit)

    def get_endpoint_details(
        self,
        method: str,
        path: str,
        time_range: TimeRange | None = None,
        bucket_size: int | None = None,
    ) -> EndpointDetails | None:
        if self._destroyed:
            return None
        return self._aggregator.get_endpoint_details(method, path, time_range, bucket_size)

    def get_status_distribution(self, time_range: TimeRange | None = None) -> StatusDistribution:
        if self._destroyed:
            return StatusDistribution()
        return self._aggregator.get_status_distribution(time_range)

    def reset_metrics(self) -> None:
        if self._destroyed:
            return
        self._aggregator.reset()
        self._logger.info("metrics_reset")

    # Real-time clients

    def add_client(self, client: ClientSink) -> None:
        if self._destroyed:
            return
        self._clients.append(client)
        self._emit("connected", {"client_count": len(self._clients)})

    def remove_client(self, client: ClientSink) -> None:
        if client in self._clients:
            self._clients.remove(client)

    def broadcast(self, event: TelescopeEvent) -> None:
        """Send ``event`` to every attached client, dropping clients whose ``send`` raises.

        ``send`` may be a coroutine function (a WebSocket, say). Its result is scheduled on the running loop and
        chained behind the client's previous delivery, so each client sees events in order. A failed delivery drops
        the client just like a synchronous failure.
        """

        if not self._clients:
            return
        data = dumps(event)
        for client in list(self._clients):
            try:
                result = client.send(data)
            except Exception as exc:
                self._drop_client(client, exc)
                continue
            if inspect.isawaitable(result):
                self._schedule_delivery(client, result)

    async def flush_clients(self) -> None:
        """Wait until every scheduled asynchronous delivery has finished."""

        while self._deliveries:
            await asyncio.gather(*self._deliveries.values(), return_exceptions=True)

    def _drop_client(self, client: ClientSink, exc: BaseException) -> None:
        self.remove_client(client)
        self._logger.debug("client_dropped", extra={"error": str(exc), "clients": len(self._clients)})

    def _schedule_delivery(self, client: ClientSink, pending: Awaitable[Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _discard(pending)
            self._logger.debug("client_send_skipped", extra={"reason": "no running event loop"})
            return
        key = id(client)
        task = loop.create_task(self._deliver(client, pending, self._deliveries.get(key)))
        self._deliveries[key] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._deliveries.get(key) is done:
                del self._deliveries[key]

        task.add_done_callback(_forget)

    async def _deliver(
        self, client: ClientSink, pending: Awaitable[Any], previous: asyncio.Task[None] | None
    ) -> None:
        try:
            if previous is not None:
                await asyncio.gather(previous, return_exceptions=True)
        except asyncio.CancelledError:
            _discard(pending)
            raise
        if client not in self._clients:
            _discard(pending)
            return
        try:
            await pending
        except Exception as exc:
            self._drop_client(client, exc)

    async def push_stats(self) -> None:
        """Broadcast a stats snapshot to attached clients."""

        if self._destroyed or not self._clients:
            return
        stats = await self._storage.get_stats()
        self._emit("stats", stats)

    # Lifecycle

    async def start(self) -> None:
        """Launch the auto-prune and stats tasks on the running loop."""

        if self._destroyed or self._tasks:
            return
        if self._settings.prune_after_hours:
            self._tasks.append(asyncio.create_task(self._auto_prune_loop()))
        self._tasks.append(asyncio.create_task(self._stats_loop()))

    def destroy(self) -> None:
        """Stop background work and detach clients. Terminal."""

        if self._destroyed:
            return
        self._destroyed = True
        for task in [*self._tasks, *self._deliveries.values()]:
            task.cancel()
        self._clients.clear()

    async def aclose(self) -> None:
        """Destroy and wait for background tasks to finish cancelling."""

        self.destroy()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:  # pragma: no cover - deterministic cancellation
                pass
        await self.flush_clients()

    async def auto_prune(self) -> int:
        """Prune entries older than ``prune_after_hours``; returns 0 when auto-prune is off."""

        hours = self._settings.prune_after_hours
        if not hours or self._destroyed:
            return 0
        removed = await self._storage.prune(self._clock() - timedelta(hours=hours))
        log_structured(self._logger, "auto_prune_completed", removed=removed, prune_after_hours=hours)
        return removed

    async def _auto_prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.prune_interval_seconds)
            try:
                await self.auto_prune()
            except DiagnosticError as diagnostic:
                self._logger.error("auto_prune_failed", extra=diagnostic.to_extra())
            except Exception as exc:  # pragma: no cover - keep the loop alive on backend bugs
                self._logger.exception("auto_prune_crash", extra={"error": str(exc)})

    async def _stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.stats_interval_seconds)
            try:
                await self.push_stats()
            except DiagnosticError as diagnostic:
                self._logger.warning("stats_push_failed", extra=diagnostic.to_extra())
            except Exception as exc:  # pragma: no cover
                self._logger.exception("stats_loop_crash", extra={"error": str(exc)})

    # Internals

    def _emit(self, event_type: EventType, payload: Any) -> None:
        self.broadcast(TelescopeEvent(type=event_type, payload=payload, timestamp=int(self._clock().timestamp() * 1000)))

    def _new_id(self) -> str:
        return uuid.uuid4().hex

    def _request_id(self) -> str:
        if self._get_request_id is not None:
            candidate = self._get_request_id()
            if candidate:
                return candidate
        return self._new_id()

    def _next_timestamp(self) -> datetime:
        """Current time, nudged forward so no two entries share a timestamp."""

        with self._time_lock:
            now = self._clock()
            if now.tzinfo is None:
                now = now.replace(tzinfo=timezone.utc)
            if self._last_timestamp is not None and now <= self._last_timestamp:
                now = self._last_timestamp + timedelta(microseconds=1)
            self._last_timestamp = now
            return now

    def _bounded(self, options: QueryOptions | None) -> QueryOptions:
        if options is None:
            return QueryOptions(limit=self._settings.default_limit)
        bounded = dataclasses.replace(options)
        bounded.limit = max(0, min(options.limit, self._settings.max_limit))
        bounded.offset = max(0, options.offset)
        return bounded

    def _apply_body_policy(self, draft: RequestDraft) -> RequestDraft:
        if not self._settings.record_body:
            return dataclasses.replace(draft, body=None, response_body=None)
        return dataclasses.replace(
            draft,
            body=truncate_body(draft.body, self._settings.max_body_size),
            response_body=truncate_body(draft.response_body, self._settings.max_body_size),
        )


def _discard(pending: Awaitable[Any]) -> None:
    """Release an awaitable that will never be awaited."""

    if asyncio.iscoroutine(pending):
        pending.close()
    elif asyncio.isfuture(pending):
        pending.cancel()


def _compile_ignore_pattern(pattern: str) -> Callable[[str], bool]:
    if "*" not in pattern and "?" not in pattern:
        return lambda path: path == pattern
    expression = "".join(
        ".*" if char == "*" else "." if char == "?" else re.escape(char) for char in pattern
    )
    regex = re.compile(f"^{expression}$")
    return lambda path: regex.match(path) is not None


def truncate_body(body: Payload, max_size: int) -> Payload:
    """Replace ``body`` with a marker when its encoded size exceeds ``max_size`` bytes."""

    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        size = len(body)
    elif isinstance(body, str):
        size = len(body.encode("utf-8"))
    else:
        size = len(dumps(body).encode("utf-8"))
    if size > max_size:
        return f"[TRUNCATED: {size} bytes]"
    return body


def parse_traceback(error: BaseException) -> list[StackFrame]:
    """Frames of ``error``'s traceback, innermost first."""

    frames = traceback.extract_tb(error.__traceback__) if error.__traceback__ is not None else []
    parsed = [
        StackFrame(
            file=frame.filename,
            line=frame.lineno or 0,
            column=(frame.colno + 1) if getattr(frame, "colno", None) is not None else 0,
            function=frame.name,
            is_app=is_app_file(frame.filename),
        )
        for frame in frames
    ]
    parsed.reverse()
    return parsed


def is_app_file(filename: str) -> bool:
    """False for installed packages, the standard library and frozen or synthetic modules."""

    if filename.startswith("<"):
        return False
    if "site-packages" in filename or "dist-packages" in filename:
        return False
    return not any(filename.startswith(path) for path in _LIBRARY_PATHS)


def source_context(stack: Sequence[StackFrame], radius: int = SOURCE_CONTEXT_LINES) -> SourceContext | None:
    """Lines around the innermost application frame, if its source is readable."""

    frame = next((item for item in stack if item.is_app), None)
    if frame is None or frame.line <= 0:
        return None
    lines = []
    for number in range(max(1, frame.line - radius), frame.line + radius + 1):
        code = linecache.getline(frame.file, number)
        if not code:
            if number > frame.line:
                break
            continue
        lines.append(SourceLine(num=number, code=code.rstrip("\n"), highlight=number == frame.line))
    if not lines:
        return None
    return SourceContext(file=frame.file, line=frame.line, column=frame.column, lines=lines)


__all__ = [
    "ClientSink",
    "Telescope",
    "is_app_file",
    "parse_traceback",
    "source_context",
    "truncate_body",
]
