"""Bounded in-memory storage for development and tests."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime
from typing import Iterable, Sequence, TypeVar

from telescope_collector.services.models import (
    ExceptionEntry,
    LogEntry,
    QueryOptions,
    RequestEntry,
    TelescopeStats,
)
from telescope_collector.storage.base import parse_status_filter
from telescope_collector.utils.serialization import dumps

_Entry = TypeVar("_Entry", RequestEntry, ExceptionEntry, LogEntry)


class InMemoryStorage:
    """Keeps the newest ``max_entries`` entries of each stream.

    Each stream is a deque with the newest entry on the left; once a stream exceeds its cap the oldest entries fall
    off the right. Data is lost when the process exits.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._requests: deque[RequestEntry] = deque(maxlen=max_entries)
        self._exceptions: deque[ExceptionEntry] = deque(maxlen=max_entries)
        self._logs: deque[LogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    # Requests

    async def save_request(self, entry: RequestEntry) -> None:
        with self._lock:
            self._requests.appendleft(entry)

    async def save_requests(self, entries: Sequence[RequestEntry]) -> None:
        with self._lock:
            self._requests.extendleft(entries)

    async def get_requests(self, options: QueryOptions | None = None) -> list[RequestEntry]:
        options = options or QueryOptions()
        with self._lock:
            result: Iterable[RequestEntry] = list(self._requests)

        if options.method:
            method = options.method.upper()
            result = [entry for entry in result if entry.method.upper() == method]
        status_filter = parse_status_filter(options.status)
        if status_filter is not None:
            result = [entry for entry in result if status_filter.matches(entry.status)]
        return _filter_entries(result, options)

    async def get_request(self, entry_id: str) -> RequestEntry | None:
        with self._lock:
            return next((entry for entry in self._requests if entry.id == entry_id), None)

    # Exceptions

    async def save_exception(self, entry: ExceptionEntry) -> None:
        with self._lock:
            self._exceptions.appendleft(entry)

    async def save_exceptions(self, entries: Sequence[ExceptionEntry]) -> None:
        with self._lock:
            self._exceptions.extendleft(entries)

    async def get_exceptions(self, options: QueryOptions | None = None) -> list[ExceptionEntry]:
        options = options or QueryOptions()
        with self._lock:
            result = list(self._exceptions)
        return _filter_entries(result, options)

    async def get_exception(self, entry_id: str) -> ExceptionEntry | None:
        with self._lock:
            return next((entry for entry in self._exceptions if entry.id == entry_id), None)

    # Logs

    async def save_log(self, entry: LogEntry) -> None:
        with self._lock:
            self._logs.appendleft(entry)

    async def save_logs(self, entries: Sequence[LogEntry]) -> None:
        with self._lock:
            self._logs.extendleft(entries)

    async def get_logs(self, options: QueryOptions | None = None) -> list[LogEntry]:
        options = options or QueryOptions()
        with self._lock:
            result = list(self._logs)
        if options.level:
            result = [entry for entry in result if entry.level == options.level]
        return _filter_entries(result, options)

    # Maintenance

    async def prune(self, older_than: datetime) -> int:
        with self._lock:
            before = len(self._requests) + len(self._exceptions) + len(self._logs)
            self._requests = deque(
                (entry for entry in self._requests if entry.timestamp >= older_than), maxlen=self._max_entries
            )
            self._exceptions = deque(
                (entry for entry in self._exceptions if entry.timestamp >= older_than), maxlen=self._max_entries
            )
            self._logs = deque((entry for entry in self._logs if entry.timestamp >= older_than), maxlen=self._max_entries)
            after = len(self._requests) + len(self._exceptions) + len(self._logs)
        return before - after

    async def get_stats(self) -> TelescopeStats:
        with self._lock:
            timestamps = [
                entry.timestamp for stream in (self._requests, self._exceptions, self._logs) for entry in stream
            ]
            return TelescopeStats(
                requests=len(self._requests),
                exceptions=len(self._exceptions),
                logs=len(self._logs),
                oldest_entry=min(timestamps) if timestamps else None,
                newest_entry=max(timestamps) if timestamps else None,
            )

    def clear(self) -> None:
        """Drop every entry; handy between test cases."""

        with self._lock:
            self._requests.clear()
            self._exceptions.clear()
            self._logs.clear()


def _filter_entries(entries: Iterable[_Entry], options: QueryOptions) -> list[_Entry]:
    result = list(entries)

    if options.after is not None:
        result = [entry for entry in result if entry.timestamp >= options.after]
    if options.before is not None:
        result = [entry for entry in result if entry.timestamp <= options.before]
    if options.tags:
        wanted = set(options.tags)
        result = [entry for entry in result if wanted.intersection(getattr(entry, "tags", None) or ())]
    if options.search:
        needle = options.search.lower()
        result = [entry for entry in result if needle in dumps(entry).lower()]

    # Stable sort: entries sharing a timestamp keep newest-inserted-first order.
    result.sort(key=lambda entry: entry.timestamp, reverse=True)
    offset = max(options.offset, 0)
    limit = max(options.limit, 0)
    return result[offset : offset + limit]


__all__ = ["InMemoryStorage"]
