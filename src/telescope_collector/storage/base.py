"""Storage contract shared by every backend."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence, runtime_checkable

from telescope_collector.services.models import (
    ExceptionEntry,
    LogEntry,
    QueryOptions,
    RequestEntry,
    TelescopeStats,
)


@runtime_checkable
class Storage(Protocol):
    """Persistence for the request, exception and log streams.

    Queries return entries newest first after filters, ``offset`` and ``limit`` are applied. Single-item lookups
    return ``None`` for unknown ids. Batch saves must be observably equivalent to the same number of single saves.
    """

    async def save_request(self, entry: RequestEntry) -> None: ...

    async def save_requests(self, entries: Sequence[RequestEntry]) -> None: ...

    async def get_requests(self, options: QueryOptions | None = None) -> list[RequestEntry]: ...

    async def get_request(self, entry_id: str) -> RequestEntry | None: ...

    async def save_exception(self, entry: ExceptionEntry) -> None: ...

    async def save_exceptions(self, entries: Sequence[ExceptionEntry]) -> None: ...

    async def get_exceptions(self, options: QueryOptions | None = None) -> list[ExceptionEntry]: ...

    async def get_exception(self, entry_id: str) -> ExceptionEntry | None: ...

    async def save_log(self, entry: LogEntry) -> None: ...

    async def save_logs(self, entries: Sequence[LogEntry]) -> None: ...

    async def get_logs(self, options: QueryOptions | None = None) -> list[LogEntry]: ...

    async def prune(self, older_than: datetime) -> int:
        """Delete entries with ``timestamp < older_than`` from all streams and return how many were removed."""
        ...

    async def get_stats(self) -> TelescopeStats: ...


@dataclass(slots=True, frozen=True)
class StatusFilter:
    """Inclusive status code range compiled from a query's ``status`` option."""

    low: int
    high: int

    def matches(self, status: int) -> bool:
        return self.low <= status <= self.high


def parse_status_filter(value: str | None) -> StatusFilter | None:
    """Compile ``"4xx"`` to ``400..499`` and ``"404"`` to ``404..404``.

    Returns ``None`` when no filter is requested. Unparseable filters compile to an empty range so they match nothing
    instead of silently matching everything.
    """

    if value is None or value == "":
        return None
    text = value.strip().lower()
    if len(text) == 3 and text.endswith("xx") and text[0].isdigit():
        low = int(text[0]) * 100
        return StatusFilter(low, low + 99)
    try:
        code = int(text)
    except ValueError:
        return StatusFilter(1, 0)
    return StatusFilter(code, code)


__all__ = ["Storage", "StatusFilter", "parse_status_filter"]
