"""Bridge from the standard ``logging`` module into the Telescope log stream."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from collections.abc import Callable
from typing import Any

from telescope_collector.services.models import LogDraft, LogLevel
from telescope_collector.services.telescope import Telescope
from telescope_collector.utils.logging import ROOT_LOGGER_NAME, Logger, get_logger
from telescope_collector.utils.serialization import to_jsonable

_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime", "taskName"}


def level_for(levelno: int) -> LogLevel:
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warn"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


class TelescopeLogHandler(logging.Handler):
    """Forwards log records to a :class:`Telescope` instance.

    Records are recorded on the running event loop when there is one, or handed to ``loop`` from other threads.
    Storage failures never reach the code that logged; they are reported on the collector's own logger, whose
    records this handler ignores to avoid feeding back into itself.
    """

    def __init__(
        self,
        telescope: Telescope,
        level: int = logging.NOTSET,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        request_id: Callable[[], str | None] | None = None,
        logger: Logger | None = None,
    ) -> None:
        super().__init__(level)
        self._telescope = telescope
        self._loop = loop
        self._request_id = request_id
        self._internal = logger or get_logger()
        self._pending: set[asyncio.Future[Any] | concurrent.futures.Future[Any]] = set()

    def to_draft(self, record: logging.LogRecord) -> LogDraft:
        context: dict[str, Any] = {
            key: to_jsonable(value) for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS
        }
        request_id = context.pop("request_id", None)
        if request_id is None and self._request_id is not None:
            request_id = self._request_id()
        context["logger"] = record.name
        if record.exc_info:
            context["exception"] = logging.Formatter().formatException(record.exc_info)
        return LogDraft(
            level=level_for(record.levelno),
            message=record.getMessage(),
            context=context,
            request_id=str(request_id) if request_id is not None else None,
        )

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == ROOT_LOGGER_NAME or record.name.startswith(ROOT_LOGGER_NAME + "."):
            return
        try:
            draft = self.to_draft(record)
        except Exception:  # pragma: no cover - formatting errors go through logging's own reporting
            self.handleError(record)
            return

        coro = self._telescope.log([draft])
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        future: asyncio.Future[Any] | concurrent.futures.Future[Any]
        if running is not None:
            future = running.create_task(coro)
        elif self._loop is not None and self._loop.is_running():
            future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        else:
            coro.close()
            self._internal.debug("log_forward_skipped", extra={"reason": "no event loop", "source": record.name})
            return
        self._pending.add(future)
        future.add_done_callback(self._finished)

    async def drain(self) -> None:
        """Wait for records already handed to the event loop to be stored."""

        tasks = [future for future in self._pending if isinstance(future, asyncio.Future)]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _finished(self, future: asyncio.Future[Any] | concurrent.futures.Future[Any]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self._internal.warning("log_forward_failed", extra={"error": str(error)})


__all__ = ["TelescopeLogHandler", "level_for"]
