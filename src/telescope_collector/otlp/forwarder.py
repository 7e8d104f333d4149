"""Forwards normalized OTLP metric data points to an external HTTP endpoint."""

from __future__ import annotations

from collections.abc import Sequence

import httpx

from telescope_collector.config import OtlpSettings
from telescope_collector.otlp.transformer import MetricDataPoint
from telescope_collector.utils.logging import Logger, get_logger
from telescope_collector.utils.serialization import to_jsonable


class HttpMetricsForwarder:
    """``on_metrics`` callback that POSTs each batch as ``{"points": [...]}``.

    Failures are logged and re-raised so the receiver reports the batch as rejected.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        *,
        logger: Logger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._logger = logger or get_logger("otlp")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: OtlpSettings, *, logger: Logger | None = None) -> HttpMetricsForwarder | None:
        if not settings.forward_url:
            return None
        return cls(settings.forward_url, settings.forward_timeout_seconds, logger=logger)

    @property
    def url(self) -> str:
        return self._url

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _client_instance(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def __call__(self, points: Sequence[MetricDataPoint]) -> None:
        client = await self._client_instance()
        payload = {"points": [to_jsonable(point) for point in points]}
        try:
            response = await client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self._logger.warning(
                "metrics_forward_failed",
                extra={"url": self._url, "points": len(points), "error": str(exc)},
            )
            raise
        self._logger.debug("metrics_forwarded", extra={"url": self._url, "points": len(points)})


__all__ = ["HttpMetricsForwarder"]
