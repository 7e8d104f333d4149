"""OTLP/JSON receiver: decodes export requests and feeds the coordinator."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from telescope_collector.otlp.transformer import MetricDataPoint, decode_logs, decode_metrics, decode_traces
from telescope_collector.services.models import LogDraft
from telescope_collector.services.telescope import Telescope
from telescope_collector.utils.logging import Logger, get_logger

MetricsCallback = Callable[[list[MetricDataPoint]], "Awaitable[None] | None"]


def export_response(rejected: int, field_name: str) -> dict[str, Any]:
    """OTLP export response: ``{}`` on full success, otherwise a partial-success body with the count as a string."""

    if rejected <= 0:
        return {}
    return {"partialSuccess": {field_name: str(rejected)}}


class OtlpReceiver:
    """Ingests OTLP/JSON traces, logs and metrics.

    Item failures never raise. Each decoded item is handed on independently and failures are reported only through
    the partial-success count of the response.
    """

    def __init__(
        self,
        telescope: Telescope,
        on_metrics: MetricsCallback | None = None,
        *,
        log_metrics: bool = False,
        logger: Logger | None = None,
    ) -> None:
        self._telescope = telescope
        self._on_metrics = on_metrics
        self._log_metrics = log_metrics
        self._logger = logger or get_logger("otlp")

    async def receive_traces(self, request: Any) -> dict[str, Any]:
        decoded = decode_traces(request)
        rejected = decoded.rejected
        for draft in decoded.items:
            try:
                await self._telescope.record_request(draft)
            except Exception as exc:
                rejected += 1
                self._logger.warning("otlp_span_rejected", extra={"path": draft.path, "error": str(exc)})
        if decoded.rejected:
            self._logger.info("otlp_spans_undecodable", extra={"count": decoded.rejected})
        return export_response(rejected, "rejectedSpans")

    async def receive_logs(self, request: Any) -> dict[str, Any]:
        decoded = decode_logs(request)
        rejected = decoded.rejected + await self._save_logs(decoded.items)
        if decoded.rejected:
            self._logger.info("otlp_logs_undecodable", extra={"count": decoded.rejected})
        return export_response(rejected, "rejectedLogRecords")

    async def receive_metrics(self, request: Any) -> dict[str, Any]:
        decoded = decode_metrics(request)
        rejected = decoded.rejected
        points = decoded.items

        if points and self._on_metrics is not None:
            try:
                outcome = self._on_metrics(points)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                # Any failure rejects every point of the batch.
                rejected += len(points)
                self._logger.warning(
                    "otlp_metrics_callback_failed", extra={"points": len(points), "error": str(exc)}
                )

        if points and self._log_metrics:
            await self._log_points(points)

        return export_response(rejected, "rejectedDataPoints")

    async def _save_logs(self, drafts: Sequence[LogDraft]) -> int:
        """Batch-save ``drafts``; if the batch fails, retry one by one and return how many still failed."""

        if not drafts:
            return 0
        try:
            await self._telescope.log(drafts)
            return 0
        except Exception as exc:
            self._logger.warning("otlp_log_batch_failed", extra={"records": len(drafts), "error": str(exc)})

        failed = 0
        for draft in drafts:
            try:
                await self._telescope.log([draft])
            except Exception as exc:
                failed += 1
                self._logger.debug("otlp_log_rejected", extra={"error": str(exc)})
        return failed

    async def _log_points(self, points: Sequence[MetricDataPoint]) -> None:
        drafts = [
            LogDraft(
                level="debug",
                message=f"OTLP Metric: {point.name}",
                context={
                    "value": point.value,
                    "type": point.type,
                    "unit": point.unit,
                    "timestamp": point.timestamp.isoformat(),
                    "attributes": point.attributes,
                    "resource": point.resource_attributes,
                },
            )
            for point in points
        ]
        try:
            await self._telescope.log(drafts)
        except Exception as exc:
            self._logger.warning("otlp_metric_log_failed", extra={"error": str(exc)})


__all__ = ["MetricsCallback", "OtlpReceiver", "export_response"]
