"""Time-bucketed request metrics kept in process memory."""

from __future__ import annotations

import math
import random
import threading
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta, timezone

from telescope_collector.config import MetricsSettings
from telescope_collector.services.models import (
    EndpointBucket,
    EndpointDetails,
    EndpointMetrics,
    MetricsBucket,
    RequestEntry,
    RequestMetrics,
    SeriesAccumulator,
    StatusDistribution,
    TimeRange,
    TimeSeriesPoint,
)

Clock = Callable[[], datetime]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_DEFAULT_WINDOW = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricsAggregator:
    """Aggregates recorded requests into fixed-width time buckets and per-endpoint rollups.

    The aggregator never sees storage. It only holds derived counters plus a bounded reservoir of durations per
    bucket, so it can be rebuilt at any time by replaying request entries. A single lock guards every mutation and
    every read, which keeps each ``record`` call observed exactly once and in full.

    ``rng`` drives reservoir sampling and may be seeded for reproducible percentiles.
    """

    def __init__(
        self,
        bucket_size: int = 60_000,
        max_buckets: int = 1440,
        max_samples_per_bucket: int = 1000,
        *,
        rng: random.Random | None = None,
        clock: Clock | None = None,
    ) -> None:
        if bucket_size <= 0:
            raise ValueError("bucket_size must be positive")
        if max_buckets < 1:
            raise ValueError("max_buckets must be at least 1")
        if max_samples_per_bucket < 1:
            raise ValueError("max_samples_per_bucket must be at least 1")
        self._bucket_size = bucket_size
        self._max_buckets = max_buckets
        self._max_samples = max_samples_per_bucket
        self._rng = rng or random.Random()
        self._clock = clock or _utcnow
        self._buckets: dict[int, MetricsBucket] = {}
        self._endpoints: dict[tuple[str, str], EndpointBucket] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: MetricsSettings,
        *,
        rng: random.Random | None = None,
        clock: Clock | None = None,
    ) -> MetricsAggregator:
        return cls(
            bucket_size=settings.bucket_size_ms,
            max_buckets=settings.max_buckets,
            max_samples_per_bucket=settings.max_samples_per_bucket,
            rng=rng,
            clock=clock,
        )

    @property
    def bucket_size(self) -> int:
        return self._bucket_size

    @property
    def max_samples_per_bucket(self) -> int:
        return self._max_samples

    def record(self, entry: RequestEntry) -> None:
        """Fold one request into its time bucket and its endpoint rollup."""

        timestamp_ms = to_epoch_ms(entry.timestamp)
        bucket_ts = self._bucket_timestamp(timestamp_ms)
        is_error = entry.status >= 400

        with self._lock:
            bucket = self._buckets.get(bucket_ts)
            if bucket is None:
                bucket = MetricsBucket(timestamp=bucket_ts, bucket_size=self._bucket_size)
                self._buckets[bucket_ts] = bucket
            bucket.count += 1
            bucket.duration_sum += entry.duration
            bucket.duration_min = min(bucket.duration_min, entry.duration)
            bucket.duration_max = max(bucket.duration_max, entry.duration)
            self._sample(bucket.duration_samples, bucket.count, entry.duration)
            if is_error:
                bucket.error_count += 1
            bucket.status_distribution.add(entry.status)

            key = (entry.method, entry.path)
            endpoint = self._endpoints.get(key)
            if endpoint is None:
                endpoint = EndpointBucket(method=entry.method, path=entry.path)
                self._endpoints[key] = endpoint
            endpoint.count += 1
            endpoint.duration_sum += entry.duration
            endpoint.duration_min = min(endpoint.duration_min, entry.duration)
            endpoint.duration_max = max(endpoint.duration_max, entry.duration)
            self._sample(endpoint.duration_samples, endpoint.count, entry.duration)
            if is_error:
                endpoint.error_count += 1
            endpoint.status_distribution.add(entry.status)
            endpoint.last_seen = max(endpoint.last_seen, timestamp_ms)

            point = endpoint.series.get(bucket_ts)
            if point is None:
                point = endpoint.series[bucket_ts] = SeriesAccumulator()
            point.count += 1
            point.duration_sum += entry.duration
            if is_error:
                point.error_count += 1

            self._evict_buckets()

    def get_metrics(self, time_range: TimeRange | None = None, bucket_size: int | None = None) -> RequestMetrics:
        """Summarize the buckets that start within ``time_range`` (default: the last hour)."""

        time_range = time_range or self._default_range()
        target_size = self._validate_bucket_size(bucket_size)
        with self._lock:
            buckets = self._buckets_in_range(time_range)
            if not buckets:
                return empty_metrics()
            total = sum(bucket.count for bucket in buckets)
            duration_sum = sum(bucket.duration_sum for bucket in buckets)
            errors = sum(bucket.error_count for bucket in buckets)
            samples = sorted(sample for bucket in buckets for sample in bucket.duration_samples)
            series = self._build_series(
                ((b.timestamp, b.count, b.duration_sum, b.error_count) for b in buckets), target_size
            )

        range_seconds = (time_range.end - time_range.start).total_seconds()
        error_rate = errors / total * 100 if total else 0.0
        return RequestMetrics(
            total_requests=total,
            avg_duration=duration_sum / total if total else 0.0,
            p50_duration=percentile(samples, 50),
            p95_duration=percentile(samples, 95),
            p99_duration=percentile(samples, 99),
            error_rate=error_rate,
            success_rate=100 - error_rate,
            requests_per_second=total / range_seconds if range_seconds > 0 else 0.0,
            time_series=series,
        )

    def get_endpoint_metrics(self, limit: int = 50) -> list[EndpointMetrics]:
        """Per-endpoint summaries, busiest first."""

        with self._lock:
            results = [
                EndpointMetrics(
                    method=endpoint.method,
                    path=endpoint.path,
                    count=endpoint.count,
                    avg_duration=endpoint.duration_sum / endpoint.count if endpoint.count else 0.0,
                    p95_duration=percentile(sorted(endpoint.duration_samples), 95),
                    error_rate=endpoint.error_count / endpoint.count * 100 if endpoint.count else 0.0,
                    last_seen=endpoint.last_seen,
                )
                for endpoint in self._endpoints.values()
            ]
        results.sort(key=lambda item: item.count, reverse=True)
        return results[: max(limit, 0)]

    def get_endpoint_details(
        self,
        method: str,
        path: str,
        time_range: TimeRange | None = None,
        bucket_size: int | None = None,
    ) -> EndpointDetails | None:
        """Full statistics for one endpoint, or ``None`` if it was never recorded.

        Totals cover the aggregator's lifetime; the time series is limited to ``time_range``.
        """

        time_range = time_range or self._default_range()
        target_size = self._validate_bucket_size(bucket_size)
        start_ms, end_ms = to_epoch_ms(time_range.start), to_epoch_ms(time_range.end)
        with self._lock:
            endpoint = self._endpoints.get((method, path))
            if endpoint is None:
                return None
            samples = sorted(endpoint.duration_samples)
            distribution = StatusDistribution()
            distribution.merge(endpoint.status_distribution)
            series = self._build_series(
                (
                    (ts, point.count, point.duration_sum, point.error_count)
                    for ts, point in sorted(endpoint.series.items())
                    if start_ms <= ts <= end_ms
                ),
                target_size,
            )
            count = endpoint.count
            return EndpointDetails(
                method=endpoint.method,
                path=endpoint.path,
                count=count,
                avg_duration=endpoint.duration_sum / count if count else 0.0,
                min_duration=endpoint.duration_min if count else 0.0,
                max_duration=endpoint.duration_max,
                p50_duration=percentile(samples, 50),
                p95_duration=percentile(samples, 95),
                p99_duration=percentile(samples, 99),
                error_rate=endpoint.error_count / count * 100 if count else 0.0,
                status_distribution=distribution,
                last_seen=endpoint.last_seen,
                time_series=series,
            )

    def get_status_distribution(self, time_range: TimeRange | None = None) -> StatusDistribution:
        time_range = time_range or self._default_range()
        distribution = StatusDistribution()
        with self._lock:
            for bucket in self._buckets_in_range(time_range):
                distribution.merge(bucket.status_distribution)
        return distribution

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._endpoints.clear()

    def bucket_samples(self, bucket_ts: int) -> list[float]:
        """Copy of the reservoir held by the bucket starting at ``bucket_ts``; empty if absent."""

        with self._lock:
            bucket = self._buckets.get(bucket_ts)
            return list(bucket.duration_samples) if bucket else []

    def bucket_timestamps(self) -> list[int]:
        with self._lock:
            return sorted(self._buckets)

    # Internals; callers hold the lock.

    def _bucket_timestamp(self, timestamp_ms: int) -> int:
        return (timestamp_ms // self._bucket_size) * self._bucket_size

    def _sample(self, samples: list[float], seen: int, duration: float) -> None:
        if len(samples) < self._max_samples:
            samples.append(duration)
            return
        index = self._rng.randrange(seen)
        if index < self._max_samples:
            samples[index] = duration

    def _evict_buckets(self) -> None:
        overflow = len(self._buckets) - self._max_buckets
        if overflow <= 0:
            return
        for ts in sorted(self._buckets)[:overflow]:
            del self._buckets[ts]
        oldest = min(self._buckets)
        for endpoint in self._endpoints.values():
            for ts in [ts for ts in endpoint.series if ts < oldest]:
                del endpoint.series[ts]

    def _buckets_in_range(self, time_range: TimeRange) -> list[MetricsBucket]:
        start_ms, end_ms = to_epoch_ms(time_range.start), to_epoch_ms(time_range.end)
        selected = [bucket for ts, bucket in self._buckets.items() if start_ms <= ts <= end_ms]
        selected.sort(key=lambda bucket: bucket.timestamp)
        return selected

    def _build_series(
        self, rows: Iterable[tuple[int, int, float, int]], target_size: int
    ) -> list[TimeSeriesPoint]:
        if target_size == self._bucket_size:
            return [
                TimeSeriesPoint(
                    timestamp=ts,
                    count=count,
                    avg_duration=duration_sum / count if count else 0.0,
                    error_count=error_count,
                )
                for ts, count, duration_sum, error_count in rows
            ]

        # Merged windows carry a count-weighted running mean; sources are assumed uniform within their width.
        merged: dict[int, list[float]] = {}
        for ts, count, duration_sum, error_count in rows:
            target_ts = (ts // target_size) * target_size
            acc = merged.setdefault(target_ts, [0, 0.0, 0])
            combined = acc[0] + count
            if combined:
                source_avg = duration_sum / count if count else 0.0
                acc[1] = (acc[1] * acc[0] + source_avg * count) / combined
            acc[0] = combined
            acc[2] += error_count
        return [
            TimeSeriesPoint(timestamp=ts, count=int(acc[0]), avg_duration=acc[1], error_count=int(acc[2]))
            for ts, acc in sorted(merged.items())
        ]

    def _default_range(self) -> TimeRange:
        now = self._clock()
        return TimeRange(start=now - _DEFAULT_WINDOW, end=now)

    def _validate_bucket_size(self, bucket_size: int | None) -> int:
        if bucket_size is None:
            return self._bucket_size
        if bucket_size <= 0:
            raise ValueError("bucket_size must be positive")
        return bucket_size


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Linear interpolation between the ranks around ``p/100 * (n - 1)``."""

    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    index = p / 100 * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return float(sorted_values[lower])
    weight = index - lower
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def empty_metrics() -> RequestMetrics:
    return RequestMetrics(
        total_requests=0,
        avg_duration=0.0,
        p50_duration=0.0,
        p95_duration=0.0,
        p99_duration=0.0,
        error_rate=0.0,
        success_rate=100.0,
        requests_per_second=0.0,
        time_series=(),
    )


def to_epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch; naive datetimes are read as UTC."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(milliseconds=1)


__all__ = ["Clock", "MetricsAggregator", "empty_metrics", "percentile", "to_epoch_ms"]
