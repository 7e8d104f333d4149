"""Domain models shared by storage, metrics and the coordinator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping, Sequence

LogLevel = Literal["debug", "info", "warn", "error"]
LOG_LEVELS: tuple[str, ...] = ("debug", "info", "warn", "error")

EventType = Literal["request", "exception", "log", "stats", "connected"]

# Recorded payloads (bodies, log context, OTLP attribute values) are JSON shaped, with bytes allowed for OTLP
# ``bytesValue`` attributes.
Payload = Any


@dataclass(slots=True, frozen=True)
class RequestDraft:
    """A finished HTTP exchange as reported by a producer, before the coordinator assigns id and timestamp."""

    method: str
    path: str
    url: str
    status: int
    duration: float
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Payload = None
    query: Mapping[str, str] | None = None
    response_headers: Mapping[str, str] = field(default_factory=dict)
    response_body: Payload = None
    ip: str | None = None
    user_id: str | None = None
    tags: Sequence[str] | None = None


@dataclass(slots=True, frozen=True)
class RequestEntry:
    """One recorded HTTP exchange."""

    id: str
    method: str
    path: str
    url: str
    status: int
    duration: float
    timestamp: datetime
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Payload = None
    query: Mapping[str, str] | None = None
    response_headers: Mapping[str, str] = field(default_factory=dict)
    response_body: Payload = None
    ip: str | None = None
    user_id: str | None = None
    tags: Sequence[str] | None = None

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ValueError(f"duration must be >= 0, got {self.duration}")
        if not 100 <= self.status <= 599:
            raise ValueError(f"status must be within 100..599, got {self.status}")

    @classmethod
    def from_draft(cls, draft: RequestDraft, *, entry_id: str, timestamp: datetime) -> RequestEntry:
        return cls(
            id=entry_id,
            method=draft.method,
            path=draft.path,
            url=draft.url,
            status=draft.status,
            duration=draft.duration,
            timestamp=timestamp,
            headers=dict(draft.headers),
            body=draft.body,
            query=dict(draft.query) if draft.query is not None else None,
            response_headers=dict(draft.response_headers),
            response_body=draft.response_body,
            ip=draft.ip,
            user_id=draft.user_id,
            tags=list(draft.tags) if draft.tags is not None else None,
        )


@dataclass(slots=True, frozen=True)
class StackFrame:
    """One frame of a captured traceback."""

    file: str
    line: int
    column: int
    function: str
    is_app: bool


@dataclass(slots=True, frozen=True)
class SourceLine:
    num: int
    code: str
    highlight: bool


@dataclass(slots=True, frozen=True)
class SourceContext:
    """Source lines surrounding the faulting frame."""

    file: str
    line: int
    column: int
    lines: Sequence[SourceLine] = field(default_factory=tuple)


@dataclass(slots=True, frozen=True)
class ExceptionEntry:
    """One captured error. ``request_id`` is a lookup reference only."""

    id: str
    name: str
    message: str
    timestamp: datetime
    stack: Sequence[StackFrame] = field(default_factory=tuple)
    source: SourceContext | None = None
    request_id: str | None = None
    handled: bool = False
    tags: Sequence[str] | None = None


@dataclass(slots=True, frozen=True)
class LogDraft:
    """A log line before the coordinator assigns id and timestamp."""

    level: LogLevel
    message: str
    context: Mapping[str, Payload] | None = None
    request_id: str | None = None


@dataclass(slots=True, frozen=True)
class LogEntry:
    """One structured log line."""

    id: str
    level: LogLevel
    message: str
    timestamp: datetime
    context: Mapping[str, Payload] | None = None
    request_id: str | None = None


@dataclass(slots=True)
class QueryOptions:
    """Filters and paging shared by the three entry streams.

    ``before`` and ``after`` are inclusive bounds. ``status`` accepts an exact code (``"404"``) or a class wildcard
    (``"4xx"``).
    """

    limit: int = 50
    offset: int = 0
    before: datetime | None = None
    after: datetime | None = None
    search: str | None = None
    tags: Sequence[str] | None = None
    method: str | None = None
    status: str | None = None
    level: LogLevel | None = None


@dataclass(slots=True, frozen=True)
class TelescopeStats:
    """Counts of retained entries plus the oldest and newest timestamp across all streams."""

    requests: int = 0
    exceptions: int = 0
    logs: int = 0
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None


@dataclass(slots=True, frozen=True)
class TelescopeEvent:
    """Notification pushed to real-time clients. ``timestamp`` is epoch milliseconds."""

    type: EventType
    payload: Any
    timestamp: int


# ---------------------------------------------------------------------------
# Metrics


@dataclass(slots=True, frozen=True)
class TimeRange:
    start: datetime
    end: datetime


@dataclass(slots=True)
class StatusDistribution:
    """Request counts per HTTP status class."""

    status_2xx: int = 0
    status_3xx: int = 0
    status_4xx: int = 0
    status_5xx: int = 0

    def add(self, status: int) -> None:
        if 200 <= status < 300:
            self.status_2xx += 1
        elif 300 <= status < 400:
            self.status_3xx += 1
        elif 400 <= status < 500:
            self.status_4xx += 1
        elif status >= 500:
            self.status_5xx += 1

    def merge(self, other: StatusDistribution) -> None:
        self.status_2xx += other.status_2xx
        self.status_3xx += other.status_3xx
        self.status_4xx += other.status_4xx
        self.status_5xx += other.status_5xx

    def as_dict(self) -> dict[str, int]:
        return {"2xx": self.status_2xx, "3xx": self.status_3xx, "4xx": self.status_4xx, "5xx": self.status_5xx}


@dataclass(slots=True)
class MetricsBucket:
    """Request statistics for one fixed-width time window starting at ``timestamp`` (epoch ms)."""

    timestamp: int
    bucket_size: int
    count: int = 0
    duration_sum: float = 0.0
    duration_min: float = float("inf")
    duration_max: float = 0.0
    duration_samples: list[float] = field(default_factory=list)
    error_count: int = 0
    status_distribution: StatusDistribution = field(default_factory=StatusDistribution)


@dataclass(slots=True)
class SeriesAccumulator:
    """Count, duration sum and errors of one endpoint within one time bucket."""

    count: int = 0
    duration_sum: float = 0.0
    error_count: int = 0


@dataclass(slots=True)
class EndpointBucket:
    """Request statistics for one ``(method, path)`` pair over the aggregator's lifetime."""

    method: str
    path: str
    count: int = 0
    duration_sum: float = 0.0
    duration_min: float = float("inf")
    duration_max: float = 0.0
    duration_samples: list[float] = field(default_factory=list)
    error_count: int = 0
    status_distribution: StatusDistribution = field(default_factory=StatusDistribution)
    last_seen: int = 0
    series: dict[int, SeriesAccumulator] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class TimeSeriesPoint:
    timestamp: int
    count: int
    avg_duration: float
    error_count: int


@dataclass(slots=True, frozen=True)
class RequestMetrics:
    """Aggregated request statistics over a time range. Rates are percentages."""

    total_requests: int
    avg_duration: float
    p50_duration: float
    p95_duration: float
    p99_duration: float
    error_rate: float
    success_rate: float
    requests_per_second: float
    time_series: Sequence[TimeSeriesPoint] = field(default_factory=tuple)


@dataclass(slots=True, frozen=True)
class EndpointMetrics:
    """Per-endpoint summary. ``last_seen`` is epoch milliseconds."""

    method: str
    path: str
    count: int
    avg_duration: float
    p95_duration: float
    error_rate: float
    last_seen: int


@dataclass(slots=True, frozen=True)
class EndpointDetails:
    """Full statistics for a single endpoint."""

    method: str
    path: str
    count: int
    avg_duration: float
    min_duration: float
    max_duration: float
    p50_duration: float
    p95_duration: float
    p99_duration: float
    error_rate: float
    status_distribution: StatusDistribution
    last_seen: int
    time_series: Sequence[TimeSeriesPoint] = field(default_factory=tuple)


__all__ = [
    "LogLevel",
    "LOG_LEVELS",
    "EventType",
    "Payload",
    "RequestDraft",
    "RequestEntry",
    "StackFrame",
    "SourceLine",
    "SourceContext",
    "ExceptionEntry",
    "LogDraft",
    "LogEntry",
    "QueryOptions",
    "TelescopeStats",
    "TelescopeEvent",
    "TimeRange",
    "StatusDistribution",
    "MetricsBucket",
    "SeriesAccumulator",
    "EndpointBucket",
    "TimeSeriesPoint",
    "RequestMetrics",
    "EndpointMetrics",
    "EndpointDetails",
]
