"""Pure decoding of OTLP/JSON export requests into collector entities.

Only the JSON encoding of the protocol is handled. Every function here is side-effect free; the receiver decides what
to do with the decoded items.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Generic, Literal, TypeVar

from telescope_collector.services.models import LogDraft, LogLevel, Payload, RequestDraft
from telescope_collector.utils.diagnostics import OtlpDecodeError
from telescope_collector.utils.serialization import dumps

MetricType = Literal["gauge", "sum", "histogram", "summary"]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_T = TypeVar("_T")


class SpanKind(IntEnum):
    UNSPECIFIED = 0
    INTERNAL = 1
    SERVER = 2
    CLIENT = 3
    PRODUCER = 4
    CONSUMER = 5


class StatusCode(IntEnum):
    UNSET = 0
    OK = 1
    ERROR = 2


class SeverityNumber(IntEnum):
    UNSPECIFIED = 0
    TRACE = 1
    DEBUG = 5
    DEBUG4 = 8
    INFO = 9
    INFO4 = 12
    WARN = 13
    WARN4 = 16
    ERROR = 17
    FATAL = 21
    FATAL4 = 24


@dataclass(slots=True, frozen=True)
class MetricDataPoint:
    """One normalized metric observation."""

    name: str
    value: float
    timestamp: datetime
    type: MetricType
    attributes: dict[str, Payload] = field(default_factory=dict)
    resource_attributes: dict[str, Payload] = field(default_factory=dict)
    description: str | None = None
    unit: str | None = None


@dataclass(slots=True)
class DecodeResult(Generic[_T]):
    """Decoded items plus the number of items that could not be decoded."""

    items: list[_T] = field(default_factory=list)
    rejected: int = 0


# ---------------------------------------------------------------------------
# Attribute values


def extract_value(value: Mapping[str, Any] | None) -> Payload:
    """Decode an OTLP ``AnyValue``.

    ``intValue`` arrives as a decimal string to keep 64-bit precision, ``bytesValue`` as base64. An empty value
    decodes to ``None``.
    """

    if not value:
        return None
    if not isinstance(value, Mapping):
        raise OtlpDecodeError("InvalidAnyValue", "attribute value must be an object", detail=repr(value))
    if "stringValue" in value:
        return str(value["stringValue"])
    if "boolValue" in value:
        return bool(value["boolValue"])
    if "intValue" in value:
        try:
            return int(value["intValue"])
        except (TypeError, ValueError) as exc:
            raise OtlpDecodeError("InvalidIntValue", "intValue is not an integer", detail=repr(value["intValue"])) from exc
    if "doubleValue" in value:
        try:
            return float(value["doubleValue"])
        except (TypeError, ValueError) as exc:
            raise OtlpDecodeError(
                "InvalidDoubleValue", "doubleValue is not a number", detail=repr(value["doubleValue"])
            ) from exc
    if "bytesValue" in value:
        try:
            return base64.b64decode(value["bytesValue"], validate=True)
        except (TypeError, ValueError, binascii.Error) as exc:
            raise OtlpDecodeError("InvalidBytesValue", "bytesValue is not base64", detail=str(exc)) from exc
    if "arrayValue" in value:
        return [extract_value(item) for item in (value["arrayValue"] or {}).get("values") or []]
    if "kvlistValue" in value:
        return attributes_to_dict((value["kvlistValue"] or {}).get("values"))
    return None


def attributes_to_dict(attributes: Any) -> dict[str, Payload]:
    """Flatten a ``KeyValue`` list into a dict; later keys win."""

    if not attributes:
        return {}
    if not isinstance(attributes, list):
        raise OtlpDecodeError("InvalidAttributes", "attributes must be a list")
    result: dict[str, Payload] = {}
    for attribute in attributes:
        if not isinstance(attribute, Mapping) or not isinstance(attribute.get("key"), str):
            raise OtlpDecodeError("InvalidAttribute", "attribute must be an object with a string key")
        result[attribute["key"]] = extract_value(attribute.get("value"))
    return result


def parse_nanos(value: Any, field_name: str) -> int:
    if value is None or value == "":
        raise OtlpDecodeError("MissingTimestamp", f"{field_name} is required")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise OtlpDecodeError("InvalidTimestamp", f"{field_name} is not an integer", detail=repr(value)) from exc


def nanos_to_datetime(nanos: int) -> datetime:
    return _EPOCH + timedelta(microseconds=nanos // 1000)


def _enum_value(value: Any, enum: type[IntEnum], prefix: str) -> int | None:
    """Accept enum numbers or their protobuf names such as ``SPAN_KIND_SERVER``."""

    if value is None:
        return None
    if isinstance(value, bool):
        raise OtlpDecodeError("InvalidEnum", f"{prefix.lower()} must be a number or name", detail=repr(value))
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        name = value.removeprefix(prefix)
        if name in enum.__members__:
            return int(enum[name])
        try:
            return int(value)
        except ValueError:
            pass
    raise OtlpDecodeError("InvalidEnum", f"unknown {prefix.lower().rstrip('_')} value", detail=repr(value))


def _first(attrs: Mapping[str, Payload], *keys: str) -> Payload:
    for key in keys:
        value = attrs.get(key)
        if value is not None and value != "":
            return value
    return None


def _require_mapping(item: Any, kind: str) -> Mapping[str, Any]:
    if not isinstance(item, Mapping):
        raise OtlpDecodeError("InvalidItem", f"{kind} must be an object", detail=type(item).__name__)
    return item


def _walk(request: Any, resource_key: str, scope_key: str, item_key: str) -> Iterator[tuple[Any, Any, Any]]:
    """Yield ``(resource, scope, item)`` triples of an export request tree."""

    if not isinstance(request, Mapping):
        return
    for resource_group in request.get(resource_key) or []:
        if not isinstance(resource_group, Mapping):
            yield None, None, resource_group
            continue
        for scope_group in resource_group.get(scope_key) or []:
            if not isinstance(scope_group, Mapping):
                yield resource_group, None, scope_group
                continue
            for item in scope_group.get(item_key) or []:
                yield resource_group, scope_group, item


def _decode(
    triples: Iterator[tuple[Any, Any, Any]],
    convert: Callable[[Mapping[str, Any], dict[str, Payload], Mapping[str, Any]], list[_T]],
    weigh: Callable[[Any], int] | None = None,
) -> DecodeResult[_T]:
    result: DecodeResult[_T] = DecodeResult()
    resource_cache: dict[int, dict[str, Payload]] = {}
    for resource_group, scope_group, item in triples:
        try:
            if resource_group is None or scope_group is None:
                raise OtlpDecodeError("InvalidItem", "resource and scope groups must be objects")
            key = id(resource_group)
            if key not in resource_cache:
                resource = resource_group.get("resource") or {}
                resource_cache[key] = attributes_to_dict(resource.get("attributes"))
            result.items.extend(convert(_require_mapping(item, "item"), resource_cache[key], scope_group))
        except OtlpDecodeError:
            result.rejected += weigh(item) if weigh is not None else 1
    return result


# ---------------------------------------------------------------------------
# Traces

_HTTP_IDENTIFYING_ATTRS = ("http.method", "http.request.method", "http.url", "http.target", "url.path")


def is_http_server_span(span: Mapping[str, Any], attrs: Mapping[str, Payload]) -> bool:
    if _enum_value(span.get("kind"), SpanKind, "SPAN_KIND_") != SpanKind.SERVER:
        return False
    return any(attrs.get(key) for key in _HTTP_IDENTIFYING_ATTRS)


def _http_status(span: Mapping[str, Any], attrs: Mapping[str, Payload]) -> int:
    raw = _first(attrs, "http.status_code", "http.response.status_code", "http.response_status_code")
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, str):
        try:
            return int(raw)
        except ValueError:
            return 200
    status = span.get("status") or {}
    if _enum_value(status.get("code"), StatusCode, "STATUS_CODE_") == StatusCode.ERROR:
        return 500
    return 200


def _span_to_draft(
    span: Mapping[str, Any], resource_attrs: dict[str, Payload], _scope: Mapping[str, Any]
) -> list[RequestDraft]:
    attrs = attributes_to_dict(span.get("attributes"))
    if not is_http_server_span(span, attrs):
        return []

    method = str(_first(attrs, "http.method", "http.request.method") or "GET").upper()
    path = str(_first(attrs, "http.target", "url.path", "http.route") or "/")
    url = str(_first(attrs, "http.url", "url.full") or f"http://localhost{path}")

    headers: dict[str, str] = {}
    user_agent = _first(attrs, "http.user_agent", "user_agent.original")
    if user_agent:
        headers["user-agent"] = str(user_agent)
    content_type = _first(attrs, "http.request.header.content_type", "http.request.header.content-type")
    if content_type:
        headers["content-type"] = str(content_type[0] if isinstance(content_type, list) else content_type)

    start = parse_nanos(span.get("startTimeUnixNano"), "startTimeUnixNano")
    end = parse_nanos(span.get("endTimeUnixNano"), "endTimeUnixNano")
    if end < start:
        raise OtlpDecodeError("InvalidSpanTiming", "span ends before it starts", detail=f"{start}..{end}")

    status = _http_status(span, attrs)
    if not 100 <= status <= 599:
        raise OtlpDecodeError("InvalidStatus", "HTTP status out of range", detail=str(status))

    ip = _first(attrs, "net.peer.ip", "client.address", "http.client_ip")
    tags = [f"trace:{span.get('traceId', '')}", f"span:{span.get('spanId', '')}"]
    if resource_attrs.get("service.name"):
        tags.append(f"service:{resource_attrs['service.name']}")

    return [
        RequestDraft(
            method=method,
            path=path,
            url=url,
            status=status,
            duration=(end - start) / 1_000_000,
            headers=headers,
            query={},
            response_headers={},
            ip=str(ip) if ip else None,
            tags=tags,
        )
    ]


def decode_traces(request: Any) -> DecodeResult[RequestDraft]:
    """Request drafts for HTTP server spans; other spans are skipped without counting as rejections."""

    return _decode(_walk(request, "resourceSpans", "scopeSpans", "spans"), _span_to_draft)


def transform_traces(request: Any) -> list[RequestDraft]:
    return decode_traces(request).items


# ---------------------------------------------------------------------------
# Logs


def map_severity(severity: int | None) -> LogLevel:
    if severity is None or severity <= SeverityNumber.UNSPECIFIED:
        return "info"
    if severity <= SeverityNumber.DEBUG4:
        return "debug"
    if severity <= SeverityNumber.INFO4:
        return "info"
    if severity <= SeverityNumber.WARN4:
        return "warn"
    return "error"


def _severity_number(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, str) and value.startswith("SEVERITY_NUMBER_"):
        name = value.removeprefix("SEVERITY_NUMBER_")
        # Protobuf names cover every level (DEBUG2, INFO3...); resolve them by family and offset.
        family = name.rstrip("0123456789")
        offset = int(name[len(family) :] or "1") - 1
        if family in SeverityNumber.__members__ and 0 <= offset <= 3:
            return int(SeverityNumber[family]) + offset
        raise OtlpDecodeError("InvalidSeverity", "unknown severity", detail=value)
    return _enum_value(value, SeverityNumber, "SEVERITY_NUMBER_")


def _record_to_draft(
    record: Mapping[str, Any], resource_attrs: dict[str, Payload], scope: Mapping[str, Any]
) -> list[LogDraft]:
    attrs = attributes_to_dict(record.get("attributes"))

    message = ""
    if record.get("body"):
        body = extract_value(record["body"])
        message = body if isinstance(body, str) else dumps(body)

    context: dict[str, Payload] = {**attrs, **resource_attrs}
    scope_name = (scope.get("scope") or {}).get("name")
    if scope_name:
        context["instrumentation.scope"] = scope_name
    if record.get("severityText"):
        context["severity.text"] = record["severityText"]

    span_id = record.get("spanId")
    return [
        LogDraft(
            level=map_severity(_severity_number(record.get("severityNumber"))),
            message=message,
            context=context or None,
            request_id=f"span:{span_id}" if span_id else None,
        )
    ]


def decode_logs(request: Any) -> DecodeResult[LogDraft]:
    return _decode(_walk(request, "resourceLogs", "scopeLogs", "logRecords"), _record_to_draft)


def transform_logs(request: Any) -> list[LogDraft]:
    return decode_logs(request).items


# ---------------------------------------------------------------------------
# Metrics


def _number(value: Any, field_name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise OtlpDecodeError("InvalidNumber", f"{field_name} is not a number", detail=repr(value)) from exc


def _point_value(point: Mapping[str, Any]) -> float:
    if point.get("asDouble") is not None:
        return _number(point["asDouble"], "asDouble")
    if point.get("asInt") is not None:
        try:
            return int(point["asInt"])
        except (TypeError, ValueError) as exc:
            raise OtlpDecodeError("InvalidNumber", "asInt is not an integer", detail=repr(point["asInt"])) from exc
    return 0.0


def _metric_points(metric: Mapping[str, Any]) -> Iterator[tuple[MetricType, Any]]:
    for metric_type in ("gauge", "sum", "histogram", "summary"):
        data = metric.get(metric_type)
        if data is None:
            continue
        if not isinstance(data, Mapping):
            raise OtlpDecodeError("InvalidMetric", f"{metric_type} must be an object")
        for point in data.get("dataPoints") or []:
            yield metric_type, point


def _metric_to_points(
    metric: Mapping[str, Any], resource_attrs: dict[str, Payload], _scope: Mapping[str, Any]
) -> list[MetricDataPoint]:
    name = metric.get("name")
    if not isinstance(name, str) or not name:
        raise OtlpDecodeError("InvalidMetric", "metric name is required")

    points: list[MetricDataPoint] = []
    for metric_type, raw in _metric_points(metric):
        point = _require_mapping(raw, "data point")
        attributes = attributes_to_dict(point.get("attributes"))
        if metric_type in ("gauge", "sum"):
            value = _point_value(point)
        else:
            value = _number(point["sum"], "sum") if point.get("sum") is not None else 0.0
            attributes["count"] = int(_number(point.get("count") or 0, "count"))
            if metric_type == "histogram":
                attributes["min"] = point.get("min")
                attributes["max"] = point.get("max")
            else:
                attributes["quantiles"] = list(point.get("quantileValues") or [])
        points.append(
            MetricDataPoint(
                name=name,
                value=value,
                timestamp=nanos_to_datetime(parse_nanos(point.get("timeUnixNano"), "timeUnixNano")),
                type=metric_type,
                attributes=attributes,
                resource_attributes=dict(resource_attrs),
                description=metric.get("description") or None,
                unit=metric.get("unit") or None,
            )
        )
    return points


def _metric_weight(metric: Any) -> int:
    if not isinstance(metric, Mapping):
        return 1
    total = 0
    for metric_type in ("gauge", "sum", "histogram", "summary"):
        data = metric.get(metric_type)
        if isinstance(data, Mapping) and isinstance(data.get("dataPoints"), list):
            total += len(data["dataPoints"])
    return max(total, 1)


def decode_metrics(request: Any) -> DecodeResult[MetricDataPoint]:
    """Normalized data points; every data point of a malformed metric counts as rejected."""

    return _decode(_walk(request, "resourceMetrics", "scopeMetrics", "metrics"), _metric_to_points, _metric_weight)


def transform_metrics(request: Any) -> list[MetricDataPoint]:
    return decode_metrics(request).items


__all__ = [
    "DecodeResult",
    "MetricDataPoint",
    "MetricType",
    "SeverityNumber",
    "SpanKind",
    "StatusCode",
    "attributes_to_dict",
    "decode_logs",
    "decode_metrics",
    "decode_traces",
    "extract_value",
    "is_http_server_span",
    "map_severity",
    "nanos_to_datetime",
    "parse_nanos",
    "transform_logs",
    "transform_metrics",
    "transform_traces",
]
