import base64
from datetime import datetime, timezone

import pytest

from telescope_collector.otlp.transformer import (
    attributes_to_dict,
    decode_logs,
    decode_metrics,
    decode_traces,
    extract_value,
    map_severity,
    transform_logs,
    transform_metrics,
    transform_traces,
)
from telescope_collector.utils.diagnostics import OtlpDecodeError

START_NANOS = 1_700_000_000_000_000_000


def _attr(key, **value):
    return {"key": key, "value": value}


def _span(**overrides):
    span = {
        "traceId": "abc123",
        "spanId": "def456",
        "name": "GET /api/users",
        "kind": 2,
        "startTimeUnixNano": str(START_NANOS),
        "endTimeUnixNano": str(START_NANOS + 50_000_000),
        "attributes": [
            _attr("http.method", stringValue="GET"),
            _attr("http.target", stringValue="/api/users"),
            _attr("http.status_code", intValue="200"),
        ],
    }
    span.update(overrides)
    return span


def _traces(*spans, service="checkout"):
    return {
        "resourceSpans": [
            {
                "resource": {"attributes": [_attr("service.name", stringValue=service)]},
                "scopeSpans": [{"scope": {"name": "http"}, "spans": list(spans)}],
            }
        ]
    }


def _logs(*records):
    return {
        "resourceLogs": [
            {
                "resource": {"attributes": [_attr("service.name", stringValue="worker")]},
                "scopeLogs": [{"scope": {"name": "jobs"}, "logRecords": list(records)}],
            }
        ]
    }


def _metrics(*metrics):
    return {
        "resourceMetrics": [
            {
                "resource": {"attributes": [_attr("host.name", stringValue="node-1")]},
                "scopeMetrics": [{"metrics": list(metrics)}],
            }
        ]
    }


def test_server_span_becomes_request_draft():
    drafts = transform_traces(_traces(_span()))

    assert len(drafts) == 1
    draft = drafts[0]
    assert draft.method == "GET"
    assert draft.path == "/api/users"
    assert draft.status == 200
    assert draft.duration == pytest.approx(50.0)
    assert draft.url == "http://localhost/api/users"
    assert draft.tags == ["trace:abc123", "span:def456", "service:checkout"]


def test_span_kind_names_are_accepted():
    assert len(transform_traces(_traces(_span(kind="SPAN_KIND_SERVER")))) == 1


def test_non_server_spans_are_skipped_without_rejection():
    decoded = decode_traces(_traces(_span(kind=1), _span(kind=3)))

    assert decoded.items == []
    assert decoded.rejected == 0


def test_server_span_without_http_attributes_is_skipped():
    assert transform_traces(_traces(_span(attributes=[_attr("rpc.system", stringValue="grpc")]))) == []


def test_error_status_without_http_code_maps_to_500():
    span = _span(
        attributes=[_attr("http.method", stringValue="POST"), _attr("url.path", stringValue="/pay")],
        status={"code": 2},
    )

    draft = transform_traces(_traces(span))[0]

    assert draft.status == 500
    assert draft.method == "POST"


def test_semantic_convention_attributes():
    span = _span(
        attributes=[
            _attr("http.request.method", stringValue="delete"),
            _attr("url.path", stringValue="/items/1"),
            _attr("url.full", stringValue="https://shop.test/items/1"),
            _attr("http.response.status_code", intValue="204"),
            _attr("user_agent.original", stringValue="curl/8"),
            _attr("client.address", stringValue="192.0.2.1"),
        ]
    )

    draft = transform_traces(_traces(span))[0]

    assert (draft.method, draft.path, draft.url, draft.status) == ("DELETE", "/items/1", "https://shop.test/items/1", 204)
    assert draft.headers == {"user-agent": "curl/8"}
    assert draft.ip == "192.0.2.1"


def test_malformed_spans_are_counted_and_others_kept():
    broken_timing = _span(endTimeUnixNano=str(START_NANOS - 1))
    missing_start = _span(startTimeUnixNano=None)
    bad_status = _span(
        attributes=[_attr("http.method", stringValue="GET"), _attr("http.status_code", intValue="999")]
    )

    decoded = decode_traces(_traces(_span(), broken_timing, missing_start, bad_status, "not-a-span"))

    assert len(decoded.items) == 1
    assert decoded.rejected == 4


def test_empty_or_foreign_requests_decode_to_nothing():
    assert decode_traces({}).items == []
    assert decode_traces(None).rejected == 0
    assert decode_logs({"resourceLogs": []}).items == []


@pytest.mark.parametrize(
    ("severity", "level"),
    [(None, "info"), (0, "info"), (1, "debug"), (8, "debug"), (9, "info"), (12, "info"), (13, "warn"), (16, "warn"), (17, "error"), (24, "error")],
)
def test_map_severity(severity, level):
    assert map_severity(severity) == level


def test_log_record_becomes_draft():
    record = {
        "timeUnixNano": str(START_NANOS),
        "severityNumber": 13,
        "severityText": "WARN",
        "body": {"stringValue": "disk almost full"},
        "attributes": [_attr("disk", stringValue="/dev/sda1")],
        "spanId": "def456",
    }

    draft = transform_logs(_logs(record))[0]

    assert draft.level == "warn"
    assert draft.message == "disk almost full"
    assert draft.request_id == "span:def456"
    assert draft.context["disk"] == "/dev/sda1"
    assert draft.context["service.name"] == "worker"
    assert draft.context["instrumentation.scope"] == "jobs"
    assert draft.context["severity.text"] == "WARN"


def test_log_severity_names_resolve_by_family():
    drafts = transform_logs(
        _logs({"severityNumber": "SEVERITY_NUMBER_INFO3"}, {"severityNumber": "SEVERITY_NUMBER_ERROR"})
    )

    assert [draft.level for draft in drafts] == ["info", "error"]


def test_structured_log_body_is_serialized():
    record = {"body": {"kvlistValue": {"values": [_attr("order", intValue="42")]}}}

    assert transform_logs(_logs(record))[0].message == '{"order":42}'


def test_invalid_log_records_are_rejected():
    decoded = decode_logs(_logs({"severityNumber": "SEVERITY_NUMBER_LOUD"}, {"attributes": "nope"}, {"body": {"stringValue": "ok"}}))

    assert [draft.message for draft in decoded.items] == ["ok"]
    assert decoded.rejected == 2


def test_extract_value_variants():
    assert extract_value({"stringValue": "x"}) == "x"
    assert extract_value({"boolValue": True}) is True
    assert extract_value({"intValue": "9007199254740993"}) == 9007199254740993
    assert extract_value({"doubleValue": 1.5}) == 1.5
    assert extract_value({"bytesValue": base64.b64encode(b"\x00\x01").decode()}) == b"\x00\x01"
    assert extract_value({"arrayValue": {"values": [{"intValue": "1"}, {"stringValue": "a"}]}}) == [1, "a"]
    assert extract_value({"kvlistValue": {"values": [_attr("k", boolValue=False)]}}) == {"k": False}
    assert extract_value({}) is None
    assert extract_value(None) is None


def test_extract_value_rejects_bad_encodings():
    with pytest.raises(OtlpDecodeError):
        extract_value({"intValue": "twelve"})
    with pytest.raises(OtlpDecodeError):
        extract_value({"bytesValue": "***"})


def test_attributes_later_keys_win():
    assert attributes_to_dict([_attr("a", intValue="1"), _attr("a", intValue="2")]) == {"a": 2}


def test_gauge_and_sum_points():
    points = transform_metrics(
        _metrics(
            {
                "name": "queue.depth",
                "unit": "1",
                "gauge": {"dataPoints": [{"asInt": "7", "timeUnixNano": str(START_NANOS), "attributes": [_attr("queue", stringValue="mail")]}]},
            },
            {"name": "bytes.sent", "sum": {"dataPoints": [{"asDouble": 12.5, "timeUnixNano": str(START_NANOS)}]}},
        )
    )

    assert [(point.name, point.type, point.value) for point in points] == [("queue.depth", "gauge", 7), ("bytes.sent", "sum", 12.5)]
    assert points[0].attributes == {"queue": "mail"}
    assert points[0].resource_attributes == {"host.name": "node-1"}
    assert points[0].unit == "1"
    assert points[0].timestamp == datetime.fromtimestamp(START_NANOS / 1e9, tz=timezone.utc)


def test_histogram_point_value_is_sum():
    metric = {
        "name": "http.server.duration",
        "histogram": {"dataPoints": [{"sum": 300.0, "count": "4", "min": 10.0, "max": 150.0, "timeUnixNano": str(START_NANOS)}]},
    }

    point = transform_metrics(_metrics(metric))[0]

    assert point.type == "histogram"
    assert point.value == 300.0
    assert point.attributes == {"count": 4, "min": 10.0, "max": 150.0}


def test_summary_point_keeps_quantiles():
    quantiles = [{"quantile": 0.5, "value": 12.0}]
    metric = {"name": "latency", "summary": {"dataPoints": [{"sum": 40.0, "count": 3, "quantileValues": quantiles, "timeUnixNano": str(START_NANOS)}]}}

    point = transform_metrics(_metrics(metric))[0]

    assert point.value == 40.0
    assert point.attributes == {"count": 3, "quantiles": quantiles}


def test_malformed_metric_rejects_each_of_its_points():
    good = {"name": "ok", "gauge": {"dataPoints": [{"asDouble": 1, "timeUnixNano": str(START_NANOS)}]}}
    bad = {
        "name": "broken",
        "gauge": {"dataPoints": [{"asDouble": 1, "timeUnixNano": str(START_NANOS)}, {"asDouble": "x", "timeUnixNano": str(START_NANOS)}]},
    }
    nameless = {"gauge": {"dataPoints": [{"asDouble": 1, "timeUnixNano": str(START_NANOS)}]}}

    decoded = decode_metrics(_metrics(good, bad, nameless))

    assert [point.name for point in decoded.items] == ["ok"]
    assert decoded.rejected == 3
