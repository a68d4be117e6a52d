"""Tests for the OTLP gRPC exporter."""

from __future__ import annotations

import threading
from concurrent import futures

import grpc
import pytest
from opentelemetry.proto.collector.trace.v1.trace_service_pb2 import (
    ExportTraceServiceRequest,
    ExportTraceServiceResponse,
)
from opentelemetry.proto.collector.trace.v1.trace_service_pb2_grpc import (
    TraceServiceServicer,
    add_TraceServiceServicer_to_server,
)
from opentelemetry.proto.trace.v1.trace_pb2 import Span as OtlpSpan
from opentelemetry.proto.trace.v1.trace_pb2 import Status as OtlpStatus

from docmon._exporter import (
    OTLPExporter,
    _build_export_request,
    _make_attribute,
    _parse_endpoint,
    _span_data_to_otlp,
)
from docmon._types import SpanData, SpanStatus
from docmon._version import __version__

_TRACE_ID = "0123456789abcdef0123456789abcdef"


def _make_span_data(**overrides: object) -> SpanData:
    defaults: dict[str, object] = {
        "span_id": 7,
        "trace_id": _TRACE_ID,
        "name": "render",
        "status": SpanStatus.SUCCESS,
        "start_time": 100.0,
        "end_time": 1100.0,
        "duration": 1000.0,
        "attributes": {},
        "parent_id": None,
        "start_time_unix_ns": 1_000_000_000,
        "end_time_unix_ns": 2_000_000_000,
    }
    defaults.update(overrides)
    return SpanData(**defaults)  # type: ignore[arg-type]


def _attrs(otlp: OtlpSpan) -> dict[str, object]:
    return {a.key: a.value for a in otlp.attributes}


class TestMakeAttribute:
    def test_string(self) -> None:
        kv = _make_attribute("key", "value")
        assert kv.key == "key"
        assert kv.value.string_value == "value"

    def test_int(self) -> None:
        assert _make_attribute("key", 42).value.int_value == 42

    def test_float(self) -> None:
        assert _make_attribute("key", 3.14).value.double_value == pytest.approx(3.14)

    def test_bool_is_not_int(self) -> None:
        assert _make_attribute("key", True).value.HasField("bool_value")
        assert _make_attribute("key", 1).value.HasField("int_value")

    def test_structured_values_become_json(self) -> None:
        kv = _make_attribute("params", {"owner": "u1"})
        assert kv.value.string_value == '{"owner": "u1"}'

    def test_none_is_stringified(self) -> None:
        assert _make_attribute("key", None).value.string_value == "None"


class TestSpanDataToOtlp:
    def test_basic_fields(self) -> None:
        otlp = _span_data_to_otlp(_make_span_data())
        assert otlp.name == "render"
        assert otlp.start_time_unix_nano == 1_000_000_000
        assert otlp.end_time_unix_nano == 2_000_000_000
        assert otlp.trace_id == bytes.fromhex(_TRACE_ID)

    def test_span_ids_are_eight_bytes(self) -> None:
        otlp = _span_data_to_otlp(_make_span_data(span_id=258, parent_id=1))
        assert otlp.span_id == (258).to_bytes(8, "big")
        assert otlp.parent_span_id == (1).to_bytes(8, "big")

    def test_root_has_no_parent(self) -> None:
        assert _span_data_to_otlp(_make_span_data()).parent_span_id == b""

    def test_kind_follows_name(self) -> None:
        assert _span_data_to_otlp(_make_span_data()).kind == OtlpSpan.SPAN_KIND_INTERNAL
        db_span = _make_span_data(name="db.select")
        assert _span_data_to_otlp(db_span).kind == OtlpSpan.SPAN_KIND_CLIENT

    def test_status_mapping(self) -> None:
        expected = {
            SpanStatus.PENDING: OtlpStatus.STATUS_CODE_UNSET,
            SpanStatus.SUCCESS: OtlpStatus.STATUS_CODE_OK,
            SpanStatus.ERROR: OtlpStatus.STATUS_CODE_ERROR,
        }
        for status, code in expected.items():
            assert _span_data_to_otlp(_make_span_data(status=status)).status.code == code

    def test_error_message_goes_to_status(self) -> None:
        sd = _make_span_data(
            status=SpanStatus.ERROR,
            attributes={"error": {"message": "boom", "stack": None}},
        )
        otlp = _span_data_to_otlp(sd)
        assert otlp.status.message == "boom"
        assert "error" not in _attrs(otlp)

    def test_attributes_skip_reserved_keys(self) -> None:
        sd = _make_span_data(
            attributes={"table": "documents", "rows": 3, "trace_id": _TRACE_ID}
        )
        attrs = _attrs(_span_data_to_otlp(sd))
        assert attrs["table"].string_value == "documents"  # type: ignore[attr-defined]
        assert attrs["rows"].int_value == 3  # type: ignore[attr-defined]
        assert "trace_id" not in attrs

    def test_duration_attribute(self) -> None:
        attrs = _attrs(_span_data_to_otlp(_make_span_data(duration=42.5)))
        assert attrs["docmon.duration_ms"].double_value == pytest.approx(42.5)  # type: ignore[attr-defined]

    def test_pending_span_has_no_duration_attribute(self) -> None:
        sd = _make_span_data(status=SpanStatus.PENDING, duration=None, end_time=None)
        assert "docmon.duration_ms" not in _attrs(_span_data_to_otlp(sd))

    def test_events(self) -> None:
        sd = _make_span_data(
            attributes={
                "events": [
                    {"name": "cache_miss", "timestamp": 102.5, "attributes": {"key": "p3"}}
                ]
            }
        )
        otlp = _span_data_to_otlp(sd)
        [event] = otlp.events
        assert event.name == "cache_miss"
        assert event.time_unix_nano == 1_000_000_000 + 2_500_000
        assert event.attributes[0].key == "key"
        assert "events" not in _attrs(otlp)


class TestBuildExportRequest:
    def test_resource_attributes(self) -> None:
        req = _build_export_request([_make_span_data()], "archive-api", "prod")
        assert len(req.resource_spans) == 1
        resource = req.resource_spans[0].resource
        attr_dict = {a.key: a.value.string_value for a in resource.attributes}
        assert attr_dict["service.name"] == "archive-api"
        assert attr_dict["deployment.environment"] == "prod"
        assert attr_dict["telemetry.sdk.name"] == "docmon"
        assert attr_dict["telemetry.sdk.version"] == __version__

    def test_session_id_resource_attribute(self) -> None:
        req = _build_export_request([_make_span_data()], "svc", "dev", "session_abc")
        resource = req.resource_spans[0].resource
        attr_dict = {a.key: a.value.string_value for a in resource.attributes}
        assert attr_dict["session.id"] == "session_abc"

    def test_scope_and_spans(self) -> None:
        spans = [_make_span_data(name=f"span-{i}", span_id=i + 1) for i in range(3)]
        req = _build_export_request(spans, "svc", "dev")
        scope_spans = req.resource_spans[0].scope_spans[0]
        assert scope_spans.scope.name == "docmon"
        assert [s.name for s in scope_spans.spans] == ["span-0", "span-1", "span-2"]


def test_parse_endpoint() -> None:
    assert _parse_endpoint("collector:4317") == ("collector:4317", False)
    assert _parse_endpoint("http://collector:4317") == ("collector:4317", False)
    assert _parse_endpoint("https://otel.example.com:443/") == ("otel.example.com:443", True)


class TestOTLPExporter:
    def test_export_empty_batch(self) -> None:
        exporter = OTLPExporter("localhost:4317", "svc", "dev")
        exporter.export([])
        exporter.shutdown()

    def test_unreachable_endpoint_does_not_raise(self) -> None:
        exporter = OTLPExporter("localhost:1", "svc", "dev", timeout_s=0.1)
        exporter.export([_make_span_data()])
        assert exporter.failed == 1
        assert exporter.exported == 0
        exporter.shutdown()

    def test_unencodable_spans_are_counted_as_failed(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        exporter = OTLPExporter("localhost:1", "svc", "dev", timeout_s=0.1)
        exporter.export([_make_span_data(trace_id="not-hex")])
        exporter.export([_make_span_data(span_id=2**64)])
        assert exporter.failed == 2
        assert exporter.exported == 0
        assert "cannot be encoded as OTLP" in caplog.text
        exporter.shutdown()

    def test_shutdown_idempotent(self) -> None:
        exporter = OTLPExporter("localhost:4317", "svc", "dev")
        exporter.shutdown()
        exporter.shutdown()


class _CollectorServicer(TraceServiceServicer):
    """In-process collector that keeps every request and its metadata."""

    def __init__(self) -> None:
        self.requests: list[ExportTraceServiceRequest] = []
        self.metadata: list[dict[str, str]] = []
        self._lock = threading.Lock()

    def Export(  # noqa: N802
        self,
        request: ExportTraceServiceRequest,
        context: grpc.ServicerContext,
    ) -> ExportTraceServiceResponse:
        with self._lock:
            self.requests.append(request)
            self.metadata.append(dict(context.invocation_metadata()))
        return ExportTraceServiceResponse()


def test_export_received_by_server() -> None:
    servicer = _CollectorServicer()
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=2))
    add_TraceServiceServicer_to_server(servicer, server)
    port = server.add_insecure_port("localhost:0")
    server.start()

    try:
        exporter = OTLPExporter(
            f"localhost:{port}", "archive-api", "staging", timeout_s=5.0, api_key="k1"
        )
        exporter.export(
            [
                _make_span_data(name="request"),
                _make_span_data(name="db.select", span_id=8, parent_id=7),
            ]
        )
        assert exporter.exported == 2
        exporter.shutdown()

        [req] = servicer.requests
        otlp_spans = req.resource_spans[0].scope_spans[0].spans
        assert [s.name for s in otlp_spans] == ["request", "db.select"]
        assert otlp_spans[1].parent_span_id == otlp_spans[0].span_id
        assert servicer.metadata[0]["authorization"] == "Bearer k1"
    finally:
        server.stop(grace=1)
