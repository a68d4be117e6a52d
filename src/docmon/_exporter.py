"""OTLP gRPC exporter — converts completed spans to protobuf and ships them."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import grpc
from opentelemetry.proto.collector.trace.v1.trace_service_pb2 import (
    ExportTraceServiceRequest,
)
from opentelemetry.proto.collector.trace.v1.trace_service_pb2_grpc import (
    TraceServiceStub,
)
from opentelemetry.proto.common.v1.common_pb2 import (
    AnyValue,
    InstrumentationScope,
    KeyValue,
)
from opentelemetry.proto.resource.v1.resource_pb2 import Resource
from opentelemetry.proto.trace.v1.trace_pb2 import (
    ResourceSpans,
    ScopeSpans,
)
from opentelemetry.proto.trace.v1.trace_pb2 import (
    Span as OtlpSpan,
)
from opentelemetry.proto.trace.v1.trace_pb2 import (
    Status as OtlpStatus,
)

from docmon._types import SpanStatus
from docmon._version import __version__

if TYPE_CHECKING:
    from docmon._types import SpanData

logger = logging.getLogger("docmon.exporter")

_STATUS_MAP: dict[SpanStatus, int] = {
    SpanStatus.PENDING: OtlpStatus.STATUS_CODE_UNSET,
    SpanStatus.SUCCESS: OtlpStatus.STATUS_CODE_OK,
    SpanStatus.ERROR: OtlpStatus.STATUS_CODE_ERROR,
}

# Keys carried as dedicated OTLP fields rather than attributes.
_RESERVED = frozenset({"trace_id", "events", "error"})


def _make_attribute(key: str, value: Any) -> KeyValue:
    """Convert a Python key-value pair to an OTLP KeyValue protobuf."""
    if isinstance(value, bool):
        av = AnyValue(bool_value=value)
    elif isinstance(value, int):
        av = AnyValue(int_value=value)
    elif isinstance(value, float):
        av = AnyValue(double_value=value)
    elif isinstance(value, (dict, list, tuple)):
        av = AnyValue(string_value=json.dumps(value, default=str))
    else:
        av = AnyValue(string_value=str(value))
    return KeyValue(key=key, value=av)


def _span_id_bytes(span_id: int) -> bytes:
    return span_id.to_bytes(8, "big")


def _span_data_to_otlp(sd: SpanData) -> OtlpSpan:
    """Convert a single SpanData to an OTLP Span protobuf."""
    attrs = [
        _make_attribute(k, v) for k, v in sd.attributes.items() if k not in _RESERVED
    ]
    if sd.duration is not None:
        attrs.append(_make_attribute("docmon.duration_ms", sd.duration))

    status = OtlpStatus(code=_STATUS_MAP[sd.status])  # type: ignore[arg-type]
    error = sd.attributes.get("error")
    if sd.status == SpanStatus.ERROR and isinstance(error, dict) and error.get("message"):
        status = OtlpStatus(
            code=_STATUS_MAP[sd.status],  # type: ignore[arg-type]
            message=str(error["message"]),
        )

    events = []
    for event in sd.attributes.get("events", []):
        offset_ns = int((event["timestamp"] - sd.start_time) * 1_000_000)
        events.append(
            OtlpSpan.Event(
                time_unix_nano=sd.start_time_unix_ns + max(offset_ns, 0),
                name=event["name"],
                attributes=[
                    _make_attribute(k, v) for k, v in (event.get("attributes") or {}).items()
                ],
            )
        )

    kind = OtlpSpan.SPAN_KIND_CLIENT if sd.name.startswith("db.") else OtlpSpan.SPAN_KIND_INTERNAL
    parent = _span_id_bytes(sd.parent_id) if sd.parent_id is not None else b""

    return OtlpSpan(
        trace_id=bytes.fromhex(sd.trace_id),
        span_id=_span_id_bytes(sd.span_id),
        parent_span_id=parent,
        name=sd.name,
        kind=kind,  # type: ignore[arg-type]
        start_time_unix_nano=sd.start_time_unix_ns,
        end_time_unix_nano=sd.end_time_unix_ns,
        attributes=attrs,
        events=events,
        status=status,
    )


def _build_resource(
    service_name: str, environment: str, session_id: str | None = None
) -> Resource:
    attrs = [
        _make_attribute("service.name", service_name),
        _make_attribute("deployment.environment", environment),
        _make_attribute("telemetry.sdk.name", "docmon"),
        _make_attribute("telemetry.sdk.version", __version__),
    ]
    if session_id is not None:
        attrs.append(_make_attribute("session.id", session_id))
    return Resource(attributes=attrs)


def _build_export_request(
    spans: list[SpanData],
    service_name: str,
    environment: str,
    session_id: str | None = None,
) -> ExportTraceServiceRequest:
    """Wrap a batch of spans in a single resource and instrumentation scope."""
    scope_spans = ScopeSpans(
        scope=InstrumentationScope(name="docmon", version=__version__),
        spans=[_span_data_to_otlp(sd) for sd in spans],
    )
    return ExportTraceServiceRequest(
        resource_spans=[
            ResourceSpans(
                resource=_build_resource(service_name, environment, session_id),
                scope_spans=[scope_spans],
            )
        ]
    )


def _parse_endpoint(endpoint: str) -> tuple[str, bool]:
    """Split ``https://host:port`` style endpoints into a gRPC target and a TLS flag."""
    for scheme, tls in (("https://", True), ("http://", False)):
        if endpoint.startswith(scheme):
            return endpoint[len(scheme) :].rstrip("/"), tls
    return endpoint, False


class OTLPExporter:
    """Span handler that ships completed monitor spans to an OTLP collector.

    The endpoint may be a bare ``host:port`` (plaintext) or carry an
    ``http://``/``https://`` scheme; ``insecure`` overrides the scheme.
    Export failures are counted in ``failed`` and logged at debug level.
    """

    def __init__(
        self,
        endpoint: str,
        service_name: str,
        environment: str,
        *,
        insecure: bool | None = None,
        timeout_s: float = 10.0,
        api_key: str | None = None,
        session_id: str | None = None,
    ) -> None:
        target, tls = _parse_endpoint(endpoint)
        if insecure is not None:
            tls = not insecure
        self._service_name = service_name
        self._environment = environment
        self._session_id = session_id
        self._timeout_s = timeout_s
        self._metadata = [("authorization", f"Bearer {api_key}")] if api_key else None
        self._channel = (
            grpc.secure_channel(target, grpc.ssl_channel_credentials())
            if tls
            else grpc.insecure_channel(target)
        )
        self._stub = TraceServiceStub(self._channel)  # type: ignore[no-untyped-call]
        self._closed = False
        self.exported = 0
        self.failed = 0

    def export(self, spans: list[SpanData]) -> None:
        if not spans:
            return
        try:
            request = _build_export_request(
                spans, self._service_name, self._environment, self._session_id
            )
        except (ValueError, TypeError, OverflowError):
            self.failed += len(spans)
            logger.warning(
                "Dropping %d spans that cannot be encoded as OTLP", len(spans), exc_info=True
            )
            return
        try:
            self._stub.Export(request, timeout=self._timeout_s, metadata=self._metadata)
        except grpc.RpcError:
            self.failed += len(spans)
            logger.debug("OTLP export of %d spans failed", len(spans), exc_info=True)
            return
        self.exported += len(spans)

    def shutdown(self) -> None:
        """Close the gRPC channel. Safe to call more than once."""
        if not self._closed:
            self._closed = True
            self._channel.close()
