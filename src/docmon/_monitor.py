"""Monitor — the context object tying batcher, collector and query log together."""

from __future__ import annotations

import asyncio
import atexit
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import TYPE_CHECKING, Any, TypeVar

from docmon._batcher import MetricBatcher
from docmon._buffer import RingBuffer
from docmon._collector import TraceCollector
from docmon._config import MonitorConfig
from docmon._exporter import OTLPExporter
from docmon._processor import BackgroundProcessor
from docmon._query_log import QueryLog
from docmon._sinks import MetricSink, RestSink
from docmon._span import Span, monotonic_ms
from docmon._types import (
    MetricsSummary,
    QueryMetricsSummary,
    SpanData,
    SpanStatus,
    Trace,
)

if TYPE_CHECKING:
    from docmon.integrations.tables import MonitoredClient

logger = logging.getLogger("docmon.monitor")

T = TypeVar("T")

_monitor_instance: Monitor | None = None


class Monitor:
    """Explicit monitoring context, built once and passed to whoever needs it.

    Usage::

        monitor = Monitor(MonitorConfig(service_name="archive-api"), sink=sink)
        db = monitor.instrument(raw_client)
        rows = await db.table("documents").select("*")
        await monitor.aclose()
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        *,
        sink: MetricSink | None = None,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self.config = config if config is not None else MonitorConfig()
        self.clock = clock
        cfg = self.config
        if sink is None and cfg.sink_url:
            sink = RestSink(cfg.sink_url, api_key=cfg.api_key)

        self.metrics = MetricBatcher(
            sink,
            collection=cfg.metrics_collection,
            batch_size=cfg.batch_size,
            max_queue_size=cfg.max_queue_size,
            query_history_size=cfg.query_log_size,
            app_url=cfg.app_url,
            enabled=cfg.enabled,
            clock=clock,
        )
        self.traces = TraceCollector(
            self.metrics,
            clock=clock,
            stale_span_timeout_ms=cfg.stale_span_timeout_ms,
            on_trace_complete=self._enqueue_trace,
        )
        self.queries = QueryLog(cfg.query_log_size, cfg.slow_query_threshold_ms)

        self._export_buffer: RingBuffer[SpanData] | None = None
        self._processor: BackgroundProcessor | None = None
        self._exporter: OTLPExporter | None = None

    @property
    def session_id(self) -> str:
        return self.metrics.session_id

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start OTLP trace export when an endpoint is configured."""
        cfg = self.config
        if cfg.otlp_endpoint is None or self._processor is not None:
            return
        self._export_buffer = RingBuffer(cfg.export_buffer_size)
        self._exporter = OTLPExporter(
            endpoint=cfg.otlp_endpoint,
            service_name=cfg.service_name,
            environment=cfg.environment,
            api_key=cfg.api_key,
            session_id=self.session_id,
        )
        self._processor = BackgroundProcessor(
            self._export_buffer,
            batch_size=cfg.export_batch_size,
            flush_interval_ms=cfg.flush_interval_ms,
            handler=self._exporter.export,
        )
        self._processor.start()

    def shutdown(self) -> None:
        """Flush queued metrics when no event loop is running, then stop export.

        Inside a running loop the flush cannot be awaited here, so queued
        metrics are left in place; use ``await monitor.aclose()`` instead.
        """
        if len(self.metrics):
            self._flush_metrics_blocking()
        if self._processor is not None:
            self._processor.stop()
            self._processor = None
        if self._exporter is not None:
            self._exporter.shutdown()
            self._exporter = None
        self._export_buffer = None

    def _flush_metrics_blocking(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            logger.warning(
                "shutdown() called inside a running event loop; %d metrics left "
                "queued, use aclose()",
                len(self.metrics),
            )
            return
        try:
            asyncio.run(self.metrics.flush())
        except Exception:  # noqa: BLE001
            logger.warning("Final flush of %d metrics failed", len(self.metrics), exc_info=True)

    async def aclose(self) -> None:
        """Flush queued metrics, close the sink, then stop trace export."""
        await self.metrics.aclose()
        self.shutdown()

    def _enqueue_trace(self, trace: Trace) -> None:
        if self._export_buffer is None:
            return
        for span in trace.spans:
            self._export_buffer.enqueue(span)

    # ------------------------------------------------------------------ #
    # Metrics
    # ------------------------------------------------------------------ #

    def record_metric(
        self,
        name: str,
        value: float,
        unit: str = "ms",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.metrics.record_metric(name, value, unit, metadata)

    def record_query_performance(
        self, query: str, duration: float, success: bool, row_count: int | None = None
    ) -> None:
        self.metrics.record_query_performance(query, duration, success, row_count)

    async def measure_async(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.metrics.measure_async(name, operation)

    def measure_sync(self, name: str, operation: Callable[[], T]) -> T:
        return self.metrics.measure_sync(name, operation)

    def get_metrics_summary(self) -> MetricsSummary:
        return self.metrics.get_metrics_summary()

    def get_query_metrics_summary(self) -> QueryMetricsSummary:
        return self.metrics.get_query_metrics_summary()

    async def flush(self) -> None:
        await self.metrics.flush()

    async def force_flush(self) -> None:
        await self.metrics.force_flush()

    def clear_metrics(self) -> None:
        self.metrics.clear()

    def set_enabled(self, enabled: bool) -> None:
        self.metrics.set_enabled(enabled)

    def export_metrics(self) -> str:
        return self.metrics.export_metrics()

    # ------------------------------------------------------------------ #
    # Tracing
    # ------------------------------------------------------------------ #

    def start_span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
        parent_id: int | None = None,
    ) -> int:
        return self.traces.start_span(name, attributes, parent_id)

    def end_span(
        self, span_id: int, status: SpanStatus = SpanStatus.SUCCESS, error: Any = None
    ) -> None:
        self.traces.end_span(span_id, status, error)

    def add_span_attribute(self, span_id: int, key: str, value: Any) -> None:
        self.traces.add_span_attribute(span_id, key, value)

    def add_span_event(
        self, span_id: int, name: str, attributes: dict[str, Any] | None = None
    ) -> None:
        self.traces.add_span_event(span_id, name, attributes)

    async def trace_async(
        self,
        name: str,
        operation: Callable[[int], Awaitable[T]],
        attributes: dict[str, Any] | None = None,
    ) -> T:
        return await self.traces.trace_async(name, operation, attributes)

    def trace_sync(
        self,
        name: str,
        operation: Callable[[int], T],
        attributes: dict[str, Any] | None = None,
    ) -> T:
        return self.traces.trace_sync(name, operation, attributes)

    def get_active_spans(self) -> list[Span]:
        return self.traces.get_active_spans()

    def get_completed_traces(self) -> dict[str, Trace]:
        return self.traces.get_completed_traces()

    def get_trace_tree(self, trace_id: str) -> SpanData | None:
        return self.traces.get_trace_tree(trace_id)

    def clear_traces(self) -> None:
        self.traces.clear_traces()

    def export_trace(self, trace_id: str) -> str:
        return self.traces.export_trace(trace_id)

    def visualize_trace(self, trace_id: str) -> str:
        return self.traces.visualize_trace(trace_id)

    # ------------------------------------------------------------------ #
    # Query monitoring
    # ------------------------------------------------------------------ #

    def instrument(self, client: Any) -> MonitoredClient:
        """Wrap a table-operation client so every call is monitored."""
        from docmon.integrations.tables import instrument

        return instrument(client, self)


def get_monitor() -> Monitor | None:
    """Return the monitor installed by :func:`init`, if any."""
    return _monitor_instance


def init(
    config: MonitorConfig | None = None,
    *,
    sink: MetricSink | None = None,
    **overrides: Any,
) -> Monitor:
    """Create, start and install the process-wide default monitor.

    Keyword overrides are applied on top of ``config`` (or the defaults).
    Calling ``init`` again shuts down the previous monitor.
    """
    global _monitor_instance  # noqa: PLW0603

    if _monitor_instance is not None:
        _monitor_instance.shutdown()

    if config is None:
        config = MonitorConfig(**overrides)
    elif overrides:
        config = replace(config, **overrides)

    _monitor_instance = Monitor(config, sink=sink)
    _monitor_instance.start()
    atexit.register(shutdown)
    return _monitor_instance


def shutdown() -> None:
    """Shut down the default monitor, stopping trace export."""
    global _monitor_instance  # noqa: PLW0603
    if _monitor_instance is not None:
        _monitor_instance.shutdown()
        _monitor_instance = None
