"""docmon: performance, query and trace monitoring for the document archive."""

from __future__ import annotations

from docmon._batcher import MetricBatcher
from docmon._collector import TraceCollector
from docmon._config import MonitorConfig
from docmon._monitor import Monitor, get_monitor, init, shutdown
from docmon._query_log import QueryLog
from docmon._sinks import InMemorySink, MetricSink, NoopSink, RestSink
from docmon._span import Span
from docmon._trace import measured, traced
from docmon._types import (
    GroupStats,
    MetricsSummary,
    PerformanceMetric,
    QueryMetricsSummary,
    QueryPerformanceMetric,
    QueryStats,
    SpanData,
    SpanStatus,
    Trace,
)
from docmon._version import __version__
from docmon.integrations.tables import MonitoredClient, instrument

__all__ = [
    "GroupStats",
    "InMemorySink",
    "MetricBatcher",
    "MetricSink",
    "MetricsSummary",
    "Monitor",
    "MonitorConfig",
    "MonitoredClient",
    "NoopSink",
    "PerformanceMetric",
    "QueryLog",
    "QueryMetricsSummary",
    "QueryPerformanceMetric",
    "QueryStats",
    "RestSink",
    "Span",
    "SpanData",
    "SpanStatus",
    "Trace",
    "TraceCollector",
    "__version__",
    "get_monitor",
    "init",
    "instrument",
    "measured",
    "shutdown",
    "traced",
]
