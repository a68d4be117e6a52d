"""Core types: enums, span snapshots, metric and query records."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


class SpanStatus(enum.Enum):
    """Lifecycle status of a span."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not SpanStatus.PENDING


@dataclass(frozen=True)
class SpanData:
    """Immutable snapshot of a span, taken when its trace completes.

    ``children`` holds nested snapshots, so a root ``SpanData`` is the whole
    tree.
    """

    span_id: int
    trace_id: str
    name: str
    status: SpanStatus
    start_time: float
    end_time: float | None = None
    duration: float | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    parent_id: int | None = None
    children: tuple[SpanData, ...] = ()
    start_time_unix_ns: int = 0
    end_time_unix_ns: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Flat dictionary form used by trace export (children omitted)."""
        return {
            "id": self.span_id,
            "name": self.name,
            "duration": self.duration,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "status": self.status.value,
            "attributes": self.attributes,
            "parent_id": self.parent_id,
        }


@dataclass(frozen=True)
class Trace:
    """A completed trace: every span of one root closure, in pre-order."""

    trace_id: str
    spans: tuple[SpanData, ...]

    @property
    def root(self) -> SpanData:
        return self.spans[0]


@dataclass(frozen=True)
class PerformanceMetric:
    """A single flat measurement waiting in the batch queue."""

    metric_name: str
    metric_value: float
    metric_unit: str
    metadata: dict[str, Any]
    created_at: str

    def to_record(self) -> dict[str, Any]:
        """Row shape written to the persistence sink."""
        return {
            "metric_name": self.metric_name,
            "metric_value": self.metric_value,
            "metric_unit": self.metric_unit,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class QueryStats:
    """Timing and outcome of one intercepted data-access call."""

    query: str
    table: str
    operation: str
    duration: float
    timestamp: float
    success: bool
    row_count: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class QueryPerformanceMetric:
    query: str
    duration: float
    timestamp: float
    success: bool
    row_count: int | None = None


@dataclass(frozen=True)
class GroupStats:
    """Aggregate over a group of queries. ``success_rate`` is a percentage."""

    count: int
    average_duration: float
    success_rate: float


@dataclass(frozen=True)
class MetricsSummary:
    total_metrics: int
    averages: dict[str, float] = field(default_factory=dict)
    medians: dict[str, float] = field(default_factory=dict)
    p95: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class QueryMetricsSummary:
    total_queries: int
    average_duration: float
    success_rate: float
    slowest_queries: list[QueryPerformanceMetric] = field(default_factory=list)


def result_field(result: Any, name: str) -> Any:
    """Read ``data``/``error`` style fields from an object or a mapping."""
    if result is None:
        return None
    if isinstance(result, Mapping):
        return result.get(name)
    return getattr(result, name, None)


def error_message(error: Any) -> str:
    """Best-effort human readable message for an error value."""
    if error is None:
        return ""
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    message = result_field(error, "message")
    if message is not None:
        return str(message)
    return str(error)
