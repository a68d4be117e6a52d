"""Span class — the live, mutable unit of tracing."""

from __future__ import annotations

import time
from typing import Any

from docmon._types import SpanData, SpanStatus


def monotonic_ms() -> float:
    """Default clock: monotonic milliseconds."""
    return time.perf_counter_ns() / 1_000_000


class Span:
    """A pending or closed span owned by a :class:`TraceCollector`.

    Parent and children are referenced by integer span ids,
    never by object, so a span tree holds no reference cycles.
    """

    __slots__ = (
        "span_id",
        "name",
        "start_time",
        "end_time",
        "duration",
        "attributes",
        "status",
        "parent_id",
        "children",
        "start_time_unix_ns",
        "end_time_unix_ns",
    )

    def __init__(
        self,
        span_id: int,
        name: str,
        *,
        start_time: float,
        attributes: dict[str, Any] | None = None,
        parent_id: int | None = None,
    ) -> None:
        self.span_id = span_id
        self.name = name
        self.start_time = start_time
        self.end_time: float | None = None
        self.duration: float | None = None
        self.attributes: dict[str, Any] = dict(attributes or {})
        self.status = SpanStatus.PENDING
        self.parent_id = parent_id
        self.children: list[int] = []
        self.start_time_unix_ns = time.time_ns()
        self.end_time_unix_ns = 0

    @property
    def trace_id(self) -> str:
        return str(self.attributes.get("trace_id", ""))

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def finish(self, end_time: float, status: SpanStatus) -> None:
        """Close the span. Only valid while pending."""
        self.end_time = end_time
        self.duration = end_time - self.start_time
        self.status = status
        self.end_time_unix_ns = time.time_ns()

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def add_event(
        self, name: str, timestamp: float, attributes: dict[str, Any] | None = None
    ) -> None:
        events = self.attributes.setdefault("events", [])
        events.append({"name": name, "timestamp": timestamp, "attributes": attributes})

    def to_span_data(self, children: tuple[SpanData, ...] = ()) -> SpanData:
        return SpanData(
            span_id=self.span_id,
            trace_id=self.trace_id,
            name=self.name,
            status=self.status,
            start_time=self.start_time,
            end_time=self.end_time,
            duration=self.duration,
            attributes=dict(self.attributes),
            parent_id=self.parent_id,
            children=children,
            start_time_unix_ns=self.start_time_unix_ns,
            end_time_unix_ns=self.end_time_unix_ns,
        )

    def __repr__(self) -> str:
        return (
            f"Span(span_id={self.span_id}, name={self.name!r}, "
            f"status={self.status.value}, parent_id={self.parent_id})"
        )
