"""Trace collector — span lifecycle, trace assembly, export and rendering."""

from __future__ import annotations

import json
import logging
import traceback
import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from docmon._span import Span, monotonic_ms
from docmon._types import SpanData, SpanStatus, Trace, error_message

if TYPE_CHECKING:
    from docmon._batcher import MetricBatcher

logger = logging.getLogger("docmon.collector")

T = TypeVar("T")

TraceHandler = Callable[[Trace], None]

_GLYPHS: dict[SpanStatus, str] = {
    SpanStatus.SUCCESS: "✓",
    SpanStatus.ERROR: "✗",
    SpanStatus.PENDING: "⋯",
}


def _new_trace_id() -> str:
    return uuid.uuid4().hex


def _describe_error(error: Any) -> dict[str, Any]:
    stack: str | None = None
    if isinstance(error, BaseException):
        stack = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    else:
        raw = getattr(error, "stack", None)
        stack = str(raw) if raw is not None else None
    return {"message": error_message(error), "stack": stack}


class TraceCollector:
    """Owns every open span and archives finished span trees as traces.

    Spans are addressed by integer handles drawn from a counter, so handles
    are never reused. A closed span is held only while a live ancestor may
    still snapshot it; everything else is released as soon as it closes.
    """

    def __init__(
        self,
        metrics: MetricBatcher | None = None,
        *,
        clock: Callable[[], float] = monotonic_ms,
        stale_span_timeout_ms: float | None = None,
        on_trace_complete: TraceHandler | None = None,
    ) -> None:
        self._metrics = metrics
        self._clock = clock
        self._stale_span_timeout_ms = stale_span_timeout_ms
        self._on_trace_complete = on_trace_complete
        self._spans: dict[int, Span] = {}
        # child id -> parent id, for linked children only
        self._links: dict[int, int] = {}
        self._next_id = 1
        self._live: set[int] = set()
        self._completed: dict[str, Trace] = {}
        self._trace_id = _new_trace_id()

    @property
    def current_trace_id(self) -> str:
        return self._trace_id

    # ------------------------------------------------------------------ #
    # Span lifecycle
    # ------------------------------------------------------------------ #

    def _lookup(self, span_id: int) -> Span | None:
        if span_id not in self._live:
            return None
        return self._spans[span_id]

    def start_span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
        parent_id: int | None = None,
    ) -> int:
        """Open a pending span and return its id.

        A ``parent_id`` that is not live is kept on the span but not linked.
        """
        if self._stale_span_timeout_ms is not None:
            self.evict_stale_spans(self._stale_span_timeout_ms)

        span_id = self._next_id
        self._next_id += 1
        span = Span(
            span_id,
            name,
            start_time=self._clock(),
            attributes={**(attributes or {}), "trace_id": self._trace_id},
            parent_id=parent_id,
        )
        self._spans[span_id] = span
        self._live.add(span_id)

        if parent_id is not None:
            parent = self._lookup(parent_id)
            if parent is not None:
                parent.children.append(span_id)
                self._links[span_id] = parent_id
        return span_id

    def end_span(
        self,
        span_id: int,
        status: SpanStatus = SpanStatus.SUCCESS,
        error: Any = None,
    ) -> None:
        """Close a live span. Unknown or already closed ids are ignored."""
        span = self._lookup(span_id)
        if span is None:
            logger.warning("Span %s not found", span_id)
            return

        span.finish(self._clock(), status)
        if error is not None:
            span.attributes["error"] = _describe_error(error)

        if self._metrics is not None:
            self._metrics.record_metric(
                f"span_{span.name}",
                span.duration or 0.0,
                "ms",
                {
                    "status": status.value,
                    "trace_id": self._trace_id,
                    "span_id": span_id,
                    "attributes": dict(span.attributes),
                },
            )

        if span.is_root:
            trace = Trace(self._trace_id, tuple(_preorder(self._snapshot(span))))
            self._completed[trace.trace_id] = trace
            self._trace_id = _new_trace_id()
            if self._on_trace_complete is not None:
                try:
                    self._on_trace_complete(trace)
                except Exception:  # noqa: BLE001
                    logger.warning("Trace handler failed", exc_info=True)

        self._discard(span_id)

    def _discard(self, span_id: int) -> None:
        self._live.discard(span_id)
        if not self._has_live_ancestor(span_id):
            self._release(span_id)

    def _has_live_ancestor(self, span_id: int) -> bool:
        parent_id = self._links.get(span_id)
        while parent_id is not None:
            if parent_id in self._live:
                return True
            parent_id = self._links.get(parent_id)
        return False

    def _release(self, span_id: int) -> None:
        """Forget a span and its closed descendants; live ones are unlinked."""
        span = self._spans.pop(span_id)
        self._links.pop(span_id, None)
        for child_id in span.children:
            if child_id in self._live:
                self._links.pop(child_id, None)
            elif child_id in self._spans:
                self._release(child_id)

    def _snapshot(self, span: Span) -> SpanData:
        children = tuple(
            self._snapshot(self._spans[child_id])
            for child_id in span.children
            if child_id in self._spans
        )
        return span.to_span_data(children)

    def add_span_attribute(self, span_id: int, key: str, value: Any) -> None:
        span = self._lookup(span_id)
        if span is not None:
            span.set_attribute(key, value)

    def add_span_event(
        self, span_id: int, name: str, attributes: dict[str, Any] | None = None
    ) -> None:
        span = self._lookup(span_id)
        if span is not None:
            span.add_event(name, self._clock(), attributes)

    def evict_stale_spans(self, max_age_ms: float) -> int:
        """Drop pending spans older than ``max_age_ms`` from the live map.

        Evicted spans are not closed: no metric is emitted and no trace is
        archived for them. Returns the number of evicted spans.
        """
        now = self._clock()
        stale = [
            span_id
            for span_id in self._live
            if now - self._spans[span_id].start_time > max_age_ms
        ]
        for span_id in stale:
            logger.warning(
                "Evicting span %s (%s) pending for more than %.0fms",
                span_id,
                self._spans[span_id].name,
                max_age_ms,
            )
        for span_id in stale:
            self._discard(span_id)
        return len(stale)

    # ------------------------------------------------------------------ #
    # Wrappers
    # ------------------------------------------------------------------ #

    async def trace_async(
        self,
        name: str,
        operation: Callable[[int], Awaitable[T]],
        attributes: dict[str, Any] | None = None,
    ) -> T:
        """Run ``operation(span_id)`` inside a root span and re-raise errors."""
        span_id = self.start_span(name, attributes)
        try:
            result = await operation(span_id)
        except BaseException as exc:
            self.end_span(span_id, SpanStatus.ERROR, exc)
            raise
        self.end_span(span_id, SpanStatus.SUCCESS)
        return result

    def trace_sync(
        self,
        name: str,
        operation: Callable[[int], T],
        attributes: dict[str, Any] | None = None,
    ) -> T:
        span_id = self.start_span(name, attributes)
        try:
            result = operation(span_id)
        except BaseException as exc:
            self.end_span(span_id, SpanStatus.ERROR, exc)
            raise
        self.end_span(span_id, SpanStatus.SUCCESS)
        return result

    @contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
        parent_id: int | None = None,
    ) -> Iterator[int]:
        """Context manager form of start/end span.

        Usage::

            with collector.span("render", {"page": 3}) as span_id:
                collector.add_span_event(span_id, "cache_miss")
        """
        span_id = self.start_span(name, attributes, parent_id)
        try:
            yield span_id
        except BaseException as exc:
            self.end_span(span_id, SpanStatus.ERROR, exc)
            raise
        self.end_span(span_id, SpanStatus.SUCCESS)

    # ------------------------------------------------------------------ #
    # Inspection and export
    # ------------------------------------------------------------------ #

    def get_active_spans(self) -> list[Span]:
        return [self._spans[span_id] for span_id in sorted(self._live)]

    def get_completed_traces(self) -> dict[str, Trace]:
        return dict(self._completed)

    def get_trace_tree(self, trace_id: str) -> SpanData | None:
        trace = self._completed.get(trace_id)
        if trace is None or not trace.spans:
            return None
        return trace.root

    def clear_traces(self) -> None:
        self._completed.clear()

    def export_trace(self, trace_id: str) -> str:
        trace = self._completed.get(trace_id)
        if trace is None:
            return "{}"
        return json.dumps(
            {"trace_id": trace_id, "spans": [s.to_dict() for s in trace.spans]},
            indent=2,
            default=str,
            ensure_ascii=False,
        )

    def visualize_trace(self, trace_id: str) -> str:
        root = self.get_trace_tree(trace_id)
        if root is None:
            return "Trace not found"

        lines: list[str] = []

        def render(span: SpanData, depth: int) -> None:
            duration = f"{span.duration:.2f}" if span.duration is not None else "?"
            lines.append(f"{'  ' * depth}{_GLYPHS[span.status]} {span.name} ({duration}ms)")
            for child in span.children:
                render(child, depth + 1)

        render(root, 0)
        return "\n".join(lines)


def _preorder(root: SpanData) -> Iterator[SpanData]:
    yield root
    for child in root.children:
        yield from _preorder(child)
