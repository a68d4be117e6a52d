"""Metric batcher — buffers flat measurements and flushes them to a sink."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import platform
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, TypeVar

from docmon._buffer import RingBuffer
from docmon._sinks import MetricSink, NoopSink
from docmon._span import monotonic_ms
from docmon._types import (
    MetricsSummary,
    PerformanceMetric,
    QueryMetricsSummary,
    QueryPerformanceMetric,
    error_message,
    result_field,
)
from docmon._version import __version__

logger = logging.getLogger("docmon.batcher")

T = TypeVar("T")

_P95 = 0.95


def _default_user_agent() -> str:
    return (
        f"docmon/{__version__} ({platform.python_implementation()} "
        f"{platform.python_version()}; {platform.system()})"
    )


class MetricBatcher:
    """Queues metrics in memory and hands them to a sink in batches.

    ``record_metric`` never suspends: once the queue holds ``batch_size``
    metrics it is emptied synchronously and the send runs as a task on the
    running event loop. A failed send puts the batch back at the head of the
    queue for the next flush. The queue, retries included, is unbounded
    unless ``max_queue_size`` is set; past it the oldest metrics are dropped.
    """

    def __init__(
        self,
        sink: MetricSink | None = None,
        *,
        collection: str = "performance_metrics",
        batch_size: int = 10,
        max_queue_size: int | None = None,
        query_history_size: int = 1000,
        session_id: str | None = None,
        app_url: str = "",
        enabled: bool = True,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self._sink: MetricSink = sink if sink is not None else NoopSink()
        self._collection = collection
        self._batch_size = batch_size
        self._max_queue_size = max_queue_size
        self._clock = clock
        self._enabled = enabled
        self._queue: list[PerformanceMetric] = []
        self._query_metrics: RingBuffer[QueryPerformanceMetric] = RingBuffer(
            query_history_size
        )
        self._pending: set[asyncio.Task[None]] = set()
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:16]}"
        self.user_agent = _default_user_agent()
        self.app_url = app_url

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    @property
    def sink(self) -> MetricSink:
        return self._sink

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def __len__(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------ #
    # Recording
    # ------------------------------------------------------------------ #

    def record_metric(
        self,
        name: str,
        value: float,
        unit: str = "ms",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Queue one metric; triggers a background flush at ``batch_size``."""
        if not self._enabled:
            return

        self._queue.append(
            PerformanceMetric(
                metric_name=name,
                metric_value=value,
                metric_unit=unit,
                metadata={
                    **(metadata or {}),
                    "session_id": self.session_id,
                    "user_agent": self.user_agent,
                    "url": self.app_url,
                },
                created_at=datetime.now(timezone.utc).isoformat(),
            )
        )

        if len(self._queue) >= self._batch_size:
            self._schedule_flush()
        self._enforce_cap()

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %d metrics stay queued", len(self._queue))
            return
        batch = self._take()
        task = loop.create_task(self._send(batch))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def record_query_performance(
        self,
        query: str,
        duration: float,
        success: bool,
        row_count: int | None = None,
    ) -> None:
        """Keep a per-query history entry and record it as a flat metric."""
        self._query_metrics.enqueue(
            QueryPerformanceMetric(
                query=query,
                duration=duration,
                timestamp=time.time() * 1000,
                success=success,
                row_count=row_count,
            )
        )
        self.record_metric(
            query,
            duration,
            "ms",
            {"query": query[:100], "success": success, "row_count": row_count},
        )

    async def measure_async(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()`` and record how long it took.

        Usage::

            docs = await batcher.measure_async("fetch_documents", fetch_documents)
        """
        start = self._clock()
        error: BaseException | None = None
        try:
            return await operation()
        except BaseException as exc:
            error = exc
            raise
        finally:
            self.record_metric(
                name,
                self._clock() - start,
                "ms",
                {
                    "success": error is None,
                    "error": error_message(error) if error is not None else None,
                },
            )

    def measure_sync(self, name: str, operation: Callable[[], T]) -> T:
        start = self._clock()
        error: BaseException | None = None
        try:
            return operation()
        except BaseException as exc:
            error = exc
            raise
        finally:
            self.record_metric(
                name,
                self._clock() - start,
                "ms",
                {
                    "success": error is None,
                    "error": error_message(error) if error is not None else None,
                },
            )

    # ------------------------------------------------------------------ #
    # Flushing
    # ------------------------------------------------------------------ #

    def _take(self) -> list[PerformanceMetric]:
        batch, self._queue = self._queue, []
        return batch

    def _requeue(self, batch: list[PerformanceMetric]) -> None:
        self._queue[:0] = batch
        self._enforce_cap()

    def _enforce_cap(self) -> None:
        if self._max_queue_size is not None and len(self._queue) > self._max_queue_size:
            dropped = len(self._queue) - self._max_queue_size
            del self._queue[:dropped]
            logger.warning("Metric queue full, dropped %d oldest metrics", dropped)

    async def _send(self, batch: list[PerformanceMetric]) -> None:
        if not batch:
            return
        try:
            result = await self._sink.insert_batch(
                self._collection, [m.to_record() for m in batch]
            )
        except Exception:  # noqa: BLE001
            logger.warning("Error flushing %d metrics", len(batch), exc_info=True)
            self._requeue(batch)
            return

        error = result_field(result, "error")
        if error:
            logger.warning(
                "Failed to flush %d metrics: %s", len(batch), error_message(error)
            )
            self._requeue(batch)

    async def flush(self) -> None:
        """Send everything queued in one batch. Never raises."""
        await self._send(self._take())

    async def force_flush(self) -> None:
        """Wait for in-flight automatic flushes, then flush the queue."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await self.flush()

    async def aclose(self) -> None:
        """Final flush, then close the sink if it holds resources."""
        await self.force_flush()
        close = getattr(self._sink, "aclose", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------ #
    # Inspection
    # ------------------------------------------------------------------ #

    def get_queued_metrics(self) -> list[PerformanceMetric]:
        return list(self._queue)

    def get_query_metrics(self) -> list[QueryPerformanceMetric]:
        return self._query_metrics.snapshot()

    def get_metrics_summary(self) -> MetricsSummary:
        """Mean, median and p95 per metric name over the queued metrics."""
        by_name: dict[str, list[float]] = {}
        for metric in self._queue:
            by_name.setdefault(metric.metric_name, []).append(metric.metric_value)

        averages: dict[str, float] = {}
        medians: dict[str, float] = {}
        p95: dict[str, float] = {}
        for name, values in by_name.items():
            values.sort()
            n = len(values)
            averages[name] = sum(values) / n
            medians[name] = values[n // 2]
            p95[name] = values[math.floor(n * _P95)]

        return MetricsSummary(
            total_metrics=len(self._queue),
            averages=averages,
            medians=medians,
            p95=p95,
        )

    def get_query_metrics_summary(self) -> QueryMetricsSummary:
        queries = self._query_metrics.snapshot()
        if not queries:
            return QueryMetricsSummary(total_queries=0, average_duration=0.0, success_rate=0.0)

        successes = sum(1 for q in queries if q.success)
        return QueryMetricsSummary(
            total_queries=len(queries),
            average_duration=sum(q.duration for q in queries) / len(queries),
            success_rate=successes / len(queries) * 100,
            slowest_queries=sorted(queries, key=lambda q: q.duration, reverse=True)[:10],
        )

    def clear(self) -> None:
        """Drop queued metrics and the per-query history without sending."""
        self._queue = []
        self._query_metrics.clear()

    def export_metrics(self) -> str:
        return json.dumps(
            {
                "session_id": self.session_id,
                "metrics": [m.to_record() for m in self._queue],
                "query_metrics": [asdict(q) for q in self._query_metrics],
                "summary": asdict(self.get_metrics_summary()),
                "query_summary": asdict(self.get_query_metrics_summary()),
            },
            indent=2,
            default=str,
        )
