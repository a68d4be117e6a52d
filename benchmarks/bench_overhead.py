#!/usr/bin/env python3
"""Call-site overhead benchmark.

Measures the cost docmon adds to the caller:
  1. record_metric           (enrich + queue append, no flush)
  2. start_span / end_span   (arena insert, close, span metric, archive)
  3. instrumented select     (adapter + span + query log + metric)

Usage:
    python benchmarks/bench_overhead.py
"""

from __future__ import annotations

import asyncio
import time

from docmon import Monitor, MonitorConfig
from docmon._batcher import MetricBatcher


def bench_record_metric(iterations: int = 200_000) -> float:
    """Benchmark: record_metric with flushing effectively disabled."""
    batcher = MetricBatcher(batch_size=iterations + 1)

    for _ in range(1000):
        batcher.record_metric("bench", 1.0)
    batcher.clear()

    start = time.perf_counter_ns()
    for _ in range(iterations):
        batcher.record_metric("bench", 1.0)
    elapsed = time.perf_counter_ns() - start

    return elapsed / iterations


def bench_span_lifecycle(iterations: int = 100_000) -> float:
    """Benchmark: root span start and end, including the trace snapshot."""
    monitor = Monitor(MonitorConfig(batch_size=iterations + 2000))

    for _ in range(1000):
        monitor.end_span(monitor.start_span("bench"))
    monitor.clear_traces()
    monitor.clear_metrics()

    start = time.perf_counter_ns()
    for _ in range(iterations):
        monitor.end_span(monitor.start_span("bench"))
    elapsed = time.perf_counter_ns() - start

    return elapsed / iterations


class _NullTable:
    async def select(self, *args: object) -> dict[str, object]:
        return {"data": [1, 2, 3], "error": None}


class _NullClient:
    def table(self, name: str) -> _NullTable:
        return _NullTable()


async def _select_loop(iterations: int, client: object) -> float:
    start = time.perf_counter_ns()
    for _ in range(iterations):
        await client.table("documents").select("*")  # type: ignore[attr-defined]
    return (time.perf_counter_ns() - start) / iterations


def bench_instrumented_select(iterations: int = 50_000) -> float:
    """Benchmark: instrumented select minus the bare client's cost."""
    monitor = Monitor(MonitorConfig(batch_size=4 * iterations, query_log_size=1000))
    raw = _NullClient()
    wrapped = monitor.instrument(raw)

    bare = asyncio.run(_select_loop(iterations, raw))
    monitored = asyncio.run(_select_loop(iterations, wrapped))
    return monitored - bare


def main() -> None:
    print("=" * 60)
    print("docmon Call-Site Overhead Benchmark")
    print("=" * 60)

    results: list[tuple[str, float, str]] = []

    ns = bench_record_metric()
    status = "PASS" if ns < 5000 else "WARN" if ns < 10000 else "FAIL"
    results.append(("record_metric", ns, f"{status} (target < 5μs)"))

    ns = bench_span_lifecycle()
    status = "PASS" if ns < 20000 else "WARN" if ns < 40000 else "FAIL"
    results.append(("Span start/end (root)", ns, f"{status} (target < 20μs)"))

    ns = bench_instrumented_select()
    status = "PASS" if ns < 50000 else "WARN" if ns < 100000 else "FAIL"
    results.append(("Instrumented select (added)", ns, f"{status} (target < 50μs)"))

    print()
    for name, ns_val, note in results:
        if ns_val >= 1000:
            display = f"{ns_val / 1000:.2f}μs"
        else:
            display = f"{ns_val:.0f}ns"
        print(f"  {name:40s}  {display:>10s}   {note}")

    print()
    if all("FAIL" not in r[2] for r in results):
        print("All benchmarks within acceptable range.")
    else:
        print("WARNING: Some benchmarks exceeded target. Review above.")


if __name__ == "__main__":
    main()
