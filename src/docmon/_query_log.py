"""Bounded history of intercepted queries with on-demand aggregation."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timezone

from docmon._buffer import RingBuffer
from docmon._types import GroupStats, QueryStats

_RULE_HEAVY = "═" * 50
_RULE_LIGHT = "─" * 50


def _group(
    entries: list[QueryStats], key: Callable[[QueryStats], str]
) -> dict[str, GroupStats]:
    groups: dict[str, list[QueryStats]] = {}
    for entry in entries:
        groups.setdefault(key(entry), []).append(entry)

    result: dict[str, GroupStats] = {}
    for name, queries in groups.items():
        successes = sum(1 for q in queries if q.success)
        result[name] = GroupStats(
            count=len(queries),
            average_duration=sum(q.duration for q in queries) / len(queries),
            success_rate=successes / len(queries) * 100,
        )
    return result


class QueryLog:
    """FIFO ring buffer of :class:`QueryStats`.

    Aggregates are recomputed from the buffer on every call; nothing is
    maintained incrementally.
    """

    def __init__(self, capacity: int = 1000, slow_threshold_ms: float = 1000.0) -> None:
        self._entries: RingBuffer[QueryStats] = RingBuffer(capacity)
        self.slow_threshold_ms = slow_threshold_ms

    @property
    def capacity(self) -> int:
        return self._entries.maxsize

    def __len__(self) -> int:
        return len(self._entries)

    def log(self, stats: QueryStats) -> None:
        """Append a record, evicting the oldest once full."""
        self._entries.enqueue(stats)

    def clear(self) -> None:
        self._entries.clear()

    def get_query_log(self) -> list[QueryStats]:
        return self._entries.snapshot()

    def get_slow_queries(self, threshold_ms: float | None = None) -> list[QueryStats]:
        """Queries strictly slower than ``threshold_ms``."""
        threshold = self.slow_threshold_ms if threshold_ms is None else threshold_ms
        return [q for q in self._entries if q.duration > threshold]

    def get_failed_queries(self) -> list[QueryStats]:
        return [q for q in self._entries if not q.success]

    def get_stats_by_table(self) -> dict[str, GroupStats]:
        return _group(self._entries.snapshot(), lambda q: q.table)

    def get_stats_by_operation(self) -> dict[str, GroupStats]:
        return _group(self._entries.snapshot(), lambda q: q.operation)

    def export_log(self) -> str:
        return json.dumps(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "query_log": [asdict(q) for q in self._entries],
                "slow_queries": [asdict(q) for q in self.get_slow_queries()],
                "failed_queries": [asdict(q) for q in self.get_failed_queries()],
                "stats_by_table": {
                    k: asdict(v) for k, v in self.get_stats_by_table().items()
                },
                "stats_by_operation": {
                    k: asdict(v) for k, v in self.get_stats_by_operation().items()
                },
            },
            indent=2,
            ensure_ascii=False,
        )

    def generate_report(self) -> str:
        """Plain-text performance report.

        The slowest section lists at most five of the slow queries, longest
        first; equal durations keep their logging order.
        """
        slow = self.get_slow_queries()
        lines = [
            "Database Query Performance Report",
            _RULE_HEAVY,
            "",
            f"Total Queries: {len(self._entries)}",
            f"Slow Queries (>{self.slow_threshold_ms:g}ms): {len(slow)}",
            f"Failed Queries: {len(self.get_failed_queries())}",
            "",
        ]

        for title, stats in (
            ("Performance by Table:", self.get_stats_by_table()),
            ("Performance by Operation:", self.get_stats_by_operation()),
        ):
            lines.append(title)
            lines.append(_RULE_LIGHT)
            for name, group in stats.items():
                lines.append(f"{name}:")
                lines.append(f"  Count: {group.count}")
                lines.append(f"  Avg Duration: {group.average_duration:.2f}ms")
                lines.append(f"  Success Rate: {group.success_rate:.2f}%")
                lines.append("")

        if slow:
            lines.append("Top 5 Slowest Queries:")
            lines.append(_RULE_LIGHT)
            slowest = sorted(slow, key=lambda q: q.duration, reverse=True)[:5]
            for i, query in enumerate(slowest, start=1):
                lines.append(f"{i}. {query.query}")
                lines.append(f"   Duration: {query.duration:.2f}ms")
                lines.append(f"   Table: {query.table}")
                lines.append("")

        return "\n".join(lines)
