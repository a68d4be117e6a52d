"""docmon Quick Start: trace a request, monitor table calls, print the reports."""

import asyncio

import docmon


class DemoTable:
    """Stand-in for a real table builder."""

    def __init__(self, name: str) -> None:
        self.name = name

    async def select(self, *columns: str) -> dict:
        await asyncio.sleep(0.02)
        return {"data": [{"id": 1}, {"id": 2}], "error": None}

    async def insert(self, row: dict) -> dict:
        await asyncio.sleep(0.01)
        return {"data": None, "error": {"message": "duplicate key"}}


class DemoClient:
    def table(self, name: str) -> DemoTable:
        return DemoTable(name)


async def main() -> None:
    # 1. Initialize with an in-memory sink (use sink_url= for a REST backend)
    sink = docmon.InMemorySink()
    monitor = docmon.init(service_name="archive-api", slow_query_threshold_ms=15, sink=sink)

    # 2. Wrap the data client; every call gets a span, a metric and a log entry
    db = monitor.instrument(DemoClient())

    async def load_folder(span_id: int) -> None:
        monitor.add_span_attribute(span_id, "folder", "inbox")
        await db.table("documents").select("*")
        await db.table("documents").insert({"title": "draft"})

    await monitor.trace_async("load_folder", load_folder)

    # 3. Inspect what was recorded
    # Interceptor spans are roots of their own traces
    for trace_id in monitor.get_completed_traces():
        print(monitor.visualize_trace(trace_id))
    print()
    print(monitor.queries.generate_report())

    # 4. Flush queued metrics and shut down
    await monitor.aclose()
    docmon.shutdown()
    print(f"Flushed {len(sink.records('performance_metrics'))} metrics")


if __name__ == "__main__":
    asyncio.run(main())
