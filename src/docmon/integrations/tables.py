"""Table-client instrumentation — times every data call without changing it.

Usage::

    from docmon.integrations.tables import instrument

    db = instrument(raw_client, monitor)

    # Every table operation and procedure call now produces a span,
    # a flat metric and a query log record.
    result = await db.table("documents").select("*")
    stats = await db.rpc("document_stats", {"owner": user_id})

The wrapped client, its table builders and its procedure calls delegate every
attribute they do not intercept to the wrapped object, so call sites keep
working unchanged.
"""

from __future__ import annotations

import inspect
import time
from collections.abc import Awaitable, Callable, Generator
from typing import TYPE_CHECKING, Any

from docmon._types import QueryStats, SpanStatus, error_message, result_field

if TYPE_CHECKING:
    from docmon._monitor import Monitor

OPERATIONS = ("select", "insert", "update", "delete", "upsert")


def instrument(client: Any, monitor: Monitor) -> MonitoredClient:
    """Wrap a table-operation client so every call is monitored.

    The client must offer ``table(name)`` or ``from_(name)`` returning a
    builder with async ``select/insert/update/delete/upsert`` methods, and
    may offer ``rpc(fn, params)`` returning an awaitable. Results are read
    through their ``data`` and ``error`` fields (attributes or mapping keys).
    """
    return MonitoredClient(client, monitor)


def _row_count(data: Any) -> int | None:
    if data is None:
        return None
    if isinstance(data, (list, tuple)):
        return len(data)
    return 1


class _Interceptor:
    """Shared bookkeeping for one instrumented client."""

    def __init__(self, monitor: Monitor) -> None:
        self.monitor = monitor
        self.enabled = True

    def begin(self, span_name: str, attributes: dict[str, Any]) -> tuple[int, float]:
        span_id = self.monitor.start_span(span_name, attributes)
        return span_id, self.monitor.clock()

    def finish(
        self,
        span_id: int,
        start: float,
        *,
        query: str,
        table: str,
        operation: str,
        metric_name: str,
        result: Any = None,
        exc: BaseException | None = None,
    ) -> None:
        duration = self.monitor.clock() - start
        row_count: int | None = None
        error: Any = None

        if exc is not None:
            error = exc
        else:
            error = result_field(result, "error")
            if not error:
                error = None
                row_count = _row_count(result_field(result, "data"))
        success = error is None

        if self.enabled:
            self.monitor.queries.log(
                QueryStats(
                    query=query,
                    table=table,
                    operation=operation,
                    duration=duration,
                    timestamp=time.time() * 1000,
                    success=success,
                    row_count=row_count,
                    error=None if success else error_message(error),
                )
            )
        self.monitor.record_query_performance(metric_name, duration, success, row_count)
        self.monitor.end_span(
            span_id, SpanStatus.SUCCESS if success else SpanStatus.ERROR, error
        )

    async def run_table_operation(
        self, table: str, operation: str, call: Callable[[], Awaitable[Any]]
    ) -> Any:
        span_id, start = self.begin(
            f"db.{operation}", {"table": table, "operation": operation}
        )
        details = {
            "query": f"{operation} on {table}",
            "table": table,
            "operation": operation,
            "metric_name": f"{table}.{operation}",
        }
        try:
            result = await call()
        except BaseException as exc:
            self.finish(span_id, start, exc=exc, **details)
            raise
        self.finish(span_id, start, result=result, **details)
        return result


class MonitoredClient:
    """Adapter around a table-operation client.

    Set ``enabled`` to ``False`` to stop appending to the query log; spans and
    metrics are still recorded.
    """

    def __init__(self, client: Any, monitor: Monitor) -> None:
        self._client = client
        self._interceptor = _Interceptor(monitor)

    @property
    def enabled(self) -> bool:
        return self._interceptor.enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._interceptor.enabled = value

    @property
    def wrapped(self) -> Any:
        return self._client

    def __getattr__(self, name: str) -> Any:
        return getattr(self._client, name)

    def table(self, name: str) -> MonitoredTable:
        factory = getattr(self._client, "table", None) or self._client.from_
        return MonitoredTable(factory(name), name, self._interceptor)

    def from_(self, name: str) -> MonitoredTable:
        factory = getattr(self._client, "from_", None) or self._client.table
        return MonitoredTable(factory(name), name, self._interceptor)

    def rpc(self, fn: str, params: Any = None, **options: Any) -> MonitoredCall:
        """Call a remote procedure; the returned object is awaited as usual."""
        interceptor = self._interceptor
        span_id, start = interceptor.begin(
            "db.rpc",
            {"table": "rpc", "operation": fn, "function": fn, "params": params},
        )
        recorder = _CallRecorder(interceptor, span_id, start, fn)
        try:
            inner = self._client.rpc(fn, params, **options)
        except BaseException as exc:
            recorder.settle(exc=exc)
            raise
        return MonitoredCall(inner, recorder)

    def __repr__(self) -> str:
        return f"MonitoredClient({self._client!r})"


class MonitoredTable:
    """Builder for one table whose operations are timed and logged."""

    def __init__(self, builder: Any, table: str, interceptor: _Interceptor) -> None:
        self._builder = builder
        self._table = table
        self._interceptor = interceptor

    def __getattr__(self, name: str) -> Any:
        return getattr(self._builder, name)

    async def _run(self, operation: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        original = getattr(self._builder, operation)
        return await self._interceptor.run_table_operation(
            self._table, operation, lambda: original(*args, **kwargs)
        )

    async def select(self, *args: Any, **kwargs: Any) -> Any:
        return await self._run("select", args, kwargs)

    async def insert(self, *args: Any, **kwargs: Any) -> Any:
        return await self._run("insert", args, kwargs)

    async def update(self, *args: Any, **kwargs: Any) -> Any:
        return await self._run("update", args, kwargs)

    async def delete(self, *args: Any, **kwargs: Any) -> Any:
        return await self._run("delete", args, kwargs)

    async def upsert(self, *args: Any, **kwargs: Any) -> Any:
        return await self._run("upsert", args, kwargs)


class _CallRecorder:
    """Records the outcome of one procedure call, at most once."""

    def __init__(self, interceptor: _Interceptor, span_id: int, start: float, fn: str) -> None:
        self._interceptor = interceptor
        self._span_id = span_id
        self._start = start
        self._fn = fn
        self.settled = False

    def settle(self, *, result: Any = None, exc: BaseException | None = None) -> None:
        if self.settled:
            return
        self.settled = True
        self._interceptor.finish(
            self._span_id,
            self._start,
            query=f"RPC: {self._fn}",
            table="rpc",
            operation=self._fn,
            metric_name=f"rpc.{self._fn}",
            result=result,
            exc=exc,
        )


class MonitoredCall:
    """Awaitable proxy for a procedure call.

    Chained calls on the proxy are forwarded to the wrapped object; when they
    return another awaitable (or another object of the same builder type) it
    is wrapped again with the same recorder, so whichever object is finally
    awaited, the outcome is recorded exactly once.
    """

    def __init__(self, inner: Any, recorder: _CallRecorder) -> None:
        self._inner = inner
        self._recorder = recorder

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._inner, name)
        if not callable(attr):
            return attr

        def chained(*args: Any, **kwargs: Any) -> Any:
            value = attr(*args, **kwargs)
            if inspect.isawaitable(value) or type(value) is type(self._inner):
                return MonitoredCall(value, self._recorder)
            return value

        return chained

    def __await__(self) -> Generator[Any, None, Any]:
        return self._resolve().__await__()

    async def _resolve(self) -> Any:
        try:
            result = await self._inner
        except BaseException as exc:
            self._recorder.settle(exc=exc)
            raise
        self._recorder.settle(result=result)
        return result

    def __repr__(self) -> str:
        return f"MonitoredCall({self._inner!r})"
