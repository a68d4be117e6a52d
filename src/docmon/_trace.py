"""@traced and @measured decorators for wrapping functions."""

from __future__ import annotations

import functools
import inspect
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar, overload

if TYPE_CHECKING:
    from docmon._monitor import Monitor

F = TypeVar("F", bound=Callable[..., Any])

AttributeGetter = Callable[..., dict[str, Any]]


def _resolve(monitor: Monitor | None) -> Monitor | None:
    if monitor is not None:
        return monitor
    from docmon._monitor import get_monitor

    return get_monitor()


@overload
def traced(func: F) -> F: ...


@overload
def traced(
    *,
    name: str | None = None,
    get_attributes: AttributeGetter | None = None,
    monitor: Monitor | None = None,
) -> Callable[[F], F]: ...


def traced(
    func: F | None = None,
    *,
    name: str | None = None,
    get_attributes: AttributeGetter | None = None,
    monitor: Monitor | None = None,
) -> F | Callable[[F], F]:
    """Decorator that runs each call of a function inside a root span.

    Works on plain and ``async`` functions, with or without arguments::

        @traced
        async def load_folder(folder_id): ...

        @traced(name="upload", get_attributes=lambda doc, **_: {"size": doc.size})
        async def upload(doc): ...

    ``get_attributes`` receives the call's arguments. Without an explicit
    ``monitor`` the one installed by :func:`docmon.init` is used; with
    neither, the function runs untraced.
    """

    def decorator(fn: F) -> F:
        span_name = name or fn.__qualname__

        def attributes_for(args: tuple[Any, ...], kwargs: dict[str, Any]) -> dict[str, Any]:
            return get_attributes(*args, **kwargs) if get_attributes else {}

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                active = _resolve(monitor)
                if active is None:
                    return await fn(*args, **kwargs)
                return await active.trace_async(
                    span_name,
                    lambda _span_id: fn(*args, **kwargs),
                    attributes_for(args, kwargs),
                )

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            active = _resolve(monitor)
            if active is None:
                return fn(*args, **kwargs)
            return active.trace_sync(
                span_name,
                lambda _span_id: fn(*args, **kwargs),
                attributes_for(args, kwargs),
            )

        return wrapper  # type: ignore[return-value]

    if func is not None:
        return decorator(func)
    return decorator


@overload
def measured(func: F) -> F: ...


@overload
def measured(
    *,
    name: str | None = None,
    monitor: Monitor | None = None,
) -> Callable[[F], F]: ...


def measured(
    func: F | None = None,
    *,
    name: str | None = None,
    monitor: Monitor | None = None,
) -> F | Callable[[F], F]:
    """Decorator that records each call's duration as a flat metric."""

    def decorator(fn: F) -> F:
        metric_name = name or fn.__qualname__

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                active = _resolve(monitor)
                if active is None:
                    return await fn(*args, **kwargs)
                return await active.measure_async(metric_name, lambda: fn(*args, **kwargs))

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            active = _resolve(monitor)
            if active is None:
                return fn(*args, **kwargs)
            return active.measure_sync(metric_name, lambda: fn(*args, **kwargs))

        return wrapper  # type: ignore[return-value]

    if func is not None:
        return decorator(func)
    return decorator
