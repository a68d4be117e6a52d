"""Export thread that moves completed spans from the buffer to the exporter."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from docmon._buffer import RingBuffer
from docmon._types import SpanData

logger = logging.getLogger("docmon.processor")

SpanHandler = Callable[[list[SpanData]], None]


class BackgroundProcessor:
    """Daemon thread that wakes every ``flush_interval_ms`` and drains spans.

    The buffer is the only state shared with the event loop thread. Without
    a ``handler`` drained spans are discarded.
    """

    def __init__(
        self,
        buffer: RingBuffer[SpanData],
        *,
        batch_size: int = 512,
        flush_interval_ms: int = 5000,
        handler: SpanHandler | None = None,
    ) -> None:
        self._buffer = buffer
        self._batch_size = batch_size
        self._interval_s = flush_interval_ms / 1000.0
        self._handler = handler
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._wake.clear()
        self._thread = threading.Thread(
            target=self._loop, name="docmon-trace-export", daemon=True
        )
        self._thread.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        """Stop the thread, then hand over whatever is still buffered."""
        self._wake.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=timeout_s)
        self.flush()

    def _loop(self) -> None:
        while not self._wake.wait(timeout=self._interval_s):
            self.flush()

    def flush(self) -> int:
        """Drain the buffer in ``batch_size`` chunks; returns spans handled."""
        handled = 0
        while batch := self._buffer.drain(self._batch_size):
            handled += len(batch)
            if self._handler is None:
                continue
            try:
                self._handler(batch)
            except Exception:  # noqa: BLE001
                logger.debug("Span handler failed for %d spans", len(batch), exc_info=True)
        return handled
