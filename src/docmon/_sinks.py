"""Persistence sinks for flushed metric batches.

A sink exposes one coroutine, ``insert_batch(collection, records)``, and
reports failure either by raising or by returning a result whose ``error``
field is set (an object attribute or a mapping key). The batcher treats both
the same way.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol, runtime_checkable

import httpx

logger = logging.getLogger("docmon.sinks")


@runtime_checkable
class MetricSink(Protocol):
    async def insert_batch(
        self, collection: str, records: list[dict[str, Any]]
    ) -> Any: ...


class NoopSink:
    """Default sink that discards every batch."""

    async def insert_batch(
        self, collection: str, records: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return {"error": None}


class InMemorySink:
    """Keeps every inserted batch, grouped by collection. Useful in tests."""

    def __init__(self) -> None:
        self.batches: dict[str, list[list[dict[str, Any]]]] = {}

    async def insert_batch(
        self, collection: str, records: list[dict[str, Any]]
    ) -> dict[str, Any]:
        self.batches.setdefault(collection, []).append(list(records))
        return {"error": None}

    def records(self, collection: str) -> list[dict[str, Any]]:
        return [r for batch in self.batches.get(collection, []) for r in batch]


class RestSink:
    """Inserts batches through a PostgREST-style HTTP API.

    Each batch is one ``POST {base_url}/{collection}`` with a JSON array
    body. HTTP errors come back as an ``error`` result; transport errors
    propagate to the caller.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers: dict[str, str] = {
                "Content-Type": "application/json",
                "Prefer": "return=minimal",
            }
            if self._api_key:
                headers["apikey"] = self._api_key
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def insert_batch(
        self, collection: str, records: list[dict[str, Any]]
    ) -> dict[str, Any]:
        client = self._get_client()
        body = json.dumps(records, default=str)
        resp = await client.post(f"/{collection}", content=body)
        if resp.status_code >= 400:
            logger.debug("Sink rejected %d records: %s", len(records), resp.text)
            return {
                "error": {
                    "message": resp.text or resp.reason_phrase,
                    "status": resp.status_code,
                }
            }
        return {"error": None}

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
