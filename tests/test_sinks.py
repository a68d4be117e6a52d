"""Tests for _sinks module."""

import json

import httpx
import pytest

from docmon._sinks import InMemorySink, MetricSink, NoopSink, RestSink


def test_builtin_sinks_satisfy_protocol() -> None:
    assert isinstance(NoopSink(), MetricSink)
    assert isinstance(InMemorySink(), MetricSink)
    assert isinstance(RestSink("http://localhost"), MetricSink)


@pytest.mark.asyncio
async def test_noop_and_memory_sinks() -> None:
    assert await NoopSink().insert_batch("c", [{"a": 1}]) == {"error": None}

    sink = InMemorySink()
    await sink.insert_batch("c", [{"a": 1}])
    await sink.insert_batch("c", [{"a": 2}])
    assert len(sink.batches["c"]) == 2
    assert sink.records("c") == [{"a": 1}, {"a": 2}]
    assert sink.records("missing") == []


@pytest.mark.asyncio
async def test_rest_sink_posts_batch() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201)

    sink = RestSink(
        "https://db.example.com/rest/v1/",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )
    result = await sink.insert_batch("performance_metrics", [{"metric_name": "a", "metric_value": 1}])
    await sink.aclose()

    assert result == {"error": None}
    [request] = seen
    assert request.method == "POST"
    assert str(request.url) == "https://db.example.com/rest/v1/performance_metrics"
    assert request.headers["apikey"] == "secret"
    assert request.headers["authorization"] == "Bearer secret"
    assert request.headers["prefer"] == "return=minimal"
    assert json.loads(request.content) == [{"metric_name": "a", "metric_value": 1}]


@pytest.mark.asyncio
async def test_rest_sink_http_error_is_a_result() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(403, text="permission denied"))
    sink = RestSink("https://db.example.com/rest/v1", transport=transport)

    result = await sink.insert_batch("performance_metrics", [{}])
    await sink.aclose()

    assert result == {"error": {"message": "permission denied", "status": 403}}


@pytest.mark.asyncio
async def test_rest_sink_without_key_sends_no_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    sink = RestSink("https://db.example.com", transport=httpx.MockTransport(handler))
    await sink.insert_batch("m", [])
    await sink.aclose()
    await sink.aclose()

    assert "authorization" not in seen[0].headers
