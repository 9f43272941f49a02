"""
Tests for RetryingAdapter: which failures are retried, and that nothing is
retried once the caller has seen an event.
"""

import asyncio

import httpx
import pytest

from loombox.backends.errors import ProviderError, StreamAborted
from loombox.backends.openai_compat import OpenAICompatibleAdapter
from loombox.backends.retry_wrapper import RetryingAdapter

OK_CHUNK = {"choices": [{"index": 0, "delta": {"content": "ok"}, "finish_reason": "stop"}]}


def _wrapped(transport, max_retries=2):
    adapter = OpenAICompatibleAdapter("flaky", "http://fake/v1/chat/completions", api_key="k",
                                      transport=transport)
    return RetryingAdapter(adapter, max_retries=max_retries, backoff_base=0.01, backoff_max=0.05)


@pytest.mark.asyncio
async def test_retries_server_error(recorder, sse_body, sse_response):
    """A 503 is retried and the second attempt succeeds."""
    recorder.queue(httpx.Response(503, text="busy"), sse_response(sse_body(OK_CHUNK)))
    result = await _wrapped(recorder.transport).stream({"stream": True})
    assert result.replies == {0: "ok"}
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_retries_rate_limit_until_exhausted(recorder):
    """429s are retried until max_retries, then raised."""
    recorder.queue(*[httpx.Response(429, text="slow down") for _ in range(3)])
    with pytest.raises(ProviderError) as exc:
        await _wrapped(recorder.transport).stream({"stream": True})
    assert exc.value.status_code == 429
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_auth_error_not_retried(recorder):
    """A 401 is raised at once."""
    recorder.queue(httpx.Response(401, json={"error": "nope"}))
    with pytest.raises(ProviderError) as exc:
        await _wrapped(recorder.transport).stream({"stream": True})
    assert exc.value.status_code == 401
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_connect_error_retried(recorder, sse_body, sse_response):
    """Connection failures are retried."""
    recorder.queue(httpx.ConnectError("refused"), sse_response(sse_body(OK_CHUNK)))
    result = await _wrapped(recorder.transport).stream({"stream": True})
    assert result.replies == {0: "ok"}
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_no_retry_after_delivery(recorder, broken_response, monkeypatch):
    """Once an event reached the caller the request is never replayed."""
    recorder.queue(broken_response({"choices": [{"index": 0, "delta": {"content": "half"}}]}))
    adapter = _wrapped(recorder.transport)
    monkeypatch.setattr(adapter, "_is_retryable", lambda exc: True)
    seen = []
    with pytest.raises(ProviderError):
        await adapter.stream({"stream": True}, on_event=seen.append)
    assert [e.delta_text for e in seen] == ["half"]
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_abort_during_backoff(recorder):
    """An abort while waiting to retry raises StreamAborted without another request."""
    recorder.queue(httpx.Response(503, text="busy"))
    adapter = RetryingAdapter(
        OpenAICompatibleAdapter("flaky", "http://fake", api_key="k", transport=recorder.transport),
        max_retries=2, backoff_base=5.0, backoff_max=5.0,
    )
    signal = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, signal.set)
    with pytest.raises(StreamAborted):
        await adapter.stream({"stream": True}, signal=signal)
    assert len(recorder.requests) == 1


def test_aborts_are_never_retryable():
    """Only retryable statuses count, aborts never do."""
    adapter = _wrapped(None)
    assert not adapter._is_retryable(StreamAborted("stop", status_code=503))
    assert adapter._is_retryable(ProviderError("x", status_code=502))
    assert not adapter._is_retryable(ProviderError("x", status_code=404))


def test_delegates_attributes():
    """The wrapper passes attribute access through to the adapter."""
    adapter = _wrapped(None)
    assert adapter.provider == "openai"
    assert adapter.build_request([], model_options={"model": "m"})["model"] == "m"
