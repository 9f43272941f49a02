"""
Shared fixtures: canned SSE bodies and mock HTTP transports.
No test here talks to a real provider.
"""

import asyncio
import json

import httpx
import pytest


def _encode(payload) -> str:
    if isinstance(payload, tuple):
        event, data = payload
        return f"event: {event}\ndata: {json.dumps(data)}\n\n"
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload)}\n\n"


class BrokenStream(httpx.AsyncByteStream):
    """Yields its chunks, then the connection resets."""

    def __init__(self, chunks: list[bytes]):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        raise httpx.ReadError("connection reset by peer")


class HangingStream(httpx.AsyncByteStream):
    """Yields its chunks, then never sends another byte."""

    def __init__(self, chunks: list[bytes]):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        await asyncio.Event().wait()
        yield b""


@pytest.fixture
def sse_body():
    """Build a text/event-stream body. dicts → data lines, (event, dict) → typed events."""
    def build(*payloads, done: bool = True) -> bytes:
        text = "".join(_encode(p) for p in payloads)
        if done:
            text += "data: [DONE]\n\n"
        return text.encode()
    return build


@pytest.fixture
def sse_response():
    def build(body: bytes, status: int = 200) -> httpx.Response:
        return httpx.Response(status, headers={"content-type": "text/event-stream"}, content=body)
    return build


@pytest.fixture
def broken_response():
    """A 200 event stream that drops after the given payload chunks."""
    def build(*payloads) -> httpx.Response:
        chunks = [_encode(p).encode() for p in payloads]
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=BrokenStream(chunks))
    return build


@pytest.fixture
def hanging_response():
    def build(*payloads) -> httpx.Response:
        chunks = [_encode(p).encode() for p in payloads]
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=HangingStream(chunks))
    return build


@pytest.fixture
def recorder():
    """A MockTransport that serves responses in order and records requests."""
    class Recorder:
        def __init__(self):
            self.requests: list[httpx.Request] = []
            self.responses: list = []

        def queue(self, *responses):
            self.responses.extend(responses)
            return self

        def handler(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response

        @property
        def transport(self) -> httpx.MockTransport:
            return httpx.MockTransport(self.handler)

        def body(self, i: int = -1) -> dict:
            return json.loads(self.requests[i].content)

    return Recorder()
