"""
Server-sent events: line parser, per-call state machine, cancellation.

Every streaming call walks one SSEStateMachine through

    OPENING --on_open--> STREAMING --[DONE] / terminal event--> DONE
       |                     |
       +--------on_error-----+--on_close before DONE--> ERRORED

so a dropped connection is always an error ("Connection closed
prematurely"), never a silent success.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, TypeVar

import httpx

from loombox.backends.errors import ProviderError, StreamAborted, StreamClosedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DONE_SENTINEL = "[DONE]"


class StreamState(enum.Enum):
    OPENING = "opening"
    STREAMING = "streaming"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class ServerSentEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Group text/event-stream lines into events. A blank line dispatches."""
    event = ""
    data: list[str] = []
    last_id: str | None = None

    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data:
                yield ServerSentEvent(event or "message", "\n".join(data), last_id)
            event, data = "", []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
        elif name == "id":
            last_id = value

    # Servers sometimes drop the final blank line after [DONE]
    if data:
        yield ServerSentEvent(event or "message", "\n".join(data), last_id)


class SSEStateMachine:
    """Explicit state for one streaming call."""

    def __init__(self, name: str = ""):
        self.name = name
        self.state = StreamState.OPENING
        self.error: BaseException | None = None

    @property
    def done(self) -> bool:
        return self.state is StreamState.DONE

    async def on_open(self, resp: httpx.Response) -> None:
        """Validate the response before reading any events."""
        content_type = resp.headers.get("content-type", "")
        if resp.is_success and "text/event-stream" in content_type:
            self.state = StreamState.STREAMING
            return

        await resp.aread()
        if not resp.is_success:
            err = ProviderError.from_response(resp, self.name)
        else:
            data = None
            if "application/json" in content_type:
                try:
                    data = json.loads(resp.text)
                except ValueError:
                    data = None
            err = ProviderError(
                f"{self.name}: Streaming error: content-type {content_type or 'missing'}",
                status_code=resp.status_code,
                body=resp.text,
                data=data,
            )
        self.on_error(err)
        raise err

    def on_event(self, sse: ServerSentEvent) -> bool:
        """Return True when the event carries a payload to decode."""
        if self.state is not StreamState.STREAMING:
            return False
        if sse.event == "ping" or not sse.data:
            return False
        if sse.data.strip() == DONE_SENTINEL:
            self.state = StreamState.DONE
            return False
        return True

    def on_terminal(self) -> None:
        """The provider sent its own end-of-stream event."""
        if self.state is StreamState.STREAMING:
            self.state = StreamState.DONE

    def on_close(self) -> None:
        if self.state is StreamState.DONE:
            return
        err = StreamClosedError(f"{self.name}: Connection closed prematurely")
        self.on_error(err)
        raise err

    def on_error(self, exc: BaseException) -> None:
        if self.state is StreamState.DONE:
            return
        self.state = StreamState.ERRORED
        self.error = exc


async def run_with_signal(coro: Awaitable[T], signal: asyncio.Event | None) -> T:
    """
    Await coro unless signal fires first. On abort the inner task is
    cancelled (which closes its HTTP connection) and StreamAborted is raised.
    """
    if signal is None:
        return await coro
    if signal.is_set():
        if asyncio.iscoroutine(coro):
            coro.close()
        raise StreamAborted("Request aborted before it was sent")

    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task in done:
        waiter.cancel()
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    logger.info("Request aborted by caller")
    raise StreamAborted("Request aborted")
