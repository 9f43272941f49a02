"""
Base adapter abstraction.
All provider adapters implement this interface so the engine can treat them
uniformly: build a wire request from a message path, then stream it back as
normalized StreamEvents keyed by candidate index.
"""

from __future__ import annotations

import abc
import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from loombox.backends.errors import ProviderError, StreamAborted, StreamClosedError
from loombox.backends.sse import ServerSentEvent, SSEStateMachine, iter_sse, run_with_signal
from loombox.config import ConfigError

logger = logging.getLogger(__name__)

__all__ = [
    "BaseAdapter",
    "CompletionResult",
    "PromptMessage",
    "ProviderError",
    "StreamAborted",
    "StreamClosedError",
    "StreamEvent",
    "emit",
]


@dataclass
class PromptMessage:
    """One entry of the normalized path handed to build_request()."""
    author: str
    text: str = ""
    attachments: list[dict] = field(default_factory=list)
    content_parts: list[dict] | None = None

    def image_urls(self) -> list[str]:
        urls = []
        for attachment in self.attachments:
            if attachment.get("type") != "image":
                continue
            source = attachment.get("dataUrl") or attachment.get("url")
            if source:
                urls.append(source)
        return urls


@dataclass
class StreamEvent:
    """The common currency every adapter emits."""
    candidate_index: int = 0
    delta_text: str | None = None
    raw: dict | None = None
    stop_reason: str | None = None
    finished: bool = False
    details: dict | None = None


@dataclass
class CompletionResult:
    """Everything a call produced, aggregated per candidate."""
    replies: dict[int, str] = field(default_factory=dict)
    stop_reasons: dict[int, str | None] = field(default_factory=dict)
    details: dict[int, dict] = field(default_factory=dict)

    def record(self, event: StreamEvent) -> None:
        idx = event.candidate_index
        if event.delta_text:
            self.replies[idx] = self.replies.get(idx, "") + event.delta_text
        if event.finished:
            self.replies.setdefault(idx, "")
            self.stop_reasons[idx] = event.stop_reason
            if event.details:
                self.details[idx] = event.details


EventHandler = Callable[[StreamEvent], Awaitable[None] | None]


async def emit(handler: EventHandler | None, event: StreamEvent) -> None:
    """Deliver an event to a sync or async handler."""
    if handler is None:
        return
    result = handler(event)
    if inspect.isawaitable(result):
        await result


class BaseAdapter(abc.ABC):
    """
    Abstract base for provider adapters.
    Subclasses know the provider's request shape and event shapes; the HTTP
    plumbing, SSE read loop and cancellation live here.
    """

    provider = ""
    requires_api_key = True

    def __init__(
        self,
        name: str,
        url: str,
        api_key: str = "",
        timeout: float = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    # ------------------------------------------------------------------
    # Provider-specific hooks
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def build_request(
        self,
        path: list[PromptMessage],
        system_message: str | None = None,
        model_options: dict | None = None,
    ) -> dict:
        """Map a normalized path into the provider's wire request body."""
        ...

    @abc.abstractmethod
    def headers(self) -> dict:
        ...

    async def handle_event(
        self, sse: ServerSentEvent, payload: dict, on_event: EventHandler, call_state: dict
    ) -> bool:
        """
        Translate one decoded SSE payload into StreamEvents.
        Returns True when the payload is the provider's terminal event.
        """
        raise NotImplementedError(f"{self.provider} does not stream")

    async def handle_response(self, data: dict, on_event: EventHandler) -> None:
        """Translate a non-streaming response into delta + completion events."""
        raise NotImplementedError

    def is_streaming(self, request: dict) -> bool:
        return bool(request.get("stream"))

    def request_url(self, request: dict) -> str:
        return self.url

    def wire_body(self, request: dict) -> dict:
        """The JSON actually sent; underscore keys are adapter-private."""
        return {k: v for k, v in request.items() if not k.startswith("_")}

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def check_ready(self) -> None:
        """Fail fast on configuration problems, before any network call."""
        if not self.url:
            raise ConfigError(f"No completions url configured for '{self.name}'")
        if self.requires_api_key and not self.api_key:
            raise ConfigError(f"No API key configured for '{self.name}'")

    async def stream(
        self,
        request: dict,
        *,
        on_event: EventHandler | None = None,
        signal=None,
    ) -> CompletionResult:
        """
        Issue the request and emit normalized events to on_event.
        `signal` is an asyncio.Event; setting it aborts the network call and
        raises StreamAborted promptly.
        """
        self.check_ready()
        result = CompletionResult()

        async def collect(event: StreamEvent) -> None:
            result.record(event)
            await emit(on_event, event)

        if self.is_streaming(request):
            await run_with_signal(self._read_stream(request, collect), signal)
        else:
            await run_with_signal(self._read_once(request, collect), signal)
        return result

    async def _read_once(self, request: dict, on_event: EventHandler) -> None:
        try:
            async with self._client() as client:
                resp = await client.post(
                    self.request_url(request),
                    json=self.wire_body(request),
                    headers=self.headers(),
                )
        except httpx.TimeoutException as e:
            logger.warning("Adapter '%s' timed out after %ss", self.name, self.timeout)
            raise ProviderError(f"{self.name}: Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Adapter '%s' request failed: %s", self.name, e)
            raise ProviderError(f"{self.name}: {e}") from e

        if not resp.is_success:
            logger.warning("Adapter '%s' returned HTTP %d", self.name, resp.status_code)
            raise ProviderError.from_response(resp, self.name)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"{self.name}: response is not JSON", status_code=resp.status_code,
                                body=resp.text) from e
        await self.handle_response(data, on_event)

    async def _read_stream(self, request: dict, on_event: EventHandler) -> None:
        machine = SSEStateMachine(self.name)
        call_state: dict = {}
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    self.request_url(request),
                    json=self.wire_body(request),
                    headers=self.headers(),
                ) as resp:
                    await machine.on_open(resp)
                    async for sse in iter_sse(resp.aiter_lines()):
                        if not machine.on_event(sse):
                            if machine.done:
                                break
                            continue
                        try:
                            payload = json.loads(sse.data)
                        except ValueError as e:
                            raise ProviderError(
                                f"{self.name}: Malformed event payload: {sse.data[:200]}"
                            ) from e
                        if await self.handle_event(sse, payload, on_event, call_state):
                            machine.on_terminal()
                            break
            machine.on_close()
        except asyncio.CancelledError:
            machine.on_error(StreamAborted(f"{self.name}: request aborted"))
            raise
        except ProviderError as e:
            machine.on_error(e)
            raise
        except httpx.TimeoutException as e:
            machine.on_error(e)
            logger.warning("Adapter '%s' stream timed out", self.name)
            raise ProviderError(f"{self.name}: Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            machine.on_error(e)
            logger.warning("Adapter '%s' stream failed: %s", self.name, e)
            raise ProviderError(f"{self.name}: {e}") from e

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
