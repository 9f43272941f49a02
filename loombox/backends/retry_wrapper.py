"""
Retry wrapper for adapters with exponential backoff.

Retries a whole stream() call on transient failures:
- 429: Rate limited
- 5xx: Server errors
- connection refused / connect timeout

Only while nothing has reached the caller yet. Once a single event has been
delivered the call is committed and any failure propagates unchanged, so a
retry can never duplicate text.

Non-retried errors (permanent):
- 401, 403: Auth/permission errors
- 400, 404: Bad request, unknown model
- StreamAborted
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from loombox.backends.base import BaseAdapter, CompletionResult, EventHandler, StreamEvent, emit
from loombox.backends.errors import ProviderError, StreamAborted

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


class RetryingAdapter:
    """
    Wraps any adapter with exponential backoff retry logic.
    Everything except stream() is delegated to the wrapped adapter.
    """

    def __init__(
        self,
        adapter: BaseAdapter,
        max_retries: int = 2,
        backoff_base: float = 1.5,
        backoff_max: float = 10.0,
    ):
        self.adapter = adapter
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    def __getattr__(self, item):
        return getattr(self.adapter, item)

    def _is_retryable(self, exc: ProviderError) -> bool:
        """Determine if a failure is retryable (transient)."""
        if isinstance(exc, StreamAborted):
            return False
        if exc.status_code in RETRYABLE_STATUSES:
            return True
        return isinstance(exc.__cause__, (httpx.ConnectError, httpx.ConnectTimeout))

    def _backoff_seconds(self, attempt: int) -> float:
        """Calculate backoff time for attempt N (exponential)."""
        delay = self.backoff_base ** attempt
        return min(delay, self.backoff_max)

    async def stream(
        self,
        request: dict,
        *,
        on_event: EventHandler | None = None,
        signal=None,
    ) -> CompletionResult:
        model = request.get("model", "")
        delivered = False

        async def forward(event: StreamEvent) -> None:
            nonlocal delivered
            delivered = True
            await emit(on_event, event)

        for attempt in range(self.max_retries + 1):
            try:
                return await self.adapter.stream(request, on_event=forward, signal=signal)
            except ProviderError as e:
                if delivered or not self._is_retryable(e):
                    raise
                if attempt >= self.max_retries:
                    logger.error(
                        "Adapter '%s' exhausted retries for '%s': %s",
                        self.adapter.name, model, e,
                    )
                    raise
                backoff = self._backoff_seconds(attempt + 1)
                logger.warning(
                    "Adapter '%s' transient error for '%s', retry in %.1fs (%d/%d): %s",
                    self.adapter.name, model, backoff, attempt + 1, self.max_retries, e,
                )
                if signal is not None:
                    try:
                        await asyncio.wait_for(signal.wait(), timeout=backoff)
                    except asyncio.TimeoutError:
                        continue
                    raise StreamAborted("Request aborted") from e
                await asyncio.sleep(backoff)

        # Should not reach here
        raise ProviderError(f"{self.adapter.name}: retries exhausted")

    def __repr__(self) -> str:
        return f"<RetryingAdapter {self.adapter!r} max_retries={self.max_retries}>"
