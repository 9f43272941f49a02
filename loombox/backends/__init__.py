"""
Provider adapters for LoomBox.
One request/stream contract across OpenAI-compatible, OpenRouter, Anthropic and Google APIs.
"""
from loombox.backends.router import PROVIDERS, make_adapter
from loombox.backends.base import BaseAdapter, CompletionResult, PromptMessage, StreamEvent
from loombox.backends.errors import ProviderError, StreamAborted, StreamClosedError
from loombox.backends.retry_wrapper import RetryingAdapter

__all__ = [
    "PROVIDERS",
    "make_adapter",
    "BaseAdapter",
    "CompletionResult",
    "PromptMessage",
    "StreamEvent",
    "ProviderError",
    "StreamAborted",
    "StreamClosedError",
    "RetryingAdapter",
]
