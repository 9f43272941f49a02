"""
Adapter factory: client config block -> ready adapter.

Every configuration problem (unknown provider, no url, no key) surfaces here
as ConfigError, before any request is made.
"""

from __future__ import annotations

import logging

from loombox.backends.anthropic import AnthropicAdapter
from loombox.backends.base import BaseAdapter
from loombox.backends.google import GoogleAdapter
from loombox.backends.openai_compat import OpenAICompatibleAdapter
from loombox.backends.openrouter import OpenRouterAdapter
from loombox.backends.retry_wrapper import RetryingAdapter
from loombox.config import ConfigError

logger = logging.getLogger(__name__)

# Provider name → adapter class
PROVIDERS: dict[str, type[BaseAdapter]] = {
    "openai": OpenAICompatibleAdapter,
    "openai_compat": OpenAICompatibleAdapter,
    "openrouter": OpenRouterAdapter,
    "anthropic": AnthropicAdapter,
    "google": GoogleAdapter,
}


def _create_adapter(client_cfg: dict, model_options: dict, transport=None) -> BaseAdapter:
    """Instantiate an adapter from a client config dict."""
    provider = client_cfg.get("provider", "openai")
    cls = PROVIDERS.get(provider)
    if not cls:
        known = ", ".join(sorted(PROVIDERS))
        raise ConfigError(f"Unknown provider '{provider}' (known: {known})")

    name = client_cfg.get("name", provider)
    kwargs = {
        "name": name,
        "url": client_cfg.get("url", ""),
        "api_key": client_cfg.get("api_key", "") or "",
        "timeout": client_cfg.get("timeout", 120),
        "transport": transport,
    }

    if cls is OpenAICompatibleAdapter:
        kwargs["chat"] = client_cfg.get("chat", True)
    elif cls is AnthropicAdapter:
        kwargs["steering"] = bool(client_cfg.get("steering") or model_options.get("steering"))
    elif cls is GoogleAdapter:
        kwargs["supports_system_instruction"] = bool(client_cfg.get("supports_system_instruction", False))
    elif cls is OpenRouterAdapter:
        for key in ("referer", "title"):
            if client_cfg.get(key):
                kwargs[key] = client_cfg[key]

    adapter = cls(**kwargs)
    # Local OpenAI-compatible servers (llama.cpp, vLLM) can opt out of a key
    if "requires_api_key" in client_cfg:
        adapter.requires_api_key = bool(client_cfg["requires_api_key"])
    adapter.check_ready()
    return adapter


def make_adapter(client_cfg: dict, model_options: dict | None = None, transport=None):
    """
    Build the adapter for a client, wrapped with retry logic unless
    max_retries is 0.
    """
    adapter = _create_adapter(client_cfg, model_options or {}, transport=transport)
    max_retries = client_cfg.get("max_retries", 2)
    if max_retries <= 0:
        logger.debug("Adapter ready: %r", adapter)
        return adapter
    wrapped = RetryingAdapter(
        adapter,
        max_retries=max_retries,
        backoff_base=client_cfg.get("backoff_base", 1.5),
        backoff_max=client_cfg.get("backoff_max", 10.0),
    )
    logger.debug("Adapter ready: %r", wrapped)
    return wrapped
