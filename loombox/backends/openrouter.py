"""
OpenRouter adapter: aggregator access to hosted models.
Same wire format as OpenAI; adds attribution headers and extracts cost_usd
from the usage block for the completion details.
"""

from __future__ import annotations

import logging
import os

from loombox.backends.openai_compat import OpenAICompatibleAdapter

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterAdapter(OpenAICompatibleAdapter):
    """Adapter for the OpenRouter API."""

    provider = "openrouter"

    def __init__(
        self,
        name: str,
        url: str = DEFAULT_URL,
        api_key: str = "",
        timeout: float = 60,
        transport=None,
        referer: str = "https://github.com/loombox/loombox",
        title: str = "LoomBox",
    ):
        # Resolve env var references like ${OPENROUTER_API_KEY}
        super().__init__(name, url or DEFAULT_URL, api_key=self._resolve_env(api_key),
                         timeout=timeout, transport=transport)
        self.referer = referer
        self.title = title

    @staticmethod
    def _resolve_env(value: str) -> str:
        """Resolve ${ENV_VAR} references in config values."""
        if value and value.startswith("${") and value.endswith("}"):
            env_name = value[2:-1]
            return os.environ.get(env_name, "")
        return value

    def headers(self) -> dict:
        headers = super().headers()
        headers["HTTP-Referer"] = self.referer
        headers["X-Title"] = self.title
        return headers

    @staticmethod
    def _extract_cost(data: dict) -> float | None:
        """
        Extract cost from an OpenRouter payload.
        Cost may be a top-level cost_usd field or usage.cost.
        """
        if "cost_usd" in data:
            try:
                return float(data["cost_usd"])
            except (ValueError, TypeError):
                pass

        usage = data.get("usage") or {}
        if "cost" in usage:
            try:
                return float(usage["cost"])
            except (ValueError, TypeError):
                pass

        return None

    def finish_details(self, payload: dict) -> dict | None:
        details = super().finish_details(payload) or {}
        cost = self._extract_cost(payload)
        if cost is not None:
            details["cost_usd"] = cost
        return details or None
