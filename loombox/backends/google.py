"""
Google-style adapter (Generative Language generateContent).

No streaming: one blocking request, then exactly one delta event and one
completion event for candidate 0. The API key travels as a ?key= query
parameter instead of a header.
"""

from __future__ import annotations

import logging

import httpx

from loombox.backends.base import BaseAdapter, EventHandler, PromptMessage, StreamEvent, emit

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

# model_options key -> generationConfig key
_GENERATION_KEYS = {
    "temperature": "temperature",
    "max_tokens": "maxOutputTokens",
    "top_p": "topP",
    "top_k": "topK",
    "stop": "stopSequences",
}

SYSTEM_ACK = "Understood."


class GoogleAdapter(BaseAdapter):
    """Adapter for Gemini-style generateContent endpoints."""

    provider = "google"

    def __init__(
        self,
        name: str,
        url: str = DEFAULT_URL,
        api_key: str = "",
        timeout: float = 120,
        transport=None,
        supports_system_instruction: bool = False,
    ):
        super().__init__(name, url or DEFAULT_URL, api_key=api_key, timeout=timeout, transport=transport)
        self.supports_system_instruction = supports_system_instruction

    def headers(self) -> dict:
        return {"Content-Type": "application/json"}

    def is_streaming(self, request: dict) -> bool:
        return False

    def request_url(self, request: dict) -> str:
        # The model lives in the URL, not the body
        url = self.url.replace("{model}", request.get("_model", ""))
        params = httpx.QueryParams({"key": self.api_key})
        return str(httpx.URL(url).copy_merge_params(params))

    @staticmethod
    def _turn(role: str, text: str) -> dict:
        return {"role": role, "parts": [{"text": text}]}

    def build_request(
        self,
        path: list[PromptMessage],
        system_message: str | None = None,
        model_options: dict | None = None,
    ) -> dict:
        options = dict(model_options or {})
        contents: list[dict] = []
        system_parts = [system_message] if system_message else []
        system_parts.extend(m.text for m in path if m.author == "system" and m.text)
        system_text = "\n\n".join(system_parts)

        body: dict = {}
        if system_text:
            if self.supports_system_instruction:
                body["systemInstruction"] = {"parts": [{"text": system_text}]}
            else:
                contents.append(self._turn("user", f"System instruction: {system_text}"))
                contents.append(self._turn("model", SYSTEM_ACK))

        for message in path:
            if message.author == "system":
                continue
            role = "model" if message.author == "assistant" else "user"
            contents.append(self._turn(role, message.text))
        body["contents"] = contents

        generation = options.get("generationConfig")
        if generation is None:
            generation = {
                wire_key: options[key]
                for key, wire_key in _GENERATION_KEYS.items()
                if options.get(key) is not None
            }
            if isinstance(generation.get("stopSequences"), str):
                generation["stopSequences"] = [generation["stopSequences"]]
        if generation:
            body["generationConfig"] = generation

        # Kept out of the body; request_url() reads it
        body["_model"] = options.get("model", "")
        return body

    async def handle_response(self, data: dict, on_event: EventHandler) -> None:
        candidates = data.get("candidates") or [{}]
        first = candidates[0] or {}
        parts = (first.get("content") or {}).get("parts") or [{}]
        text = parts[0].get("text") or ""
        usage = data.get("usageMetadata")

        await emit(on_event, StreamEvent(candidate_index=0, delta_text=text, raw=data))
        await emit(on_event, StreamEvent(
            candidate_index=0,
            raw=data,
            stop_reason=first.get("finishReason") or "stop",
            finished=True,
            details={"usage": usage} if usage else None,
        ))
