"""
OpenAI-style adapter.

Works with any service that implements the chat completions wire format:
- api.openai.com
- llama.cpp server, vLLM, LocalAI, Ollama's /v1 endpoint
- aggregators (see openrouter.py)

Streaming responses are SSE chunks whose choices[] each carry their own
index, so n > 1 candidates interleave on one connection.
"""

from __future__ import annotations

import logging

from loombox.backends.base import BaseAdapter, EventHandler, PromptMessage, ProviderError, StreamEvent, emit
from loombox.backends.sse import ServerSentEvent

logger = logging.getLogger(__name__)

# Options that only steer loombox and must not reach the wire
LOCAL_OPTIONS = ("modelAlias", "model_alias")


class OpenAICompatibleAdapter(BaseAdapter):
    """
    Adapter for OpenAI-compatible chat endpoints.
    Set chat=False for legacy completion-style servers that stream
    choices[].text instead of choices[].delta.content.
    """

    provider = "openai"

    def __init__(self, name: str, url: str, api_key: str = "", timeout: float = 120,
                 transport=None, chat: bool = True):
        super().__init__(name, url, api_key=api_key, timeout=timeout, transport=transport)
        self.chat = chat

    def headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    @staticmethod
    def to_api_message(message: PromptMessage) -> dict:
        """One {role, content} entry; content goes multi-part when images are attached."""
        if message.content_parts:
            return {"role": message.author, "content": message.content_parts}

        images = message.image_urls()
        if not images:
            return {"role": message.author, "content": message.text}

        parts = []
        if message.text.strip():
            parts.append({"type": "text", "text": message.text})
        for url in images:
            parts.append({"type": "image_url", "image_url": {"url": url}})
        return {"role": message.author, "content": parts}

    def build_request(
        self,
        path: list[PromptMessage],
        system_message: str | None = None,
        model_options: dict | None = None,
    ) -> dict:
        options = {k: v for k, v in (model_options or {}).items() if k not in LOCAL_OPTIONS}
        history = []
        if system_message:
            history.append(PromptMessage(author="system", text=system_message))
        history.extend(path)

        body = {
            **options,
            "messages": [self.to_api_message(m) for m in history],
        }
        body.setdefault("stream", True)
        if (body.get("n") or 1) > 1:
            body["stream"] = True
        return body

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def _token(self, choice: dict) -> str:
        if self.chat:
            return (choice.get("delta") or {}).get("content") or ""
        return choice.get("text") or ""

    def finish_details(self, payload: dict) -> dict | None:
        usage = payload.get("usage")
        return {"usage": usage} if usage else None

    async def handle_event(
        self, sse: ServerSentEvent, payload: dict, on_event: EventHandler, call_state: dict
    ) -> bool:
        # Aggregators report upstream failures as an in-band error chunk
        if "error" in payload and not payload.get("choices"):
            error = payload["error"]
            if not isinstance(error, dict):
                raise ProviderError(f"{self.name}: {error}", data=payload)
            code = error.get("code")
            raise ProviderError(
                f"{self.name}: {error.get('message', error)}",
                status_code=code if isinstance(code, int) else None,
                data=payload,
            )

        for choice in payload.get("choices") or []:
            idx = choice.get("index", 0)
            token = self._token(choice)
            if token:
                await emit(on_event, StreamEvent(candidate_index=idx, delta_text=token, raw=payload))
            finish_reason = choice.get("finish_reason")
            if finish_reason:
                await emit(on_event, StreamEvent(
                    candidate_index=idx,
                    raw=payload,
                    stop_reason=finish_reason,
                    finished=True,
                    details=self.finish_details(payload),
                ))
        return False

    async def handle_response(self, data: dict, on_event: EventHandler) -> None:
        details = self.finish_details(data)
        for position, choice in enumerate(data.get("choices") or []):
            idx = choice.get("index", position)
            if self.chat:
                text = (choice.get("message") or {}).get("content") or ""
            else:
                text = choice.get("text") or ""
            if text:
                await emit(on_event, StreamEvent(candidate_index=idx, delta_text=text, raw=data))
            await emit(on_event, StreamEvent(
                candidate_index=idx,
                raw=data,
                stop_reason=choice.get("finish_reason") or "stop",
                finished=True,
                details=details,
            ))
