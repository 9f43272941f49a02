"""
Anthropic-style adapter (Messages API).

Differences from the OpenAI wire format:
  - the system prompt is a top-level `system` field, not a message
  - adjacent turns from the same role are rejected, so they are merged
  - images are content blocks with a base64 or url `source`
  - the stream is typed events (message_start, content_block_delta,
    message_delta, message_stop) and never carries more than one candidate
"""

from __future__ import annotations

import logging
import re

from loombox.backends.base import BaseAdapter, EventHandler, PromptMessage, ProviderError, StreamEvent, emit
from loombox.backends.sse import ServerSentEvent

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"
BETA_MESSAGES = "messages-2023-12-15"
BETA_STEERING = "steering-2024-06-04"
DEFAULT_MAX_TOKENS = 4096

# Never sent: `n` is unsupported and the rest are loombox-only knobs
STRIPPED_OPTIONS = ("n", "modelAlias", "model_alias", "stream", "steering")

_DATA_URL_RE = re.compile(r"^data:(.+?);base64,(.+)$", re.DOTALL)


def to_anthropic_part(part: dict | None) -> dict | None:
    """Convert one generic content part into an Anthropic content block."""
    if not part:
        return None

    if part.get("type") in ("image_url", "input_image"):
        image_url = part.get("image_url")
        source_url = image_url.get("url") if isinstance(image_url, dict) else image_url
        source_url = source_url or part.get("url")
        if not source_url:
            return None
        if source_url.startswith("data:"):
            match = _DATA_URL_RE.match(source_url)
            if not match:
                return None
            media_type, data = match.groups()
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": media_type, "data": data},
            }
        return {"type": "image", "source": {"type": "url", "url": source_url}}

    if part.get("type") == "text":
        return {"type": "text", "text": part.get("text") or ""}

    return part


def _is_text_only(content: list[dict]) -> bool:
    return all(part.get("type") == "text" for part in content)


class AnthropicAdapter(BaseAdapter):
    """Adapter for the Anthropic Messages API."""

    provider = "anthropic"

    def __init__(
        self,
        name: str,
        url: str = DEFAULT_URL,
        api_key: str = "",
        timeout: float = 120,
        transport=None,
        steering: bool = False,
    ):
        super().__init__(name, url or DEFAULT_URL, api_key=api_key, timeout=timeout, transport=transport)
        self.steering = steering

    def headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
            "anthropic-beta": BETA_STEERING if self.steering else BETA_MESSAGES,
        }

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    @staticmethod
    def _content(message: PromptMessage) -> list[dict]:
        if message.content_parts:
            return list(message.content_parts)
        images = message.image_urls()
        if not images:
            return [{"type": "text", "text": message.text}]
        parts = []
        if message.text.strip():
            parts.append({"type": "text", "text": message.text})
        parts.extend({"type": "image_url", "image_url": {"url": url}} for url in images)
        return parts

    def merge_history(self, path: list[PromptMessage]) -> list[dict]:
        """
        Build the messages array, merging consecutive same-role text turns.
        Turns that carry images are kept as separate messages.
        """
        merged: list[dict] = []
        for message in path:
            current = {"role": message.author, "content": self._content(message)}
            last = merged[-1] if merged else None
            if (
                last is not None
                and last["role"] == current["role"]
                and _is_text_only(last["content"])
                and _is_text_only(current["content"])
            ):
                existing = last["content"][-1].get("text", "") if last["content"] else ""
                addition = current["content"][0].get("text", "") if current["content"] else ""
                last["content"] = [{"type": "text", "text": f"{existing}{addition}"}]
            else:
                merged.append(current)

        ready = []
        for message in merged:
            content = [p for p in (to_anthropic_part(part) for part in message["content"]) if p]
            ready.append({
                "role": message["role"],
                "content": content or [{"type": "text", "text": ""}],
            })
        return ready

    def build_request(
        self,
        path: list[PromptMessage],
        system_message: str | None = None,
        model_options: dict | None = None,
    ) -> dict:
        options = dict(model_options or {})
        stream = options.get("stream") is not False
        body = {k: v for k, v in options.items() if k not in STRIPPED_OPTIONS}
        body.setdefault("max_tokens", DEFAULT_MAX_TOKENS)

        # The Messages API has no system role; system turns join the system field
        system_parts = [system_message] if system_message else []
        turns = []
        for message in path:
            if message.author == "system":
                if message.text:
                    system_parts.append(message.text)
            else:
                turns.append(message)

        body["messages"] = self.merge_history(turns)
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        body["stream"] = stream
        return body

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    async def handle_event(
        self, sse: ServerSentEvent, payload: dict, on_event: EventHandler, call_state: dict
    ) -> bool:
        kind = payload.get("type") or sse.event

        if kind == "message_start":
            call_state["message"] = payload.get("message") or {}
            return False

        if kind == "content_block_delta":
            text = (payload.get("delta") or {}).get("text") or ""
            if text:
                await emit(on_event, StreamEvent(candidate_index=0, delta_text=text, raw=payload))
            return False

        if kind == "message_delta":
            delta = payload.get("delta") or {}
            if delta.get("stop_reason"):
                call_state["stop_reason"] = delta["stop_reason"]
            usage = payload.get("usage") or delta.get("usage")
            if usage:
                call_state["usage"] = usage
            await emit(on_event, StreamEvent(candidate_index=0, raw=payload))
            return False

        if kind == "message_stop":
            stop_reason = call_state.get("stop_reason") or payload.get("stop_reason")
            usage = call_state.get("usage") or payload.get("usage")
            details = {"usage": usage} if usage else None
            await emit(on_event, StreamEvent(
                candidate_index=0,
                raw=payload,
                stop_reason=stop_reason,
                finished=True,
                details=details,
            ))
            return True

        if kind == "error":
            error = payload.get("error") or {}
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise ProviderError(f"{self.name}: {message}", data=payload)

        # content_block_start / content_block_stop and anything newer
        await emit(on_event, StreamEvent(candidate_index=0, raw=payload))
        return False

    async def handle_response(self, data: dict, on_event: EventHandler) -> None:
        content = data.get("content")
        if isinstance(content, list):
            text = "".join(block.get("text") or "" for block in content if block.get("type") == "text")
        else:
            text = content or ""
        if text:
            await emit(on_event, StreamEvent(candidate_index=0, delta_text=text, raw=data))
        usage = data.get("usage")
        await emit(on_event, StreamEvent(
            candidate_index=0,
            raw=data,
            stop_reason=data.get("stop_reason"),
            finished=True,
            details={"usage": usage} if usage else None,
        ))
