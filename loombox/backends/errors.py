"""
Transport error types shared by every adapter.

Configuration problems are ConfigError (loombox.config) and are raised
before any request is made; everything here happens on the wire.
"""

from __future__ import annotations

import json
from typing import Any

import httpx


class ProviderError(Exception):
    """A failed provider call: non-2xx status, bad payload or dropped stream."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.data = data
        # Set by the engine when the failed turn already grew the tree
        self.result = None

    @classmethod
    def from_response(cls, resp: httpx.Response, provider: str = "") -> ProviderError:
        """Build from a response whose body has already been read."""
        body = resp.text
        try:
            data = json.loads(body) if body else None
        except ValueError:
            data = None
        prefix = f"{provider}: " if provider else ""
        return cls(
            f"{prefix}HTTP {resp.status_code}: {body[:200]}",
            status_code=resp.status_code,
            body=body,
            data=data,
        )


class StreamClosedError(ProviderError):
    """The server ended the event stream before a terminal event."""


class StreamAborted(ProviderError):
    """The caller cancelled the request. Not a failure worth logging loudly."""
