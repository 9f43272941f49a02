"""
Named save states on disk.

One pretty-printed JSON file per save, <directory>/<slug>.json, each holding
the cursor and a full copy of the conversation as it was at save time. Files
are written to a temp name and renamed, so a reader never sees half a save.
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from loombox.storage.models import Conversation, Cursor, SaveState

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 80


class SaveExistsError(Exception):
    """A save with this name exists and overwrite was not requested."""

    def __init__(self, name: str, slug: str):
        super().__init__(f"A save named '{name}' already exists ({slug})")
        self.name = name
        self.slug = slug


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug or "save"


def unique_slug(name: str, existing) -> str:
    """slugify(name), suffixed -2, -3, ... until it is not in `existing`."""
    base = slugify(name)
    taken = set(existing)
    if base not in taken:
        return base
    counter = 2
    while f"{base}-{counter}" in taken:
        counter += 1
    return f"{base}-{counter}"


def summarize(conversation: dict | Conversation | None) -> str:
    """Conversation name, else its first message text, one line, at most 80 chars."""
    if conversation is None:
        return ""
    if isinstance(conversation, Conversation):
        conversation = conversation.to_dict()
    if conversation.get("name"):
        return conversation["name"]
    for message in conversation.get("messages") or []:
        text = message.get("text", message.get("message"))
        if not isinstance(text, str):
            continue
        text = " ".join(text.split())
        if not text:
            continue
        if len(text) > SUMMARY_LIMIT:
            return text[:SUMMARY_LIMIT - 3] + "..."
        return text
    return ""


def format_label(state: SaveState) -> str:
    """'name — summary (time)' for pickers and listings."""
    label = state.name
    if state.summary and state.summary != state.name:
        label = f"{label} — {state.summary}"
    if state.saved_at:
        try:
            when = datetime.fromisoformat(state.saved_at).strftime("%Y-%m-%d %H:%M")
        except ValueError:
            when = state.saved_at
        label = f"{label} ({when})"
    return label


class SaveStateStore:
    """Save states as JSON files in one directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, slug: str) -> Path:
        return self.directory / f"{slug}.json"

    def list(self) -> list[SaveState]:
        """Every readable save, newest first."""
        if not self.directory.is_dir():
            return []
        states = []
        for path in self.directory.glob("*.json"):
            try:
                with open(path, encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable save %s: %s", path, e)
                continue
            if not isinstance(data, dict):
                logger.warning("Skipping malformed save %s", path)
                continue
            state = SaveState.from_dict(data, path=str(path))
            if not state.slug:
                state.slug = path.stem
            if not state.name:
                state.name = state.slug
            if not state.saved_at:
                state.saved_at = datetime.fromtimestamp(
                    path.stat().st_mtime, tz=timezone.utc
                ).isoformat()
            states.append(state)
        states.sort(key=lambda s: s.saved_at, reverse=True)
        return states

    def find(self, name_or_slug: str) -> SaveState | None:
        """Slug match first, then a case-insensitive name match."""
        if not name_or_slug or not name_or_slug.strip():
            return None
        states = self.list()
        slug = slugify(name_or_slug)
        for state in states:
            if state.slug == slug:
                return state
        wanted = name_or_slug.strip().lower()
        for state in states:
            if state.name.strip().lower() == wanted:
                return state
        return None

    def read(self, slug: str) -> SaveState | None:
        path = self._path(slug)
        try:
            with open(path, encoding="utf-8") as f:
                return SaveState.from_dict(json.load(f), path=str(path))
        except FileNotFoundError:
            return None

    def write(
        self,
        name: str,
        slug: str,
        conversation_data: dict,
        conversation: dict,
        summary: str | None = None,
    ) -> tuple[Path, SaveState]:
        self.directory.mkdir(parents=True, exist_ok=True)
        state = SaveState(
            name=name,
            slug=slug,
            conversation_data=conversation_data,
            conversation=conversation,
            summary=summary if summary is not None else summarize(conversation),
        )
        path = self._path(slug)
        tmp = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2, ensure_ascii=False)
                f.write("\n")
            os.replace(tmp, path)
        finally:
            if tmp.exists():
                tmp.unlink()
        state.path = str(path)
        logger.info("Saved state '%s' to %s", name, path)
        return path, state

    def save(
        self,
        name: str,
        cursor: Cursor,
        conversation: Conversation,
        overwrite: bool = False,
    ) -> tuple[Path, SaveState]:
        """Snapshot cursor + conversation under `name`."""
        if not name or not name.strip():
            raise ValueError("Save name must not be empty")
        states = self.list()
        wanted = name.strip().lower()
        # Names are unique, slugs only stand in for them on disk
        existing = next((s for s in states if s.name.strip().lower() == wanted), None)
        if existing is not None:
            if not overwrite:
                raise SaveExistsError(name, existing.slug)
            slug = existing.slug
        else:
            slug = unique_slug(name, (s.slug for s in states))
        return self.write(name.strip(), slug, cursor.to_dict(), conversation.to_dict())

    def by_conversation(self) -> dict[str, dict]:
        """Saves grouped by conversation id, newest first within each group."""
        groups: dict[str, dict] = {}
        for state in self.list():
            conversation_id = state.conversation_id
            if not conversation_id:
                continue
            group = groups.setdefault(conversation_id, {
                "name": state.conversation.get("name") or state.summary,
                "states": [],
            })
            group["states"].append(state)
        return groups
