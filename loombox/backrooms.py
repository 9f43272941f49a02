"""
Backrooms: the model talking to itself.

Two sides take turns on one branch of a conversation. Each turn is an
ordinary CompletionEngine.generate() call with the role labels swapped for
the side that speaks, so the speaker always sees its own turns as
"assistant" and the other side's as "user". Every turn lands in the tree
like any other reply; rewind, edit and fork all work on it afterwards.

    context   contexts/<name>.txt → contexts/backrooms.txt → DEFAULT_CONTEXT
    seed      seeds/<name>.json {"messages": [{"role", "content"}]} → DEFAULT_SEED
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from loombox import tree
from loombox.backends.base import EventHandler
from loombox.engine import CompletionEngine, Participants
from loombox.storage.models import Cursor, MessageNode

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT = (
    "You are a simulated entity in the Backrooms - a strange, liminal space outside of "
    "normal reality. Engage with this scenario as if you are in this uncanny, disorienting "
    "environment. Do not break character by explaining that you are an AI assistant."
)
DEFAULT_SEED = [
    {"role": "user", "content": "Hello, I'm in the backrooms now. Let's have an interesting conversation."},
]
DEFAULT_TURNS = 5
FALLBACK_CONTEXT_NAME = "backrooms"


@dataclass
class BackroomsResult:
    conversation_id: str
    cursor: Cursor
    turns: list[MessageNode] = field(default_factory=list)
    aborted: bool = False


def load_context(name: str | None, directory: str | Path = "contexts") -> str:
    """System prompt for a session: the named context, the backrooms one, or the built-in default."""
    directory = Path(directory)
    for candidate in (name, FALLBACK_CONTEXT_NAME):
        if not candidate:
            continue
        path = directory / f"{candidate}.txt"
        if path.is_file():
            text = path.read_text(encoding="utf-8")
            logger.info("Loaded context %s (%d chars)", path, len(text))
            return text
    logger.info("No context file for '%s', using the default backrooms prompt", name)
    return DEFAULT_CONTEXT


def load_seed(name: str | None, directory: str | Path = "seeds") -> list[dict]:
    """Opening messages as [{"role", "content"}]. Blank messages are dropped."""
    path = Path(directory) / f"{name or 'default'}.json"
    if not path.is_file():
        return [dict(m) for m in DEFAULT_SEED]
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Unreadable seed %s, using the default: %s", path, e)
        return [dict(m) for m in DEFAULT_SEED]

    raw = data.get("messages") if isinstance(data, dict) else None
    messages = [
        {"role": m.get("role") or "user", "content": m["content"]}
        for m in raw or []
        if isinstance(m, dict) and isinstance(m.get("content"), str) and m["content"].strip()
    ]
    if not messages:
        logger.warning("Seed %s has no messages, using the default", path)
        return [dict(m) for m in DEFAULT_SEED]
    return messages


def swapped(participants: Participants) -> Participants:
    return Participants(user=participants.bot, bot=participants.user, system=participants.system)


async def run_backrooms(
    engine: CompletionEngine,
    seed: list[dict],
    turns: int = DEFAULT_TURNS,
    model_options: dict | None = None,
    *,
    system_message: str | None = None,
    conversation_id: str | None = None,
    cursor_id: str | None = None,
    on_event: EventHandler | None = None,
    on_turn: Callable[[int, MessageNode], None] | None = None,
    signal: asyncio.Event | None = None,
) -> BackroomsResult:
    """
    Append the seed under cursor_id, then let the two sides alternate for
    `turns` replies. The side that did not write the newest message speaks
    next. A ProviderError stops the loop and propagates; every turn before
    it is already stored.
    """
    if turns < 0:
        raise ValueError("turns must not be negative")
    if not seed and cursor_id is None:
        raise ValueError("A backrooms session needs at least one seed message")
    own = engine.participants
    labels = {"user": own.user, "assistant": own.bot, "system": own.system}
    cursor, _ = await engine.add_messages(
        conversation_id,
        cursor_id,
        [{"role": labels.get(m.get("role"), own.user), "text": m["content"]} for m in seed],
    )
    result = BackroomsResult(conversation_id=cursor.conversation_id, cursor=cursor)
    other = swapped(own)
    for turn in range(turns):
        if signal is not None and signal.is_set():
            result.aborted = True
            break
        conversation = await engine.load(cursor.conversation_id)
        last = tree.get_node(conversation.messages, cursor.parent_message_id)
        speaker = other if last is not None and last.role == own.bot else own
        logger.info("Backrooms turn %d/%d: %s speaks", turn + 1, turns, speaker.bot)

        generated = await engine.generate(
            cursor.conversation_id,
            cursor.parent_message_id,
            None,
            model_options,
            system_message=system_message,
            on_event=on_event,
            signal=signal,
            participants=speaker,
        )
        cursor = generated.new_cursor
        result.cursor = cursor
        node = next((n for n in generated.new_nodes if n.id == cursor.parent_message_id), None)
        if node is not None:
            result.turns.append(node)
            if on_turn:
                on_turn(turn, node)
        if generated.error is not None:
            result.aborted = True
            break
        if node is None:
            logger.warning("Backrooms turn %d produced no text, stopping", turn + 1)
            break
    return result


def write_transcript(
    directory: str | Path,
    nodes: list[MessageNode],
    header: dict | None = None,
) -> Path:
    """Plain-text log of a session, one block per message."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    now = datetime.now(timezone.utc)
    path = directory / f"backrooms_{now.strftime('%Y-%m-%dT%H-%M-%S')}.txt"
    lines = ["=== Backrooms Session ==="]
    for key, value in (header or {}).items():
        lines.append(f"{key}: {value}")
    lines.append(f"Timestamp: {now.isoformat()}")
    lines.append("")
    for node in nodes:
        lines.append(f"[{node.role}]")
        lines.append(node.text)
        lines.append("")
    path.write_text("\n".join(lines), encoding="utf-8")
    return path
