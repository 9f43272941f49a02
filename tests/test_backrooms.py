"""
Tests for backrooms sessions: context and seed loading, and the
self-dialogue loop on top of the engine.
"""

import asyncio
import json

import httpx
import pytest

from loombox import tree
from loombox.backends.errors import ProviderError
from loombox.backends.openai_compat import OpenAICompatibleAdapter
from loombox.backrooms import (
    DEFAULT_CONTEXT,
    DEFAULT_SEED,
    load_context,
    load_seed,
    run_backrooms,
    write_transcript,
)
from loombox.engine import CompletionEngine
from loombox.storage import ConversationRepository
from loombox.storage.backends.memory import MemoryStore
from loombox.storage.models import MessageNode


def _reply(text):
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": "stop"}]}


@pytest.fixture
def repository():
    return ConversationRepository(MemoryStore())


@pytest.fixture
def engine(repository, recorder):
    adapter = OpenAICompatibleAdapter("test", "http://fake", api_key="k", transport=recorder.transport)
    return CompletionEngine(repository, adapter)


@pytest.fixture
def replies(recorder, sse_body, sse_response):
    def queue(*texts):
        for text in texts:
            recorder.queue(sse_response(sse_body(_reply(text))))
    return queue


# ---------------------------------------------------------------------------
# Contexts and seeds
# ---------------------------------------------------------------------------

def test_context_named_then_fallback_then_default(tmp_path):
    """The named context wins, then backrooms.txt, then the built-in prompt."""
    assert load_context("blank", tmp_path) == DEFAULT_CONTEXT
    (tmp_path / "backrooms.txt").write_text("fallback")
    assert load_context("blank", tmp_path) == "fallback"
    (tmp_path / "blank.txt").write_text("named")
    assert load_context("blank", tmp_path) == "named"


def test_seed_from_file_drops_blank_messages(tmp_path):
    """Seed files load in order, without blank or malformed messages."""
    (tmp_path / "stairs.json").write_text(json.dumps({"messages": [
        {"role": "user", "content": "where are we?"},
        {"role": "assistant", "content": "   "},
        {"role": "assistant", "content": "somewhere yellow"},
        {"content": 42},
    ]}))
    assert load_seed("stairs", tmp_path) == [
        {"role": "user", "content": "where are we?"},
        {"role": "assistant", "content": "somewhere yellow"},
    ]


@pytest.mark.parametrize("content", [None, "{broken", json.dumps({"messages": []})])
def test_seed_falls_back_to_default(tmp_path, content):
    """Missing, unreadable or empty seeds give the default opening."""
    if content is not None:
        (tmp_path / "default.json").write_text(content)
    assert load_seed("default", tmp_path) == DEFAULT_SEED


# ---------------------------------------------------------------------------
# The loop
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_sides_alternate(engine, replies, recorder, repository):
    """Each turn is spoken by the side that did not speak last."""
    replies("b1", "u1", "b2")
    result = await run_backrooms(engine, [{"role": "user", "content": "hello"}], 3,
                                 {"model": "m"}, system_message="ctx")

    assert [n.text for n in result.turns] == ["b1", "u1", "b2"]
    assert [n.role for n in result.turns] == ["assistant", "user", "assistant"]
    assert result.aborted is False

    convo = await repository.get_conversation(result.conversation_id)
    path = tree.path(convo.messages, result.cursor.parent_message_id)
    assert [m.text for m in path] == ["hello", "b1", "u1", "b2"]

    # The user side sees the other side's turns as "user" and its own as "assistant"
    second = recorder.body(1)["messages"]
    assert [(m["role"], m["content"]) for m in second] == [
        ("system", "ctx"), ("assistant", "hello"), ("user", "b1"),
    ]
    third = recorder.body(2)["messages"]
    assert [m["role"] for m in third] == ["system", "user", "assistant", "user"]


@pytest.mark.asyncio
async def test_seed_ending_with_assistant_starts_with_user_side(engine, replies, recorder):
    """A seed whose last message is the bot's hands the first turn to the other side."""
    replies("u1")
    result = await run_backrooms(engine, [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ], 1)
    assert result.turns[0].role == "user"


@pytest.mark.asyncio
async def test_continues_an_existing_branch(engine, replies, repository):
    """Seeds are appended under the given cursor, keeping earlier history."""
    cursor, _ = await engine.add_messages(None, None, [{"role": "user", "text": "before"}])
    replies("b1")
    result = await run_backrooms(engine, DEFAULT_SEED, 1, conversation_id=cursor.conversation_id,
                                 cursor_id=cursor.parent_message_id)
    convo = await repository.get_conversation(cursor.conversation_id)
    path = tree.path(convo.messages, result.cursor.parent_message_id)
    assert [m.text for m in path] == ["before", DEFAULT_SEED[0]["content"], "b1"]


@pytest.mark.asyncio
async def test_stop_signal_ends_the_loop(engine, replies, recorder):
    """Setting the signal between turns stops before the next request."""
    replies("b1", "u1")
    stop = asyncio.Event()
    result = await run_backrooms(engine, DEFAULT_SEED, 5, on_turn=lambda i, node: stop.set(), signal=stop)
    assert [n.text for n in result.turns] == ["b1"]
    assert result.aborted is True
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_provider_error_keeps_earlier_turns(engine, replies, recorder, repository):
    """A failing turn raises; the turns before it stay in the tree."""
    replies("b1")
    recorder.queue(httpx.Response(500, text="boom"))
    with pytest.raises(ProviderError):
        await run_backrooms(engine, DEFAULT_SEED, 3)

    (conversation_id,) = await repository.conversation_ids()
    convo = await repository.get_conversation(conversation_id)
    assert [m.text for m in convo.messages] == [DEFAULT_SEED[0]["content"], "b1"]


@pytest.mark.asyncio
async def test_needs_a_seed(engine):
    """An empty seed with no cursor has nothing to answer."""
    with pytest.raises(ValueError):
        await run_backrooms(engine, [], 2)


def test_write_transcript(tmp_path):
    """Transcripts list the header and one block per message."""
    nodes = [MessageNode(role="user", text="hello"), MessageNode(role="assistant", text="hi")]
    path = write_transcript(tmp_path / "logs", nodes, header={"Context": "blank"})
    text = path.read_text()
    assert path.name.startswith("backrooms_")
    assert "Context: blank" in text
    assert "[user]\nhello" in text
    assert "[assistant]\nhi" in text
