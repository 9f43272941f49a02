"""
Tests for the HTTP surface. The app runs without its lifespan; each test
installs a runtime built against a mock transport and in-memory storage.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from loombox import main
from loombox.runtime import build_runtime


def _reply(text):
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": "stop"}]}


@pytest.fixture
def client(recorder, tmp_path, monkeypatch):
    cfg = {
        "storage": {"backend": "memory", "save_states_dir": str(tmp_path / "saves")},
        "wiretap": {"enabled": False},
        "clients": {
            "test": {
                "provider": "openai",
                "url": "http://fake/v1/chat/completions",
                "api_key": "k",
                "max_retries": 0,
                "model_options": {"model": "m"},
            },
        },
    }
    monkeypatch.setattr(main, "runtime", build_runtime(cfg, transport=recorder.transport))
    return TestClient(main.app)


def test_ping(client):
    """The health check answers."""
    resp = client.get("/ping")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_turn_and_fetch(client, recorder, sse_body, sse_response):
    """A JSON turn stores the conversation and GET returns it."""
    recorder.queue(sse_response(sse_body(_reply("hello"))))
    resp = client.post("/conversation", json={"message": "hi"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["replies"] == {"0": "hello"}
    assert data["aborted"] is False

    stored = client.get(f"/conversation/{data['conversationId']}").json()
    assert [m["text"] for m in stored["messages"]] == ["hi", "hello"]
    assert stored["messages"][1]["id"] == data["messageId"]
    assert stored["messages"][0]["id"] == data["parentMessageId"]


def test_continue_from_parent(client, recorder, sse_body, sse_response):
    """A turn can continue from an earlier reply."""
    recorder.queue(sse_response(sse_body(_reply("one"))), sse_response(sse_body(_reply("two"))))
    first = client.post("/conversation", json={"message": "a"}).json()
    client.post("/conversation", json={
        "message": "b",
        "conversationId": first["conversationId"],
        "parentMessageId": first["messageId"],
        "systemMessage": "sys",
    })
    sent = recorder.body()
    assert [m["content"] for m in sent["messages"]] == ["sys", "a", "one", "b"]


def test_bad_requests(client):
    """Malformed or empty bodies get 400, unknown conversations 404."""
    assert client.post("/conversation", content=b"{nope",
                       headers={"content-type": "application/json"}).status_code == 400
    assert client.post("/conversation", json={"message": "  "}).status_code == 400
    assert client.get("/conversation/missing").status_code == 404


def test_unknown_parent(client, recorder, sse_body, sse_response):
    """An unknown parent message is a 404."""
    recorder.queue(sse_response(sse_body(_reply("x"))))
    first = client.post("/conversation", json={"message": "a"}).json()
    resp = client.post("/conversation", json={
        "message": "b", "conversationId": first["conversationId"], "parentMessageId": "nope",
    })
    assert resp.status_code == 404


def test_provider_auth_error(client, recorder):
    """Provider auth failures surface as their own status."""
    recorder.queue(httpx.Response(401, json={"error": "bad key"}))
    resp = client.post("/conversation", json={"message": "hi"})
    assert resp.status_code == 401
    assert "401" in resp.json()["error"]
    # the user message was stored before the call failed
    fetched = client.get(f"/conversation/{resp.json()['conversationId']}").json()
    assert fetched["messages"][-1]["id"] == resp.json()["parentMessageId"]


def test_streaming_turn(client, recorder, sse_body, sse_response):
    """An SSE turn streams deltas, then the final result."""
    recorder.queue(sse_response(sse_body(
        {"choices": [{"index": 0, "delta": {"content": "Hel"}}]},
        _reply("lo"),
    )))
    resp = client.post("/conversation", json={"message": "hi", "stream": True})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")

    blocks = [b for b in resp.text.split("\n\n") if b]
    tokens = [json.loads(b[len("data: "):]) for b in blocks if b.startswith("data: {")]
    assert [t["text"] for t in tokens] == ["Hel", "lo"]

    result = [b for b in blocks if b.startswith("event: result")][0]
    payload = json.loads(result.split("data: ", 1)[1])
    assert payload["replies"] == {"0": "Hello"}
    assert blocks[-1] == "data: [DONE]"


def test_streaming_error_event(client, recorder):
    """Provider failures during an SSE turn arrive as an error event."""
    recorder.queue(httpx.Response(503, text="overloaded"))
    resp = client.post("/conversation", json={"message": "hi", "stream": True})
    assert "event: error" in resp.text
    assert '"code": 503' in resp.text
    assert '"parentMessageId"' in resp.text
