"""
FastAPI application: the LoomBox HTTP surface.

  GET  /ping                     liveness
  POST /conversation             one turn; SSE token stream when stream=true
  GET  /conversation/{id}        the stored tree

A client disconnect aborts the turn in flight. Text already streamed is
kept on the tree the same way the CLI keeps it on Ctrl-C.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from loombox import __version__
from loombox.backends.errors import ProviderError, StreamAborted
from loombox.config import ConfigError, get_config, setup_logging
from loombox.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
runtime: Runtime | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global runtime

    cfg = get_config()
    setup_logging(cfg)
    runtime = build_runtime(cfg)

    server_cfg = cfg.get("server") or {}
    logger.info(
        "LoomBox started, listening on %s:%s, client %s",
        server_cfg.get("host", "127.0.0.1"),
        server_cfg.get("port", 8000),
        runtime.client_name,
    )

    yield

    runtime.close()
    logger.info("LoomBox shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="LoomBox",
    description="Branching conversations with language models.",
    version=__version__,
    lifespan=lifespan,
)


def _sse(data, event: str | None = None) -> str:
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {payload}\n\n"


def _error_code(error: BaseException) -> int:
    if isinstance(error, ConfigError):
        return 400
    if isinstance(error, ProviderError) and error.status_code in (401, 403):
        return error.status_code
    return 503


def _error_payload(error: BaseException, code: int | None = None) -> dict:
    payload = {"error": str(error)}
    if code is not None:
        payload["code"] = code
    # A failed turn still stored the user message; point the client at it
    failed = getattr(error, "result", None)
    if failed is not None:
        payload["conversationId"] = failed.conversation_id
        payload["parentMessageId"] = failed.new_cursor.parent_message_id
    return payload


def _result_payload(result) -> dict:
    return {
        "conversationId": result.conversation_id,
        "parentMessageId": result.user_node.id if result.user_node else None,
        "messageId": result.new_cursor.parent_message_id,
        "replies": {str(k): v for k, v in result.replies_by_index.items()},
        "aborted": isinstance(result.error, StreamAborted),
    }


@app.get("/ping")
async def ping():
    return {"status": "ok", "version": __version__}


@app.post("/conversation")
async def conversation(request: Request):
    """
    Request body:
    {
      "message": "hello",
      "conversationId": "...",      (optional; new conversation when absent)
      "parentMessageId": "...",     (optional; root when absent)
      "modelOptions": {"n": 2},     (optional; merged over the client's)
      "systemMessage": "...",       (optional)
      "stream": true
    }
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        return JSONResponse({"error": "message is required"}, status_code=400)

    options = {**runtime.model_options, **(body.get("modelOptions") or {})}
    stream = body.get("stream", options.get("stream", False)) is True
    system_message = body.get("systemMessage", runtime.system_message)
    stop = asyncio.Event()

    async def run(on_event=None):
        return await runtime.engine.generate(
            body.get("conversationId"),
            body.get("parentMessageId"),
            message,
            options,
            system_message=system_message,
            on_event=on_event,
            signal=stop,
        )

    if not stream:
        try:
            result = await run()
        except (ConfigError, ProviderError, ValueError) as e:
            code = 404 if isinstance(e, ValueError) else _error_code(e)
            logger.warning("Conversation turn failed: %s", e)
            return JSONResponse(_error_payload(e), status_code=code)
        await runtime.repository.set_last_cursor(result.new_cursor)
        return JSONResponse(_result_payload(result))

    queue: asyncio.Queue = asyncio.Queue()

    def on_event(event):
        if event.delta_text:
            queue.put_nowait({"candidateIndex": event.candidate_index, "text": event.delta_text})

    async def event_generator():
        task = asyncio.create_task(run(on_event))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                if await request.is_disconnected():
                    stop.set()
                    break
                yield _sse(item)
            result = await task
            await runtime.repository.set_last_cursor(result.new_cursor)
            yield _sse(_result_payload(result), event="result")
            yield _sse("[DONE]")
        except (ConfigError, ProviderError, ValueError) as e:
            logger.warning("Conversation turn failed: %s", e)
            yield _sse(_error_payload(e, _error_code(e)), event="error")
        finally:
            # Client went away: abort, but let partial candidates persist
            if not task.done():
                stop.set()
                await asyncio.gather(task, return_exceptions=True)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/conversation/{conversation_id}")
async def get_conversation(conversation_id: str):
    found = await runtime.repository.get_conversation(conversation_id)
    if found is None:
        return JSONResponse({"error": f"Conversation not found: {conversation_id}"}, status_code=404)
    return JSONResponse(found.to_dict())
