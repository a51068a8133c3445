"""
FastAPI application — the chatline HTTP entry point.
Implements OpenAI-compatible endpoints backed by the configured engine.

Every request is its own session: the messages in the body become a fresh
Conversation, nothing is shared between requests and nothing is persisted.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response, StreamingResponse

from chatline import __version__
from chatline.config import get_config, setup_logging
from chatline.engines import BaseEngine, EngineError, GenerationParams, make_engine
from chatline.errors import FormatError, ProtocolError
from chatline.protocol import (
    SSE_DONE,
    ChunkStream,
    build_error_response,
    build_response,
    encode_sse,
    error_from_exception,
    new_completion_id,
    parse_request,
    request_to_conversation,
    to_json,
)
from chatline.template import render_prompt
from chatline.trimmer import trim_to_budget

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Globals — initialized at startup
# ---------------------------------------------------------------------------
engine: BaseEngine | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global engine

    cfg = get_config()
    setup_logging(cfg)

    engine = make_engine(cfg["engine"])
    logger.info(
        "chatline started — listening on %s:%s, engine %r",
        cfg["server"]["host"],
        cfg["server"]["port"],
        engine,
    )
    logger.info("Context budget: %s", cfg["context"]["max_tokens"] or "unlimited")

    yield

    await engine.aclose()
    logger.info("chatline shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatline",
    description="OpenAI-compatible chat front-end.",
    version=__version__,
    lifespan=lifespan,
)


def _json(value, status_code: int = 200) -> Response:
    """Minified JSON body through the shared encoder."""
    return Response(to_json(value), status_code=status_code, media_type="application/json")


async def _stream_completion(prompt: str, params: GenerationParams, completion_id: str, model: str):
    """Yield SSE events for one streamed completion, ending with [DONE]."""
    chunks = ChunkStream(completion_id, model)
    yield encode_sse(chunks.role_chunk())

    finished = False
    stream = engine.generate_stream(prompt, params)
    try:
        async for fragment in stream:
            if fragment.text:
                yield encode_sse(chunks.content_chunk(fragment.text))
            if fragment.finish_reason:
                yield encode_sse(chunks.final_chunk(fragment.finish_reason))
                finished = True
                break
        if not finished:
            yield encode_sse(chunks.final_chunk("stop"))
    except EngineError as e:
        logger.error("Engine failed mid-stream (%s): %s", completion_id, e)
        yield encode_sse(build_error_response(str(e), "server_error", code="engine_error"))
    finally:
        await stream.aclose()

    yield SSE_DONE


# ---------------------------------------------------------------------------
# OpenAI-compatible endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    """
    Decode an OpenAI-format chat completion request, run the engine, and
    answer with a completion object or an SSE stream of chunks.
    """
    body = await request.body()
    try:
        chat_request = parse_request(body)
        conversation = request_to_conversation(chat_request)
    except (ProtocolError, FormatError) as e:
        logger.info("Rejected chat completion request: %s", e)
        return _json(error_from_exception(e), status_code=400)

    cfg = get_config()
    default_system = cfg["chat"].get("system_prompt")
    if default_system and not conversation.has_system_prompt:
        conversation.set_or_prepend_system_prompt(default_system)
    trim_to_budget(conversation, cfg["context"]["max_tokens"], keep_last=1)

    prompt = render_prompt(conversation)
    params = GenerationParams.from_request(chat_request)
    model = chat_request.model or engine.model
    completion_id = new_completion_id()

    if chat_request.stream:
        return StreamingResponse(
            _stream_completion(prompt, params, completion_id, model),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    try:
        generation = await engine.generate(prompt, params)
    except EngineError as e:
        logger.error("Engine failed (%s): %s", completion_id, e)
        return _json(build_error_response(str(e), "server_error", code="engine_error"), status_code=502)

    response = build_response(
        completion_id,
        model,
        "assistant",
        generation.text,
        generation.finish_reason,
        (generation.prompt_tokens, generation.completion_tokens),
    )
    return _json(response)


@app.get("/v1/models")
async def list_models():
    """The single model served by the configured engine."""
    return _json({
        "object": "list",
        "data": [{
            "id": engine.model,
            "object": "model",
            "created": int(time.time()),
            "owned_by": "chatline",
        }],
    })


@app.get("/health")
async def health():
    ok = await engine.health_check()
    return _json({
        "status": "ok" if ok else "degraded",
        "engine": engine.name,
        "model": engine.model,
        "version": __version__,
    })
