"""
Protocol adapter: OpenAI-compatible `/v1/chat/completions` wire format.

Decodes request bodies, builds full responses, streaming chunks and error
envelopes. Unknown request fields are ignored so that stock OpenAI client
SDKs work without exact schema parity.

A streamed completion is always:

    {"delta": {"role": "assistant"}, "finish_reason": null}
    {"delta": {"content": "<fragment>"}, "finish_reason": null}   (0..n)
    {"delta": {}, "finish_reason": "stop"}
    data: [DONE]                                                   (SSE only)
"""

from __future__ import annotations

import io
import json
import time
from typing import Any, Iterable, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_serializer, model_validator

from chatline.conversation import Conversation, Message, role_from_string
from chatline.errors import FormatError, InvalidJson, MissingMessages, ProtocolError

SSE_DONE = "data: [DONE]\n\n"

# Recognized on ingress, never stored in a Conversation.
TOOL_ROLE = "tool"


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    role: str
    content: str
    name: Optional[str] = None


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    model: Optional[str] = None
    messages: list[ChatMessage]
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, ge=0)
    stream: Optional[bool] = None
    seed: Optional[int] = Field(default=None, ge=0)


def parse_request(body: str | bytes) -> ChatCompletionRequest:
    """
    Decode a request body.

    Raises InvalidJson on bad syntax, wrong types or a missing `messages`
    field, and MissingMessages when `messages` is present but empty.
    """
    try:
        request = ChatCompletionRequest.model_validate_json(body)
    except ValidationError as e:
        raise InvalidJson(_describe_validation_error(e), param=_error_param(e)) from e

    if not request.messages:
        raise MissingMessages()
    return request


def _error_param(error: ValidationError) -> str | None:
    errors = error.errors()
    if not errors or not errors[0].get("loc"):
        return None
    return ".".join(str(p) for p in errors[0]["loc"])


def _describe_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    if first.get("type") == "json_invalid":
        return f"Request body is not valid JSON: {first.get('msg', '')}"
    loc = ".".join(str(p) for p in first.get("loc", ())) or "body"
    return f"Invalid request at '{loc}': {first.get('msg', 'invalid value')}"


def request_to_conversation(request: ChatCompletionRequest) -> Conversation:
    """
    Copy wire messages into a fresh Conversation in request order.

    `tool` messages are dropped. Any other unrecognized role raises
    InvalidRole; NUL bytes in content raise NulByteInString.
    """
    conversation = Conversation()
    for message in request.messages:
        if message.role == TOOL_ROLE:
            continue
        conversation.append(Message(role_from_string(message.role), message.content))
    return conversation


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class Usage(BaseModel):
    prompt_tokens: int = Field(ge=0)
    completion_tokens: int = Field(ge=0)
    total_tokens: Optional[int] = None

    @model_validator(mode="after")
    def _check_total(self):
        expected = self.prompt_tokens + self.completion_tokens
        if self.total_tokens is None:
            self.total_tokens = expected
        elif self.total_tokens != expected:
            raise ValueError(
                f"total_tokens ({self.total_tokens}) must equal "
                f"prompt_tokens + completion_tokens ({expected})"
            )
        return self


class ResponseMessage(BaseModel):
    role: str
    content: str


class Choice(BaseModel):
    index: int = 0
    message: ResponseMessage
    finish_reason: str


class ChatCompletionResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[Choice]
    usage: Usage


class ChunkDelta(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None

    @model_serializer(mode="wrap")
    def _omit_unset(self, handler):
        # An empty delta must serialize as {} rather than nulls
        return {k: v for k, v in handler(self).items() if v is not None}


class ChunkChoice(BaseModel):
    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: Optional[str] = None


class ChatCompletionChunk(BaseModel):
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: list[ChunkChoice]


class ErrorBody(BaseModel):
    message: str
    type: str
    param: Optional[str] = None
    code: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorBody


def new_completion_id() -> str:
    return f"chatcmpl-{uuid4().hex}"


def build_response(
    completion_id: str,
    model: str,
    role: str,
    content: str,
    finish_reason: str,
    usage: Usage | tuple[int, int],
    created: int | None = None,
) -> ChatCompletionResponse:
    """Single-choice, non-streaming completion. `usage` may be (prompt, completion)."""
    if not isinstance(usage, Usage):
        prompt_tokens, completion_tokens = usage
        usage = Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return ChatCompletionResponse(
        id=completion_id,
        created=int(time.time()) if created is None else created,
        model=model,
        choices=[Choice(message=ResponseMessage(role=role, content=content), finish_reason=finish_reason)],
        usage=usage,
    )


class ChunkStream:
    """
    Builds the chunks of one streamed completion.

    All chunks share the same id, model and created timestamp.
    """

    def __init__(self, completion_id: str, model: str, created: int | None = None):
        self.completion_id = completion_id
        self.model = model
        self.created = int(time.time()) if created is None else created

    def _chunk(self, delta: ChunkDelta, finish_reason: str | None = None) -> ChatCompletionChunk:
        return ChatCompletionChunk(
            id=self.completion_id,
            created=self.created,
            model=self.model,
            choices=[ChunkChoice(delta=delta, finish_reason=finish_reason)],
        )

    def role_chunk(self, role: str = "assistant") -> ChatCompletionChunk:
        return self._chunk(ChunkDelta(role=role))

    def content_chunk(self, fragment: str) -> ChatCompletionChunk:
        return self._chunk(ChunkDelta(content=fragment))

    def final_chunk(self, finish_reason: str) -> ChatCompletionChunk:
        if not finish_reason:
            raise ValueError("final chunk needs a finish_reason")
        return self._chunk(ChunkDelta(), finish_reason)


def stream_chunks(
    completion_id: str,
    model: str,
    fragments: Iterable[str],
    finish_reason: str = "stop",
    created: int | None = None,
):
    """
    Lazily yield the chunk sequence for an in-progress generation.

    Empty fragments are skipped. The generator is one-shot: once the final
    chunk is produced it is exhausted.
    """
    stream = ChunkStream(completion_id, model, created)
    yield stream.role_chunk()
    for fragment in fragments:
        if fragment:
            yield stream.content_chunk(fragment)
    yield stream.final_chunk(finish_reason)


def build_error_response(
    message: str,
    kind: str,
    param: str | None = None,
    code: str | None = None,
) -> ErrorResponse:
    return ErrorResponse(error=ErrorBody(message=message, type=kind, param=param, code=code))


def error_from_exception(exc: Exception) -> ErrorResponse:
    """Map a ProtocolError or FormatError onto an OpenAI error envelope."""
    if isinstance(exc, ProtocolError):
        return build_error_response(str(exc), "invalid_request_error", exc.param, exc.code)
    if isinstance(exc, FormatError):
        return build_error_response(str(exc), "invalid_request_error", "messages", exc.code)
    return build_error_response(str(exc) or type(exc).__name__, "server_error")


# ---------------------------------------------------------------------------
# JSON encoding
# ---------------------------------------------------------------------------

def write_json(sink, value: Any, pretty: bool = False) -> None:
    """
    Encode value as JSON onto any text sink with a write() method.

    pretty=True uses 2-space indentation (chat files); otherwise the output is
    minified (wire responses). Non-ASCII text is written verbatim.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    if pretty:
        json.dump(value, sink, ensure_ascii=False, indent=2)
    else:
        json.dump(value, sink, ensure_ascii=False, separators=(",", ":"))


def to_json(value: Any, pretty: bool = False) -> str:
    buf = io.StringIO()
    write_json(buf, value, pretty=pretty)
    return buf.getvalue()


def encode_sse(value: Any) -> str:
    """Frame one JSON payload as a server-sent event."""
    return f"data: {to_json(value)}\n\n"
