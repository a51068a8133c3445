"""
Tests for the FastAPI app: /v1/chat/completions (plain and streaming),
error envelopes, /v1/models and /health.
"""

import json

import pytest

from chatline.engines import BaseEngine, EchoEngine, EngineError, Fragment


class RecordingEngine(EchoEngine):
    def __init__(self):
        super().__init__(name="rec", model="rec-model")
        self.prompts = []

    async def generate(self, prompt, params=None):
        self.prompts.append(prompt)
        return await super().generate(prompt, params)


class BrokenEngine(BaseEngine):
    def __init__(self):
        super().__init__("broken", "broken-model")

    async def generate(self, prompt, params=None):
        raise EngineError("upstream unavailable")

    async def generate_stream(self, prompt, params=None):
        yield Fragment(text="half")
        raise EngineError("upstream dropped")

    async def health_check(self):
        return False


@pytest.fixture
def client(tmp_path):
    """Test client over an echo engine with a known config."""
    from fastapi.testclient import TestClient
    from chatline import config as cfg_mod

    cfg_data = cfg_mod._merge(cfg_mod.DEFAULTS, {
        "engine": {"provider": "echo", "model": "echo-1"},
        "chat": {"system_prompt": "DEFAULT SYSTEM"},
        "logging": {"level": "WARNING"},
    })
    orig_config = cfg_mod._config
    cfg_mod._config = cfg_data

    from chatline.main import app
    with TestClient(app) as c:
        yield c

    cfg_mod._config = orig_config


def _chat(client, body, **kwargs):
    return client.post("/v1/chat/completions", content=json.dumps(body), **kwargs)


def _events(text: str) -> list[str]:
    return [line[len("data: "):] for line in text.split("\n\n") if line.startswith("data: ")]


# ---------------------------------------------------------------------------
# Non-streaming
# ---------------------------------------------------------------------------

def test_completion(client):
    """Non-streaming completion returns a full chat.completion object."""
    r = _chat(client, {"messages": [{"role": "user", "content": "Hello, world"}]})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/json")
    data = r.json()
    assert data["object"] == "chat.completion"
    assert data["id"].startswith("chatcmpl-")
    assert data["model"] == "echo-1"
    assert data["choices"][0]["message"] == {"role": "assistant", "content": "Hello, world"}
    assert data["choices"][0]["finish_reason"] == "stop"
    usage = data["usage"]
    assert usage["total_tokens"] == usage["prompt_tokens"] + usage["completion_tokens"]


def test_completion_is_minified(client):
    """Wire JSON has no padding whitespace."""
    r = _chat(client, {"messages": [{"role": "user", "content": "x"}]})
    assert '": ' not in r.text
    assert ", " not in r.text


def test_completion_echoes_requested_model(client):
    """The requested model name is echoed back."""
    r = _chat(client, {"model": "gpt-4o", "messages": [{"role": "user", "content": "x"}]})
    assert r.json()["model"] == "gpt-4o"


def test_completion_max_tokens(client):
    """max_tokens reaches the engine and shows in finish_reason."""
    r = _chat(client, {"max_tokens": 1, "messages": [{"role": "user", "content": "one two"}]})
    data = r.json()
    assert data["choices"][0]["message"]["content"] == "one "
    assert data["choices"][0]["finish_reason"] == "length"


def test_unknown_fields_ignored(client):
    """Unknown request fields do not cause errors."""
    r = _chat(client, {"foo": 1, "n": 2, "messages": [{"role": "user", "content": "hi"}]})
    assert r.status_code == 200


def test_default_system_prompt_applied(client, monkeypatch):
    """The configured system prompt is added when the request has none."""
    engine = RecordingEngine()
    monkeypatch.setattr("chatline.main.engine", engine)
    _chat(client, {"messages": [{"role": "user", "content": "hi"}]})
    assert engine.prompts[-1].startswith("<|im_start|>system\nDEFAULT SYSTEM<|im_end|>")


def test_request_system_prompt_wins(client, monkeypatch):
    """A request system prompt replaces the default; tool messages are dropped."""
    engine = RecordingEngine()
    monkeypatch.setattr("chatline.main.engine", engine)
    _chat(client, {"messages": [
        {"role": "system", "content": "mine"},
        {"role": "user", "content": "hi"},
        {"role": "tool", "content": "ignored"},
    ]})
    prompt = engine.prompts[-1]
    assert "DEFAULT SYSTEM" not in prompt
    assert prompt.startswith("<|im_start|>system\nmine<|im_end|>")
    assert "ignored" not in prompt
    assert "tool" not in prompt


def test_history_trimmed_to_context_budget(client, monkeypatch):
    """Oldest turns are dropped to fit context.max_tokens; system prompt and new turn stay."""
    from chatline.config import get_config

    monkeypatch.setitem(get_config()["context"], "max_tokens", 40)
    engine = RecordingEngine()
    monkeypatch.setattr("chatline.main.engine", engine)

    r = _chat(client, {"messages": [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "old question " + "x" * 80},
        {"role": "assistant", "content": "old answer " + "y" * 80},
        {"role": "user", "content": "recent question"},
    ]})
    assert r.status_code == 200
    assert r.json()["choices"][0]["message"]["content"] == "recent question"

    prompt = engine.prompts[-1]
    assert prompt.startswith("<|im_start|>system\nsys<|im_end|>")
    assert "recent question" in prompt
    assert "old question" not in prompt
    assert "old answer" not in prompt


def test_history_kept_without_budget(client, monkeypatch):
    """With max_tokens 0 the full history reaches the engine."""
    engine = RecordingEngine()
    monkeypatch.setattr("chatline.main.engine", engine)
    _chat(client, {"messages": [
        {"role": "user", "content": "old question " + "x" * 80},
        {"role": "assistant", "content": "old answer"},
        {"role": "user", "content": "recent question"},
    ]})
    prompt = engine.prompts[-1]
    assert "old question" in prompt
    assert "old answer" in prompt


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

def test_streaming(client):
    """Streaming returns role, content and finish chunks, then [DONE]."""
    r = _chat(client, {"stream": True, "messages": [{"role": "user", "content": "Hello, world"}]})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")

    events = _events(r.text)
    assert events[-1] == "[DONE]"
    chunks = [json.loads(e) for e in events[:-1]]

    assert chunks[0]["choices"][0]["delta"] == {"role": "assistant"}
    assert chunks[-1]["choices"][0]["delta"] == {}
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    middle = chunks[1:-1]
    assert "".join(c["choices"][0]["delta"]["content"] for c in middle) == "Hello, world"
    assert len({c["id"] for c in chunks}) == 1
    assert all(c["object"] == "chat.completion.chunk" for c in chunks)


def test_streaming_engine_failure(client, monkeypatch):
    """A mid-stream failure ends with an error event and [DONE]."""
    monkeypatch.setattr("chatline.main.engine", BrokenEngine())
    r = _chat(client, {"stream": True, "messages": [{"role": "user", "content": "hi"}]})
    events = _events(r.text)
    assert events[-1] == "[DONE]"
    error = json.loads(events[-2])
    assert error["error"]["type"] == "server_error"
    assert "upstream dropped" in error["error"]["message"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

def test_invalid_json(client):
    """Malformed JSON is a 400 invalid_json."""
    r = client.post("/v1/chat/completions", content="{not json")
    assert r.status_code == 400
    err = r.json()["error"]
    assert err["type"] == "invalid_request_error"
    assert err["code"] == "invalid_json"


def test_missing_messages_field(client):
    """A body without messages is a decode failure."""
    r = _chat(client, {"model": "x"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_json"


def test_empty_messages(client):
    """An empty messages array is a 400 missing_messages."""
    r = _chat(client, {"messages": []})
    assert r.status_code == 400
    err = r.json()["error"]
    assert err["code"] == "missing_messages"
    assert err["param"] == "messages"


def test_invalid_role(client):
    """Unknown roles are a 400 invalid_role."""
    r = _chat(client, {"messages": [{"role": "wizard", "content": "hi"}]})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_role"


def test_nul_in_content(client):
    """NUL characters in content are a 400."""
    r = _chat(client, {"messages": [{"role": "user", "content": "a\u0000b"}]})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "nul_byte_in_string"


def test_lone_surrogate_in_content(client):
    """Content that is not UTF-8 text never reaches the engine."""
    r = client.post(
        "/v1/chat/completions",
        content='{"messages": [{"role": "user", "content": "a\\ud800b"}]}',
    )
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_request_error"


def test_engine_failure(client, monkeypatch):
    """Engine errors are a 502 server_error."""
    monkeypatch.setattr("chatline.main.engine", BrokenEngine())
    r = _chat(client, {"messages": [{"role": "user", "content": "hi"}]})
    assert r.status_code == 502
    err = r.json()["error"]
    assert err["type"] == "server_error"
    assert err["code"] == "engine_error"


# ---------------------------------------------------------------------------
# Other endpoints
# ---------------------------------------------------------------------------

def test_models(client):
    """The configured model is listed."""
    data = client.get("/v1/models").json()
    assert data["object"] == "list"
    assert [m["id"] for m in data["data"]] == ["echo-1"]


def test_health(client, monkeypatch):
    """Health reflects the engine's health check."""
    assert client.get("/health").json()["status"] == "ok"
    monkeypatch.setattr("chatline.main.engine", BrokenEngine())
    assert client.get("/health").json()["status"] == "degraded"
