import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import answer_line, make_settings, reasoning_answer_line, thinking_line
from gateway import main as main_mod
from gateway.composer import THINKING_CLOSE, THINKING_OPEN
from gateway.orchestrator import FALLBACK_NOTICE


@pytest.fixture
def client(monkeypatch, upstream):
    monkeypatch.setattr(main_mod, "settings", make_settings())
    monkeypatch.setattr(main_mod, "get_httpx_client", lambda _settings: upstream.client())
    return TestClient(main_mod.app)


def _chat(model="deepclaude", text="What is 6*7?", **extra):
    return {"model": model, "messages": [{"role": "user", "content": text}], **extra}


def _frames(body: str):
    return [f for f in body.split("\n\n") if f]


def _stream_deltas(frames):
    out = []
    for f in frames:
        if f.startswith("data: {"):
            payload = json.loads(f[len("data: "):])
            out.append(payload["choices"][0]["delta"].get("content"))
    return [d for d in out if d is not None]


@pytest.mark.parametrize(
    "body,param",
    [
        ({"model": "deepclaude", "messages": []}, "messages"),
        ({"model": "deepclaude", "messages": [{"role": "assistant", "content": "hi"}]}, "messages"),
        ({"model": "deepclaude", "messages": [{"role": "user", "content": "   "}]}, "messages"),
        (_chat(model="gpt-4o"), "model"),
    ],
)
def test_invalid_requests_get_400(client, upstream, body, param):
    resp = client.post("/v1/chat/completions", json=body)
    assert resp.status_code == 400
    err = resp.json()["error"]
    assert err["type"] == "invalid_request_error"
    assert err["param"] == param
    assert upstream.requests == []


def test_invalid_json_and_schema_errors_get_400(client):
    resp = client.post("/v1/chat/completions", content=b"{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Invalid JSON body"

    resp = client.post("/v1/chat/completions", json={"messages": []})
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_request_error"


def test_models_and_health(client):
    ids = [m["id"] for m in client.get("/v1/models").json()["data"]]
    assert ids == ["deepclaude", "deepseek-r1", "claude-3-7-sonnet-latest", "claude-3-5-sonnet-latest"]

    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["version"] == main_mod.VERSION

    assert client.get("/").json()["ok"] is True


def test_non_streaming_returns_aggregate(client, upstream):
    upstream.reasoning_lines = [thinking_line("six "), thinking_line("sevens"), reasoning_answer_line("42")]
    upstream.answer_lines = [answer_line("It is "), answer_line("42."), "data: [DONE]\n\n"]

    resp = client.post("/v1/chat/completions", json=_chat())

    assert resp.status_code == 200
    body = resp.json()
    assert body["object"] == "chat.completion"
    assert body["model"] == "deepclaude"
    assert body["id"].startswith("chatcmpl-")
    message = body["choices"][0]["message"]
    assert message["role"] == "assistant"
    assert message["content"] == f"{THINKING_OPEN}six sevens{THINKING_CLOSE}It is 42."
    assert body["usage"]["completion_tokens"] == len(message["content"])


def test_streaming_emits_chunks_then_done(client, upstream):
    upstream.reasoning_lines = [thinking_line("a"), thinking_line("b"), reasoning_answer_line("z")]
    upstream.answer_lines = [answer_line("x"), "data: [DONE]\n\n"]

    resp = client.post("/v1/chat/completions", json=_chat(stream=True))

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    frames = _frames(resp.text)
    assert frames[-1] == "data: [DONE]"
    payloads = [json.loads(f[len("data: "):]) for f in frames[:-1]]
    assert payloads[0]["choices"][0]["delta"] == {"role": "assistant"}
    assert payloads[-1]["choices"][0]["finish_reason"] == "stop"
    assert len({p["id"] for p in payloads}) == 1
    assert {p["model"] for p in payloads} == {"deepclaude"}
    assert _stream_deltas(frames) == [THINKING_OPEN, "a", "b", THINKING_CLOSE, "x"]


def test_streaming_fallback_carries_notice(client, upstream):
    upstream.bootstrap_failures = 3

    resp = client.post("/v1/chat/completions", json=_chat(stream=True))

    assert resp.status_code == 200
    assert _stream_deltas(_frames(resp.text)) == [FALLBACK_NOTICE, "x"]


def test_failure_before_streaming_maps_to_http_error(client, upstream):
    upstream.bootstrap_failures = 3
    upstream.answer_status = 500

    resp = client.post("/v1/chat/completions", json=_chat(stream=True))

    assert resp.status_code == 500
    err = resp.json()["error"]
    assert err["code"] == "upstream_rejected"
    assert err["type"] == "server_error"
    assert "answer upstream exploded" in err["message"]


def test_failure_after_streaming_started_sends_error_frame(client, upstream):
    upstream.reasoning_lines = [thinking_line("r")]
    upstream.answer_status = 500

    resp = client.post("/v1/chat/completions", json=_chat(stream=True))

    assert resp.status_code == 200
    frames = _frames(resp.text)
    assert _stream_deltas(frames) == [THINKING_OPEN, "r", THINKING_CLOSE]
    head, data = frames[-1].split("\n", 1)
    assert head == "event: error"
    assert json.loads(data[len("data: "):])["error"]["code"] == "upstream_rejected"
    assert "data: [DONE]" not in frames


def test_non_streaming_upstream_failure_maps_status(client, upstream):
    upstream.answer_status = 429

    resp = client.post("/v1/chat/completions", json=_chat(model="claude-3-5-sonnet-latest"))

    assert resp.status_code == 500
    assert resp.json()["error"]["type"] == "rate_limit_error"


@pytest.fixture
def broken_client(monkeypatch):
    def handler(request):
        raise RuntimeError("transport bug")

    monkeypatch.setattr(main_mod, "settings", make_settings())
    monkeypatch.setattr(
        main_mod, "get_httpx_client", lambda _settings: httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    return TestClient(main_mod.app)


@pytest.mark.parametrize("stream", [False, True])
def test_unexpected_error_returns_error_envelope(broken_client, stream):
    resp = broken_client.post("/v1/chat/completions", json=_chat(model="claude-3-5-sonnet-latest", stream=stream))

    assert resp.status_code == 500
    err = resp.json()["error"]
    assert err["type"] == "server_error"
    assert err["message"] == "Internal error: RuntimeError"
    assert set(err) == {"message", "type", "param", "code"}


def test_bad_delta_from_answer_upstream_is_skipped(client, upstream):
    upstream.answer_lines = [
        'data: {"choices":[{"delta":"oops"}]}\n\n',
        answer_line("fine"),
        "data: [DONE]\n\n",
    ]

    resp = client.post("/v1/chat/completions", json=_chat(model="claude-3-5-sonnet-latest"))

    assert resp.status_code == 200
    assert resp.json()["choices"][0]["message"]["content"] == "fine"
