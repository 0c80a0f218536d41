import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from gateway.config import Settings
from gateway.orchestrator import Orchestrator
from gateway.providers import AnsweringProvider, ChatContext, ReasoningProvider


REASONING_BASE = "http://reasoning.test"
ANSWER_BASE = "http://answer.test"


def thinking_line(text: str) -> str:
    return "data: " + json.dumps({"type": "answer", "content_type": "thinking", "content": text}, ensure_ascii=False) + "\n"


def reasoning_answer_line(text: str) -> str:
    return "data: " + json.dumps({"type": "answer", "content_type": "text", "content": text}, ensure_ascii=False) + "\n"


def answer_line(text: str) -> str:
    chunk = {"id": "up-1", "object": "chat.completion.chunk", "choices": [{"index": 0, "delta": {"content": text}}]}
    return "data: " + json.dumps(chunk, ensure_ascii=False) + "\n\n"


class RecordingStream(httpx.AsyncByteStream):
    """Response body that remembers whether the gateway closed it."""

    def __init__(self, chunks: List[bytes], error: Optional[Exception] = None, stall_after: Optional[int] = None) -> None:
        self.chunks = chunks
        self.error = error
        self.stall_after = stall_after
        self.closed = False
        self.sent = 0

    async def __aiter__(self):
        for chunk in self.chunks:
            if self.stall_after is not None and self.sent >= self.stall_after:
                await asyncio.sleep(3600)
            self.sent += 1
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


class FakeUpstream:
    """Both providers behind one MockTransport, scripted per test."""

    def __init__(self) -> None:
        self.bootstrap_failures = 0
        self.bootstrap_calls = 0
        self.bootstrap_body: Dict[str, Any] = {"success": True, "data": {"conversationId": "conv-1"}}
        self.reasoning_lines: List[str] = []
        self.reasoning_error: Optional[str] = None
        self.reasoning_stall_after: Optional[int] = None
        self.answer_lines: List[str] = [answer_line("x"), "data: [DONE]\n\n"]
        self.answer_status = 200
        self.answer_json: Optional[Dict[str, Any]] = None
        self.answer_error: Optional[str] = None
        self.requests: List[tuple] = []
        self.streams: Dict[str, RecordingStream] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content or b"{}")
        self.requests.append((path, body))
        if path.endswith("/conversationApi/v1/create"):
            self.bootstrap_calls += 1
            if self.bootstrap_calls <= self.bootstrap_failures:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=self.bootstrap_body)
        if path.endswith("/chatApi/v1/chat"):
            if self.reasoning_error == "timeout":
                raise httpx.ReadTimeout("read timed out", request=request)
            stream = RecordingStream([l.encode() for l in self.reasoning_lines], stall_after=self.reasoning_stall_after)
            self.streams["reasoning"] = stream
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=stream)
        if path == "/v1/chat/completions":
            if self.answer_error == "connect":
                raise httpx.ConnectError("connection refused", request=request)
            if self.answer_status >= 400:
                return httpx.Response(self.answer_status, json={"error": {"message": "answer upstream exploded"}})
            if self.answer_json is not None:
                return httpx.Response(200, json=self.answer_json)
            error = httpx.ReadTimeout("read timed out", request=request) if self.answer_error == "read" else None
            stream = RecordingStream([l.encode() for l in self.answer_lines], error=error)
            self.streams["answer"] = stream
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=stream)
        return httpx.Response(404, json={"error": {"message": "no route"}})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def answer_requests(self) -> List[Dict[str, Any]]:
        return [b for p, b in self.requests if p == "/v1/chat/completions"]

    def reasoning_requests(self) -> List[Dict[str, Any]]:
        return [b for p, b in self.requests if p.endswith("/chatApi/v1/chat")]


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        reasoning_base_url=REASONING_BASE,
        answer_base_url=ANSWER_BASE,
        answer_api_key="sk-test",
        reasoning_timeout=5.0,
        reasoning_stage_timeout=5.0,
        answer_timeout=5.0,
        phase_pause_seconds=0.0,
        http2=False,
    )
    values.update(overrides)
    return Settings(**values)


def make_orchestrator(upstream: FakeUpstream, settings: Optional[Settings] = None, **kw: Any) -> Orchestrator:
    settings = settings or make_settings()
    client = upstream.client()
    return Orchestrator(settings, ReasoningProvider(settings, client), AnsweringProvider(settings, client), **kw)


def make_ctx(text: str = "What is 6*7?", model: str = "deepclaude") -> ChatContext:
    return ChatContext(user_text=text, model=model, temperature=0.7, max_tokens=256)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()
