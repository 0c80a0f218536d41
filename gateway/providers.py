from __future__ import annotations

import json
import logging
import secrets
import uuid
from dataclasses import dataclass, replace
from typing import Any, AsyncContextManager, AsyncIterator, Dict, List, Optional

import httpx

from .classify import ChatDeltaClassifier, Classifier, ReasoningClassifier, UpstreamEvent
from .config import Settings
from .errors import SessionBootstrapFailed
from .sse import DATA_PREFIX, aiter_lines
from .upstream import bearer, open_stream, post_json


logger = logging.getLogger("gateway.providers")

_NANO_ALPHABET = "useandom-26T198340PX75pxJACKVERYMINDBUSHWOLF_GQZbfghjklqvwyzrict"
SEARCH_KEYWORDS = ("search", "find", "查询", "搜索")


def nano_id(size: int = 21) -> str:
    return "".join(_NANO_ALPHABET[b & 63] for b in secrets.token_bytes(size))


def device_id() -> str:
    return f"{uuid.uuid4().hex}_{nano_id(20)}"


@dataclass(frozen=True)
class ChatContext:
    """Everything one upstream call needs; built per request."""

    user_text: str
    model: str
    temperature: float
    max_tokens: int
    conversation_id: Optional[str] = None
    device_id: Optional[str] = None

    def with_text(self, text: str) -> "ChatContext":
        return replace(self, user_text=text)


class ProviderAdapter:
    """One upstream: optional bootstrap, a streaming call, a line classifier."""

    name: str = "provider"
    line_prefix: Optional[str] = DATA_PREFIX

    def __init__(self, settings: Settings, client: httpx.AsyncClient, classifier: Classifier) -> None:
        self.settings = settings
        self.client = client
        self.classifier = classifier

    async def bootstrap(self, ctx: ChatContext) -> ChatContext:
        return ctx

    def stream_request(self, ctx: ChatContext) -> AsyncContextManager[httpx.Response]:
        raise NotImplementedError

    def classify(self, line: str) -> UpstreamEvent:
        return self.classifier.classify(line)

    async def events(self, response: httpx.Response) -> AsyncIterator[UpstreamEvent]:
        async for line in aiter_lines(response.aiter_bytes(), self.line_prefix):
            yield self.classify(line)


class ReasoningProvider(ProviderAdapter):
    name = "reasoning"

    def __init__(self, settings: Settings, client: httpx.AsyncClient) -> None:
        super().__init__(settings, client, ReasoningClassifier())

    def _headers(self, dev_id: str) -> Dict[str, str]:
        s = self.settings
        headers = {
            "Origin": s.reasoning_origin,
            "Referer": s.reasoning_origin.rstrip("/") + "/",
            "User-Agent": s.reasoning_user_agent,
            "deviceId": dev_id,
            "Content-Type": "application/json",
        }
        headers.update(bearer(s.reasoning_api_key))
        return headers

    async def bootstrap(self, ctx: ChatContext) -> ChatContext:
        """Create a conversation; raises unless a conversation id comes back."""
        dev_id = ctx.device_id or device_id()
        url = f"{self.settings.reasoning_base_url}{self.settings.reasoning_bootstrap_path}"
        data = await post_json(
            self.client,
            url,
            payload={"botCode": "AI_SEARCH"},
            headers=self._headers(dev_id),
            timeout=self.settings.reasoning_timeout,
            label="reasoning bootstrap",
        )
        if not isinstance(data, dict) or not data.get("success"):
            reason = data.get("errMessage") if isinstance(data, dict) else None
            raise SessionBootstrapFailed(f"conversation create failed: {reason or 'unexpected response'}")
        payload = data.get("data")
        conv_id = payload.get("conversationId") if isinstance(payload, dict) else None
        if not conv_id:
            raise SessionBootstrapFailed("conversation create returned no conversation id")
        logger.info("[proxy] reasoning conversation created: %s", conv_id)
        return replace(ctx, conversation_id=str(conv_id), device_id=dev_id)

    def user_action(self, ctx: ChatContext) -> str:
        actions = ["deep"]
        text = ctx.user_text.lower()
        if any(k in text for k in SEARCH_KEYWORDS) or ctx.model.lower().endswith("-search"):
            actions.append("online")
        return ",".join(actions)

    def stream_request(self, ctx: ChatContext) -> AsyncContextManager[httpx.Response]:
        payload: Dict[str, Any] = {
            "stream": True,
            "botCode": "AI_SEARCH",
            "userAction": self.user_action(ctx),
            "model": "deepseek",
            "conversationId": ctx.conversation_id,
            "question": ctx.user_text,
        }
        headers = {**self._headers(ctx.device_id or device_id()), "Accept": "text/event-stream"}
        return open_stream(
            self.client,
            f"{self.settings.reasoning_base_url}{self.settings.reasoning_chat_path}",
            payload=payload,
            headers=headers,
            timeout=self.settings.reasoning_timeout,
            label="reasoning stream",
        )


class AnsweringProvider(ProviderAdapter):
    name = "answer"

    def __init__(self, settings: Settings, client: httpx.AsyncClient) -> None:
        self.chat_classifier = ChatDeltaClassifier()
        super().__init__(settings, client, self.chat_classifier)

    def messages(self, ctx: ChatContext) -> List[Dict[str, Any]]:
        return [{"role": "user", "content": ctx.user_text}]

    def stream_request(self, ctx: ChatContext) -> AsyncContextManager[httpx.Response]:
        payload = {
            "model": self.settings.map_answer_model(ctx.model),
            "messages": self.messages(ctx),
            "temperature": ctx.temperature,
            "max_tokens": ctx.max_tokens,
            "stream": True,
        }
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            **bearer(self.settings.answer_api_key),
        }
        return open_stream(
            self.client,
            f"{self.settings.answer_base_url}/v1/chat/completions",
            payload=payload,
            headers=headers,
            timeout=self.settings.answer_timeout,
            label="answer stream",
        )

    async def events(self, response: httpx.Response) -> AsyncIterator[UpstreamEvent]:
        ctype = (response.headers.get("content-type") or "").lower()
        if "application/json" not in ctype:
            async for event in super().events(response):
                yield event
            return
        # Upstream ignored stream=true and answered in one body
        body = await response.aread()
        try:
            data = json.loads(body)
        except ValueError:
            logger.warning("[proxy] answer upstream returned unparseable JSON body")
            return
        for event in self.chat_classifier.classify_body(data):
            yield event
