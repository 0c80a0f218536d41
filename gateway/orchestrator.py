"""Sequencing of upstream calls for one chat-completion request.

Three flows share one ``PhaseComposer`` per request:

* direct: a single provider stream, composed as-is;
* hybrid: the reasoning provider's thinking is streamed live, then handed to
  the answering provider as context for the final answer;
* fallback: the answering provider alone, behind a visible notice, used when
  the hybrid flow cannot obtain any reasoning.

Only the reasoning bootstrap is retried. A stream that has started is never
retried.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from .classify import Answer
from .composer import OutboundChunk, PhaseComposer, StreamSession
from .config import Settings
from .errors import (
    DownstreamDisconnected,
    EmptyReasoningResult,
    GatewayError,
    InvalidRequest,
    SessionBootstrapFailed,
    UpstreamRejected,
    UpstreamUnavailable,
)
from .providers import ChatContext, ProviderAdapter


logger = logging.getLogger("gateway.orchestrator")

FALLBACK_NOTICE = "[Notice: the reasoning stage is unavailable; answering directly]\n\n"

DisconnectProbe = Callable[[], Awaitable[bool]]


class Route(enum.Enum):
    HYBRID = "hybrid"
    REASONING = "reasoning"
    ANSWER = "answer"


def resolve_route(settings: Settings, model: str) -> Route:
    model_id = (model or "").strip().lower()
    if model_id == settings.hybrid_model_id:
        return Route.HYBRID
    if model_id == settings.reasoning_model_id or "deepseek" in model_id:
        return Route.REASONING
    if "claude" in model_id or model_id in (m.lower() for m in settings.answer_models):
        return Route.ANSWER
    raise InvalidRequest(f"Unsupported model: {model}", param="model")


def hybrid_prompt(user_text: str, thinking: str) -> str:
    return (
        f"Here's my original input:\n{user_text}\n\n"
        f"Here's the reasoning from another model:\n{thinking.strip()}\n\n"
        "Based on this reasoning, please provide your response:"
    )


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        reasoning: ProviderAdapter,
        answering: ProviderAdapter,
        *,
        is_disconnected: Optional[DisconnectProbe] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.reasoning = reasoning
        self.answering = answering
        self.is_disconnected = is_disconnected
        self.sleep = sleep
        self.composer = PhaseComposer()

    @property
    def session(self) -> StreamSession:
        return self.composer.session

    def run(self, route: Route, ctx: ChatContext) -> AsyncIterator[OutboundChunk]:
        if route is Route.HYBRID:
            return self.run_hybrid(ctx)
        if route is Route.REASONING:
            return self.run_direct(self.reasoning, ctx)
        return self.run_direct(self.answering, ctx)

    async def _check_client(self) -> None:
        if self.is_disconnected is not None and await self.is_disconnected():
            raise DownstreamDisconnected("client disconnected")

    async def _stream_into(
        self, provider: ProviderAdapter, ctx: ChatContext, notice: Optional[str] = None
    ) -> AsyncIterator[OutboundChunk]:
        logger.debug("[proxy] session %s: streaming from %s provider", self.session.id, provider.name)
        async with provider.stream_request(ctx) as response:
            for chunk in self.composer.start():
                yield chunk
            if notice:
                for chunk in self.composer.feed(Answer(text=notice)):
                    yield chunk
            async for event in provider.events(response):
                await self._check_client()
                for chunk in self.composer.feed(event):
                    yield chunk

    async def run_direct(self, provider: ProviderAdapter, ctx: ChatContext) -> AsyncIterator[OutboundChunk]:
        if provider is self.reasoning:
            ctx = await self.bootstrap_reasoning(ctx)
        async for chunk in self._stream_into(provider, ctx):
            yield chunk
        for chunk in self.composer.finish():
            yield chunk

    async def run_fallback(self, ctx: ChatContext) -> AsyncIterator[OutboundChunk]:
        logger.warning("[proxy] session %s: falling back to direct answer", self.session.id)
        async for chunk in self._stream_into(self.answering, ctx, notice=FALLBACK_NOTICE):
            yield chunk
        for chunk in self.composer.finish():
            yield chunk

    async def bootstrap_reasoning(self, ctx: ChatContext) -> ChatContext:
        attempts = self.settings.reasoning_bootstrap_retries + 1
        last: Optional[Exception] = None
        for attempt in range(attempts):
            if attempt:
                logger.info("[proxy] retrying reasoning bootstrap (%d/%d)", attempt, attempts - 1)
            try:
                return await self.reasoning.bootstrap(ctx)
            except (UpstreamUnavailable, UpstreamRejected, SessionBootstrapFailed) as e:
                last = e
                logger.warning(
                    "[proxy] reasoning bootstrap attempt %d/%d failed: %s", attempt + 1, attempts, e
                )
        raise SessionBootstrapFailed(f"reasoning bootstrap failed after {attempts} attempts: {last}")

    async def _reasoning_stage(self, ctx: ChatContext) -> AsyncIterator[OutboundChunk]:
        """Stream thinking deltas live until the answer begins, the stream ends or the budget runs out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.reasoning_stage_timeout
        async with self.reasoning.stream_request(ctx) as response:
            for chunk in self.composer.start():
                yield chunk
            events = self.reasoning.events(response)
            try:
                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        logger.warning("[proxy] session %s: reasoning stage budget exhausted", self.session.id)
                        break
                    try:
                        event = await asyncio.wait_for(events.__anext__(), remaining)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError:
                        logger.warning("[proxy] session %s: reasoning stage budget exhausted", self.session.id)
                        break
                    await self._check_client()
                    if isinstance(event, Answer):
                        if self.session.thinking_parts:
                            break
                        continue
                    for chunk in self.composer.feed(event):
                        yield chunk
            finally:
                await events.aclose()

    async def run_hybrid(self, ctx: ChatContext) -> AsyncIterator[OutboundChunk]:
        reason: Optional[GatewayError] = None
        try:
            rctx = await self.bootstrap_reasoning(ctx)
        except SessionBootstrapFailed as e:
            reason = e

        if reason is None:
            try:
                async for chunk in self._reasoning_stage(rctx):
                    yield chunk
            except (UpstreamUnavailable, UpstreamRejected) as e:
                if self.session.thinking_parts:
                    # thinking already reached the client
                    raise
                reason = e

        if reason is None:
            for chunk in self.composer.end_thinking():
                yield chunk
            if not self.session.thinking_text:
                reason = EmptyReasoningResult("reasoning stage produced no thinking content")

        if reason is not None:
            logger.error("[proxy] session %s: %s: %s", self.session.id, type(reason).__name__, reason)
            async for chunk in self.run_fallback(ctx):
                yield chunk
            return

        thinking = self.session.thinking_text
        logger.info("[proxy] session %s: collected %d chars of thinking", self.session.id, len(thinking))
        if self.settings.phase_pause_seconds > 0:
            await self.sleep(self.settings.phase_pause_seconds)
        await self._check_client()

        async for chunk in self._stream_into(self.answering, ctx.with_text(hybrid_prompt(ctx.user_text, thinking))):
            yield chunk
        for chunk in self.composer.finish():
            yield chunk
