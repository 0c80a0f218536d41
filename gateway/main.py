from __future__ import annotations

import logging
import sys
import time
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .composer import OutboundChunk
from .config import settings
from .encoder import DONE_FRAME, build_completion, encode_chunk, encode_error
from .errors import DownstreamDisconnected, GatewayError, InvalidRequest, error_envelope
from .orchestrator import Orchestrator, resolve_route
from .providers import AnsweringProvider, ChatContext, ReasoningProvider
from .schemas.openai import ChatCompletionRequest, ModelCard, ModelList
from .upstream import close_httpx_client, get_httpx_client


VERSION = "1.0.0"

logging.basicConfig(
    stream=sys.stderr,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logging.getLogger("gateway").setLevel(logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger("gateway.main")

app = FastAPI(title="Reasoning/Answer Hybrid Gateway")


def _user_text(req: ChatCompletionRequest) -> str:
    if not req.messages:
        raise InvalidRequest("messages must be a non-empty array", param="messages")
    last = req.messages[-1]
    if last.role != "user":
        raise InvalidRequest("The last message must be a user message", param="messages")
    text = last.text()
    if not text.strip():
        raise InvalidRequest("The last user message has no text content", param="messages")
    return text


def _invalid(message: str, param: Optional[str] = None) -> JSONResponse:
    return JSONResponse(status_code=400, content=error_envelope(400, message, param=param))


def _internal_error(e: Exception) -> JSONResponse:
    err = GatewayError(f"Internal error: {type(e).__name__}")
    return JSONResponse(status_code=err.status_code, content=err.to_envelope())


def _build_orchestrator(request: Request) -> Orchestrator:
    client = get_httpx_client(settings)
    return Orchestrator(
        settings,
        ReasoningProvider(settings, client),
        AnsweringProvider(settings, client),
        is_disconnected=request.is_disconnected,
    )


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    try:
        body = await request.json()
    except ValueError:
        return _invalid("Invalid JSON body")
    try:
        parsed = ChatCompletionRequest.model_validate(body)
    except ValidationError as e:
        return _invalid(str(e))
    try:
        user_text = _user_text(parsed)
        route = resolve_route(settings, parsed.model)
    except InvalidRequest as e:
        return JSONResponse(status_code=e.status_code, content=e.to_envelope())

    ctx = ChatContext(
        user_text=user_text,
        model=parsed.model,
        temperature=settings.default_temperature if parsed.temperature is None else parsed.temperature,
        max_tokens=parsed.max_tokens or settings.default_max_tokens,
    )
    orch = _build_orchestrator(request)
    # Echo the requested model id outward
    display_model = parsed.model
    chunks = orch.run(route, ctx)
    logger.info("[proxy] session %s: model=%s route=%s stream=%s", orch.session.id, parsed.model, route.value, bool(parsed.stream))

    if not parsed.stream:
        try:
            async for _ in chunks:
                pass
        except DownstreamDisconnected:
            logger.info("[proxy] session %s: client disconnected", orch.session.id)
            return Response(status_code=499)
        except GatewayError as e:
            logger.error("[proxy] session %s failed: %s", orch.session.id, e)
            return JSONResponse(status_code=e.status_code, content=e.to_envelope())
        except Exception as e:
            logger.exception("[proxy] session %s: unexpected error", orch.session.id)
            return _internal_error(e)
        return JSONResponse(content=build_completion(orch.session, display_model, user_text))

    # Pull the first chunk before committing to a 200 so that failures opening
    # the upstream still map to an HTTP error response.
    first: Optional[OutboundChunk] = None
    try:
        first = await chunks.__anext__()
    except StopAsyncIteration:
        first = None
    except DownstreamDisconnected:
        await chunks.aclose()
        return Response(status_code=499)
    except GatewayError as e:
        logger.error("[proxy] session %s failed before streaming: %s", orch.session.id, e)
        await chunks.aclose()
        return JSONResponse(status_code=e.status_code, content=e.to_envelope())
    except Exception as e:
        logger.exception("[proxy] session %s: unexpected error before streaming", orch.session.id)
        await chunks.aclose()
        return _internal_error(e)

    async def event_stream() -> AsyncIterator[bytes]:
        try:
            if first is not None:
                yield encode_chunk(first, display_model)
            async for chunk in chunks:
                yield encode_chunk(chunk, display_model)
            yield DONE_FRAME
            logger.info("[proxy] session %s: stream complete", orch.session.id)
        except DownstreamDisconnected:
            logger.info("[proxy] session %s: client disconnected, upstream closed", orch.session.id)
        except GatewayError as e:
            logger.error("[proxy] session %s: stream failed: %s", orch.session.id, e)
            yield encode_error(e)
        except Exception as e:
            logger.exception("[proxy] session %s: unexpected stream error", orch.session.id)
            yield encode_error(GatewayError(f"Internal error: {type(e).__name__}"))
        finally:
            await chunks.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/")
async def root():
    return {"ok": True, "reasoning": settings.reasoning_base_url, "answer": settings.answer_base_url}


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/v1/models")
async def list_models():
    now = int(time.time())
    cards = [
        ModelCard(id=settings.hybrid_model_id, created=now, owned_by="hybrid"),
        ModelCard(id=settings.reasoning_model_id, created=now, owned_by="deepseek"),
    ]
    cards.extend(ModelCard(id=m, created=now, owned_by="anthropic") for m in settings.answer_models)
    return ModelList(data=cards).model_dump()


@app.on_event("startup")
async def _startup_client():
    # Initialize shared HTTP client eagerly to establish pools
    _ = get_httpx_client(settings)


@app.on_event("shutdown")
async def _shutdown_close_client():
    await close_httpx_client()
