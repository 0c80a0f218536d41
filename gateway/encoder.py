from __future__ import annotations

import json
from typing import Any, Dict, Optional

from .composer import OutboundChunk, StreamSession
from .errors import GatewayError
from .schemas.openai import (
    AssistantMessage,
    ChatCompletionChunk,
    ChatCompletionResponse,
    Choice,
    ChunkChoice,
    ChunkDelta,
    Usage,
)


DONE_FRAME = b"data: [DONE]\n\n"


def sse(data: Dict[str, Any], event: Optional[str] = None) -> bytes:
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {json.dumps(data, ensure_ascii=False)}\n\n".encode()


def chunk_payload(chunk: OutboundChunk, model: str) -> Dict[str, Any]:
    delta = ChunkDelta(role=chunk.role, content=chunk.content)
    frame = ChatCompletionChunk(
        id=chunk.session_id,
        created=chunk.created_at,
        model=model,
        choices=[ChunkChoice(delta=delta, finish_reason=chunk.finish_reason)],
    ).model_dump()
    # Delta carries only the fields set on this chunk; finish_reason is always present
    frame["choices"][0]["delta"] = delta.model_dump(exclude_none=True)
    return frame


def encode_chunk(chunk: OutboundChunk, model: str) -> bytes:
    return sse(chunk_payload(chunk, model))


def encode_error(err: GatewayError) -> bytes:
    return sse(err.to_envelope(), event="error")


def usage_for(prompt: str, content: str) -> Usage:
    # Character counts stand in for tokens
    return Usage(
        prompt_tokens=len(prompt),
        completion_tokens=len(content),
        total_tokens=len(prompt) + len(content),
    )


def build_completion(session: StreamSession, model: str, prompt: str) -> Dict[str, Any]:
    """Aggregate body: every emitted delta concatenated in emission order."""
    content = session.content
    resp = ChatCompletionResponse(
        id=session.id,
        created=session.created_at,
        model=model,
        choices=[Choice(message=AssistantMessage(content=content), finish_reason="stop")],
        usage=usage_for(prompt, content),
    )
    return resp.model_dump()
