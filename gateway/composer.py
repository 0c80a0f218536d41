"""Turns classified upstream events into a bracketed outbound chunk sequence.

A session moves ``IDLE -> THINKING -> ANSWER -> DONE``. The first thinking
delta is preceded by an open marker and the thinking block is closed exactly
once, either by the first answer delta, by an explicit stage boundary, or at
end of stream. ``DONE`` is terminal.
"""
from __future__ import annotations

import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from .classify import Answer, Thinking, UpstreamEvent


logger = logging.getLogger("gateway.composer")

THINKING_OPEN = "<thinking>\n"
THINKING_CLOSE = "\n</thinking>\n\n"


class Phase(enum.Enum):
    IDLE = "idle"
    THINKING = "thinking"
    ANSWER = "answer"
    DONE = "done"


class ChunkKind(str, enum.Enum):
    ROLE = "role"
    THINKING_OPEN = "thinking_open"
    THINKING = "thinking"
    THINKING_CLOSE = "thinking_close"
    ANSWER = "answer"
    STOP = "stop"


def _new_session_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


@dataclass
class StreamSession:
    id: str = field(default_factory=_new_session_id)
    created_at: int = field(default_factory=lambda: int(time.time()))
    phase: Phase = Phase.IDLE
    thinking_parts: List[str] = field(default_factory=list)
    answer_parts: List[str] = field(default_factory=list)
    # Every content string sent downstream, markers included, in order
    transcript: List[str] = field(default_factory=list)
    thinking_opened: bool = False
    thinking_closed: bool = False
    started: bool = False

    @property
    def thinking_text(self) -> str:
        return "".join(self.thinking_parts)

    @property
    def answer_text(self) -> str:
        return "".join(self.answer_parts)

    @property
    def content(self) -> str:
        return "".join(self.transcript)


@dataclass(frozen=True)
class OutboundChunk:
    session_id: str
    created_at: int
    kind: ChunkKind
    role: Optional[str] = None
    content: Optional[str] = None
    finish_reason: Optional[str] = None


class PhaseComposer:
    def __init__(self, session: Optional[StreamSession] = None) -> None:
        self.session = session or StreamSession()

    @property
    def phase(self) -> Phase:
        return self.session.phase

    def _chunk(self, kind: ChunkKind, **kw) -> OutboundChunk:
        if kw.get("content") is not None:
            self.session.transcript.append(kw["content"])
        return OutboundChunk(self.session.id, self.session.created_at, kind, **kw)

    def start(self) -> List[OutboundChunk]:
        """Role-only opening chunk; emitted once per session."""
        if self.session.started or self.phase is Phase.DONE:
            return []
        self.session.started = True
        return [self._chunk(ChunkKind.ROLE, role="assistant")]

    def feed(self, event: UpstreamEvent) -> List[OutboundChunk]:
        s = self.session
        if s.phase is Phase.DONE:
            logger.debug("[proxy] session %s already done; dropping %s", s.id, type(event).__name__)
            return []
        out = self.start()
        if isinstance(event, Thinking):
            if s.phase is Phase.ANSWER:
                # thinking after the answer began cannot be bracketed again
                logger.debug("[proxy] session %s: late thinking delta dropped", s.id)
                return out
            if s.phase is Phase.IDLE:
                s.phase = Phase.THINKING
                s.thinking_opened = True
                out.append(self._chunk(ChunkKind.THINKING_OPEN, content=THINKING_OPEN))
            s.thinking_parts.append(event.text)
            out.append(self._chunk(ChunkKind.THINKING, content=event.text))
            return out
        if isinstance(event, Answer):
            out.extend(self._close_thinking())
            s.phase = Phase.ANSWER
            s.answer_parts.append(event.text)
            out.append(self._chunk(ChunkKind.ANSWER, content=event.text))
            return out
        # Ignored / Malformed are inert
        return out

    def end_thinking(self) -> List[OutboundChunk]:
        """Stage boundary: close an open thinking block and expect answers next."""
        s = self.session
        if s.phase is Phase.DONE:
            return []
        out = self._close_thinking()
        if s.phase is Phase.IDLE and not out:
            return out
        s.phase = Phase.ANSWER
        return out

    def finish(self, finish_reason: str = "stop") -> List[OutboundChunk]:
        s = self.session
        if s.phase is Phase.DONE:
            return []
        out = self.start()
        out.extend(self._close_thinking())
        s.phase = Phase.DONE
        out.append(self._chunk(ChunkKind.STOP, finish_reason=finish_reason))
        return out

    def _close_thinking(self) -> List[OutboundChunk]:
        s = self.session
        if s.phase is not Phase.THINKING or s.thinking_closed:
            return []
        s.thinking_closed = True
        return [self._chunk(ChunkKind.THINKING_CLOSE, content=THINKING_CLOSE)]
