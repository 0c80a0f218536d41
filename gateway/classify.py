from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, Union


logger = logging.getLogger("gateway.classify")


@dataclass(frozen=True)
class Thinking:
    text: str


@dataclass(frozen=True)
class Answer:
    text: str


@dataclass(frozen=True)
class Ignored:
    pass


@dataclass(frozen=True)
class Malformed:
    raw: str


UpstreamEvent = Union[Thinking, Answer, Ignored, Malformed]

IGNORED = Ignored()


class Classifier(Protocol):
    def classify(self, line: str) -> UpstreamEvent:
        ...


def _parse(line: str) -> Union[Dict[str, Any], Malformed]:
    try:
        data = json.loads(line)
    except ValueError:
        logger.debug("[proxy] unparseable upstream line: %s", line[:100])
        return Malformed(raw=line)
    if not isinstance(data, dict):
        return Malformed(raw=line)
    return data


class ReasoningClassifier:
    """Envelope rules of the reasoning provider's chat stream.

    ``content_type == "thinking"`` carries reasoning text; ``type == "answer"``
    with any other content type carries the final answer.
    """

    def classify(self, line: str) -> UpstreamEvent:
        data = _parse(line)
        if isinstance(data, Malformed):
            return data
        content = data.get("content")
        if not isinstance(content, str) or not content:
            return IGNORED
        if data.get("content_type") == "thinking":
            return Thinking(text=content)
        if data.get("type") == "answer":
            return Answer(text=content)
        return IGNORED


class ChatDeltaClassifier:
    """OpenAI chat-completion chunks, with Anthropic text deltas accepted too."""

    def classify(self, line: str) -> UpstreamEvent:
        if line == "[DONE]":
            return IGNORED
        data = _parse(line)
        if isinstance(data, Malformed):
            return data
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            delta = choices[0].get("delta") or {}
            if not isinstance(delta, dict):
                return Malformed(raw=line)
            reasoning = delta.get("reasoning_content")
            if isinstance(reasoning, str) and reasoning:
                return Thinking(text=reasoning)
            content = delta.get("content")
            if isinstance(content, str) and content:
                return Answer(text=content)
            return IGNORED
        if data.get("type") == "content_block_delta":
            delta = data.get("delta") or {}
            if not isinstance(delta, dict):
                return Malformed(raw=line)
            if delta.get("type") == "text_delta" and delta.get("text"):
                return Answer(text=str(delta["text"]))
            if delta.get("type") == "thinking_delta" and delta.get("thinking"):
                return Thinking(text=str(delta["thinking"]))
        return IGNORED

    def classify_body(self, body: Any) -> List[UpstreamEvent]:
        """Events equivalent to a non-streamed completion body."""
        events: List[UpstreamEvent] = []
        if not isinstance(body, dict):
            return events
        choices = body.get("choices")
        if not (isinstance(choices, list) and choices and isinstance(choices[0], dict)):
            return events
        message = choices[0].get("message") or {}
        if not isinstance(message, dict):
            return events
        reasoning = message.get("reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            events.append(Thinking(text=reasoning))
        content = message.get("content")
        if isinstance(content, str) and content:
            events.append(Answer(text=content))
        return events
