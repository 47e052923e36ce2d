"""Agent event decoding for the `claude --output-format stream-json` line protocol."""

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Union

logger = logging.getLogger("claude_proxy.events")


@dataclass
class StreamEvent:
    """A raw API streaming event relayed by the agent (``type: stream_event``).

    ``kind`` is the inner event's type: message_start, message_delta,
    content_block_start, content_block_delta, content_block_stop,
    message_stop.
    """

    kind: str
    delta: dict = field(default_factory=dict)
    message: dict = field(default_factory=dict)
    usage: dict = field(default_factory=dict)
    session_id: str | None = None

    @property
    def text_delta(self) -> str:
        if self.kind != "content_block_delta" or self.delta.get("type") != "text_delta":
            return ""
        text = self.delta.get("text")
        return text if isinstance(text, str) else ""

    @property
    def stop_reason(self) -> str | None:
        if self.kind != "message_delta":
            return None
        return self.delta.get("stop_reason") or None


@dataclass
class ResultEvent:
    """Terminal event of one invocation, carrying the agent session id."""

    session_id: str | None = None
    is_error: bool = False
    result: str = ""
    num_turns: int | None = None
    duration_ms: int | None = None
    total_cost_usd: float | None = None


@dataclass
class SystemEvent:
    subtype: str = ""
    session_id: str | None = None
    data: dict = field(default_factory=dict)


@dataclass
class AssistantEvent:
    message: dict = field(default_factory=dict)
    session_id: str | None = None


@dataclass
class UnknownEvent:
    type: str
    data: dict = field(default_factory=dict)


AgentEvent = Union[StreamEvent, ResultEvent, SystemEvent, AssistantEvent, UnknownEvent]


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _as_str(value) -> str | None:
    return value if isinstance(value, str) and value else None


def from_json(obj: dict) -> AgentEvent:
    """Map one decoded JSON object onto the matching event variant."""
    etype = obj.get("type")
    session_id = _as_str(obj.get("session_id"))

    if etype == "stream_event":
        inner = _as_dict(obj.get("event"))
        return StreamEvent(
            kind=str(inner.get("type", "")),
            delta=_as_dict(inner.get("delta")),
            message=_as_dict(inner.get("message")),
            usage=_as_dict(inner.get("usage")),
            session_id=session_id,
        )
    if etype == "result":
        result = obj.get("result")
        return ResultEvent(
            session_id=session_id,
            is_error=bool(obj.get("is_error", False)),
            result=result if isinstance(result, str) else "",
            num_turns=obj.get("num_turns"),
            duration_ms=obj.get("duration_ms"),
            total_cost_usd=obj.get("total_cost_usd", obj.get("cost_usd")),
        )
    if etype == "system":
        return SystemEvent(
            subtype=str(obj.get("subtype", "")),
            session_id=session_id,
            data=obj,
        )
    if etype == "assistant":
        return AssistantEvent(message=_as_dict(obj.get("message")), session_id=session_id)
    return UnknownEvent(type=str(etype), data=obj)


def decode_line(line: str | bytes) -> AgentEvent | None:
    """Decode one output line. Blank, non-JSON and non-object lines give None."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except ValueError:
        logger.debug("Skipping non-JSON agent line: %.200s", line)
        return None
    if not isinstance(obj, dict):
        return None
    return from_json(obj)


class LineDecoder:
    """Incremental newline splitter for the agent's stdout.

    Bytes are buffered until a newline arrives so multi-byte characters and
    JSON objects split across reads are decoded whole.
    """

    def __init__(self):
        self._buffer = b""

    def feed(self, data: bytes) -> list[AgentEvent]:
        self._buffer += data
        events: list[AgentEvent] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx == -1:
                break
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1:]
            event = decode_line(line)
            if event is not None:
                events.append(event)
        return events

    def finish(self) -> list[AgentEvent]:
        """Decode whatever is left after the stream closed, best effort."""
        rest, self._buffer = self._buffer, b""
        event = decode_line(rest)
        return [event] if event is not None else []


async def iter_events(chunks: AsyncIterator[bytes]) -> AsyncIterator[AgentEvent]:
    """Turn an async iterator of raw stdout chunks into agent events."""
    decoder = LineDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.finish():
        yield event
