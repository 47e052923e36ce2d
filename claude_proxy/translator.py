"""Translate agent events into OpenAI chat-completion objects and chunks."""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Protocol

from . import protocol
from .events import AgentEvent, ResultEvent, StreamEvent

logger = logging.getLogger("claude_proxy.translator")

INTERRUPTED_NOTICE = "\n\n[Stream interrupted due to an internal error]"


class TranslationError(RuntimeError):
    """Reading the agent's event stream failed."""


class EventSource(Protocol):
    """What the translator consumes: an event stream and, once it ends, stderr."""

    def events(self) -> AsyncIterator[AgentEvent]: ...

    async def finish(self) -> str: ...


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def as_dict(self) -> dict | None:
        if self.total_tokens <= 0:
            return None
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def _token_count(usage: dict, key: str) -> int:
    value = usage.get(key)
    return value if isinstance(value, int) and value > 0 else 0


class StreamTranslator:
    """Per-request translation state.

    ``feed()`` folds one agent event into the running content, usage, stop
    reason and session id, and returns the chunks a streaming caller should
    see for it. ``aggregate()`` and ``stream()`` drive a whole event source.
    """

    def __init__(self, completion_id: str, created: int, model: str):
        self.completion_id = completion_id
        self.created = created
        self.model = model
        self.content = ""
        self.usage = Usage()
        self.stop_reason: str | None = None
        self.session_id: str | None = None
        self.error_reported = False

    @property
    def finish_reason(self) -> str:
        if self.stop_reason is None or self.stop_reason == "end_turn":
            return "stop"
        return "length"

    # --- Chunk builders ---

    def _chunk(self, delta: dict, finish_reason: str | None = None, usage: dict | None = None) -> dict:
        return protocol.chunk(self.completion_id, self.created, self.model, delta, finish_reason, usage)

    def role_chunk(self) -> dict:
        return self._chunk({"role": "assistant"})

    def content_chunk(self, text: str, finish_reason: str | None = None) -> dict:
        return self._chunk({"content": text}, finish_reason)

    def stop_chunk(self) -> dict:
        return self._chunk({}, self.finish_reason)

    # --- Event folding ---

    def feed(self, event: AgentEvent) -> list[dict]:
        if isinstance(event, StreamEvent):
            return self._feed_stream_event(event)
        if isinstance(event, ResultEvent):
            return self._feed_result(event)
        return []

    def _feed_stream_event(self, event: StreamEvent) -> list[dict]:
        if event.kind == "message_start":
            usage = event.message.get("usage")
            if isinstance(usage, dict):
                self.usage.prompt_tokens += _token_count(usage, "input_tokens")
                self.usage.completion_tokens += _token_count(usage, "output_tokens")
            return []

        if event.kind == "message_delta":
            output_tokens = _token_count(event.usage, "output_tokens")
            if output_tokens:
                self.usage.completion_tokens = output_tokens
            if event.stop_reason:
                self.stop_reason = event.stop_reason
                usage = self.usage.as_dict()
                if usage:
                    return [self._chunk({}, usage=usage)]
            return []

        text = event.text_delta
        if text:
            self.content += text
            return [self.content_chunk(text)]
        return []

    def _feed_result(self, event: ResultEvent) -> list[dict]:
        if event.session_id:
            self.session_id = event.session_id
        if not (event.is_error and event.result):
            return []
        annotation = f"[Error: {event.result}]"
        if self.content:
            annotation = "\n\n" + annotation
        self.content += annotation
        self.error_reported = True
        logger.warning("Agent reported an error result: %s", event.result)
        return [self.content_chunk(annotation, finish_reason=self.finish_reason)]

    def apply_stderr_fallback(self, stderr: str) -> str | None:
        """Use stderr as the content when the agent produced nothing else."""
        if self.content or not stderr.strip():
            return None
        message = stderr.strip()
        logger.warning("CLI produced no output, stderr: %s", message)
        self.content = f"Error: {message}"
        return self.content

    # --- Drivers ---

    async def aggregate(self, source: EventSource) -> dict:
        """Consume the whole source and return one ``chat.completion`` object."""
        try:
            async for event in source.events():
                self.feed(event)
        except Exception as exc:
            raise TranslationError(str(exc) or type(exc).__name__) from exc
        self.apply_stderr_fallback(await source.finish())
        return protocol.completion(
            self.completion_id,
            self.created,
            self.model,
            self.content,
            self.finish_reason,
            self.usage.as_dict(),
        )

    async def stream(self, source: EventSource) -> AsyncIterator[dict]:
        """Yield chunk objects in wire order; the caller appends ``[DONE]``."""
        yield self.role_chunk()
        try:
            async for event in source.events():
                for item in self.feed(event):
                    yield item
        except Exception:
            logger.exception("Stream error (%s)", self.completion_id)
            yield self.content_chunk(INTERRUPTED_NOTICE)

        fallback = self.apply_stderr_fallback(await source.finish())
        if fallback is not None:
            yield self.content_chunk(fallback)
        if not self.error_reported:
            yield self.stop_chunk()
