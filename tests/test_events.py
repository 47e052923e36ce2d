"""Tests for agent event decoding."""

import json

import pytest

from claude_proxy.events import (
    AssistantEvent,
    LineDecoder,
    ResultEvent,
    StreamEvent,
    SystemEvent,
    UnknownEvent,
    decode_line,
    iter_events,
)

from conftest import message_delta, result, text_delta


def _line(obj) -> bytes:
    return (json.dumps(obj, ensure_ascii=False) + "\n").encode()


class TestDecodeLine:
    def test_text_delta(self):
        event = decode_line(json.dumps(text_delta("hi")))
        assert isinstance(event, StreamEvent)
        assert event.kind == "content_block_delta"
        assert event.text_delta == "hi"
        assert event.stop_reason is None

    def test_message_delta_stop_reason(self):
        event = decode_line(json.dumps(message_delta("end_turn", output_tokens=4)))
        assert event.stop_reason == "end_turn"
        assert event.usage == {"output_tokens": 4}
        assert event.text_delta == ""

    def test_result(self):
        event = decode_line(json.dumps(result("abc", is_error=True, text="boom")))
        assert isinstance(event, ResultEvent)
        assert event.session_id == "abc"
        assert event.is_error is True
        assert event.result == "boom"

    def test_system_and_assistant_are_recognized(self):
        sys_event = decode_line('{"type": "system", "subtype": "init", "session_id": "s"}')
        assert isinstance(sys_event, SystemEvent)
        assert sys_event.subtype == "init"
        asst = decode_line('{"type": "assistant", "message": {"content": []}}')
        assert isinstance(asst, AssistantEvent)

    def test_unknown_type_is_kept_open(self):
        event = decode_line('{"type": "rate_limit", "x": 1}')
        assert isinstance(event, UnknownEvent)
        assert event.type == "rate_limit"

    @pytest.mark.parametrize("line", ["", "   ", "not json", "[1, 2]", '"str"', "{broken"])
    def test_malformed_lines_are_skipped(self, line):
        assert decode_line(line) is None

    def test_non_text_delta_has_no_text(self):
        event = decode_line(json.dumps({
            "type": "stream_event",
            "event": {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": "{"}},
        }))
        assert event.text_delta == ""


class TestLineDecoder:
    def test_splits_across_reads(self):
        data = _line(text_delta("a")) + _line(text_delta("b"))
        decoder = LineDecoder()
        events = decoder.feed(data[:10]) + decoder.feed(data[10:])
        assert [e.text_delta for e in events] == ["a", "b"]

    def test_multibyte_character_split_between_reads(self):
        data = _line(text_delta("héllo ✅"))
        cut = data.index("✅".encode()) + 1
        decoder = LineDecoder()
        assert decoder.feed(data[:cut]) == []
        events = decoder.feed(data[cut:])
        assert events[0].text_delta == "héllo ✅"

    def test_malformed_line_does_not_abort(self):
        data = _line(text_delta("a")) + b"garbage\n" + _line(text_delta("b"))
        events = LineDecoder().feed(data)
        assert [e.text_delta for e in events] == ["a", "b"]

    def test_trailing_unterminated_line_is_decoded(self):
        decoder = LineDecoder()
        decoder.feed(_line(text_delta("a")) + json.dumps(result("s2")).encode())
        tail = decoder.finish()
        assert len(tail) == 1
        assert tail[0].session_id == "s2"

    def test_trailing_garbage_is_ignored(self):
        decoder = LineDecoder()
        decoder.feed(b'{"type": "resu')
        assert decoder.finish() == []


class TestIterEvents:
    @pytest.mark.asyncio
    async def test_async_chunks(self):
        async def chunks():
            yield _line(text_delta("x"))[:5]
            yield _line(text_delta("x"))[5:]
            yield json.dumps(result("s")).encode()

        events = [e async for e in iter_events(chunks())]
        assert isinstance(events[0], StreamEvent)
        assert isinstance(events[1], ResultEvent)
