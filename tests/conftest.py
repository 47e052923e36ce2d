"""Shared fixtures for claude-proxy tests."""

import asyncio

import pytest

from claude_proxy.config import CONFIG_SCHEMA, ProxyConfig
from claude_proxy.events import from_json
from claude_proxy.sessions import SessionStore


# ---------------------------------------------------------------------------
# Agent event builders (shapes emitted by `claude --output-format stream-json`)
# ---------------------------------------------------------------------------

def message_start(input_tokens=0, output_tokens=0):
    return {
        "type": "stream_event",
        "event": {
            "type": "message_start",
            "message": {"id": "msg_1", "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens}},
        },
    }


def text_delta(text):
    return {
        "type": "stream_event",
        "event": {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
    }


def message_delta(stop_reason="end_turn", output_tokens=0):
    return {
        "type": "stream_event",
        "event": {
            "type": "message_delta",
            "delta": {"stop_reason": stop_reason, "stop_sequence": None},
            "usage": {"output_tokens": output_tokens},
        },
    }


def result(session_id="sess-1", is_error=False, text=""):
    return {"type": "result", "session_id": session_id, "is_error": is_error, "result": text}


def hello_stream():
    return [
        {"type": "system", "subtype": "init", "session_id": "sess-1"},
        message_start(input_tokens=10),
        text_delta("Hel"),
        text_delta("lo"),
        text_delta("!"),
        message_delta("end_turn", output_tokens=3),
        result("sess-1", text="Hello!"),
    ]


# ---------------------------------------------------------------------------
# Fake agent process
# ---------------------------------------------------------------------------

class FakeAgent:
    """Stands in for AgentProcess: replays events, then reports stderr.

    With ``hang=True`` the event stream stays open after the last event until
    ``cancel()``, like an agent busy in a long tool run.
    """

    def __init__(self, events=None, stderr="", fail_after=None, hang=False):
        self._events = [from_json(e) for e in (events or [])]
        self._stderr = stderr
        self._fail_after = fail_after
        self.terminate_requested = False
        self.waited = False
        self._hang = hang
        self._released = asyncio.Event()

    @property
    def stderr(self):
        return self._stderr

    async def events(self):
        for i, event in enumerate(self._events):
            if self._fail_after is not None and i >= self._fail_after:
                raise RuntimeError("pipe broke")
            yield event
        if self._hang:
            await self._released.wait()

    def cancel(self):
        self.terminate_requested = True
        self._released.set()

    async def wait(self):
        self.waited = True
        return -15 if self.terminate_requested else 0

    async def finish(self):
        await self.wait()
        return self._stderr


class FakeSpawner:
    """Records spawn calls and hands out a prepared FakeAgent."""

    def __init__(self, agent=None, error=None):
        self.agent = agent or FakeAgent(hello_stream())
        self.error = error
        self.calls = []

    async def __call__(self, config, messages, model, session_id=None, cwd=None):
        self.calls.append(
            {"messages": messages, "model": model, "session_id": session_id, "cwd": cwd}
        )
        if self.error is not None:
            raise self.error
        return self.agent


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    """Keep the user's ~/.ccp and environment out of every test."""
    monkeypatch.setenv("CCP_HOME", str(tmp_path / "ccp-home"))
    for key in CONFIG_SCHEMA:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config(tmp_path):
    workdir = tmp_path / "default-cwd"
    workdir.mkdir()
    return ProxyConfig(working_dir=str(workdir), claude_path="claude", timeout_s=30)


@pytest.fixture
def sessions():
    return SessionStore(ttl=3600)


@pytest.fixture
def spawner():
    return FakeSpawner()
