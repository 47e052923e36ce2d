"""POST /v1/chat/completions: working-directory handshake, session resume, agent run."""

import asyncio
import json
import logging
from typing import Awaitable, Callable

from aiohttp import web

from . import protocol
from .config import ProxyConfig
from .invocation import AgentProcess, AgentSpawnError, spawn_agent
from .sessions import SessionStore
from .translator import StreamTranslator, TranslationError
from .workdir import Confirmed, Invalid, NeedPrompt, Resume, decide, path_confirmed

logger = logging.getLogger("claude_proxy.completions")

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

REQUEST_ID = web.RequestKey("request_id", str)

Spawner = Callable[..., Awaitable[AgentProcess]]


def sse(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


def _bad_request(message: str) -> web.Response:
    return web.json_response(protocol.error_body(message, "invalid_request_error"), status=400)


def _valid_messages(messages) -> bool:
    if not isinstance(messages, list) or not messages:
        return False
    return all(isinstance(m, dict) and m.get("role") in ("system", "user", "assistant") for m in messages)


class ChatCompletions:
    """Request handler bound to one config, session store and spawner."""

    def __init__(self, config: ProxyConfig, sessions: SessionStore, spawn: Spawner = spawn_agent):
        self.config = config
        self.sessions = sessions
        self.spawn = spawn

    async def handle(self, request: web.Request) -> web.StreamResponse:
        rid = request.get(REQUEST_ID, "-")
        try:
            body = await request.json()
        except (ValueError, UnicodeDecodeError):
            return _bad_request("Invalid JSON body")
        if not isinstance(body, dict):
            return _bad_request("Invalid JSON body")

        messages = body.get("messages")
        if not _valid_messages(messages):
            return _bad_request("messages is required")

        model = protocol.resolve_model(body.get("model"), self.config.default_model)
        stream = bool(body.get("stream", False))
        completion_id = protocol.new_completion_id()
        created = protocol.now()

        decision = decide(messages)
        if isinstance(decision, (NeedPrompt, Invalid, Confirmed)):
            if isinstance(decision, Confirmed):
                logger.info("(%s) Working directory set: %s", rid, decision.path)
            return await self._synthetic(request, completion_id, created, model, decision.message, stream)

        if isinstance(decision, Resume):
            cwd, forwarded = decision.path, decision.messages
            if not any(m.get("role") == "user" for m in forwarded):
                # nothing to run yet: the client replayed only the handshake
                return await self._synthetic(
                    request, completion_id, created, model, path_confirmed(cwd), stream
                )
        else:
            logger.info("(%s) Pre-existing conversation, using default cwd", rid)
            cwd, forwarded = self.config.working_dir, messages

        session_id = self.sessions.lookup(forwarded[:-1])
        logger.info(
            "(%s) model=%s messages=%d stream=%s session=%s cwd=%s",
            rid, model, len(forwarded), stream, "resumed" if session_id else "new", cwd,
        )

        try:
            agent = await self.spawn(self.config, forwarded, model, session_id, cwd)
        except AgentSpawnError as exc:
            return web.json_response(protocol.error_body(str(exc), "server_error"), status=500)

        translator = StreamTranslator(completion_id, created, model)
        if stream:
            response = web.StreamResponse(status=200, headers=SSE_HEADERS)
            try:
                await response.prepare(request)
            except BaseException:
                agent.cancel()
                raise
            return await self._stream(request, response, agent, translator, forwarded)
        return await self._complete(agent, translator, forwarded)

    # --- Synthetic replies ---

    async def _synthetic(
        self,
        request: web.Request,
        completion_id: str,
        created: int,
        model: str,
        content: str,
        stream: bool,
    ) -> web.StreamResponse:
        if not stream:
            return web.json_response(protocol.completion(completion_id, created, model, content))

        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)
        for payload in (
            protocol.chunk(completion_id, created, model, {"role": "assistant"}),
            protocol.chunk(completion_id, created, model, {"content": content}),
            protocol.chunk(completion_id, created, model, {}, "stop"),
        ):
            await response.write(sse(payload))
        await response.write(protocol.DONE_FRAME)
        await response.write_eof()
        return response

    # --- Agent-backed replies ---

    async def _complete(
        self, agent: AgentProcess, translator: StreamTranslator, messages: list[dict]
    ) -> web.Response:
        try:
            body = await translator.aggregate(agent)
        except TranslationError:
            logger.exception("Error reading agent output (%s)", translator.completion_id)
            agent.cancel()
            await agent.wait()
            return web.json_response(protocol.error_body("Claude CLI error", "server_error"), status=500)
        except asyncio.CancelledError:
            logger.warning("Client disconnected before completion (%s)", translator.completion_id)
            agent.cancel()
            raise

        self._log_usage(translator)
        self._remember(messages, translator)
        return web.json_response(body)

    async def _stream(
        self,
        request: web.Request,
        response: web.StreamResponse,
        agent: AgentProcess,
        translator: StreamTranslator,
        messages: list[dict],
    ) -> web.StreamResponse:
        chunks = translator.stream(agent)
        connected = True
        try:
            async for payload in chunks:
                connected = await self._write(request, response, sse(payload))
                if not connected:
                    break
            if connected:
                connected = await self._write(request, response, protocol.DONE_FRAME)
        except asyncio.CancelledError:
            logger.warning("Client disconnected mid-stream (%s)", translator.completion_id)
            agent.cancel()
            raise
        finally:
            await chunks.aclose()

        if connected:
            try:
                await response.write_eof()
            except ConnectionResetError:
                connected = False
        if not connected:
            logger.warning("Client disconnected mid-stream (%s)", translator.completion_id)
            agent.cancel()
            await agent.wait()

        self._log_usage(translator)
        self._remember(messages, translator)
        return response

    @staticmethod
    async def _write(request: web.Request, response: web.StreamResponse, data: bytes) -> bool:
        """Write one frame; False once the caller has gone away."""
        transport = request.transport
        if transport is None or transport.is_closing():
            return False
        try:
            await response.write(data)
        except ConnectionResetError:
            return False
        return True

    # --- Bookkeeping ---

    def _remember(self, messages: list[dict], translator: StreamTranslator) -> None:
        if not translator.session_id:
            return
        context = [*messages, {"role": "assistant", "content": translator.content}]
        self.sessions.store(context, translator.session_id)
        logger.debug("Stored session %s", translator.session_id)

    @staticmethod
    def _log_usage(translator: StreamTranslator) -> None:
        usage = translator.usage
        if usage.total_tokens > 0:
            logger.debug(
                "(%s) usage prompt=%d completion=%d total=%d",
                translator.completion_id, usage.prompt_tokens, usage.completion_tokens, usage.total_tokens,
            )
