"""HTTP server exposing the OpenAI-compatible API."""

import logging
import re
import time
import uuid
from importlib.metadata import PackageNotFoundError, version as pkg_version

from aiohttp import web

from . import protocol
from .completions import REQUEST_ID, ChatCompletions, Spawner
from .config import ProxyConfig
from .invocation import spawn_agent
from .sessions import SessionStore

logger = logging.getLogger("claude_proxy")

_BEARER_RE = re.compile(r"^Bearer\s+", re.IGNORECASE)


class ProxyServer:
    """OpenAI-compatible front end for the Claude CLI.

    Owns routing, auth, CORS and request ids; chat completions are delegated
    to ChatCompletions.
    """

    def __init__(
        self,
        config: ProxyConfig,
        sessions: SessionStore,
        spawn: Spawner = spawn_agent,
    ):
        self.config = config
        self.sessions = sessions
        self.completions = ChatCompletions(config, sessions, spawn=spawn)
        self._runner: web.AppRunner | None = None

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _check_auth(self, request: web.Request) -> bool:
        if not self.config.api_key:
            return True
        auth = request.headers.get("Authorization", "")
        return _BEARER_RE.sub("", auth) == self.config.api_key

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.method != "OPTIONS" and request.path.startswith("/v1/") and not self._check_auth(request):
            return web.json_response(
                protocol.error_body("Invalid API key", "authentication_error"), status=401
            )
        return await handler(request)

    # ------------------------------------------------------------------
    # Request ids, errors, CORS
    # ------------------------------------------------------------------

    @web.middleware
    async def _request_middleware(self, request: web.Request, handler):
        request_id = request.headers.get("X-Request-Id") or f"req-{uuid.uuid4()}"
        request[REQUEST_ID] = request_id
        logger.info("[%s] %s (%s)", request.method, request.path, request_id)
        try:
            return await handler(request)
        except (web.HTTPNotFound, web.HTTPMethodNotAllowed):
            return web.json_response(
                protocol.error_body("Not found", "invalid_request_error"), status=404
            )
        except web.HTTPException:
            raise
        except Exception:
            logger.exception("Unhandled error (%s)", request_id)
            return web.json_response(
                protocol.error_body("Internal server error", "server_error"), status=500
            )

    async def _on_response_prepare(self, request: web.Request, response: web.StreamResponse) -> None:
        response.headers["Access-Control-Allow-Origin"] = self.config.cors_origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        request_id = request.get(REQUEST_ID)
        if request_id:
            response.headers["X-Request-Id"] = request_id

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def _get_version(self) -> str:
        try:
            return pkg_version("claude-proxy")
        except PackageNotFoundError:
            return "unknown"

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response(
            {"status": "ok", "version": self._get_version(), "sessions": len(self.sessions)}
        )

    async def _models(self, _request: web.Request) -> web.Response:
        return web.json_response(protocol.MODELS)

    async def _options(self, _request: web.Request) -> web.Response:
        return web.Response(status=204)

    async def _chat_completions(self, request: web.Request) -> web.StreamResponse:
        start = time.monotonic()
        try:
            return await self.completions.handle(request)
        finally:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "[%s] %s completed in %.0fms (%s)",
                request.method, request.path, elapsed_ms, request.get(REQUEST_ID),
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._request_middleware, self._auth_middleware])
        app.on_response_prepare.append(self._on_response_prepare)
        for path in ("/health", "/health/"):
            app.router.add_get(path, self._health, allow_head=False)
        for path in ("/v1/models", "/v1/models/"):
            app.router.add_get(path, self._models, allow_head=False)
        for path in ("/v1/chat/completions", "/v1/chat/completions/"):
            app.router.add_post(path, self._chat_completions)
        app.router.add_route("OPTIONS", "/{tail:.*}", self._options)
        return app

    async def start(self) -> None:
        """Start the server; returns once it is listening."""
        app = self._build_app()
        self._runner = web.AppRunner(app, handler_cancellation=True)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info("claude-proxy listening on http://%s:%s", self.config.host, self.config.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("claude-proxy stopped")
