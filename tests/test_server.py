"""Tests for the HTTP server: routing, auth, CORS, request ids, error bodies."""

import warnings

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from claude_proxy.protocol import MODEL_ALIASES
from claude_proxy.server import ProxyServer


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _make_client(config, sessions, spawner, api_key="") -> TestClient:
    """Create an aiohttp TestClient around a ProxyServer with a fake spawner."""
    config.api_key = api_key
    server = ProxyServer(config, sessions, spawn=spawner)
    return TestClient(TestServer(server._build_app()))


def _auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


# ---------------------------------------------------------------------------
# Health / models
# ---------------------------------------------------------------------------

class TestHealth:
    @pytest.mark.asyncio
    async def test_health_returns_ok(self, config, sessions, spawner):
        sessions.store([{"role": "user", "content": "x"}], "s")
        async with await _make_client(config, sessions, spawner) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "ok"
            assert data["sessions"] == 1
            assert "version" in data

    @pytest.mark.asyncio
    async def test_health_is_public(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner, api_key="secret") as client:
            resp = await client.get("/health")
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_trailing_slash(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner) as client:
            assert (await client.get("/health/")).status == 200
            assert (await client.get("/v1/models/")).status == 200


class TestModels:
    @pytest.mark.asyncio
    async def test_lists_concrete_models(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner) as client:
            resp = await client.get("/v1/models")
            data = await resp.json()
            assert data["object"] == "list"
            ids = [m["id"] for m in data["data"]]
            assert ids == list(MODEL_ALIASES.values())
            assert all(m["owned_by"] == "anthropic" for m in data["data"])


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class TestAuth:
    @pytest.mark.asyncio
    async def test_no_auth_required_without_key(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner) as client:
            resp = await client.get("/v1/models")
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_auth_required_with_key(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner, api_key="secret") as client:
            resp = await client.get("/v1/models")
            assert resp.status == 401
            data = await resp.json()
            assert data["error"]["type"] == "authentication_error"

    @pytest.mark.asyncio
    async def test_auth_passes_with_correct_key(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner, api_key="secret") as client:
            resp = await client.get("/v1/models", headers=_auth_headers("secret"))
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_bearer_is_case_insensitive(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner, api_key="secret") as client:
            resp = await client.get("/v1/models", headers={"Authorization": "bearer secret"})
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_auth_fails_with_wrong_key(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner, api_key="secret") as client:
            resp = await client.post(
                "/v1/chat/completions",
                json={"messages": [{"role": "user", "content": "hi"}]},
                headers=_auth_headers("wrong"),
            )
            assert resp.status == 401
            assert spawner.calls == []

    @pytest.mark.asyncio
    async def test_preflight_skips_auth(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner, api_key="secret") as client:
            resp = await client.options("/v1/chat/completions")
            assert resp.status == 204


# ---------------------------------------------------------------------------
# CORS / request ids / errors
# ---------------------------------------------------------------------------

class TestHeaders:
    @pytest.mark.asyncio
    async def test_cors_headers(self, config, sessions, spawner):
        config.cors_origin = "https://chat.example.com"
        async with await _make_client(config, sessions, spawner) as client:
            resp = await client.get("/v1/models")
            assert resp.headers["Access-Control-Allow-Origin"] == "https://chat.example.com"
            assert "POST" in resp.headers["Access-Control-Allow-Methods"]
            assert "Authorization" in resp.headers["Access-Control-Allow-Headers"]

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner) as client:
            resp = await client.get("/health", headers={"X-Request-Id": "abc-123"})
            assert resp.headers["X-Request-Id"] == "abc-123"

    @pytest.mark.asyncio
    async def test_request_id_uses_typed_key(self, config, sessions, spawner):
        with warnings.catch_warnings():
            warnings.simplefilter("error", web.NotAppKeyWarning)
            async with await _make_client(config, sessions, spawner) as client:
                resp = await client.get("/health", headers={"X-Request-Id": "typed-1"})
                assert resp.status == 200
                assert resp.headers["X-Request-Id"] == "typed-1"

    @pytest.mark.asyncio
    async def test_request_id_generated(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner) as client:
            resp = await client.get("/health")
            assert resp.headers["X-Request-Id"].startswith("req-")


class TestErrors:
    @pytest.mark.asyncio
    async def test_unknown_route(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner) as client:
            resp = await client.get("/nope")
            assert resp.status == 404
            data = await resp.json()
            assert data["error"]["message"] == "Not found"
            assert resp.headers["Access-Control-Allow-Origin"] == "*"

    @pytest.mark.asyncio
    async def test_wrong_method(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner) as client:
            resp = await client.get("/v1/chat/completions")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_invalid_json(self, config, sessions, spawner):
        async with await _make_client(config, sessions, spawner) as client:
            resp = await client.post(
                "/v1/chat/completions", data="{nope", headers={"Content-Type": "application/json"}
            )
            assert resp.status == 400
            data = await resp.json()
            assert data["error"] == {"message": "Invalid JSON body", "type": "invalid_request_error"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {},
        {"messages": []},
        {"messages": "hi"},
        {"messages": [{"role": "robot", "content": "hi"}]},
        {"messages": ["hi"]},
    ])
    async def test_messages_required(self, config, sessions, spawner, body):
        async with await _make_client(config, sessions, spawner) as client:
            resp = await client.post("/v1/chat/completions", json=body)
            assert resp.status == 400
            data = await resp.json()
            assert data["error"]["message"] == "messages is required"
            assert spawner.calls == []

    @pytest.mark.asyncio
    async def test_unhandled_error_is_json_500(self, config, sessions, tmp_path):
        class Boom:
            calls = []

            async def __call__(self, *args, **kwargs):
                raise RuntimeError("kaboom")

        messages = [
            {"role": "user", "content": str(tmp_path)},
            {"role": "assistant", "content": "ok"},
            {"role": "user", "content": "go"},
        ]
        async with await _make_client(config, sessions, Boom()) as client:
            resp = await client.post("/v1/chat/completions", json={"messages": messages})
            assert resp.status == 500
            data = await resp.json()
            assert data["error"] == {"message": "Internal server error", "type": "server_error"}
