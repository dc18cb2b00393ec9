"""Tests for conduit.engine.client -- HTTP calls against httpx.MockTransport."""

import asyncio
import base64
import json

import httpx
import pytest

from conduit.config import ModelRef, PermissionMode
from conduit.engine.client import (
    DIRECTORY_HEADER,
    EngineClient,
    EngineError,
    PermissionReply,
    PromptResult,
    build_permission_rules,
)


def _client(handler, **kwargs):
    return EngineClient(
        "http://engine.test/",
        directory="/work/app",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


# =========================================================================
# Helpers
# =========================================================================

class TestHelpers:
    def test_allow_rules(self):
        assert build_permission_rules(PermissionMode.ALLOW) == [
            {"permission": "*", "pattern": "*", "action": "allow"}
        ]

    def test_deny_rules_ask(self):
        assert build_permission_rules(PermissionMode.DENY)[0]["action"] == "ask"

    def test_prompt_result_text(self):
        result = PromptResult(parts=[
            {"type": "text", "text": "  first"},
            {"type": "tool", "text": "ignored tool"},
            {"type": "text", "text": "hidden", "ignored": True},
            {"type": "text", "text": "second  "},
        ])
        assert result.text == "first\nsecond"

    def test_prompt_result_empty(self):
        assert PromptResult().text == ""
        assert PromptResult(parts=[{"type": "text", "text": "   "}]).text == ""


# =========================================================================
# Requests
# =========================================================================

class TestRequests:
    @pytest.mark.asyncio
    async def test_create_session(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["directory"] = request.headers.get(DIRECTORY_HEADER)
            return httpx.Response(200, json={"id": "ses_123"})

        async with _client(handler) as client:
            rules = build_permission_rules(PermissionMode.ALLOW)
            session_id = await client.create_session("conduit telegram 42", rules)

        assert session_id == "ses_123"
        assert seen["method"] == "POST"
        assert seen["path"] == "/session"
        assert seen["body"] == {"title": "conduit telegram 42", "permission": rules}
        assert seen["directory"] == "/work/app"

    @pytest.mark.asyncio
    async def test_create_session_without_id_fails(self):
        async with _client(lambda r: httpx.Response(200, json={})) as client:
            with pytest.raises(EngineError):
                await client.create_session("t")

    @pytest.mark.asyncio
    async def test_prompt(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"info": {}, "parts": [{"type": "text", "text": "hello"}, "junk"]})

        async with _client(handler) as client:
            result = await client.prompt("ses_1", "summarize this", model=ModelRef("anthropic", "claude"))

        assert seen["path"] == "/session/ses_1/message"
        assert seen["body"] == {
            "parts": [{"type": "text", "text": "summarize this"}],
            "model": {"providerID": "anthropic", "modelID": "claude"},
        }
        assert result.text == "hello"
        assert len(result.parts) == 1

    @pytest.mark.asyncio
    async def test_http_error_raises_engine_error(self):
        def handler(request):
            return httpx.Response(500, json={"message": "internal"})

        async with _client(handler) as client:
            with pytest.raises(EngineError) as excinfo:
                await client.prompt("ses_1", "hi")
        assert excinfo.value.status_code == 500
        assert "internal" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_transport_error_raises_engine_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(EngineError) as excinfo:
                await client.health_check()
        assert excinfo.value.status_code is None

    @pytest.mark.asyncio
    async def test_respond_to_permission(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=True)

        async with _client(handler) as client:
            await client.respond_to_permission("ses_1", "perm_9", PermissionReply.REJECT)

        assert seen["path"] == "/session/ses_1/permissions/perm_9"
        assert seen["body"] == {"response": "reject"}

    @pytest.mark.asyncio
    async def test_health_check(self):
        async with _client(lambda r: httpx.Response(200, json={"healthy": True, "version": "0.9.1"})) as client:
            health = await client.health_check()
        assert health.healthy is True
        assert health.version == "0.9.1"

    @pytest.mark.asyncio
    async def test_basic_auth(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"healthy": True})

        async with _client(handler, username="opencode", password="secret") as client:
            await client.health_check()

        expected = base64.b64encode(b"opencode:secret").decode()
        assert seen["auth"] == f"Basic {expected}"


# =========================================================================
# Event stream
# =========================================================================

class TestSubscribeEvents:
    @pytest.mark.asyncio
    async def test_parses_data_lines(self):
        body = (
            'data: {"type": "session.idle", "properties": {"sessionID": "a"}}\n\n'
            ": keep-alive comment\n\n"
            "data: not json\n\n"
            'data: {"type": "session.status",\n'
            'data:  "properties": {"sessionID": "b", "status": {"type": "busy"}}}\n\n'
        )

        def handler(request):
            assert request.url.path == "/event"
            return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})

        async with _client(handler) as client:
            events = [event async for event in client.subscribe_events(asyncio.Event())]

        assert events[0] == {"type": "session.idle", "properties": {"sessionID": "a"}}
        assert events[1]["properties"]["sessionID"] == "b"
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_stop_event_ends_iteration(self):
        body = "".join(f'data: {{"n": {i}}}\n\n' for i in range(5))
        stop = asyncio.Event()

        async with _client(lambda r: httpx.Response(200, content=body.encode())) as client:
            seen = []
            async for event in client.subscribe_events(stop):
                seen.append(event["n"])
                stop.set()

        assert seen == [0]

    @pytest.mark.asyncio
    async def test_stream_http_error(self):
        async with _client(lambda r: httpx.Response(401, text="unauthorized")) as client:
            with pytest.raises(EngineError) as excinfo:
                async for _ in client.subscribe_events():
                    pass
        assert excinfo.value.status_code == 401
