# Conduit
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Conduit.
#
# Conduit is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""
Conduit -- Engine Client

Thin httpx wrapper around the remote session engine's HTTP API.

ENDPOINTS:
  POST /session                              create a session
  POST /session/{id}/message                 prompt and wait for the reply
  GET  /event                                server-sent event stream
  POST /session/{id}/permissions/{pid}       answer a permission prompt
  GET  /global/health                        liveness + version

Every request carries the working directory header and, when configured,
HTTP basic auth. Non-2xx responses raise :class:`EngineError`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional

import httpx

from conduit.config import ModelRef, PermissionMode

logger = logging.getLogger("conduit.engine.client")

DIRECTORY_HEADER = "x-opencode-directory"
REQUEST_TIMEOUT = 30.0
# Prompts block until the engine has finished the whole turn.
PROMPT_TIMEOUT = None


class EngineError(Exception):
    """HTTP failure or malformed response from the engine."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PermissionReply(str, Enum):
    ONCE = "once"
    ALWAYS = "always"
    REJECT = "reject"


@dataclass
class PromptResult:
    """The parts the engine returned for one prompt."""

    parts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def text_parts(self) -> list[dict[str, Any]]:
        return [p for p in self.parts if p.get("type") == "text" and not p.get("ignored")]

    @property
    def text(self) -> str:
        return "\n".join(str(p.get("text") or "") for p in self.text_parts).strip()


@dataclass
class EngineHealth:
    healthy: bool
    version: Optional[str] = None


def build_permission_rules(mode: PermissionMode) -> list[dict[str, str]]:
    """Session permission rules for the configured mode.

    Deny mode asks instead of denying outright so that the engine emits
    ``permission.asked`` and the bridge can tell the peer why a tool
    did not run.
    """
    action = "allow" if mode is PermissionMode.ALLOW else "ask"
    return [{"permission": "*", "pattern": "*", "action": action}]


class EngineClient:
    """Async client for one engine base URL and working directory."""

    def __init__(
        self,
        base_url: str,
        directory: str = "",
        username: Optional[str] = None,
        password: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.directory = directory
        headers = {DIRECTORY_HEADER: directory} if directory else {}
        auth = httpx.BasicAuth(username, password or "") if username else None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            auth=auth,
            timeout=REQUEST_TIMEOUT,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    # ── Plumbing ─────────────────────────────────────────────────────────

    @staticmethod
    def _raise_for_status(resp: httpx.Response):
        if resp.status_code >= 400:
            try:
                body = resp.json()
                detail = body.get("message") or body.get("error") or resp.text if isinstance(body, dict) else resp.text
            except ValueError:
                detail = resp.text
            raise EngineError(f"HTTP {resp.status_code}: {detail}", status_code=resp.status_code)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise EngineError(f"{method} {path} failed: {exc}") from exc
        self._raise_for_status(resp)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise EngineError(f"{method} {path} returned invalid JSON", status_code=resp.status_code) from exc

    # ── Sessions ─────────────────────────────────────────────────────────

    async def create_session(self, title: str, permission_rules: Optional[list[dict[str, str]]] = None) -> str:
        body: dict[str, Any] = {"title": title}
        if permission_rules:
            body["permission"] = permission_rules
        data = await self._request("POST", "/session", json=body)
        session_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise EngineError("Failed to create session: response has no id")
        logger.debug("session created", extra={"fields": {"session": session_id}})
        return session_id

    async def prompt(self, session_id: str, text: str, model: Optional[ModelRef] = None) -> PromptResult:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if model is not None:
            body["model"] = {"providerID": model.provider_id, "modelID": model.model_id}
        data = await self._request("POST", f"/session/{session_id}/message", json=body, timeout=PROMPT_TIMEOUT)
        parts = data.get("parts") if isinstance(data, dict) else None
        return PromptResult(parts=[p for p in parts or [] if isinstance(p, dict)])

    async def respond_to_permission(self, session_id: str, permission_id: str, reply: PermissionReply):
        await self._request(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            json={"response": PermissionReply(reply).value},
        )

    async def health_check(self) -> EngineHealth:
        data = await self._request("GET", "/global/health")
        if not isinstance(data, dict):
            return EngineHealth(healthy=False)
        version = data.get("version")
        return EngineHealth(healthy=bool(data.get("healthy")), version=version if isinstance(version, str) else None)

    # ── Events ───────────────────────────────────────────────────────────

    async def subscribe_events(self, stop: Optional[asyncio.Event] = None) -> AsyncIterator[Any]:
        """Yield decoded ``data:`` payloads from the event stream.

        Multi-line ``data:`` fields are joined per the SSE framing rules.
        Undecodable payloads are skipped. The iterator ends when the server
        closes the stream or ``stop`` is set.
        """
        try:
            async with self._client.stream("GET", "/event", timeout=None) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    self._raise_for_status(resp)
                buffer: list[str] = []
                async for line in resp.aiter_lines():
                    if stop is not None and stop.is_set():
                        return
                    if line.startswith("data:"):
                        buffer.append(line[5:].lstrip())
                        continue
                    if line.strip() or not buffer:
                        continue
                    payload, buffer = "\n".join(buffer), []
                    try:
                        yield json.loads(payload)
                    except json.JSONDecodeError:
                        logger.debug("undecodable event skipped", extra={"fields": {"length": len(payload)}})
                if buffer and not (stop is not None and stop.is_set()):
                    try:
                        yield json.loads("\n".join(buffer))
                    except json.JSONDecodeError:
                        logger.debug("undecodable trailing event skipped")
        except httpx.HTTPError as exc:
            raise EngineError(f"event stream failed: {exc}") from exc
