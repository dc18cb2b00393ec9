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
Conduit -- Health Server

Small FastAPI app served by uvicorn inside the bridge's event loop.

    GET  /health                   bridge snapshot (200 healthy, 503 not)
    POST /config/telegram-token    {"token": "..."} -> store + start Telegram
"""

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger("conduit.api.health")

SnapshotProvider = Callable[[], Dict[str, Any]]
TokenHandler = Callable[[str], Awaitable[Dict[str, Any]]]

STARTUP_TIMEOUT = 5.0


class TokenRequest(BaseModel):
    token: Optional[str] = None


def create_health_app(get_snapshot: SnapshotProvider, set_telegram_token: Optional[TokenHandler] = None) -> FastAPI:
    """Build the health API around the bridge's callbacks."""
    app = FastAPI(title="Conduit Health", docs_url=None, redoc_url=None, openapi_url=None)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.get("/health")
    async def health():
        snapshot = get_snapshot()
        return JSONResponse(snapshot, status_code=200 if snapshot.get("ok") else 503)

    @app.post("/config/telegram-token")
    async def telegram_token(request: TokenRequest):
        if set_telegram_token is None:
            return JSONResponse({"ok": False, "error": "Not supported"}, status_code=404)
        token = (request.token or "").strip()
        if not token:
            return JSONResponse({"ok": False, "error": "Token is required"}, status_code=400)
        try:
            result = await set_telegram_token(token)
        except Exception as exc:
            logger.error("telegram token update failed", extra={"fields": {"error": str(exc)}})
            return JSONResponse({"ok": False, "error": str(exc)}, status_code=500)
        return {"ok": True, "telegram": result}

    return app


class HealthServer:
    """Runs a uvicorn server as a task on the current event loop."""

    def __init__(self, app: FastAPI, port: int, host: str = "0.0.0.0"):
        import uvicorn

        class EmbeddedServer(uvicorn.Server):
            """Uvicorn server that leaves signal handling to the host process."""

            def install_signal_handlers(self):
                pass

            @contextlib.contextmanager
            def capture_signals(self):
                yield

        self.port = port
        self._server = EmbeddedServer(
            uvicorn.Config(app, host=host, port=port, log_level="warning", lifespan="off")
        )
        self._task: Optional[asyncio.Task] = None

    async def _serve(self):
        try:
            await self._server.serve()
        except SystemExit:
            # uvicorn exits instead of raising when the port is taken.
            logger.error("health server failed to start", extra={"fields": {"port": self.port}})

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        self._task = asyncio.ensure_future(self._serve())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT
        while not self._server.started and not self._task.done() and loop.time() < deadline:
            await asyncio.sleep(0.05)
        if self.running:
            logger.info("health server listening", extra={"fields": {"port": self.port}})

    async def stop(self):
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=STARTUP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("health server did not stop in time")
        self._task = None
