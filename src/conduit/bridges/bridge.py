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
Conduit -- Bridge Orchestrator

Wires channel adapters, access control, the per-session queue and the
engine together.

INBOUND FLOW:
  adapter -> handle_inbound -> AccessPolicy -> session lookup/create
          -> SessionQueue (keyed by remote session id) -> engine.prompt
          -> send_text (chunked to the adapter's limit)

EVENT FLOW:
  engine /event -> EventDemultiplexer -> handle_event
          -> thinking/typing state, tool updates, permission replies

TURN LIFECYCLE:
  queued -> running -> replying | erroring -> done

Every mutable map lives on the Bridge instance.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from conduit.bridges.access import AccessPolicy
from conduit.bridges.base import ChannelAdapter, InboundMessage, optional_capability
from conduit.bridges.queue import SessionQueue
from conduit.bridges.store import BridgeStore
from conduit.bridges.text import chunk_text, format_input_summary, truncate_text
from conduit.config import KNOWN_CHANNELS, BridgeConfig, ModelRef, PermissionMode, normalize_peer, write_channel_token
from conduit.engine.client import EngineClient, PermissionReply, build_permission_rules
from conduit.engine.events import (
    EngineEvent,
    EventDemultiplexer,
    ModelChanged,
    PermissionAsked,
    SessionBusy,
    SessionIdle,
    ToolUpdate,
)

logger = logging.getLogger("conduit.bridges.bridge")

TYPING_INTERVAL = 6.0
HEALTH_INTERVAL = 30.0
SHUTDOWN_TIMEOUT = 5.0
TOOL_TITLE_LIMIT = 120
FILE_PREFIX = "FILE:"
ENGINE_VERSION_SETTING = "engine.version"

SESSION_STARTED_REPLY = "🧭 Session started."
NO_RESPONSE_REPLY = "No response generated. Try again."
ENGINE_ERROR_REPLY = "Error: failed to reach OpenCode."
PERMISSION_DENIED_REPLY = "Permission denied. Update configuration to allow tools."

TOOL_LABELS = {
    "bash": "bash",
    "read": "read",
    "write": "write",
    "edit": "edit",
    "patch": "patch",
    "multiedit": "edit",
    "grep": "grep",
    "glob": "glob",
    "task": "agent",
    "webfetch": "webfetch",
}

CHANNEL_LABELS = {
    "telegram": "Telegram",
    "whatsapp": "WhatsApp",
}


def channel_label(channel: str) -> str:
    return CHANNEL_LABELS.get(channel, channel.capitalize())


def format_tool_message(update: ToolUpdate, output_limit: int) -> str:
    """``[tool] <label> <status>: <title>`` plus trimmed output on completion."""
    label = TOOL_LABELS.get(update.tool, update.tool)
    title = update.title or truncate_text(format_input_summary(update.input), TOOL_TITLE_LIMIT) or "running"
    message = f"[tool] {label} {update.status}: {title}"
    if update.status == "completed" and update.output:
        output = truncate_text(update.output.strip(), output_limit)
        if output:
            message += f"\n{output}"
    return message


# =============================================================================
# REPORTER + RUN STATE
# =============================================================================


class BridgeReporter:
    """Operator-facing callbacks. Override what you need."""

    def on_status(self, text: str):
        pass

    def on_inbound(self, channel: str, peer_id: str, text: str, from_me: bool = False):
        pass

    def on_outbound(self, channel: str, peer_id: str, text: str, kind: str):
        pass


@dataclass
class RunState:
    """In-memory state of one running turn."""

    session_id: str
    channel: str
    peer_id: str
    tool_updates_enabled: bool = False
    seen_tool_states: Dict[str, str] = field(default_factory=dict)
    thinking_label: Optional[str] = None
    thinking_active: bool = False


# =============================================================================
# BRIDGE
# =============================================================================


class Bridge:
    """Relays messages between channel adapters and the engine."""

    def __init__(
        self,
        config: BridgeConfig,
        store: BridgeStore,
        engine: EngineClient,
        reporter: Optional[BridgeReporter] = None,
    ):
        self.config = config
        self.store = store
        self.engine = engine
        self.reporter = reporter
        self.access = AccessPolicy(config, store)
        self.queue = SessionQueue()

        self.adapters: Dict[str, ChannelAdapter] = {}
        self.active_runs: Dict[str, RunState] = {}
        self.session_models: Dict[str, ModelRef] = {}
        self.typing_loops: Dict[str, asyncio.Task] = {}
        self._session_locks: Dict[tuple, asyncio.Lock] = {}

        self.engine_healthy = False
        self.engine_version: Optional[str] = None

        self._events = EventDemultiplexer(engine.subscribe_events, self.handle_event)
        self._health_task: Optional[asyncio.Task] = None
        self._health_server = None

    # ── Adapters ─────────────────────────────────────────────────────────

    def register_adapter(self, adapter: ChannelAdapter):
        adapter.set_handler(self.handle_inbound)
        self.adapters[adapter.name] = adapter
        logger.debug("adapter registered", extra={"fields": {"channel": adapter.name}})

    def _status(self, text: str):
        if self.reporter is not None:
            self.reporter.on_status(text)

    # ── Inbound ──────────────────────────────────────────────────────────

    async def handle_inbound(self, message: InboundMessage) -> Optional[asyncio.Task]:
        """Gate, route and queue one inbound message.

        Returns the queued turn task, or None when the message was dropped.
        """
        if message.channel not in self.adapters:
            logger.debug("inbound for unknown channel", extra={"fields": {"channel": message.channel}})
            return None
        logger.info(
            "received message",
            extra={"fields": {"channel": message.channel, "peer": message.peer_id, "length": len(message.text)}},
        )

        decision = self.access.evaluate(message)
        if not decision.allowed:
            if decision.reply:
                await self.send_text(message.channel, message.peer_id, decision.reply, kind="system")
            return None

        if self.reporter is not None:
            self.reporter.on_inbound(message.channel, message.peer_id, message.text, message.from_me)

        try:
            session_id = await self._resolve_session(message, decision.peer_key)
        except Exception:
            logger.exception("session create failed", extra={"fields": {"channel": message.channel}})
            await self.send_text(message.channel, message.peer_id, ENGINE_ERROR_REPLY, kind="system")
            return None

        return self.queue.enqueue(session_id, lambda: self._run_turn(session_id, message))

    async def _resolve_session(self, message: InboundMessage, peer_key: str) -> str:
        mapping = self.store.get_session(message.channel, peer_key)
        if mapping is not None:
            return mapping.session_id
        # Two first messages from the same peer must not create two sessions.
        key = (message.channel, peer_key)
        lock = self._session_locks.setdefault(key, asyncio.Lock())
        async with lock:
            mapping = self.store.get_session(message.channel, peer_key)
            session_id = mapping.session_id if mapping is not None else await self._create_session(message, peer_key)
        # Once the mapping is stored, later messages never reach the lock.
        if self._session_locks.get(key) is lock:
            del self._session_locks[key]
        return session_id

    async def _create_session(self, message: InboundMessage, peer_key: str) -> str:
        title = f"conduit {message.channel} {peer_key}"
        session_id = await self.engine.create_session(title, build_permission_rules(self.config.permission_mode))
        self.store.upsert_session(message.channel, peer_key, session_id)
        logger.info(
            "session created",
            extra={"fields": {"session": session_id, "channel": message.channel, "peer": peer_key}},
        )
        self._status(f"{channel_label(message.channel)} session created for {peer_key} (ID: {session_id}).")
        await self.send_text(message.channel, message.peer_id, SESSION_STARTED_REPLY, kind="system")
        return session_id

    async def _run_turn(self, session_id: str, message: InboundMessage):
        run = RunState(
            session_id=session_id,
            channel=message.channel,
            peer_id=message.peer_id,
            tool_updates_enabled=self.config.tool_updates_enabled,
        )
        self.active_runs[session_id] = run
        self.report_thinking(run)
        self.start_typing(run)
        try:
            logger.debug("prompt start", extra={"fields": {"session": session_id, "length": len(message.text)}})
            result = await self.engine.prompt(session_id, message.text, model=self.config.model)
            reply = result.text
            if reply:
                await self.send_text(message.channel, message.peer_id, reply, kind="reply")
            else:
                logger.debug("reply empty", extra={"fields": {"session": session_id}})
                await self.send_text(message.channel, message.peer_id, NO_RESPONSE_REPLY, kind="system")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("prompt failed", extra={"fields": {"session": session_id, "error": str(exc)}})
            await self.send_text(message.channel, message.peer_id, ENGINE_ERROR_REPLY, kind="system")
        finally:
            self.stop_typing(session_id)
            self.report_done(run)
            if self.active_runs.get(session_id) is run:
                del self.active_runs[session_id]

    # ── Outbound ─────────────────────────────────────────────────────────

    async def send_text(self, channel: str, peer_id: str, text: str, kind: str = "system", display: bool = True):
        """Deliver ``text`` through the channel's adapter.

        ``FILE:<path>`` sends a file when the adapter can. Adapter failures
        are logged, never raised.
        """
        adapter = self.adapters.get(channel)
        if adapter is None:
            return
        if display and self.reporter is not None:
            self.reporter.on_outbound(channel, peer_id, text, kind)

        try:
            if text.startswith(FILE_PREFIX):
                send_file = optional_capability(adapter, "send_file")
                if send_file is not None:
                    await send_file(peer_id, text[len(FILE_PREFIX):].strip())
                    return
            for chunk in chunk_text(text, adapter.max_text_length):
                logger.debug("sending message", extra={"fields": {"channel": channel, "length": len(chunk)}})
                await adapter.send_text(peer_id, chunk)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("send failed", extra={"fields": {"channel": channel, "kind": kind, "error": str(exc)}})

    # ── Thinking / typing ────────────────────────────────────────────────

    def _model_label(self, session_id: str) -> Optional[str]:
        model = self.session_models.get(session_id)
        return model.label if model else None

    def report_thinking(self, run: RunState):
        model_label = self._model_label(run.session_id)
        label = f"Thinking ({model_label})" if model_label else "Thinking..."
        if run.thinking_active and run.thinking_label == label:
            return
        run.thinking_label = label
        run.thinking_active = True
        self._status(f"[{channel_label(run.channel)}] {normalize_peer(run.channel, run.peer_id)} {label}")

    def report_done(self, run: RunState):
        if not run.thinking_active:
            return
        model_label = self._model_label(run.session_id)
        suffix = f" ({model_label})" if model_label else ""
        self._status(f"[{channel_label(run.channel)}] {normalize_peer(run.channel, run.peer_id)} Done{suffix}")
        run.thinking_active = False

    def start_typing(self, run: RunState):
        adapter = self.adapters.get(run.channel)
        send_typing = optional_capability(adapter, "send_typing") if adapter else None
        if send_typing is None or run.session_id in self.typing_loops:
            return
        self.typing_loops[run.session_id] = asyncio.ensure_future(self._typing_loop(send_typing, run))

    async def _typing_loop(self, send_typing, run: RunState):
        while True:
            try:
                await send_typing(run.peer_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("typing update failed", extra={"fields": {"channel": run.channel, "error": str(exc)}})
            await asyncio.sleep(TYPING_INTERVAL)

    def stop_typing(self, session_id: str):
        task = self.typing_loops.pop(session_id, None)
        if task is not None:
            task.cancel()

    # ── Engine events ────────────────────────────────────────────────────

    async def handle_event(self, event: EngineEvent):
        if isinstance(event, ModelChanged):
            self.session_models[event.session_id] = event.model
            run = self.active_runs.get(event.session_id)
            if run is not None:
                self.report_thinking(run)

        elif isinstance(event, SessionBusy):
            run = self.active_runs.get(event.session_id)
            if run is not None:
                self.report_thinking(run)
                self.start_typing(run)

        elif isinstance(event, SessionIdle):
            self.stop_typing(event.session_id)
            run = self.active_runs.get(event.session_id)
            if run is not None:
                self.report_done(run)

        elif isinstance(event, ToolUpdate):
            await self._handle_tool_update(event)

        elif isinstance(event, PermissionAsked):
            await self._handle_permission(event)

    async def _handle_tool_update(self, update: ToolUpdate):
        run = self.active_runs.get(update.session_id)
        if run is None or not run.tool_updates_enabled:
            return
        if run.seen_tool_states.get(update.call_id) == update.status:
            return
        run.seen_tool_states[update.call_id] = update.status
        message = format_tool_message(update, self.config.tool_output_limit)
        await self.send_text(run.channel, run.peer_id, message, kind="tool")

    async def _handle_permission(self, asked: PermissionAsked):
        deny = self.config.permission_mode is PermissionMode.DENY
        reply = PermissionReply.REJECT if deny else PermissionReply.ALWAYS
        await self.engine.respond_to_permission(asked.session_id, asked.permission_id, reply)
        logger.info(
            "permission answered",
            extra={"fields": {"session": asked.session_id, "reply": reply.value}},
        )
        if reply is PermissionReply.REJECT:
            run = self.active_runs.get(asked.session_id)
            if run is not None:
                await self.send_text(run.channel, run.peer_id, PERMISSION_DENIED_REPLY, kind="system")

    # ── Health ───────────────────────────────────────────────────────────

    async def refresh_health(self):
        try:
            health = await self.engine.health_check()
        except Exception as exc:
            logger.warning("failed to reach engine health", extra={"fields": {"error": str(exc)}})
            self.engine_healthy = False
            return
        self.engine_healthy = health.healthy
        if health.version and health.version != self.engine_version:
            self.store.set_setting(ENGINE_VERSION_SETTING, health.version)
        self.engine_version = health.version or self.engine_version

    async def _health_loop(self):
        while True:
            await asyncio.sleep(HEALTH_INTERVAL)
            await self.refresh_health()

    def snapshot(self) -> Dict[str, Any]:
        channels = {name: name in self.adapters for name in sorted(set(KNOWN_CHANNELS) | set(self.adapters))}
        return {
            "ok": self.engine_healthy,
            "engine": {
                "url": self.config.engine_url,
                "healthy": self.engine_healthy,
                "version": self.engine_version,
            },
            "channels": channels,
        }

    async def set_telegram_token(self, token: str) -> Dict[str, bool]:
        """Persist a new bot token and (re)start the Telegram adapter."""
        from conduit.bridges.telegram import TelegramAdapter

        write_channel_token(self.config.config_path, "telegram", token)
        channel = self.config.channel("telegram")
        channel.token = token
        channel.enabled = True

        previous = self.adapters.pop("telegram", None)
        if previous is not None:
            await previous.stop()
        adapter = TelegramAdapter(token, groups_enabled=self.config.groups_enabled)
        adapter.set_handler(self.handle_inbound)
        await adapter.start()
        self.register_adapter(adapter)
        self._status("Telegram adapter started.")
        return {"configured": True, "enabled": True}

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self):
        for name, channel in self.config.channels.items():
            self.store.seed_allowlist(name, channel.seed_peers())
        pruned = self.store.prune_pairing_requests()
        if pruned:
            logger.debug("expired pairing requests pruned", extra={"fields": {"count": pruned}})

        await self.refresh_health()
        self._health_task = asyncio.ensure_future(self._health_loop())
        self._events.start()

        if self.config.health_port:
            from conduit.api.health import HealthServer, create_health_app

            app = create_health_app(self.snapshot, self.set_telegram_token)
            self._health_server = HealthServer(app, self.config.health_port)
            await self._health_server.start()

        for adapter in self.adapters.values():
            await adapter.start()
            self._status(f"{channel_label(adapter.name)} adapter started.")

        logger.info("bridge started", extra={"fields": {"channels": ",".join(self.adapters)}})
        self._status(f"Bridge running. Logs: {self.config.log_file}")

    async def stop(self, timeout: float = SHUTDOWN_TIMEOUT):
        await self._events.stop()
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if not await self.queue.drain(timeout=timeout):
            logger.warning("shutdown with turns still running", extra={"fields": {"sessions": len(self.queue)}})
        for session_id in list(self.typing_loops):
            self.stop_typing(session_id)

        for adapter in self.adapters.values():
            try:
                await adapter.stop()
            except Exception:
                logger.exception("adapter stop failed", extra={"fields": {"channel": adapter.name}})
        await self.engine.aclose()
        self.store.close()
        logger.info("bridge stopped")


# =============================================================================
# FACTORY
# =============================================================================


def create_adapters(config: BridgeConfig) -> Dict[str, ChannelAdapter]:
    """Build the bundled adapters that the config enables."""
    adapters: Dict[str, ChannelAdapter] = {}
    telegram = config.channel("telegram")
    if telegram.enabled and telegram.token:
        from conduit.bridges.telegram import TelegramAdapter

        adapters["telegram"] = TelegramAdapter(telegram.token, groups_enabled=config.groups_enabled)
    else:
        logger.info("telegram adapter disabled")

    for name, channel in config.channels.items():
        if channel.enabled and name not in adapters:
            logger.warning(
                "no bundled adapter for enabled channel; register one with Bridge.register_adapter",
                extra={"fields": {"channel": name}},
            )
    return adapters
