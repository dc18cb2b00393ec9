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
"""Engine event stream: parsing and demultiplexing.

The engine publishes one ordered stream of loosely typed JSON events.
``normalize_event`` turns each payload into one of a closed set of
dataclasses; anything it cannot place becomes :class:`Unrecognized`.

Only the parsing layer probes raw dicts. Everything downstream works on
the typed events.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Union

from conduit.config import ModelRef

logger = logging.getLogger("conduit.engine.events")


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelChanged:
    """A user message in ``session_id`` was sent with ``model``."""

    session_id: str
    model: ModelRef


@dataclass(frozen=True)
class SessionBusy:
    session_id: str
    status: str  # "busy" or "retry"


@dataclass(frozen=True)
class SessionIdle:
    session_id: str


@dataclass(frozen=True)
class ToolUpdate:
    """Progress of one tool call."""

    session_id: str
    call_id: str
    tool: str
    status: str
    title: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    output: str = ""


@dataclass(frozen=True)
class PermissionAsked:
    session_id: str
    permission_id: str


@dataclass(frozen=True)
class Unrecognized:
    type: str | None
    raw: Any = None


EngineEvent = Union[ModelChanged, SessionBusy, SessionIdle, ToolUpdate, PermissionAsked, Unrecognized]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _envelope(raw: Any) -> tuple[str | None, dict[str, Any]]:
    """Events arrive either bare or wrapped in ``{"payload": {...}}``."""
    if not isinstance(raw, dict):
        return None, {}
    if isinstance(raw.get("type"), str):
        return raw["type"], _dict(raw.get("properties"))
    payload = _dict(raw.get("payload"))
    if isinstance(payload.get("type"), str):
        return payload["type"], _dict(payload.get("properties"))
    return None, {}


def _parse_model_changed(props: dict[str, Any]) -> ModelChanged | None:
    info = _dict(props.get("info"))
    if info.get("role") != "user":
        return None
    session_id = _str(info.get("sessionID"))
    model = _dict(info.get("model"))
    provider, model_id = _str(model.get("providerID")), _str(model.get("modelID"))
    if not (session_id and provider and model_id):
        return None
    return ModelChanged(session_id, ModelRef(provider_id=provider, model_id=model_id))


def _parse_session_status(props: dict[str, Any]) -> SessionBusy | SessionIdle | None:
    session_id = _str(props.get("sessionID"))
    status = _str(_dict(props.get("status")).get("type"))
    if not session_id or not status:
        return None
    if status in ("busy", "retry"):
        return SessionBusy(session_id, status)
    if status == "idle":
        return SessionIdle(session_id)
    return None


def _parse_tool_update(props: dict[str, Any]) -> ToolUpdate | None:
    part = _dict(props.get("part"))
    if part.get("type") != "tool":
        return None
    session_id, call_id = _str(part.get("sessionID")), _str(part.get("callID"))
    if not session_id or not call_id:
        return None
    state = _dict(part.get("state"))
    output = state.get("output")
    return ToolUpdate(
        session_id=session_id,
        call_id=call_id,
        tool=_str(part.get("tool")) or "tool",
        status=_str(state.get("status")) or "unknown",
        title=_str(state.get("title")) or "",
        input=_dict(state.get("input")),
        output=output if isinstance(output, str) else "",
    )


def _parse_permission(props: dict[str, Any]) -> PermissionAsked | None:
    permission_id, session_id = _str(props.get("id")), _str(props.get("sessionID"))
    if not permission_id or not session_id:
        return None
    return PermissionAsked(session_id, permission_id)


_PARSERS: dict[str, Callable[[dict[str, Any]], EngineEvent | None]] = {
    "message.updated": _parse_model_changed,
    "session.status": _parse_session_status,
    "session.idle": lambda props: SessionIdle(props["sessionID"]) if _str(props.get("sessionID")) else None,
    "message.part.updated": _parse_tool_update,
    "permission.asked": _parse_permission,
}


def normalize_event(raw: Any) -> EngineEvent:
    """Parse a raw engine payload. Never raises."""
    event_type, props = _envelope(raw)
    parser = _PARSERS.get(event_type or "")
    if parser is None:
        return Unrecognized(event_type, raw)
    try:
        event = parser(props)
    except Exception:
        logger.debug("malformed event skipped", extra={"fields": {"type": event_type}}, exc_info=True)
        event = None
    return event if event is not None else Unrecognized(event_type, raw)


# ---------------------------------------------------------------------------
# Demultiplexer
# ---------------------------------------------------------------------------

Subscribe = Callable[[asyncio.Event], AsyncIterator[Any]]
Dispatch = Callable[[EngineEvent], Awaitable[None]]


class EventDemultiplexer:
    """Consumes the engine event stream in one long-lived task.

    Events are handled strictly one after another: ``dispatch`` is awaited
    before the next event is read. A failing dispatch is logged and the
    stream continues. When the stream ends the demultiplexer stops; it
    does not reconnect.
    """

    def __init__(self, subscribe: Subscribe, dispatch: Dispatch):
        self._subscribe = subscribe
        self._dispatch = dispatch
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.processed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.ensure_future(self.run())
        return self._task

    async def run(self) -> None:
        try:
            async for raw in self._subscribe(self._stop):
                if self._stop.is_set():
                    break
                event = normalize_event(raw)
                if isinstance(event, Unrecognized):
                    continue
                try:
                    await self._dispatch(event)
                except Exception:
                    logger.exception("event handler failed", extra={"fields": {"event": type(event).__name__}})
                self.processed += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("event stream closed", extra={"fields": {"error": str(exc)}})
            return
        if not self._stop.is_set():
            logger.warning("event stream ended")

    async def stop(self) -> None:
        """Abort the subscription and wait for the consumer task to exit."""
        self._stop.set()
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
