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
Conduit -- Channel Adapter Base

Abstract base class for messaging channel adapters. Each network
(Telegram, WhatsApp, ...) implements this interface and hands every
inbound message to the bridge through the ``on_message`` callback.

REQUIRED CAPABILITIES:
  start()      -- connect and begin listening
  stop()       -- disconnect gracefully
  send_text()  -- deliver a text message to a peer

OPTIONAL CAPABILITIES (the bridge checks before calling):
  send_file(peer_id, path, caption=None)
  send_typing(peer_id)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class InboundMessage:
    """An inbound message from a messaging channel."""
    channel: str                     # "telegram", "whatsapp", ...
    peer_id: str                     # Channel-specific chat / sender id
    text: str
    raw: Any = None                  # Original platform payload
    from_me: bool = False            # Sent by the bridge's own account


MessageHandler = Callable[[InboundMessage], Awaitable[None]]


class AdapterError(RuntimeError):
    """Raised when an adapter is asked to do something it is not ready for."""


# =============================================================================
# ABSTRACT ADAPTER
# =============================================================================

class ChannelAdapter(ABC):
    """
    Abstract base class for channel adapters.

    Subclasses set ``name`` and ``max_text_length`` and implement the
    required capabilities. ``send_file`` and ``send_typing`` are optional:
    define them only when the network supports them.
    """

    name: str = ""
    max_text_length: int = 4000

    def __init__(self, on_message: Optional[MessageHandler] = None):
        self._on_message = on_message
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def set_handler(self, on_message: MessageHandler):
        self._on_message = on_message

    @abstractmethod
    async def start(self):
        """Connect to the network and begin listening for messages."""
        ...

    @abstractmethod
    async def stop(self):
        """Disconnect from the network gracefully."""
        ...

    @abstractmethod
    async def send_text(self, peer_id: str, text: str):
        """Send a text message to a peer."""
        ...

    async def dispatch(self, message: InboundMessage):
        """Hand an inbound message to the bridge."""
        if self._on_message is None:
            raise AdapterError(f"{self.name} adapter has no message handler")
        await self._on_message(message)


def optional_capability(adapter: ChannelAdapter, name: str) -> Optional[Callable[..., Awaitable[None]]]:
    """Return the adapter's optional coroutine method ``name``, or None."""
    method = getattr(adapter, name, None)
    return method if callable(method) else None
