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
Conduit -- Messaging Bridges

Relays conversations between messaging networks and the session engine.

Security model:
  1. DM policy per channel -- disabled / allowlist / pairing / open
  2. Pairing codes -- unknown peers get a 6-digit code the owner approves
  3. Static allowlists -- seeded from config at startup
  4. Permission mode -- engine tool prompts are always- or never-approved
  5. All activity logged to ~/.conduit/logs/conduit.log

Usage:
    from conduit.bridges import Bridge, create_adapters
    bridge = Bridge(config, store, engine)
    for adapter in create_adapters(config).values():
        bridge.register_adapter(adapter)
    await bridge.start()
"""

from conduit.bridges.base import AdapterError, ChannelAdapter, InboundMessage
from conduit.bridges.bridge import Bridge, BridgeReporter, RunState, create_adapters
from conduit.bridges.store import BridgeStore

__all__ = [
    "AdapterError",
    "Bridge",
    "BridgeReporter",
    "BridgeStore",
    "ChannelAdapter",
    "InboundMessage",
    "RunState",
    "create_adapters",
]
