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
Conduit -- Access Control

Decides, per inbound message, whether the peer may reach the engine.

SECURITY MODEL:
  1. ``disabled`` channels drop everything silently
  2. ``open`` channels, "*" allowlists, self-chat and allowlisted peers pass
  3. ``allowlist`` channels reject everyone else
  4. ``pairing`` channels hand unknown peers a 6-digit code that the
     owner approves from the CLI; at most 3 requests wait per channel
  5. Channels without a DM policy use their static allowlist only

The pairing branch performs no awaits between reading the pending
count and writing the new request, so concurrent messages on the event
loop cannot push a channel past the queue limit.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from enum import Enum

from conduit.bridges.base import InboundMessage
from conduit.bridges.store import BridgeStore, PairingRequest
from conduit.config import BridgeConfig, DmPolicy, normalize_peer

logger = logging.getLogger("conduit.bridges.access")

MAX_PENDING_PAIRINGS = 3

ACCESS_DENIED_REPLY = "Access denied."
ALLOWLIST_DENIED_REPLY = "Access denied. Ask the owner to allowlist your number."
PAIRING_QUEUE_FULL_REPLY = "Pairing queue full. Ask the owner to approve pending requests."
PAIRING_REQUIRED_REPLY = "Pairing required. Ask the owner to approve code: {code}"


class AccessOutcome(str, Enum):
    ALLOW = "allow"
    DROP = "drop"
    DENIED = "denied"
    PAIRING_REQUIRED = "pairing_required"
    PAIRING_QUEUE_FULL = "pairing_queue_full"


@dataclass
class AccessDecision:
    """The verdict for one inbound message.

    ``reply`` is the notice to send back to the peer, if any.
    """

    outcome: AccessOutcome
    peer_key: str
    reply: str | None = None
    code: str | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome is AccessOutcome.ALLOW


def generate_pairing_code() -> str:
    """A 6-digit numeric code (100000-999999)."""
    return str(100000 + secrets.randbelow(900000))


class AccessPolicy:
    """Applies each channel's DM policy against the bridge store."""

    def __init__(self, config: BridgeConfig, store: BridgeStore):
        self._config = config
        self._store = store

    def evaluate(self, message: InboundMessage) -> AccessDecision:
        channel = self._config.channel(message.channel)
        peer_key = normalize_peer(message.channel, message.peer_id)
        policy = channel.dm_policy

        if policy is None:
            return self._evaluate_static(message.channel, peer_key, bool(channel.allow_from))

        if policy is DmPolicy.DISABLED:
            return AccessDecision(AccessOutcome.DROP, peer_key)

        is_self = message.from_me and channel.self_chat_mode
        allowed = (
            policy is DmPolicy.OPEN
            or channel.allow_all
            or is_self
            or self._store.is_allowed(message.channel, peer_key)
        )
        logger.debug(
            "allowlist check",
            extra={"fields": {"channel": message.channel, "peer": peer_key, "policy": policy.value, "allowed": allowed}},
        )
        if allowed:
            return AccessDecision(AccessOutcome.ALLOW, peer_key)

        if policy is DmPolicy.ALLOWLIST:
            return AccessDecision(AccessOutcome.DENIED, peer_key, reply=ALLOWLIST_DENIED_REPLY)

        return self._request_pairing(message.channel, peer_key)

    def _evaluate_static(self, channel: str, peer_key: str, has_allowlist: bool) -> AccessDecision:
        if not has_allowlist or self._config.channel(channel).allow_all:
            return AccessDecision(AccessOutcome.ALLOW, peer_key)
        if self._store.is_allowed(channel, peer_key):
            return AccessDecision(AccessOutcome.ALLOW, peer_key)
        logger.debug("allowlist denied", extra={"fields": {"channel": channel, "peer": peer_key}})
        return AccessDecision(AccessOutcome.DENIED, peer_key, reply=ACCESS_DENIED_REPLY)

    def _request_pairing(self, channel: str, peer_key: str) -> AccessDecision:
        self._store.prune_pairing_requests()
        active = self._store.get_pairing_request(channel, peer_key)
        if active is None and len(self._store.list_pairing_requests(channel)) >= MAX_PENDING_PAIRINGS:
            logger.info("pairing queue full", extra={"fields": {"channel": channel, "peer": peer_key}})
            return AccessDecision(AccessOutcome.PAIRING_QUEUE_FULL, peer_key, reply=PAIRING_QUEUE_FULL_REPLY)

        if active is not None:
            code = active.code
        else:
            code = generate_pairing_code()
            self._store.create_pairing_request(channel, peer_key, code, self._config.pairing_ttl_ms)
            logger.info("pairing requested", extra={"fields": {"channel": channel, "peer": peer_key}})
        return AccessDecision(
            AccessOutcome.PAIRING_REQUIRED,
            peer_key,
            reply=PAIRING_REQUIRED_REPLY.format(code=code),
            code=code,
        )

    # =========================================================================
    # HOST OPERATIONS
    # =========================================================================

    def approve(self, channel: str, code: str) -> PairingRequest | None:
        """Approve a pairing code: drop the request and allowlist the peer."""
        request = self._store.approve_pairing_request(channel, code.strip())
        if request is None:
            return None
        self._store.allow_peer(channel, request.peer_id)
        logger.info("pairing approved", extra={"fields": {"channel": channel, "peer": request.peer_id}})
        return request

    def deny(self, channel: str, code: str) -> bool:
        removed = self._store.deny_pairing_request(channel, code.strip())
        if removed:
            logger.info("pairing denied", extra={"fields": {"channel": channel}})
        return removed
