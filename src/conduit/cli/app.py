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
Conduit CLI -- Main entry point.

Usage:
    conduit                              # Run the bridge (same as `start`)
    conduit start [--config PATH]        # Run the bridge until Ctrl+C
    conduit pairing list [--channel C]   # Pending pairing requests
    conduit pairing approve <ch> <code>  # Approve a pairing code
    conduit pairing deny <ch> <code>     # Deny a pairing code
    conduit allow <ch> <peer>            # Allowlist a peer directly
    conduit status                       # Allowlist / pairing summary
    conduit --version                    # Version info
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from typing import Optional, Sequence

from conduit import __version__
from conduit.bridges.access import AccessPolicy
from conduit.bridges.bridge import ENGINE_VERSION_SETTING, Bridge, BridgeReporter, channel_label, create_adapters
from conduit.bridges.store import BridgeStore
from conduit.bridges.text import truncate_text
from conduit.config import BridgeConfig, ConfigError, load_config, normalize_peer
from conduit.core.logging import setup_logging
from conduit.engine.client import EngineClient

logger = logging.getLogger("conduit.cli")

PREVIEW_LIMIT = 120


class ConsoleReporter(BridgeReporter):
    """Prints bridge activity to the terminal."""

    def __init__(self, show_messages: bool = True):
        self.show_messages = show_messages

    def on_status(self, text: str):
        print(f"  {text}", flush=True)

    def on_inbound(self, channel: str, peer_id: str, text: str, from_me: bool = False):
        if self.show_messages:
            print(f"  [{channel_label(channel)}] {peer_id} > {truncate_text(text, PREVIEW_LIMIT)}", flush=True)

    def on_outbound(self, channel: str, peer_id: str, text: str, kind: str):
        if self.show_messages:
            print(f"  [{channel_label(channel)}] {peer_id} < ({kind}) {truncate_text(text, PREVIEW_LIMIT)}", flush=True)


# =============================================================================
# COMMANDS
# =============================================================================


async def run_bridge(config: BridgeConfig, reporter: Optional[BridgeReporter] = None):
    """Start the bridge and block until SIGINT/SIGTERM."""
    store = BridgeStore(config.db_path)
    engine = EngineClient(
        config.engine_url,
        directory=config.engine_directory,
        username=config.engine_username,
        password=config.engine_password,
    )
    bridge = Bridge(config, store, engine, reporter)
    for adapter in create_adapters(config).values():
        bridge.register_adapter(adapter)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    try:
        await bridge.start()
        await stop.wait()
        logger.info("shutdown requested")
    finally:
        await bridge.stop()


def cmd_start(config: BridgeConfig, args) -> int:
    setup_logging(config.log_file, config.log_level)
    print(f"\n  Conduit {__version__}")
    print(f"  Engine:  {config.engine_url}")
    print(f"  Workdir: {config.engine_directory}")
    print(f"  Logs:    {config.log_file}\n")
    try:
        asyncio.run(run_bridge(config, ConsoleReporter(show_messages=not args.quiet)))
    except KeyboardInterrupt:
        pass
    print("\n  Goodbye!")
    return 0


def _format_ts(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def cmd_pairing(config: BridgeConfig, args) -> int:
    store = BridgeStore(config.db_path)
    try:
        if args.pairing_command == "list":
            store.prune_pairing_requests()
            requests = store.list_pairing_requests(args.channel)
            if not requests:
                print("  No pending pairing requests.")
                return 0
            for request in requests:
                print(
                    f"  {request.channel:<10} {request.code}  {request.peer_id}  "
                    f"(expires {_format_ts(request.expires_at)})"
                )
            return 0

        policy = AccessPolicy(config, store)
        channel = args.channel.lower()
        if args.pairing_command == "approve":
            request = policy.approve(channel, args.code)
            if request is None:
                print(f"  No pending request with code {args.code} on {channel}.", file=sys.stderr)
                return 1
            print(f"  Approved {request.peer_id} on {channel}.")
            return 0

        if not policy.deny(channel, args.code):
            print(f"  No pending request with code {args.code} on {channel}.", file=sys.stderr)
            return 1
        print(f"  Denied code {args.code} on {channel}.")
        return 0
    finally:
        store.close()


def cmd_allow(config: BridgeConfig, args) -> int:
    channel = args.channel.lower()
    peer = normalize_peer(channel, args.peer)
    if not peer:
        print("  Peer id is required.", file=sys.stderr)
        return 2
    store = BridgeStore(config.db_path)
    try:
        store.allow_peer(channel, peer)
    finally:
        store.close()
    print(f"  Allowlisted {peer} on {channel}.")
    return 0


def cmd_status(config: BridgeConfig, args) -> int:
    store = BridgeStore(config.db_path)
    try:
        store.prune_pairing_requests()
        print(f"  Config:  {config.config_path}")
        print(f"  Store:   {config.db_path}")
        print(f"  Engine:  {config.engine_url} (last seen version: {store.get_setting(ENGINE_VERSION_SETTING) or 'unknown'})")
        print()
        for name in sorted(config.channels):
            channel = config.channels[name]
            policy = channel.dm_policy.value if channel.dm_policy else "static"
            allowed = len(store.list_allowlist(name))
            pending = len(store.list_pairing_requests(name))
            state = "enabled" if channel.enabled else "disabled"
            print(f"  {channel_label(name):<10} {state:<9} policy={policy:<9} allowlisted={allowed} pending={pending}")
    finally:
        store.close()
    return 0


# =============================================================================
# PARSER
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conduit",
        description="Conduit -- messaging bridge for a remote session engine",
    )
    parser.add_argument("--version", action="version", version=f"conduit {__version__}")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to conduit.yaml (default: ~/.conduit/conduit.yaml)",
    )
    sub = parser.add_subparsers(dest="command")

    start = sub.add_parser("start", help="Run the bridge (default)")
    start.add_argument("--quiet", action="store_true", help="Only print status lines, not messages")

    pairing = sub.add_parser("pairing", help="Manage pairing requests")
    pairing_sub = pairing.add_subparsers(dest="pairing_command", required=True)
    pairing_list = pairing_sub.add_parser("list", help="List pending requests")
    pairing_list.add_argument("--channel", default=None)
    for action in ("approve", "deny"):
        cmd = pairing_sub.add_parser(action, help=f"{action.capitalize()} a pairing code")
        cmd.add_argument("channel")
        cmd.add_argument("code")

    allow = sub.add_parser("allow", help="Allowlist a peer")
    allow.add_argument("channel")
    allow.add_argument("peer")

    sub.add_parser("status", help="Show allowlist and pairing summary")
    return parser


COMMANDS = {
    "start": cmd_start,
    "pairing": cmd_pairing,
    "allow": cmd_allow,
    "status": cmd_status,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "start"
        args.quiet = False

    try:
        config = load_config(path=args.config)
    except ConfigError as exc:
        print(f"  Config error: {exc}", file=sys.stderr)
        return 2

    if args.command != "start":
        setup_logging(None, config.log_level)
    return COMMANDS[args.command](config, args)


if __name__ == "__main__":
    sys.exit(main())
