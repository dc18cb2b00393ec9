"""
Conduit -- relays chat-network conversations to a remote coding-agent engine.

Conduit bridges messaging channels (Telegram and friends) to an
OpenCode-compatible session engine, with per-peer access control,
pairing codes, and live tool-progress updates.
"""

__version__ = "0.1.0"
__author__ = "Conduit Team"
