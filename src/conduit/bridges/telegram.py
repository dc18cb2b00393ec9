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
Conduit -- Telegram Adapter

Telegram bot adapter built on python-telegram-bot (async, long polling).
Each chat id is one peer.

Requirements:
    pip install python-telegram-bot>=20.0

Setup:
    1. Message @BotFather on Telegram -> /newbot -> get the token
    2. Put it in conduit.yaml (channels.telegram.token) or TELEGRAM_BOT_TOKEN
    3. Run ``conduit start`` and message the bot

Group chats are ignored unless groups are enabled, and then only
messages that @mention the bot are forwarded (with the mention removed).
"""

import logging
import re
from typing import Optional

from conduit.bridges.base import AdapterError, ChannelAdapter, InboundMessage, MessageHandler

logger = logging.getLogger("conduit.bridges.telegram")

MAX_TEXT_LENGTH = 4096
GROUP_CHAT_TYPES = {"group", "supergroup", "channel"}


def strip_mention(text: str, bot_username: Optional[str]) -> Optional[str]:
    """Remove ``@bot_username`` from a group message.

    Returns None when the bot is not mentioned or nothing is left.
    """
    if not bot_username:
        return None
    pattern = re.compile(rf"@{re.escape(bot_username)}\b", re.IGNORECASE)
    if not pattern.search(text):
        return None
    stripped = pattern.sub("", text).strip()
    return stripped or None


class TelegramAdapter(ChannelAdapter):
    """Telegram bot adapter using python-telegram-bot (async)."""

    name = "telegram"
    max_text_length = MAX_TEXT_LENGTH

    def __init__(self, token: str, groups_enabled: bool = False, on_message: Optional[MessageHandler] = None):
        super().__init__(on_message)
        if not token:
            raise AdapterError("A Telegram bot token is required")
        self.token = token
        self.groups_enabled = groups_enabled
        self._app = None  # telegram.ext.Application

    async def start(self):
        """Start the Telegram bot with long polling."""
        try:
            from telegram import Update
            from telegram.ext import Application, ContextTypes, MessageHandler as TgMessageHandler, filters
        except ImportError:
            logger.error("python-telegram-bot not installed. Run: pip install python-telegram-bot")
            raise

        self._app = Application.builder().token(self.token).build()

        async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
            message = update.effective_message
            if message is None or update.effective_chat is None:
                return
            text = self.extract_text(
                message.text or message.caption or "",
                update.effective_chat.type,
                context.bot.username,
            )
            if text is None:
                return
            inbound = InboundMessage(
                channel=self.name,
                peer_id=str(update.effective_chat.id),
                text=text,
                raw=message,
            )
            try:
                await self.dispatch(inbound)
            except Exception:
                logger.exception("telegram inbound handler failed", extra={"fields": {"peer": inbound.peer_id}})

        async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE):
            logger.error("telegram bot error", extra={"fields": {"error": str(context.error)}})

        self._app.add_handler(TgMessageHandler((filters.TEXT | filters.CAPTION), on_message))
        self._app.add_error_handler(on_error)

        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling(drop_pending_updates=True)
        self._running = True
        logger.info("Telegram adapter started (long polling)")

    def extract_text(self, text: str, chat_type: str, bot_username: Optional[str]) -> Optional[str]:
        """The text to forward for a message, or None to ignore it."""
        if not text.strip():
            return None
        if chat_type not in GROUP_CHAT_TYPES:
            return text
        if not self.groups_enabled:
            logger.debug("telegram message ignored (groups disabled)")
            return None
        stripped = strip_mention(text, bot_username)
        if stripped is None:
            logger.debug("telegram message ignored (not mentioned)")
        return stripped

    async def stop(self):
        """Stop the Telegram bot."""
        if self._app is not None:
            try:
                if self._app.updater is not None:
                    await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()
            finally:
                self._app = None
        self._running = False
        logger.info("Telegram adapter stopped")

    def _bot(self):
        if self._app is None:
            raise AdapterError("Telegram adapter is not started")
        return self._app.bot

    async def send_text(self, peer_id: str, text: str):
        await self._bot().send_message(chat_id=int(peer_id), text=text)

    async def send_file(self, peer_id: str, path: str, caption: Optional[str] = None):
        with open(path, "rb") as handle:
            await self._bot().send_document(chat_id=int(peer_id), document=handle, caption=caption)

    async def send_typing(self, peer_id: str):
        await self._bot().send_chat_action(chat_id=int(peer_id), action="typing")
