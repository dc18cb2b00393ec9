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
"""Per-session task queue.

Tasks that share a session key run one at a time in submission order.
Tasks under different keys run concurrently. A failing task is logged
and never blocks the tasks queued behind it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("conduit.bridges.queue")

TaskFactory = Callable[[], Awaitable[None]]


class SessionQueue:
    """Chains asyncio tasks per session key."""

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._tails)

    def __contains__(self, key: str) -> bool:
        return key in self._tails

    def enqueue(self, key: str, task: TaskFactory) -> asyncio.Task:
        """Run ``task()`` after every task already queued under ``key``."""
        previous = self._tails.get(key)

        async def run() -> None:
            try:
                if previous is not None:
                    await asyncio.wait({previous})
                await task()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("session task failed", extra={"fields": {"session": key}})
            finally:
                # A newer enqueue may have replaced us while we were running.
                if self._tails.get(key) is current:
                    del self._tails[key]

        current = asyncio.ensure_future(run())
        self._tails[key] = current
        return current

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for queued tasks to finish. False if the timeout elapsed first."""
        pending = set(self._tails.values())
        if not pending:
            return True
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        return not still_running
