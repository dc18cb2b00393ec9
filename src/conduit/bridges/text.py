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
"""Outbound text helpers: chunking, truncation and tool-input summaries."""

from __future__ import annotations

from typing import Any

ELLIPSIS = "..."

# Keys that best describe what a tool call is doing, most specific first.
_SUMMARY_KEYS = ("command", "filePath", "path", "pattern", "url", "query", "description", "prompt")


def truncate_text(text: str, limit: int) -> str:
    """Cut ``text`` to at most ``limit`` characters, marking the cut with '...'."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    if limit <= len(ELLIPSIS):
        return text[:limit]
    return text[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def utf16_len(text: str) -> int:
    """Length in UTF-16 code units, the unit chat APIs use for message limits."""
    return len(text.encode("utf-16-le")) // 2


def _hard_split(line: str, limit: int) -> list[str]:
    pieces: list[str] = []
    current = ""
    size = 0
    for char in line:
        width = 2 if ord(char) > 0xFFFF else 1
        if current and size + width > limit:
            pieces.append(current)
            current = ""
            size = 0
        current += char
        size += width
    pieces.append(current)
    return pieces


def chunk_text(text: str, limit: int) -> list[str]:
    """Split ``text`` into messages of at most ``limit`` UTF-16 code units.

    Lines are kept whole whenever they fit; only a single line longer
    than ``limit`` is hard-split, and never inside a surrogate pair.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if not text.strip():
        return []
    if utf16_len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""
    size = 0
    for line in text.splitlines(keepends=True):
        width = utf16_len(line)
        if width > limit:
            if current:
                chunks.append(current)
                current = ""
                size = 0
            pieces = _hard_split(line, limit)
            chunks.extend(pieces[:-1])
            line = pieces[-1]
            width = utf16_len(line)
        if size + width > limit:
            chunks.append(current)
            current = ""
            size = 0
        current += line
        size += width
    if current:
        chunks.append(current)

    return [chunk.rstrip("\r\n") for chunk in chunks if chunk.strip()]


def format_input_summary(tool_input: dict[str, Any] | None) -> str:
    """One-line description of a tool call's input."""
    if not tool_input:
        return ""
    for key in _SUMMARY_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return " ".join(value.split())
    parts = []
    for key, value in tool_input.items():
        if isinstance(value, (str, int, float, bool)):
            parts.append(f"{key}={value}")
    return " ".join(" ".join(parts).split())
