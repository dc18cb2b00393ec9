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
Conduit -- Bridge Logger

Every inbound message, outbound send, engine call and event-stream
transition is written to a rotating log file that operators can tail.

LOG LOCATION:
    ~/.conduit/logs/conduit.log          (current)
    ~/.conduit/logs/conduit.log.1        (previous rotation)

RULES:
    - Single log file, max 10 MB before rotation
    - Human-readable format with structured key=value fields
    - WARNING and above are mirrored to stderr

USAGE:
    from conduit.core.logging import setup_logging
    setup_logging(config.log_file, config.log_level)

    logger = logging.getLogger("conduit.bridges.bridge")
    logger.info("sending message", extra={"fields": {"channel": "telegram"}})
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path

# =============================================================================
# CONSTANTS
# =============================================================================

MAX_LOG_FILE_BYTES = 10 * 1024 * 1024  # 10 MB per file
LOG_BACKUP_COUNT = 5
ROOT_LOGGER = "conduit"

LEVEL_NAMES = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}


# =============================================================================
# CUSTOM FORMATTER -- human-readable + structured
# =============================================================================


class ConduitLogFormatter(logging.Formatter):
    """
    Format: TIMESTAMP | LEVEL | COMPONENT | MESSAGE | {structured fields}

    Example:
    2026-02-09T17:30:45.123Z | INFO  | bridge       | sending message | channel="telegram" length=42
    2026-02-09T17:30:46.501Z | ERROR | events       | event stream closed | error="connection refused"
    """

    LEVEL_WIDTH = 5
    COMPONENT_WIDTH = 12

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.fromtimestamp(record.created, tz=timezone.utc)
        ts = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

        level = record.levelname
        if level == "WARNING":
            level = "WARN"
        component = getattr(record, "component", None) or record.name.rsplit(".", 1)[-1]
        message = record.getMessage()

        # Structured fields
        fields = getattr(record, "fields", None) or {}
        field_str = ""
        if fields:
            parts = []
            for k, v in fields.items():
                if isinstance(v, str):
                    parts.append(f'{k}="{v}"')
                elif isinstance(v, float):
                    parts.append(f"{k}={v:.3f}")
                else:
                    parts.append(f"{k}={v}")
            field_str = " | " + " ".join(parts)

        line = (
            f"{ts} | {level:<{self.LEVEL_WIDTH}} | "
            f"{component:<{self.COMPONENT_WIDTH}} | {message}{field_str}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def resolve_level(name: str | None) -> int:
    """Map a config log level ("info", "debug", ...) onto a logging level."""
    if not name:
        return logging.INFO
    return LEVEL_NAMES.get(name.strip().lower(), logging.INFO)


# =============================================================================
# SETUP
# =============================================================================


def setup_logging(log_file: str | Path | None = None, level: str | None = "info") -> logging.Logger:
    """
    Configure the ``conduit`` logger tree.

    Writes to ``log_file`` (rotating, 10 MB) at the requested level and
    mirrors WARNING+ to stderr. Calling it again replaces the handlers,
    so repeated CLI invocations in one process do not duplicate lines.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(resolve_level(level))
    logger.propagate = False

    # Remove existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = ConduitLogFormatter()

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(path),
            maxBytes=MAX_LOG_FILE_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    stderr_handler.setFormatter(formatter)
    logger.addHandler(stderr_handler)

    logger.debug("Logger initialized", extra={"component": "System", "fields": {"log_file": str(log_file or "")}})
    return logger
