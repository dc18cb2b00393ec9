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
Conduit -- Bridge Store

Durable state for the bridge, kept in a single SQLite file:

    sessions          (channel, peer_id) -> remote session id
    allowlist         peers allowed to talk to the engine
    pairing_requests  pending, time-limited access requests
    settings          arbitrary key/value pairs

Location: ~/.conduit/conduit.db

Every write commits before returning. Writes share one lock and run in
their own transaction, so approve/deny/prune calls from different call
sites never interleave.
"""

import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# ROWS
# =============================================================================


@dataclass
class SessionMapping:
    """The remote session bound to a (channel, peer) pair."""

    channel: str
    peer_id: str
    session_id: str
    created_at: int
    updated_at: int


@dataclass
class AllowlistEntry:
    """A peer explicitly allowed to converse."""

    channel: str
    peer_id: str
    created_at: int


@dataclass
class PairingRequest:
    """A pending request for access, identified by a 6-digit code."""

    channel: str
    peer_id: str
    code: str
    created_at: int
    expires_at: int

    def is_expired(self, at: Optional[int] = None) -> bool:
        return self.expires_at <= (now_ms() if at is None else at)


_PAIRING_COLUMNS = "channel, peer_id, code, created_at, expires_at"


# =============================================================================
# STORE
# =============================================================================


class BridgeStore:
    """SQLite-backed persistence for sessions, allowlist, pairing and settings."""

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            str(self.db_path),
            isolation_level=None,  # explicit BEGIN/COMMIT below
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._init_db()

    # ── Schema ───────────────────────────────────────────────────────────

    def _init_db(self):
        with self._write() as c:
            c.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    channel TEXT NOT NULL,
                    peer_id TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY (channel, peer_id)
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS allowlist (
                    channel TEXT NOT NULL,
                    peer_id TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    PRIMARY KEY (channel, peer_id)
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS pairing_requests (
                    channel TEXT NOT NULL,
                    peer_id TEXT NOT NULL,
                    code TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    expires_at INTEGER NOT NULL,
                    PRIMARY KEY (channel, peer_id)
                )
            """)

    def _write(self):
        return _Transaction(self._conn, self._lock)

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ── Sessions ─────────────────────────────────────────────────────────

    def get_session(self, channel: str, peer_id: str) -> Optional[SessionMapping]:
        rows = self._query(
            "SELECT channel, peer_id, session_id, created_at, updated_at "
            "FROM sessions WHERE channel = ? AND peer_id = ?",
            (channel, peer_id),
        )
        return SessionMapping(**dict(rows[0])) if rows else None

    def upsert_session(self, channel: str, peer_id: str, session_id: str):
        ts = now_ms()
        with self._write() as c:
            c.execute(
                """
                INSERT INTO sessions (channel, peer_id, session_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(channel, peer_id)
                DO UPDATE SET session_id = excluded.session_id, updated_at = excluded.updated_at
                """,
                (channel, peer_id, session_id, ts, ts),
            )

    # ── Allowlist ────────────────────────────────────────────────────────

    def is_allowed(self, channel: str, peer_id: str) -> bool:
        rows = self._query(
            "SELECT 1 FROM allowlist WHERE channel = ? AND peer_id = ?",
            (channel, peer_id),
        )
        return bool(rows)

    def allow_peer(self, channel: str, peer_id: str):
        with self._write() as c:
            c.execute(
                """
                INSERT INTO allowlist (channel, peer_id, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(channel, peer_id) DO UPDATE SET created_at = excluded.created_at
                """,
                (channel, peer_id, now_ms()),
            )

    def seed_allowlist(self, channel: str, peers: Iterable[str]):
        """Insert static allowlist peers; existing rows are left untouched."""
        ts = now_ms()
        with self._write() as c:
            c.executemany(
                """
                INSERT INTO allowlist (channel, peer_id, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(channel, peer_id) DO NOTHING
                """,
                [(channel, peer, ts) for peer in peers],
            )

    def list_allowlist(self, channel: Optional[str] = None) -> List[AllowlistEntry]:
        if channel:
            rows = self._query(
                "SELECT channel, peer_id, created_at FROM allowlist WHERE channel = ? ORDER BY created_at ASC",
                (channel,),
            )
        else:
            rows = self._query("SELECT channel, peer_id, created_at FROM allowlist ORDER BY created_at ASC")
        return [AllowlistEntry(**dict(row)) for row in rows]

    # ── Pairing requests ─────────────────────────────────────────────────

    def list_pairing_requests(self, channel: Optional[str] = None) -> List[PairingRequest]:
        """Active (non-expired) requests, oldest first."""
        ts = now_ms()
        if channel:
            rows = self._query(
                f"SELECT {_PAIRING_COLUMNS} FROM pairing_requests "
                "WHERE channel = ? AND expires_at > ? ORDER BY created_at ASC",
                (channel, ts),
            )
        else:
            rows = self._query(
                f"SELECT {_PAIRING_COLUMNS} FROM pairing_requests "
                "WHERE expires_at > ? ORDER BY created_at ASC",
                (ts,),
            )
        return [PairingRequest(**dict(row)) for row in rows]

    def get_pairing_request(self, channel: str, peer_id: str) -> Optional[PairingRequest]:
        rows = self._query(
            f"SELECT {_PAIRING_COLUMNS} FROM pairing_requests "
            "WHERE channel = ? AND peer_id = ? AND expires_at > ?",
            (channel, peer_id, now_ms()),
        )
        return PairingRequest(**dict(rows[0])) if rows else None

    def create_pairing_request(self, channel: str, peer_id: str, code: str, ttl_ms: int):
        """Create or refresh the peer's request (one row per channel/peer)."""
        ts = now_ms()
        with self._write() as c:
            c.execute(
                f"""
                INSERT INTO pairing_requests ({_PAIRING_COLUMNS})
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(channel, peer_id) DO UPDATE SET
                    code = excluded.code,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                (channel, peer_id, code, ts, ts + ttl_ms),
            )

    def approve_pairing_request(self, channel: str, code: str) -> Optional[PairingRequest]:
        """Find a live request by code and delete it in one transaction."""
        with self._write() as c:
            row = c.execute(
                f"SELECT {_PAIRING_COLUMNS} FROM pairing_requests "
                "WHERE channel = ? AND code = ? AND expires_at > ? "
                "ORDER BY created_at ASC LIMIT 1",
                (channel, code, now_ms()),
            ).fetchone()
            if row is None:
                return None
            c.execute(
                "DELETE FROM pairing_requests WHERE channel = ? AND peer_id = ?",
                (channel, row["peer_id"]),
            )
        return PairingRequest(**dict(row))

    def deny_pairing_request(self, channel: str, code: str) -> bool:
        """Delete by code regardless of expiry. True if a row was removed."""
        with self._write() as c:
            cursor = c.execute(
                "DELETE FROM pairing_requests WHERE channel = ? AND code = ?",
                (channel, code),
            )
            return cursor.rowcount > 0

    def prune_pairing_requests(self) -> int:
        """Delete expired requests. Returns the number removed."""
        with self._write() as c:
            cursor = c.execute("DELETE FROM pairing_requests WHERE expires_at <= ?", (now_ms(),))
            return cursor.rowcount

    # ── Settings ─────────────────────────────────────────────────────────

    def get_setting(self, key: str) -> Optional[str]:
        rows = self._query("SELECT value FROM settings WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def set_setting(self, key: str, value: str):
        with self._write() as c:
            c.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def close(self):
        with self._lock:
            self._conn.close()


class _Transaction:
    """``with`` block holding the store lock inside BEGIN IMMEDIATE / COMMIT."""

    def __init__(self, conn: sqlite3.Connection, lock):
        self._conn = conn
        self._lock = lock

    def __enter__(self) -> sqlite3.Connection:
        self._lock.acquire()
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except Exception:
            self._lock.release()
            raise
        return self._conn

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                self._conn.execute("COMMIT")
            else:
                self._conn.execute("ROLLBACK")
        finally:
            self._lock.release()
        return False
