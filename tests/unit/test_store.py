# Conduit
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Conduit.
#
# Conduit is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Tests for conduit.bridges.store -- SQLite sessions, allowlist, pairing, settings."""

from unittest.mock import patch

from conduit.bridges.store import BridgeStore, PairingRequest

HOUR_MS = 60 * 60 * 1000


# =========================================================================
# Sessions
# =========================================================================

class TestSessions:
    def test_missing_session(self, store):
        assert store.get_session("telegram", "42") is None

    def test_upsert_then_get(self, store):
        store.upsert_session("telegram", "42", "ses_1")
        mapping = store.get_session("telegram", "42")
        assert mapping.session_id == "ses_1"
        assert mapping.created_at == mapping.updated_at

    def test_upsert_replaces_not_duplicates(self, store):
        store.upsert_session("telegram", "42", "ses_1")
        store.upsert_session("telegram", "42", "ses_2")
        assert store.get_session("telegram", "42").session_id == "ses_2"
        rows = store._query("SELECT COUNT(*) AS n FROM sessions")
        assert rows[0]["n"] == 1

    def test_sessions_scoped_by_channel(self, store):
        store.upsert_session("telegram", "42", "ses_t")
        store.upsert_session("whatsapp", "42", "ses_w")
        assert store.get_session("telegram", "42").session_id == "ses_t"
        assert store.get_session("whatsapp", "42").session_id == "ses_w"

    def test_persists_across_reopen(self, tmp_path):
        path = tmp_path / "state.db"
        first = BridgeStore(path)
        first.upsert_session("telegram", "1", "ses_keep")
        first.close()
        second = BridgeStore(path)
        try:
            assert second.get_session("telegram", "1").session_id == "ses_keep"
        finally:
            second.close()


# =========================================================================
# Allowlist
# =========================================================================

class TestAllowlist:
    def test_allow_peer(self, store):
        assert not store.is_allowed("whatsapp", "+1555")
        store.allow_peer("whatsapp", "+1555")
        assert store.is_allowed("whatsapp", "+1555")
        assert not store.is_allowed("telegram", "+1555")

    def test_allow_peer_is_idempotent(self, store):
        store.allow_peer("telegram", "7")
        store.allow_peer("telegram", "7")
        assert len(store.list_allowlist("telegram")) == 1

    def test_seed_leaves_existing_rows(self, store):
        with patch("conduit.bridges.store.now_ms", return_value=1000):
            store.allow_peer("telegram", "7")
        with patch("conduit.bridges.store.now_ms", return_value=5000):
            store.seed_allowlist("telegram", ["7", "8"])
        entries = {e.peer_id: e.created_at for e in store.list_allowlist("telegram")}
        assert entries == {"7": 1000, "8": 5000}

    def test_list_all_channels(self, store):
        store.allow_peer("telegram", "1")
        store.allow_peer("whatsapp", "+2")
        assert {(e.channel, e.peer_id) for e in store.list_allowlist()} == {("telegram", "1"), ("whatsapp", "+2")}


# =========================================================================
# Pairing requests
# =========================================================================

class TestPairingRequests:
    def test_create_and_get(self, store):
        store.create_pairing_request("whatsapp", "+1555", "123456", HOUR_MS)
        request = store.get_pairing_request("whatsapp", "+1555")
        assert isinstance(request, PairingRequest)
        assert request.code == "123456"
        assert request.expires_at - request.created_at == HOUR_MS

    def test_one_request_per_peer(self, store):
        store.create_pairing_request("whatsapp", "+1555", "111111", HOUR_MS)
        store.create_pairing_request("whatsapp", "+1555", "222222", HOUR_MS)
        requests = store.list_pairing_requests("whatsapp")
        assert len(requests) == 1
        assert requests[0].code == "222222"

    def test_expired_requests_are_hidden(self, store):
        with patch("conduit.bridges.store.now_ms", return_value=1_000):
            store.create_pairing_request("whatsapp", "+1", "111111", 500)
        with patch("conduit.bridges.store.now_ms", return_value=2_000):
            assert store.get_pairing_request("whatsapp", "+1") is None
            assert store.list_pairing_requests("whatsapp") == []

    def test_list_oldest_first(self, store):
        for ts, peer in ((3_000, "+3"), (1_000, "+1"), (2_000, "+2")):
            with patch("conduit.bridges.store.now_ms", return_value=ts):
                store.create_pairing_request("whatsapp", peer, peer[1:] * 6, HOUR_MS)
        with patch("conduit.bridges.store.now_ms", return_value=4_000):
            peers = [r.peer_id for r in store.list_pairing_requests("whatsapp")]
        assert peers == ["+1", "+2", "+3"]

    def test_approve_removes_request(self, store):
        store.create_pairing_request("whatsapp", "+1555", "123456", HOUR_MS)
        request = store.approve_pairing_request("whatsapp", "123456")
        assert request.peer_id == "+1555"
        assert store.get_pairing_request("whatsapp", "+1555") is None
        assert store.approve_pairing_request("whatsapp", "123456") is None

    def test_approve_ignores_expired(self, store):
        with patch("conduit.bridges.store.now_ms", return_value=1_000):
            store.create_pairing_request("whatsapp", "+1", "654321", 10)
        with patch("conduit.bridges.store.now_ms", return_value=5_000):
            assert store.approve_pairing_request("whatsapp", "654321") is None

    def test_approve_wrong_channel(self, store):
        store.create_pairing_request("whatsapp", "+1", "123123", HOUR_MS)
        assert store.approve_pairing_request("telegram", "123123") is None

    def test_deny_regardless_of_expiry(self, store):
        with patch("conduit.bridges.store.now_ms", return_value=1_000):
            store.create_pairing_request("whatsapp", "+1", "999999", 10)
        assert store.deny_pairing_request("whatsapp", "999999") is True
        assert store.deny_pairing_request("whatsapp", "999999") is False

    def test_prune(self, store):
        with patch("conduit.bridges.store.now_ms", return_value=1_000):
            store.create_pairing_request("whatsapp", "+1", "111111", 10)
            store.create_pairing_request("whatsapp", "+2", "222222", HOUR_MS)
        with patch("conduit.bridges.store.now_ms", return_value=2_000):
            assert store.prune_pairing_requests() == 1
            assert [r.peer_id for r in store.list_pairing_requests()] == ["+2"]

    def test_is_expired(self):
        request = PairingRequest("whatsapp", "+1", "111111", created_at=0, expires_at=100)
        assert request.is_expired(at=100)
        assert not request.is_expired(at=99)


# =========================================================================
# Settings
# =========================================================================

class TestSettings:
    def test_get_missing(self, store):
        assert store.get_setting("engine.version") is None

    def test_set_and_overwrite(self, store):
        store.set_setting("engine.version", "1.0.0")
        store.set_setting("engine.version", "1.1.0")
        assert store.get_setting("engine.version") == "1.1.0"


class TestTransactions:
    def test_failed_write_rolls_back(self, store):
        try:
            with store._write() as c:
                c.execute("INSERT INTO settings (key, value) VALUES ('a', 'b')")
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert store.get_setting("a") is None
        # Lock is released: a later write still works.
        store.set_setting("a", "c")
        assert store.get_setting("a") == "c"
