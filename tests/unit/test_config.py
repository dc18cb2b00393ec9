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
"""Tests for conduit.config -- YAML file + environment loading."""

import pytest
import yaml

from conduit.config import (
    DEFAULT_HEALTH_PORT,
    ConfigError,
    DmPolicy,
    ModelRef,
    PermissionMode,
    load_config,
    normalize_peer,
    normalize_whatsapp_id,
    parse_dm_policy,
    parse_list,
    parse_model,
    read_config_file,
    write_channel_token,
)


def _env(tmp_path, **extra):
    env = {"CONDUIT_HOME": str(tmp_path), "OPENCODE_DIRECTORY": str(tmp_path)}
    env.update(extra)
    return env


def _write_yaml(tmp_path, data):
    path = tmp_path / "conduit.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


# =========================================================================
# Parsing helpers
# =========================================================================

class TestHelpers:
    def test_parse_list_from_string(self):
        assert parse_list(" a, b ,,c ") == ["a", "b", "c"]

    def test_parse_list_from_sequence(self):
        assert parse_list(["x", 12]) == ["x", "12"]
        assert parse_list(None) == []

    def test_parse_model(self):
        assert parse_model("anthropic/claude-sonnet") == ModelRef("anthropic", "claude-sonnet")
        assert parse_model("openrouter/meta/llama").model_id == "meta/llama"
        assert parse_model("no-slash") is None
        assert parse_model("") is None

    def test_model_label(self):
        assert ModelRef("openai", "gpt-4o").label == "openai/gpt-4o"

    def test_unknown_dm_policy_falls_back_to_pairing(self):
        assert parse_dm_policy("bogus") is DmPolicy.PAIRING
        assert parse_dm_policy("OPEN") is DmPolicy.OPEN
        assert parse_dm_policy(DmPolicy.DISABLED) is DmPolicy.DISABLED

    def test_normalize_whatsapp_id(self):
        assert normalize_whatsapp_id("15551234567@s.whatsapp.net") == "+15551234567"
        assert normalize_whatsapp_id("+15551234567") == "+15551234567"
        assert normalize_whatsapp_id("15551234567") == "+15551234567"
        assert normalize_whatsapp_id("1203630@g.us") == "1203630@g.us"

    def test_normalize_peer_only_touches_whatsapp(self):
        assert normalize_peer("telegram", " 42 ") == "42"
        assert normalize_peer("whatsapp", "15550001111") == "+15550001111"


# =========================================================================
# load_config
# =========================================================================

class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path):
        config = load_config(env=_env(tmp_path))
        assert config.config_path == tmp_path / "conduit.yaml"
        assert config.db_path == tmp_path / "conduit.db"
        assert config.engine_url == "http://127.0.0.1:4096"
        assert config.permission_mode is PermissionMode.ALLOW
        assert config.tool_output_limit == 1200
        assert config.pairing_ttl_seconds == 3600
        assert config.pairing_ttl_ms == 3_600_000
        assert config.health_port == DEFAULT_HEALTH_PORT
        assert config.tool_updates_enabled is False
        assert config.model is None

    def test_channel_defaults(self, tmp_path):
        config = load_config(env=_env(tmp_path))
        assert config.channels["whatsapp"].dm_policy is DmPolicy.PAIRING
        assert config.channels["telegram"].dm_policy is None
        assert config.channels["telegram"].enabled is False

    def test_file_values(self, tmp_path):
        path = _write_yaml(tmp_path, {
            "engine": {"url": "http://engine:4000", "directory": str(tmp_path / "proj")},
            "permission_mode": "deny",
            "tool_updates": True,
            "tool_output_limit": 300,
            "model": "anthropic/claude",
            "channels": {
                "telegram": {"token": "123:abc", "allow_from": ["42"]},
                "whatsapp": {"dm_policy": "allowlist", "allow_from": ["15551234567"]},
            },
        })
        config = load_config(env={"CONDUIT_HOME": str(tmp_path)}, path=path)
        assert config.engine_url == "http://engine:4000"
        assert config.engine_directory == str(tmp_path / "proj")
        assert config.permission_mode is PermissionMode.DENY
        assert config.tool_updates_enabled is True
        assert config.tool_output_limit == 300
        assert config.model == ModelRef("anthropic", "claude")
        telegram = config.channels["telegram"]
        assert telegram.enabled is True
        assert telegram.token == "123:abc"
        assert telegram.allow_from == {"42"}
        whatsapp = config.channels["whatsapp"]
        assert whatsapp.dm_policy is DmPolicy.ALLOWLIST
        assert whatsapp.allow_from == {"+15551234567"}

    def test_env_overrides_file(self, tmp_path):
        path = _write_yaml(tmp_path, {"permission_mode": "deny", "engine": {"url": "http://file:1"}})
        config = load_config(
            env=_env(
                tmp_path,
                OPENCODE_URL="http://env:2",
                PERMISSION_MODE="allow",
                TELEGRAM_BOT_TOKEN="999:zzz",
                WHATSAPP_DM_POLICY="open",
                TOOL_OUTPUT_LIMIT="50",
                PAIRING_TTL_SECONDS="60",
            ),
            path=path,
        )
        assert config.engine_url == "http://env:2"
        assert config.permission_mode is PermissionMode.ALLOW
        assert config.channels["telegram"].token == "999:zzz"
        assert config.channels["telegram"].enabled is True
        assert config.channels["whatsapp"].dm_policy is DmPolicy.OPEN
        assert config.tool_output_limit == 50
        assert config.pairing_ttl_ms == 60_000

    def test_allow_from_env(self, tmp_path):
        config = load_config(env=_env(
            tmp_path,
            ALLOW_FROM="telegram:42,whatsapp:15550001111,*",
            ALLOW_FROM_TELEGRAM="7",
        ))
        assert config.channels["telegram"].allow_from == {"42", "7", "*"}
        assert config.channels["whatsapp"].allow_from == {"+15550001111", "*"}
        assert config.channels["whatsapp"].allow_all is True

    def test_seed_peers_excludes_wildcard(self, tmp_path):
        config = load_config(env=_env(tmp_path, ALLOW_FROM_WHATSAPP="*,15550001111"))
        assert config.channels["whatsapp"].seed_peers() == ["+15550001111"]

    def test_health_port_disabled(self, tmp_path):
        path = _write_yaml(tmp_path, {"health_port": 0})
        assert load_config(env=_env(tmp_path), path=path).health_port is None

    def test_health_port_env(self, tmp_path):
        assert load_config(env=_env(tmp_path, CONDUIT_HEALTH_PORT="9100")).health_port == 9100

    def test_config_path_env(self, tmp_path):
        custom = tmp_path / "elsewhere" / "bridge.yaml"
        custom.parent.mkdir()
        custom.write_text("log_level: debug\n", encoding="utf-8")
        config = load_config(env=_env(tmp_path, CONDUIT_CONFIG_PATH=str(custom)))
        assert config.config_path == custom
        assert config.log_level == "debug"

    def test_invalid_tool_output_limit(self, tmp_path):
        path = _write_yaml(tmp_path, {"tool_output_limit": -5})
        with pytest.raises(ConfigError):
            load_config(env=_env(tmp_path), path=path)

    def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "conduit.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(env=_env(tmp_path), path=path)

    def test_unknown_channel_gets_entry(self, tmp_path):
        config = load_config(env=_env(tmp_path))
        assert config.channel("signal").enabled is False
        assert "signal" in config.channels


# =========================================================================
# File writes
# =========================================================================

class TestWriteChannelToken:
    def test_creates_file(self, tmp_path):
        path = tmp_path / "sub" / "conduit.yaml"
        write_channel_token(path, "telegram", "111:aaa")
        data = read_config_file(path)
        assert data["channels"]["telegram"] == {"token": "111:aaa", "enabled": True}

    def test_preserves_other_settings(self, tmp_path):
        path = _write_yaml(tmp_path, {"permission_mode": "deny", "channels": {"telegram": {"allow_from": ["1"]}}})
        write_channel_token(path, "telegram", "222:bbb")
        data = read_config_file(path)
        assert data["permission_mode"] == "deny"
        assert data["channels"]["telegram"]["allow_from"] == ["1"]
        assert data["channels"]["telegram"]["token"] == "222:bbb"
