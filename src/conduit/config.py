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
"""Bridge configuration.

Settings come from a YAML file on the host plus environment overrides.
Environment always wins over the file, the file wins over defaults.

Config location: ~/.conduit/conduit.yaml  (or $CONDUIT_CONFIG_PATH)

Example::

    engine:
      url: http://127.0.0.1:4096
      directory: ~/projects/app
    permission_mode: deny
    tool_updates: true
    channels:
      telegram:
        token: "123:abc"
        allow_from: ["5551234"]
      whatsapp:
        dm_policy: pairing
        allow_from: ["+15551234567"]
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("conduit.config")

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_ENGINE_URL = "http://127.0.0.1:4096"
DEFAULT_TOOL_OUTPUT_LIMIT = 1200
DEFAULT_PAIRING_TTL_SECONDS = 60 * 60
DEFAULT_HEALTH_PORT = 3005
KNOWN_CHANNELS = ("telegram", "whatsapp")

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigError(ValueError):
    """Raised when a configuration value is present but unusable."""


class DmPolicy(str, Enum):
    """How a channel treats direct messages from unknown peers."""

    PAIRING = "pairing"
    ALLOWLIST = "allowlist"
    OPEN = "open"
    DISABLED = "disabled"


class PermissionMode(str, Enum):
    """How the bridge answers engine permission prompts."""

    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class ModelRef:
    """A provider/model pair as the engine reports it."""

    provider_id: str
    model_id: str

    @property
    def label(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


@dataclass
class ChannelConfig:
    """Per-channel settings.

    ``dm_policy`` of ``None`` means the channel only uses its static
    allowlist (empty list = everyone may talk to the bot).
    """

    name: str
    enabled: bool = False
    token: str = ""
    dm_policy: DmPolicy | None = None
    allow_from: set[str] = field(default_factory=set)
    self_chat_mode: bool = False

    @property
    def allow_all(self) -> bool:
        return "*" in self.allow_from

    def seed_peers(self) -> list[str]:
        """Static allowlist entries that should be written to the store."""
        return sorted(peer for peer in self.allow_from if peer != "*")


@dataclass
class BridgeConfig:
    """Full bridge configuration (read-only once the bridge starts)."""

    config_path: Path
    data_dir: Path
    db_path: Path
    log_file: Path

    engine_url: str = DEFAULT_ENGINE_URL
    engine_directory: str = ""
    engine_username: str | None = None
    engine_password: str | None = None
    model: ModelRef | None = None

    channels: dict[str, ChannelConfig] = field(default_factory=dict)

    tool_updates_enabled: bool = False
    tool_output_limit: int = DEFAULT_TOOL_OUTPUT_LIMIT
    permission_mode: PermissionMode = PermissionMode.ALLOW
    pairing_ttl_seconds: int = DEFAULT_PAIRING_TTL_SECONDS
    groups_enabled: bool = False
    health_port: int | None = DEFAULT_HEALTH_PORT
    log_level: str = "info"

    def channel(self, name: str) -> ChannelConfig:
        """Return the config for ``name``, creating an empty entry if unknown."""
        if name not in self.channels:
            self.channels[name] = ChannelConfig(name=name)
        return self.channels[name]

    @property
    def pairing_ttl_ms(self) -> int:
        return self.pairing_ttl_seconds * 1000


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def parse_bool(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_list(value: Any) -> list[str]:
    """Accept a comma separated string or a YAML list."""
    if not value:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(item) for item in value]
    return [item.strip() for item in items if item.strip()]


def parse_model(value: str | None) -> ModelRef | None:
    """Parse ``provider/model`` (the model id itself may contain slashes)."""
    if not value or not value.strip():
        return None
    provider, _, model = value.strip().partition("/")
    if not provider or not model:
        return None
    return ModelRef(provider_id=provider, model_id=model)


def parse_dm_policy(value: Any) -> DmPolicy:
    """Unknown or missing values fall back to pairing."""
    if isinstance(value, DmPolicy):
        return value
    try:
        return DmPolicy(str(value).strip().lower())
    except ValueError:
        return DmPolicy.PAIRING


def expand_home(value: str | Path) -> Path:
    return Path(os.path.expanduser(str(value)))


def normalize_whatsapp_id(value: str) -> str:
    """Reduce a WhatsApp JID or phone number to ``+<digits>``.

    Group JIDs (``...@g.us``) are returned unchanged.
    """
    trimmed = value.strip()
    if not trimmed or trimmed.endswith("@g.us"):
        return trimmed
    base = re.sub(r"@s\.whatsapp\.net$", "", trimmed, flags=re.IGNORECASE)
    if base.startswith("+"):
        return base
    if base.isdigit():
        return f"+{base}"
    return base


def normalize_peer(channel: str, peer_id: str) -> str:
    """Canonical store key for a peer on ``channel``."""
    if channel == "whatsapp":
        return normalize_whatsapp_id(peer_id)
    return peer_id.strip()


def _normalize_allow_from(channel: str, entries: list[str]) -> set[str]:
    result: set[str] = set()
    for entry in entries:
        if entry == "*":
            result.add("*")
        elif entry:
            result.add(normalize_peer(channel, entry))
    return result


def _env_allowlist(env: Mapping[str, str]) -> dict[str, set[str]]:
    """``ALLOW_FROM`` entries are ``channel:peer`` or bare peers (all channels)."""
    allow: dict[str, set[str]] = {name: set() for name in KNOWN_CHANNELS}
    for entry in parse_list(env.get("ALLOW_FROM")):
        if ":" in entry:
            channel, _, peer = entry.partition(":")
            channel = channel.strip().lower()
            if channel in allow and peer.strip():
                allow[channel].add(peer.strip())
        else:
            for peers in allow.values():
                peers.add(entry)
    for name in KNOWN_CHANNELS:
        allow[name].update(parse_list(env.get(f"ALLOW_FROM_{name.upper()}")))
    return allow


# ---------------------------------------------------------------------------
# File I/O
# ---------------------------------------------------------------------------


def read_config_file(path: Path) -> dict[str, Any]:
    """Load the YAML config file. Missing file = empty config."""
    if not path.exists():
        logger.info("No config file at %s -- using defaults", path)
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping")
    return raw


def write_config_file(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8")
    logger.info("Saved config to %s", path)


def write_channel_token(path: Path, channel: str, token: str) -> None:
    """Persist a channel bot token and mark the channel enabled."""
    data = read_config_file(path)
    channels = data.setdefault("channels", {})
    if not isinstance(channels, dict):
        channels = data["channels"] = {}
    section = channels.setdefault(channel, {})
    if not isinstance(section, dict):
        section = channels[channel] = {}
    section["token"] = token
    section["enabled"] = True
    write_config_file(path, data)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config(env: Mapping[str, str] | None = None, path: str | Path | None = None) -> BridgeConfig:
    """Build a :class:`BridgeConfig` from the YAML file and ``env``."""
    env = os.environ if env is None else env

    data_dir = expand_home(env.get("CONDUIT_HOME") or Path.home() / ".conduit")
    if path is not None:
        config_path = expand_home(path)
    elif env.get("CONDUIT_CONFIG_PATH", "").strip():
        config_path = expand_home(env["CONDUIT_CONFIG_PATH"].strip())
    else:
        config_path = data_dir / "conduit.yaml"
    raw = read_config_file(config_path)

    engine_raw = raw.get("engine") or {}
    channels_raw = raw.get("channels") or {}
    env_allow = _env_allowlist(env)

    channels: dict[str, ChannelConfig] = {}
    for name in sorted(set(KNOWN_CHANNELS) | set(channels_raw)):
        section = channels_raw.get(name) or {}
        allow = _normalize_allow_from(
            name, parse_list(section.get("allow_from")) + sorted(env_allow.get(name, set()))
        )
        dm_policy = section.get("dm_policy")
        channels[name] = ChannelConfig(
            name=name,
            enabled=parse_bool(section.get("enabled"), bool(section.get("token"))),
            token=str(section.get("token") or ""),
            dm_policy=parse_dm_policy(dm_policy) if dm_policy is not None else None,
            allow_from=allow,
            self_chat_mode=parse_bool(section.get("self_chat_mode"), False),
        )

    telegram = channels["telegram"]
    token = env.get("TELEGRAM_BOT_TOKEN", "").strip()
    if token:
        telegram.token = token
    telegram.enabled = parse_bool(env.get("TELEGRAM_ENABLED"), telegram.enabled or bool(telegram.token))

    whatsapp = channels["whatsapp"]
    whatsapp.dm_policy = parse_dm_policy(env.get("WHATSAPP_DM_POLICY") or whatsapp.dm_policy or "pairing")
    whatsapp.self_chat_mode = parse_bool(env.get("WHATSAPP_SELF_CHAT"), whatsapp.self_chat_mode)
    whatsapp.enabled = parse_bool(env.get("WHATSAPP_ENABLED"), whatsapp.enabled)

    permission_raw = str(env.get("PERMISSION_MODE") or raw.get("permission_mode") or "allow").lower()
    permission_mode = PermissionMode.DENY if permission_raw == "deny" else PermissionMode.ALLOW

    tool_output_limit = parse_int(env.get("TOOL_OUTPUT_LIMIT")) or parse_int(raw.get("tool_output_limit"))
    if tool_output_limit is not None and tool_output_limit <= 0:
        raise ConfigError("tool_output_limit must be positive")

    pairing_ttl = parse_int(env.get("PAIRING_TTL_SECONDS")) or parse_int(raw.get("pairing_ttl_seconds"))
    if pairing_ttl is not None and pairing_ttl <= 0:
        raise ConfigError("pairing_ttl_seconds must be positive")

    health_port = parse_int(env.get("CONDUIT_HEALTH_PORT"))
    if health_port is None:
        health_port = parse_int(raw.get("health_port"))
    if health_port is None and "health_port" not in raw:
        health_port = DEFAULT_HEALTH_PORT

    engine_directory = (
        env.get("OPENCODE_DIRECTORY", "").strip() or str(engine_raw.get("directory") or "") or os.getcwd()
    )

    return BridgeConfig(
        config_path=config_path,
        data_dir=data_dir,
        db_path=expand_home(env.get("CONDUIT_DB_PATH") or data_dir / "conduit.db"),
        log_file=expand_home(env.get("CONDUIT_LOG_FILE") or data_dir / "logs" / "conduit.log"),
        engine_url=env.get("OPENCODE_URL", "").strip() or str(engine_raw.get("url") or DEFAULT_ENGINE_URL),
        engine_directory=str(expand_home(engine_directory)),
        engine_username=env.get("OPENCODE_SERVER_USERNAME", "").strip() or engine_raw.get("username") or None,
        engine_password=env.get("OPENCODE_SERVER_PASSWORD", "").strip() or engine_raw.get("password") or None,
        model=parse_model(env.get("CONDUIT_MODEL") or raw.get("model")),
        channels=channels,
        tool_updates_enabled=parse_bool(env.get("TOOL_UPDATES_ENABLED"), parse_bool(raw.get("tool_updates"), False)),
        tool_output_limit=tool_output_limit or DEFAULT_TOOL_OUTPUT_LIMIT,
        permission_mode=permission_mode,
        pairing_ttl_seconds=pairing_ttl or DEFAULT_PAIRING_TTL_SECONDS,
        groups_enabled=parse_bool(env.get("GROUPS_ENABLED"), parse_bool(raw.get("groups_enabled"), False)),
        health_port=health_port or None,
        log_level=(env.get("LOG_LEVEL") or str(raw.get("log_level") or "info")).strip(),
    )
