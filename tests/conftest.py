"""Pytest configuration for conduit tests."""

import sys
from pathlib import Path

import pytest

# Ensure src/conduit is importable
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from conduit.bridges.store import BridgeStore  # noqa: E402
from conduit.config import load_config  # noqa: E402


@pytest.fixture
def config(tmp_path):
    """A BridgeConfig rooted in tmp_path with no config file and no env."""
    env = {"CONDUIT_HOME": str(tmp_path), "OPENCODE_DIRECTORY": str(tmp_path / "work")}
    return load_config(env=env)


@pytest.fixture
def store(tmp_path):
    s = BridgeStore(tmp_path / "conduit.db")
    yield s
    s.close()
