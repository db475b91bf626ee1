"""Shared fixtures: an isolated ManagerConfig and a fake bitcoind binary."""

import stat
from pathlib import Path

import pytest

from bitcoind_manager.config import DaemonConfig, ManagerConfig, PathsConfig

# Stand-in for bitcoind. Behaviour is selected by a `mode` file next to the
# script so tests can switch it without reinstalling:
#   run      - print a few lines, exit 0 on SIGTERM
#   crash    - print a few lines, exit 3
#   hang     - ignore SIGTERM (only SIGKILL stops it)
#   orphan   - like crash, but a background child keeps the pipes open for 3s
#   longline - print one 2MB line, then behave like run
FAKE_BITCOIND = """#!/bin/sh
if [ "$1" = "--version" ]; then
  echo "Bitcoin Knots daemon version v29.2.knots20251010"
  echo "Copyright (C) 2009-2025 The Bitcoin Knots developers"
  exit 0
fi
mode=$(cat "$(dirname "$0")/mode" 2>/dev/null || echo run)
echo "Bitcoin Knots version v29.2.knots20251010"
echo "args: $*"
echo "Warning: fake daemon" >&2
if [ "$mode" = "crash" ]; then
  echo "Error: fatal test failure" >&2
  exit 3
fi
if [ "$mode" = "orphan" ]; then
  echo "Error: fatal test failure" >&2
  sleep 3 &
  exit 3
fi
if [ "$mode" = "longline" ]; then
  head -c 2000000 /dev/zero | tr "\\000" x
  echo
  echo "after the long line"
fi
if [ "$mode" = "hang" ]; then
  trap '' TERM
else
  trap 'echo "Shutdown: done"; exit 0' TERM
fi
while true; do sleep 0.1; done
"""


def install_fake_bitcoind(versions_dir: Path, version: str, mode: str = "run") -> Path:
    """Create ``versions_dir/version/bitcoind`` and return its path."""
    version_dir = versions_dir / version
    version_dir.mkdir(parents=True, exist_ok=True)
    binary = version_dir / "bitcoind"
    binary.write_text(FAKE_BITCOIND, encoding="utf-8")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    (version_dir / "mode").write_text(mode, encoding="utf-8")
    return binary


def make_config(tmp_path: Path, **daemon_overrides) -> ManagerConfig:
    daemon = {"stop_timeout": 5.0, "store_check_interval": 0.05, **daemon_overrides}
    return ManagerConfig(
        paths=PathsConfig(
            bitcoin_dir=tmp_path / "bitcoin",
            app_state_dir=tmp_path / "app",
            versions_dir=tmp_path / "versions",
        ),
        daemon=DaemonConfig(**daemon),
    )


@pytest.fixture
def config(tmp_path) -> ManagerConfig:
    """Config with every path under tmp_path."""
    return make_config(tmp_path)


@pytest.fixture
def fake_bitcoind(config):
    """Factory installing the fake daemon for a version: fake_bitcoind("v29.2", mode="crash")."""
    def _install(version: str = "v29.2", mode: str = "run") -> Path:
        return install_fake_bitcoind(config.paths.versions_dir, version, mode)
    return _install
