"""Tests for the settings subcommand group."""

import json

import pytest
import typer
from typer.testing import CliRunner

from bitcoind_manager.cli import app
from bitcoind_manager.cli.settings_cmd import parse_assignment

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "_comment": "test deployment",
        "paths": {
            "bitcoin_dir": str(tmp_path / "bitcoin"),
            "app_state_dir": str(tmp_path / "app"),
            "versions_dir": str(tmp_path / "versions"),
        },
    }))
    return path


def _invoke(config_file, *args, **kwargs):
    return runner.invoke(app, ["--config", str(config_file), "settings", *args], **kwargs)


@pytest.mark.parametrize("raw,expected", [
    ("prune=2", ("prune", 2)),
    ("txindex=false", ("txindex", False)),
    ('onlynet=["tor","i2p"]', ("onlynet", ["tor", "i2p"])),
    ("chain=signet", ("chain", "signet")),
    ("version=v29.1", ("version", "v29.1")),
    (" dbcache = 600", ("dbcache", 600)),
])
def test_parse_assignment(raw, expected):
    assert parse_assignment(raw) == expected


@pytest.mark.parametrize("raw", ["prune", "=2"])
def test_parse_assignment_rejects_malformed(raw):
    with pytest.raises(typer.BadParameter):
        parse_assignment(raw)


def test_show_json_defaults(config_file):
    result = _invoke(config_file, "show", "--json")

    assert result.exit_code == 0
    record = json.loads(result.stdout)
    assert record["version"] == "latest"
    assert record["dbcache"] == 450


def test_show_panel(config_file):
    result = _invoke(config_file, "show")
    assert result.exit_code == 0
    assert "dbcache" in result.stdout


def test_set_persists_and_derives(config_file, tmp_path):
    result = _invoke(config_file, "set", "prune=2", "txindex=true")

    assert result.exit_code == 0
    assert "Saved" in result.stdout
    stored = json.loads((tmp_path / "app" / "settings.json").read_text())
    assert stored["prune"] == 2
    assert stored["txindex"] is False
    assert "prune=1907" in (tmp_path / "bitcoin" / "umbrel-bitcoin.conf").read_text().split("\n")


def test_set_invalid_exits_nonzero(config_file, tmp_path):
    result = _invoke(config_file, "set", "dbcache=1")

    assert result.exit_code == 1
    assert "Invalid settings" in result.stdout
    assert not (tmp_path / "app" / "settings.json").exists()


def test_set_unknown_version_exits_nonzero(config_file):
    result = _invoke(config_file, "set", "version=v1.0")
    assert result.exit_code == 1


def test_reset_with_yes(config_file, tmp_path):
    _invoke(config_file, "set", "version=v29.1", "dbcache=900")

    result = _invoke(config_file, "reset", "--yes")

    assert result.exit_code == 0
    stored = json.loads((tmp_path / "app" / "settings.json").read_text())
    assert stored["dbcache"] == 450
    assert stored["version"] == "v29.1"


def test_reset_declined(config_file, tmp_path):
    result = _invoke(config_file, "reset", input="n\n")
    assert result.exit_code == 1
    assert not (tmp_path / "app" / "settings.json").exists()


def test_render_does_not_write(config_file, tmp_path):
    result = _invoke(config_file, "render")

    assert result.exit_code == 0
    assert "[main]" in result.stdout
    assert not (tmp_path / "bitcoin" / "umbrel-bitcoin.conf").exists()


def test_custom_round_trip(config_file, tmp_path):
    options = tmp_path / "custom.conf"
    options.write_text("rpcthreads=8\n")

    written = _invoke(config_file, "custom", "--file", str(options))
    shown = _invoke(config_file, "custom")

    assert written.exit_code == 0
    assert shown.exit_code == 0
    assert shown.stdout.strip() == "rpcthreads=8"
    assert (tmp_path / "bitcoin" / "bitcoin.conf").read_text().startswith("# Load additional configuration file")


def test_custom_missing_file(config_file, tmp_path):
    result = _invoke(config_file, "custom", "--file", str(tmp_path / "nope.conf"))
    assert result.exit_code == 1


def test_incompatible_none(config_file):
    result = _invoke(config_file, "incompatible", "v29.1")
    assert result.exit_code == 0
    assert "All current settings are available" in result.stdout


def test_incompatible_unknown_version(config_file):
    result = _invoke(config_file, "incompatible", "v1.0")
    assert result.exit_code == 1


def test_invalid_config_file_reported(tmp_path):
    bad = tmp_path / "config.json"
    bad.write_text(json.dumps({"network": {"rpc_port": 0}}))

    result = runner.invoke(app, ["--config", str(bad), "settings", "show"])

    assert result.exit_code == 1
    assert "Configuration validation failed" in result.stdout
