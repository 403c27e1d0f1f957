"""Tests for state file and backup persistence."""
from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from conftest import FIXTURES, load_fixture, make_device, make_topology
from wirt_backend.errors import PersistFailed, UnmigratableBackup
from wirt_backend.state import load_state, parse_backup_text, read_backup, save_state, write_backup


def test_save_and_load(tmp_path: Path) -> None:
    path = tmp_path / "data" / "state.json"
    topology = make_topology(devices=(make_device(),))

    save_state(topology, path)

    assert load_state(path) == topology
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert [p.name for p in path.parent.iterdir()] == ["state.json"]


def test_load_migrates_old_state(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text((FIXTURES / "1.4.5.json").read_text(encoding="utf-8"), encoding="utf-8")
    assert load_state(path).server.ip.v4 == (1, 2, 3, 4)


def test_load_missing_state(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_state(tmp_path / "absent.json")


def test_double_encoded_backup() -> None:
    """The installer writes the dashboard state as a JSON string of JSON."""
    raw = load_fixture("2.6.0")
    assert parse_backup_text(json.dumps(json.dumps(raw))) == raw


@pytest.mark.parametrize("text", ["{not json", "[1, 2]", '"just a string"'])
def test_invalid_backup_text(text: str) -> None:
    with pytest.raises(UnmigratableBackup):
        parse_backup_text(text)


def test_read_missing_backup(tmp_path: Path) -> None:
    with pytest.raises(UnmigratableBackup, match="Cannot read"):
        read_backup(tmp_path / "absent.json")


def test_write_backup_uses_backup_field_names(tmp_path: Path) -> None:
    path = write_backup(make_topology(devices=(make_device(mtu=1400),)), tmp_path / "backup.json")
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["devices"][0]["MTU"] == 1400
    assert "additionalDNSServers" in data["devices"][0]
    assert data["network"]["dns"]["tlsName"] == "cloudflare-dns.com"


def test_unwritable_state(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    with pytest.raises(PersistFailed):
        save_state(make_topology(), blocker / "state.json")
