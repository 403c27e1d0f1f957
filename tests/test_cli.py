"""End-to-end tests for the ``wirt`` command line."""
from __future__ import annotations

import asyncio
import json
import stat
from pathlib import Path

import pytest

import wirt_cli
from conftest import FIXTURES, FakeKeygen
from wirt_backend import store as store_module
from wirt_backend.config import load_config
from wirt_backend.errors import ValidationFailed


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run the CLI in an empty directory with fake WireGuard keys."""
    monkeypatch.chdir(tmp_path)
    for name in ("WIRT_CONFIG_FILE", "WIRT_PUSH__MODE", "WIRT_STATE_FILE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(store_module, "generate_keypair", FakeKeygen())
    return tmp_path


def run(*argv: str) -> int:
    return wirt_cli.main(list(argv))


def test_init_and_add_device(workdir: Path, capsys: pytest.CaptureFixture) -> None:
    assert run("init", "--ip", "1.2.3.4", "--name", "home") == 0
    assert (workdir / "data" / "state.json").exists()

    assert run("add-device", "laptop", "--type", "Linux", "--dns", "2.2.2.2") == 0
    out = capsys.readouterr().out
    assert "Serveur initialisé" in out
    assert "Address = 10.10.0.2\n" in out
    assert "DNS = 10.10.0.1,2.2.2.2\n" in out
    assert "Endpoint = 1.2.3.4:10101\n" in out

    state = json.loads((workdir / "data" / "state.json").read_text(encoding="utf-8"))
    assert [d["name"] for d in state["devices"]] == ["laptop"]
    assert state["server"]["name"] == "home"


def test_add_device_before_init_fails(workdir: Path, capsys: pytest.CaptureFixture) -> None:
    assert run("add-device", "laptop") == 1
    assert "[ERREUR]" in capsys.readouterr().out


def test_export_device_writes_private_config(workdir: Path, capsys: pytest.CaptureFixture) -> None:
    run("init", "--ip", "1.2.3.4")
    run("add-device", "laptop")

    assert run("export-device", "laptop") == 0

    conf = workdir / "configs" / "laptop.conf"
    assert conf.read_text(encoding="utf-8").startswith("[Interface]\nAddress = 10.10.0.2\n")
    assert stat.S_IMODE(conf.stat().st_mode) == 0o600
    assert not (workdir / "configs" / "laptop.png").exists()


def test_update_and_remove_device(workdir: Path, capsys: pytest.CaptureFixture) -> None:
    run("init", "--ip", "1.2.3.4")
    run("add-device", "laptop")

    assert run("update-device", "laptop", "--routed", "--name", "work") == 0
    assert run("list-devices") == 0
    out = capsys.readouterr().out
    assert "- work (10.10.0.2) [Linux]" in out

    assert run("remove-device", "work") == 0
    assert run("remove-device", "work") == 1
    assert "Appareil introuvable : work" in capsys.readouterr().out


def test_backup_import_and_export(workdir: Path, capsys: pytest.CaptureFixture) -> None:
    assert run("import-backup", str(FIXTURES / "1.4.5.json")) == 0
    assert "(2 appareils)" in capsys.readouterr().out

    assert run("export-backup", "backup.json") == 0
    data = json.loads((workdir / "backup.json").read_text(encoding="utf-8"))
    assert data["version"] == "2.6.0"
    assert data["server"]["ip"]["v4"] == [1, 2, 3, 4]
    assert data["network"]["dns"]["ignoredZones"] == ["fritz.box", "home", "lan", "local"]


def test_import_invalid_backup(workdir: Path, capsys: pytest.CaptureFixture) -> None:
    (workdir / "broken.json").write_text("{not json", encoding="utf-8")
    assert run("import-backup", "broken.json") == 1
    assert "[ERREUR]" in capsys.readouterr().out


def test_directory_push_from_environment(workdir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WIRT_PUSH__MODE", "directory")
    monkeypatch.setenv("WIRT_PUSH__DIRECTORY", str(workdir / "wirtbot"))

    assert run("init", "--ip", "1.2.3.4") == 0

    assert (workdir / "wirtbot" / "server.conf").read_text(encoding="utf-8").startswith("[Interface]\n")
    assert "wirtbot.wirt.internal" in (workdir / "wirtbot" / "Corefile").read_text(encoding="utf-8")


def test_state_flag_and_export_server(workdir: Path) -> None:
    assert run("--state", "custom.json", "init", "--ip", "1.2.3.4") == 0
    assert (workdir / "custom.json").exists()

    assert run("--state", "custom.json", "export-server") == 0
    assert (workdir / "configs" / "server.conf").exists()
    assert (workdir / "configs" / "Corefile").exists()


def test_regenerate_requires_confirmation(workdir: Path, capsys: pytest.CaptureFixture) -> None:
    run("init", "--ip", "1.2.3.4")
    assert run("regenerate-server-keys") == 1
    assert run("regenerate-server-keys", "--yes") == 0


def test_bad_config_file(workdir: Path, capsys: pytest.CaptureFixture) -> None:
    (workdir / "wirt.yml").write_text("push:\n  mode: pigeon\n", encoding="utf-8")
    assert run("list-devices") == 1
    assert "[ERREUR] Configuration" in capsys.readouterr().out


def test_unknown_device_is_a_validation_error(workdir: Path, capsys: pytest.CaptureFixture) -> None:
    run("init", "--ip", "1.2.3.4")
    store = asyncio.run(wirt_cli.open_store(load_config(env={})))

    with pytest.raises(ValidationFailed, match="Appareil introuvable : ghost"):
        wirt_cli.find_device(store, "ghost")
    assert run("export-device", "ghost") == 1
    assert "[ERREUR] Appareil introuvable : ghost" in capsys.readouterr().out


def test_unrelated_key_errors_are_not_reported_as_missing_devices(
    workdir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def broken(args, config):
        raise KeyError("internal")

    monkeypatch.setattr(wirt_cli, "cmd_list", broken)
    with pytest.raises(KeyError):
        run("list-devices")
