"""Tests for configuration loading."""
from __future__ import annotations

from pathlib import Path

import pytest

from wirt_backend.config import ConfigError, load_config


def test_defaults_without_file(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.yml", env={})
    assert config.state_file == Path("data/state.json")
    assert config.push.mode == "none"
    assert config.push.api_port == 3030
    assert config.defaults.port == 10101
    assert config.defaults.subnet_v4 == "10.10.0"


def test_yaml_file_and_env_precedence(tmp_path: Path) -> None:
    path = tmp_path / "wirt.yml"
    path.write_text(
        "state_file: /var/lib/wirt/state.json\n"
        "push:\n"
        "  mode: directory\n"
        "  directory: /etc/wirtbot\n"
        "defaults:\n"
        "  subnet_v4: '10.20.0.'\n",
        encoding="utf-8",
    )
    env = {"WIRT_PUSH__MODE": "api", "WIRT_PUSH__API_PORT": "4040", "OTHER": "x"}

    config = load_config(path, env=env)

    assert config.state_file == Path("/var/lib/wirt/state.json")
    assert config.push.mode == "api"
    assert config.push.api_port == 4040
    assert config.push.directory == Path("/etc/wirtbot")
    assert config.defaults.subnet_v4 == "10.20.0"


def test_config_file_from_env(tmp_path: Path) -> None:
    path = tmp_path / "custom.yml"
    path.write_text("configs_dir: out\n", encoding="utf-8")
    config = load_config(env={"WIRT_CONFIG_FILE": str(path)})
    assert config.config_file == path
    assert config.configs_dir == Path("out")


def test_overrides_win(tmp_path: Path) -> None:
    config = load_config(
        tmp_path / "missing.yml",
        env={"WIRT_STATE_FILE": "env.json"},
        overrides={"state_file": "cli.json"},
    )
    assert config.state_file == Path("cli.json")


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("unknown: 1\n", "Unknown configuration keys"),
        ("push:\n  mode: carrier-pigeon\n", "Unsupported push mode"),
        ("push:\n  colour: blue\n", "Unknown push configuration keys"),
        ("push: 3\n", "must be a mapping"),
        ("- a list\n", "mapping at the top level"),
        ("push: [unclosed\n", "Failed to parse"),
        ("push:\n  timeout: 0\n", "must be positive"),
        ("defaults:\n  port: abc\n", "must be an integer"),
    ],
)
def test_invalid_config(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "wirt.yml"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError, match=message):
        load_config(path, env={})
