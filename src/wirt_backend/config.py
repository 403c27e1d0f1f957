# src/wirt_backend/config.py
"""Configuration loader.

Sources, lowest precedence first:

1. Built-in defaults.
2. ``wirt.yml`` in the working directory (or ``WIRT_CONFIG_FILE``, or an
   explicit path).
3. Environment variables prefixed with ``WIRT_``; double underscores express
   nesting, e.g. ``WIRT_PUSH__MODE=api``.
4. Explicit overrides (CLI flags).

Environment values go through ``yaml.safe_load`` so numbers and booleans come
out typed.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import yaml


ENV_PREFIX = "WIRT_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
PUSH_MODES = {"none", "directory", "api"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PushConfig:
    mode: str = "none"
    directory: Path = Path("/tmp/WirtBot")
    api_port: int = 3030
    api_scheme: str = "http"
    timeout: float = 10.0


@dataclass(frozen=True)
class DefaultsConfig:
    """Valeurs proposées à l'initialisation du serveur."""

    port: int = 10101
    subnet_v4: str = "10.10.0"
    subnet_v6: str = "1010:1010:1010:1010"
    dns_name: str = "wirt.internal"


@dataclass(frozen=True)
class AppConfig:
    config_file: Path
    state_file: Path
    configs_dir: Path
    push: PushConfig
    defaults: DefaultsConfig


DEFAULTS: Dict[str, Any] = {
    "state_file": "data/state.json",
    "configs_dir": "configs",
    "push": {
        "mode": "none",
        "directory": "/tmp/WirtBot",
        "api_port": 3030,
        "api_scheme": "http",
        "timeout": 10.0,
    },
    "defaults": {
        "port": 10101,
        "subnet_v4": "10.10.0",
        "subnet_v6": "1010:1010:1010:1010",
        "dns_name": "wirt.internal",
    },
}


def load_config(
    config_file: Optional[os.PathLike] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> AppConfig:
    merged = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    if config_file:
        path = Path(config_file)
    elif CONFIG_ENV_VAR in resolved_env:
        path = Path(resolved_env[CONFIG_ENV_VAR])
    else:
        path = Path("wirt.yml")

    _deep_merge(merged, _load_yaml_file(path))
    _deep_merge(merged, _env_overrides(resolved_env))
    if overrides:
        _deep_merge(merged, overrides)

    _validate(merged)
    return _build(path, merged)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return dict(data)


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key, value in env.items():
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        path = [segment.lower() for segment in key[len(ENV_PREFIX):].split("__") if segment]
        if not path:
            continue
        node = overrides
        for segment in path[:-1]:
            node = node.setdefault(segment, {})
            if not isinstance(node, MutableMapping):
                raise ConfigError(f"Environment override {key} conflicts with a scalar value")
        try:
            node[path[-1]] = yaml.safe_load(value)
        except yaml.YAMLError:
            node[path[-1]] = value
    return overrides


def _deep_merge(target: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, value)
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        key: _deep_copy(value) if isinstance(value, Mapping) else value
        for key, value in source.items()
    }


def _validate(raw: Mapping[str, Any]) -> None:
    unknown = set(raw) - set(DEFAULTS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}.")
    for section in ("push", "defaults"):
        value = raw.get(section)
        if not isinstance(value, Mapping):
            raise ConfigError(f"'{section}' must be a mapping.")
        unknown = set(value) - set(DEFAULTS[section])  # type: ignore[arg-type]
        if unknown:
            raise ConfigError(f"Unknown {section} configuration keys: {', '.join(sorted(unknown))}.")

    mode = str(raw["push"].get("mode"))
    if mode not in PUSH_MODES:
        raise ConfigError(f"Unsupported push mode '{mode}'. Allowed: {', '.join(sorted(PUSH_MODES))}.")


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}.") from exc


def _as_float(value: Any, name: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}.") from exc
    if result <= 0:
        raise ConfigError(f"{name} must be positive.")
    return result


def _build(path: Path, raw: Mapping[str, Any]) -> AppConfig:
    push = raw["push"]
    defaults = raw["defaults"]
    return AppConfig(
        config_file=path,
        state_file=Path(str(raw["state_file"])),
        configs_dir=Path(str(raw["configs_dir"])),
        push=PushConfig(
            mode=str(push["mode"]),
            directory=Path(str(push["directory"])),
            api_port=_as_int(push["api_port"], "push.api_port"),
            api_scheme=str(push["api_scheme"]),
            timeout=_as_float(push["timeout"], "push.timeout"),
        ),
        defaults=DefaultsConfig(
            port=_as_int(defaults["port"], "defaults.port"),
            subnet_v4=str(defaults["subnet_v4"]).rstrip("."),
            subnet_v6=str(defaults["subnet_v6"]).rstrip(":"),
            dns_name=str(defaults["dns_name"]),
        ),
    )
