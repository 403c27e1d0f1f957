# src/wirt_backend/state.py
from __future__ import annotations
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import PersistFailed, UnmigratableBackup
from .migrations import migrate
from .models import Topology
from .schema import topology_to_dict


DEFAULT_STATE_PATH = Path("data/state.json")


def parse_backup_text(text: str) -> Dict[str, Any]:
    """
    Décode une sauvegarde JSON.

    L'installeur écrit l'état de l'interface encodé deux fois
    (une chaîne JSON contenant le JSON), on accepte les deux formes.
    """
    try:
        data = json.loads(text)
        if isinstance(data, str):
            data = json.loads(data)
    except json.JSONDecodeError as exc:
        raise UnmigratableBackup(f"Backup is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise UnmigratableBackup(f"Backup must be a JSON object, got {type(data).__name__}")
    return data


def read_backup(path: Path) -> Dict[str, Any]:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise UnmigratableBackup(f"Cannot read backup {path}: {exc}") from exc
    return parse_backup_text(text)


def dump_topology(topology: Topology) -> str:
    return json.dumps(topology_to_dict(topology), indent=2) + "\n"


def _atomic_write(path: Path, text: str, mode: int = 0o600) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        # contient des clés privées
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def load_state(path: Optional[Path] = None) -> Topology:
    path = path or DEFAULT_STATE_PATH
    if not path.exists():
        raise FileNotFoundError(f"State file not found: {path}")
    # l'état persisté peut venir d'une version antérieure
    return migrate(read_backup(path))


def save_state(topology: Topology, path: Optional[Path] = None) -> None:
    path = path or DEFAULT_STATE_PATH
    try:
        _atomic_write(path, dump_topology(topology))
    except OSError as exc:
        raise PersistFailed(f"Cannot write state file {path}: {exc}") from exc


def write_backup(topology: Topology, path: Path) -> Path:
    try:
        _atomic_write(Path(path), dump_topology(topology))
    except OSError as exc:
        raise PersistFailed(f"Cannot write backup {path}: {exc}") from exc
    return Path(path)
