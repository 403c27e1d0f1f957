"""Shared fixtures for the wirt backend tests."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from wirt_backend.alerts import AlertQueue
from wirt_backend.errors import PushFailed
from wirt_backend.models import (
    Device,
    DeviceIP,
    DeviceType,
    KeyPair,
    Server,
    ServerIP,
    Subnet,
    Topology,
)
from wirt_backend.push import ArtifactKind
from wirt_backend.store import TopologyStore

FIXTURES = Path(__file__).parent / "fixtures" / "backups"


class FakeKeygen:
    """Counter-based key capability; can be gated or made to fail."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix
        self.calls = 0
        self.fail = False
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self) -> KeyPair:
        self.calls += 1
        n = self.calls
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("wg not available")
        return KeyPair(public=f"{self.prefix}pub-{n}", private=f"{self.prefix}priv-{n}")


class RecordingPusher:
    def __init__(self) -> None:
        self.pushes: List[Tuple[ArtifactKind, str, str]] = []
        self.fail = False

    async def push(self, kind: ArtifactKind, text: str, host: str) -> None:
        if self.fail:
            raise PushFailed(kind.value, host, "connection refused")
        self.pushes.append((kind, text, host))

    def kinds(self) -> List[ArtifactKind]:
        return [kind for kind, _, _ in self.pushes]


def load_fixture(version: str) -> Dict[str, Any]:
    return json.loads((FIXTURES / f"{version}.json").read_text(encoding="utf-8"))


def make_topology(devices: Tuple[Device, ...] = (), **server_fields: Any) -> Topology:
    fields: Dict[str, Any] = {
        "ip": ServerIP(v4=(1, 2, 3, 4)),
        "port": 1234,
        "keys": KeyPair("server-pub", "server-priv"),
        "subnet": Subnet("10.11.0", "1011:1011:1011:1011"),
        "name": "test",
    }
    fields.update(server_fields)
    return Topology(server=Server(**fields), devices=devices)


def make_device(name: str = "test-1", host: int = 2, device_id: Optional[str] = None, **fields: Any) -> Device:
    values: Dict[str, Any] = {
        "id": device_id if device_id is not None else f"id-{name}",
        "name": name,
        "ip": DeviceIP(v4=host),
        "type": DeviceType.LINUX,
        "keys": KeyPair(f"{name}-pub", f"{name}-priv"),
    }
    values.update(fields)
    return Device(**values)


@pytest.fixture
def keygen() -> FakeKeygen:
    return FakeKeygen()


@pytest.fixture
def signing_keygen() -> FakeKeygen:
    return FakeKeygen(prefix="sign-")


@pytest.fixture
def pusher() -> RecordingPusher:
    return RecordingPusher()


@pytest.fixture
def clock() -> List[float]:
    return [0.0]


@pytest.fixture
def alerts(clock: List[float]) -> AlertQueue:
    return AlertQueue(clock=lambda: clock[0])


@pytest.fixture
def store(keygen: FakeKeygen, signing_keygen: FakeKeygen, pusher: RecordingPusher, alerts: AlertQueue) -> TopologyStore:
    """An empty store with fake key capabilities and a recording pusher."""
    return TopologyStore(keygen=keygen, signing_keygen=signing_keygen, pusher=pusher, alerts=alerts)


@pytest.fixture
def persistent_store(
    tmp_path: Path,
    keygen: FakeKeygen,
    signing_keygen: FakeKeygen,
    pusher: RecordingPusher,
    alerts: AlertQueue,
) -> TopologyStore:
    return TopologyStore(
        keygen=keygen,
        signing_keygen=signing_keygen,
        pusher=pusher,
        alerts=alerts,
        state_path=tmp_path / "state.json",
    )
