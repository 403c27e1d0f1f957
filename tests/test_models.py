"""Tests for the topology value types."""
from __future__ import annotations

import pytest

from conftest import make_device, make_topology
from wirt_backend.models import (
    DNSSettings,
    DeviceIP,
    DeviceType,
    KeyPair,
    NetworkSettings,
    Server,
    ServerIP,
    Subnet,
    Topology,
)


def test_server_addresses_come_from_subnet() -> None:
    """The server takes host 1 of its v4 and v6 prefixes."""
    server = Server(subnet=Subnet("10.11.0", "1011:1011:1011:1011"))
    assert server.address_v4 == "10.11.0.1"
    assert server.address_v6 == "1011:1011:1011:1011::1"


@pytest.mark.parametrize(
    ("server", "expected"),
    [
        (Server(ip=ServerIP(v4=(1, 2, 3, 4)), hostname="test.test"), "test.test"),
        (Server(ip=ServerIP(v4=(1, 2, 3, 4))), "1.2.3.4"),
        (Server(ip=ServerIP(v6="2001:db8::1")), "[2001:db8::1]"),
        (Server(), None),
    ],
)
def test_endpoint_host_precedence(server: Server, expected: str) -> None:
    """A hostname wins over the raw v4 address, which wins over v6."""
    assert server.endpoint_host == expected


def test_device_addresses() -> None:
    server = Server(subnet=Subnet("10.11.0", "1011:1011:1011:1011"))
    device = make_device(host=7)
    assert device.address_v4(server) == "10.11.0.7"
    assert device.address_v6(server) == "1011:1011:1011:1011::7"

    explicit = make_device(ip=DeviceIP(v4=7, v6="beef"))
    assert explicit.address_v6(server) == "1011:1011:1011:1011::beef"


def test_drafts_are_not_real_devices() -> None:
    """Devices without an id are drafts and never count as real devices."""
    draft = make_device("draft", host=3, device_id="")
    real = make_device("real", host=2)
    topology = make_topology(devices=(draft, real))

    assert draft.is_draft
    assert topology.real_devices == (real,)
    assert topology.find_device("id-real") is real
    assert topology.find_device("") is None
    assert topology.find_device_by_name("draft") is None


def test_push_destination_follows_dns_name() -> None:
    topology = make_topology()
    assert topology.push_destination == "wirtbot.wirt.internal"

    unnamed = Topology(
        server=topology.server,
        network=NetworkSettings(dns=DNSSettings(name="")),
    )
    assert unnamed.push_destination == "10.11.0.1"


def test_private_key_hidden_from_repr() -> None:
    keys = KeyPair("public-part", "secret-part")
    assert "secret-part" not in repr(keys)


def test_mobile_device_types() -> None:
    assert DeviceType.ANDROID.is_mobile
    assert DeviceType.IOS.is_mobile
    assert not DeviceType.LINUX.is_mobile
    assert DeviceType("MacOS") is DeviceType.MACOS
