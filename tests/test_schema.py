"""Tests for the backup field mapping."""
from __future__ import annotations

import pytest

from conftest import load_fixture
from wirt_backend.errors import ValidationFailed
from wirt_backend.models import DEFAULT_IGNORED_ZONES, DeviceType, KeyPair
from wirt_backend.schema import dict_to_device, dict_to_dns, dict_to_topology, topology_to_dict


def test_current_backup_round_trips() -> None:
    raw = load_fixture("2.6.0")
    topology = dict_to_topology(raw)

    assert topology.server.ip.v4 == (1, 2, 3, 4)
    assert topology.server.subnet.v4 == "10.11.0"
    assert topology.network.dns.name == "different-zone.test"
    assert topology.keys == KeyPair("c2lnbmluZy1wdWI=", "c2lnbmluZy1wcml2")
    assert topology_to_dict(topology) == raw


def test_device_fields() -> None:
    device = dict_to_device(
        {
            "id": "abc",
            "name": "phone",
            "ip": {"v4": "5"},
            "type": "iOS",
            "routed": True,
            "additionalDNSServers": "2.2.2.2, 3.3.3.3",
            "MTU": "1400",
        },
        0,
    )
    assert device.ip.v4 == 5
    assert device.type is DeviceType.IOS
    assert device.additional_dns_servers == ("2.2.2.2", "3.3.3.3")
    assert device.mtu == 1400
    assert device.keys is None


def test_missing_id_reads_as_draft() -> None:
    device = dict_to_device({"id": "", "name": "x", "ip": {"v4": 3}, "type": "Linux"}, 0)
    assert device.is_draft


def test_derived_fields_are_dropped_and_unknown_kept() -> None:
    device = dict_to_device(
        {"id": "a", "name": "x", "ip": {"v4": 3}, "type": "Linux", "config": "...", "qr": "...", "color": "red"},
        0,
    )
    assert device.extra == {"color": "red"}


def test_device_without_host_rejected() -> None:
    with pytest.raises(ValidationFailed, match=r"devices\[2\]\.ip\.v4"):
        dict_to_device({"id": "a", "name": "x", "ip": {}, "type": "Linux"}, 2)


def test_half_keys_rejected() -> None:
    with pytest.raises(ValidationFailed, match="public and a private"):
        dict_to_device({"id": "a", "name": "x", "ip": {"v4": 3}, "type": "Linux", "keys": {"public": "p"}}, 0)


def test_dns_defaults() -> None:
    dns = dict_to_dns({})
    assert dns.ip_v4 == (1, 1, 1, 1)
    assert dns.ignored_zones == DEFAULT_IGNORED_ZONES
    assert dns.adblock is True
    assert dict_to_dns({"ignoredZones": []}).ignored_zones == ()


def test_topology_requires_server() -> None:
    with pytest.raises(ValidationFailed, match="no server"):
        dict_to_topology({"devices": []})
    with pytest.raises(ValidationFailed, match="must be a list"):
        dict_to_topology({"server": {}, "devices": {}})
