"""Tests for host allocation inside the VPN subnet."""
from __future__ import annotations

import pytest

from conftest import make_device, make_topology
from wirt_backend.errors import ValidationFailed
from wirt_backend.ipam import allocate_host, get_used_hosts, is_host_free


def test_first_free_host_skips_server() -> None:
    assert allocate_host(make_topology()) == 2


def test_allocation_fills_gaps() -> None:
    topology = make_topology(devices=(make_device("a", host=2), make_device("b", host=4)))
    assert allocate_host(topology) == 3


def test_drafts_do_not_reserve_hosts() -> None:
    topology = make_topology(devices=(make_device("draft", host=2, device_id=""),))
    assert is_host_free(topology, 2)
    assert allocate_host(topology) == 2


def test_exclude_own_device() -> None:
    topology = make_topology(devices=(make_device("a", host=2),))
    assert get_used_hosts(topology) == {1, 2}
    assert is_host_free(topology, 2, exclude_id="id-a")
    assert not is_host_free(topology, 2)


def test_full_subnet() -> None:
    devices = tuple(make_device(f"d{host}", host=host) for host in range(2, 255))
    with pytest.raises(ValidationFailed, match="No free host"):
        allocate_host(make_topology(devices=devices))
