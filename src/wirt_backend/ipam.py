# src/wirt_backend/ipam.py
from __future__ import annotations
from typing import Optional, Set
from .errors import ValidationFailed
from .models import Topology


FIRST_HOST = 2     # .1 est réservé au serveur
LAST_HOST = 254


def get_used_hosts(topology: Topology, exclude_id: Optional[str] = None) -> Set[int]:
    used = {1}
    for device in topology.real_devices:
        if device.id != exclude_id:
            used.add(device.ip.v4)
    return used


def is_host_free(topology: Topology, host: int, exclude_id: Optional[str] = None) -> bool:
    return host not in get_used_hosts(topology, exclude_id)


def allocate_host(topology: Topology) -> int:
    """
    Retourne la première partie hôte libre du sous-réseau, ex 3 pour 10.10.0.3
    """
    used = get_used_hosts(topology)

    for host in range(FIRST_HOST, LAST_HOST + 1):
        if host not in used:
            return host

    raise ValidationFailed("No free host address available in VPN subnet")
