# src/wirt_backend/validation.py
from __future__ import annotations
import ipaddress
from typing import Any, Iterable, Optional, Tuple

from .errors import ValidationFailed
from .models import DNSSettings, Device, DeviceType, IPv4Tuple, Server, Topology


MIN_MTU = 576
MAX_PORT = 65535


# ---------- Normalisation des champs ----------

def parse_ipv4(value: Any) -> Optional[IPv4Tuple]:
    """
    Accepte "1.2.3.4", [1, 2, 3, 4] ou ["1", "2", "3", "4"].
    Une liste entièrement vide ([None]*4) correspond à "pas d'IP".
    """
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
        parts: list = value.strip().split(".")
    elif isinstance(value, (list, tuple)):
        parts = list(value)
        if all(p is None or p == "" for p in parts):
            return None
    else:
        raise ValidationFailed(f"Malformed IPv4 address: {value!r}")

    if len(parts) != 4:
        raise ValidationFailed(f"Malformed IPv4 address: {value!r}")
    octets = []
    for part in parts:
        try:
            octet = int(part)
        except (TypeError, ValueError):
            raise ValidationFailed(f"Malformed IPv4 address: {value!r}") from None
        if not 0 <= octet <= 255:
            raise ValidationFailed(f"IPv4 octet out of range in {value!r}")
        octets.append(octet)
    return (octets[0], octets[1], octets[2], octets[3])


def strip_subnet(value: str, separator: str) -> str:
    return value.strip().rstrip(separator)


def parse_device_type(value: Any) -> DeviceType:
    try:
        return DeviceType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in DeviceType)
        raise ValidationFailed(f"Unknown device type {value!r} (expected one of {allowed})") from None


def parse_dns_servers(values: Iterable[str]) -> Tuple[str, ...]:
    servers = []
    for raw in values:
        value = str(raw).strip()
        if not value:
            continue
        try:
            ipaddress.ip_address(value)
        except ValueError:
            raise ValidationFailed(f"Invalid DNS server address: {value!r}") from None
        servers.append(value)
    return tuple(servers)


def unique(values: Iterable[str]) -> Tuple[str, ...]:
    seen = []
    for value in values:
        value = str(value).strip()
        if value and value not in seen:
            seen.append(value)
    return tuple(seen)


# ---------- Invariants ----------

def check_port(port: Optional[int]) -> None:
    if port is None:
        return
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= MAX_PORT:
        raise ValidationFailed(f"Invalid port: {port!r}")


def check_server(server: Server) -> None:
    check_port(server.port)
    if not server.subnet.v4:
        raise ValidationFailed("Server subnet v4 must not be empty")
    try:
        ipaddress.IPv4Address(f"{server.subnet.v4}.1")
    except ValueError:
        raise ValidationFailed(f"Invalid v4 subnet prefix: {server.subnet.v4!r}") from None
    if server.subnet.v6:
        try:
            ipaddress.IPv6Address(f"{server.subnet.v6}::1")
        except ValueError:
            raise ValidationFailed(f"Invalid v6 subnet prefix: {server.subnet.v6!r}") from None


def check_device(device: Device) -> None:
    if not device.name.strip():
        raise ValidationFailed("Device name must not be empty")
    host = device.ip.v4
    if isinstance(host, bool) or not isinstance(host, int) or not 2 <= host <= 254:
        raise ValidationFailed(f"Device host part must be within 2..254, got {host!r}")
    mtu = device.mtu
    if mtu is not None and (isinstance(mtu, bool) or not isinstance(mtu, int) or not MIN_MTU <= mtu <= MAX_PORT):
        raise ValidationFailed(f"Invalid MTU for '{device.name}': {mtu!r}")
    parse_dns_servers(device.additional_dns_servers)


def check_dns(dns: DNSSettings) -> None:
    """Vérifiée sur les modifications, pas sur les sauvegardes importées."""
    if dns.tls and not dns.tls_name:
        raise ValidationFailed("DNS over TLS requires a TLS server name")


def check_topology(topology: Topology) -> None:
    """Lève ValidationFailed si la topologie viole un invariant."""
    check_server(topology.server)

    ids = set()
    hosts = {}
    for device in topology.real_devices:
        check_device(device)
        if device.id in ids:
            raise ValidationFailed(f"Duplicate device id: {device.id}")
        ids.add(device.id)

        if device.ip.v4 in hosts:
            raise ValidationFailed(
                f"Address {device.address_v4(topology.server)} used by both "
                f"'{hosts[device.ip.v4]}' and '{device.name}'"
            )
        hosts[device.ip.v4] = device.name

        if device.keys is not None and topology.server.keys is None:
            raise ValidationFailed(f"Device '{device.name}' is keyed but the server is not")
