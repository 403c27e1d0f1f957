# src/wirt_backend/schema.py
"""
Conversion topologie <-> dict JSON (schéma courant).

Les noms de champs sont ceux des sauvegardes exportées par l'interface
(``additionalDNSServers``, ``MTU``, ``tlsName``...). Les champs inconnus sont
conservés dans ``extra`` et réécrits à l'export ; les caches dérivés
(``config``, ``qr``) sont ignorés.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Mapping, Optional

from .errors import ValidationFailed
from .models import (
    DNSSettings,
    Device,
    DeviceIP,
    KeyPair,
    NetworkSettings,
    SCHEMA_VERSION,
    Server,
    ServerIP,
    Subnet,
    Topology,
    DEFAULT_IGNORED_ZONES,
)
from .validation import parse_device_type, parse_ipv4, strip_subnet, unique

logger = logging.getLogger(__name__)

DERIVED_FIELDS = frozenset({"config", "qr"})

TOPOLOGY_FIELDS = frozenset({"version", "server", "devices", "network", "keys"})
SERVER_FIELDS = frozenset({"ip", "port", "keys", "hostname", "subnet", "name"})
DEVICE_FIELDS = frozenset(
    {"id", "name", "ip", "type", "keys", "routed", "additionalDNSServers", "MTU"}
)
DNS_FIELDS = frozenset(
    {"name", "ip", "tlsName", "tls", "ignoredZones", "adblock", "blockLists", "blockHosts"}
)


def _extra(data: Mapping[str, Any], known: frozenset, where: str) -> Dict[str, Any]:
    extra = {}
    for key, value in data.items():
        if key in known:
            continue
        if key in DERIVED_FIELDS:
            logger.debug("Dropping derived field %s.%s", where, key)
            continue
        extra[key] = value
    return extra


def _mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationFailed(f"'{where}' must be an object, got {type(value).__name__}")
    return value


def _optional_int(value: Any, where: str) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationFailed(f"'{where}' must be a number")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"'{where}' must be a number, got {value!r}") from None


def _strings(value: Any, where: str) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationFailed(f"'{where}' must be a list")
    return unique(value)


# ---------- dict -> modèle ----------

def dict_to_keys(data: Any, where: str) -> Optional[KeyPair]:
    if not data:
        return None
    data = _mapping(data, where)
    public, private = data.get("public"), data.get("private")
    if not public or not private:
        raise ValidationFailed(f"'{where}' must hold both a public and a private key")
    return KeyPair(public=str(public), private=str(private))


def dict_to_server(data: Mapping[str, Any]) -> Server:
    ip = _mapping(data.get("ip"), "server.ip")
    subnet = _mapping(data.get("subnet"), "server.subnet")
    defaults = Subnet()
    return Server(
        ip=ServerIP(v4=parse_ipv4(ip.get("v4")), v6=str(ip.get("v6") or "")),
        port=_optional_int(data.get("port"), "server.port"),
        keys=dict_to_keys(data.get("keys"), "server.keys"),
        hostname=str(data.get("hostname") or ""),
        subnet=Subnet(
            v4=strip_subnet(str(subnet.get("v4", defaults.v4)), "."),
            v6=strip_subnet(str(subnet.get("v6", defaults.v6)), ":"),
        ),
        name=str(data.get("name") or ""),
        extra=_extra(data, SERVER_FIELDS, "server"),
    )


def dict_to_device(data: Any, index: int) -> Device:
    where = f"devices[{index}]"
    data = _mapping(data, where)
    ip = _mapping(data.get("ip"), f"{where}.ip")
    host = _optional_int(ip.get("v4"), f"{where}.ip.v4")
    if host is None:
        raise ValidationFailed(f"'{where}.ip.v4' is required")
    v6 = ip.get("v6")
    return Device(
        id=str(data["id"]) if data.get("id") else None,
        name=str(data.get("name") or ""),
        ip=DeviceIP(v4=host, v6=str(v6) if v6 not in (None, "") else None),
        type=parse_device_type(data.get("type")),
        keys=dict_to_keys(data.get("keys"), f"{where}.keys"),
        routed=bool(data.get("routed", False)),
        additional_dns_servers=_strings(data.get("additionalDNSServers"), f"{where}.additionalDNSServers"),
        mtu=_optional_int(data.get("MTU"), f"{where}.MTU"),
        extra=_extra(data, DEVICE_FIELDS, where),
    )


def dict_to_dns(data: Mapping[str, Any]) -> DNSSettings:
    defaults = DNSSettings()
    ip = _mapping(data.get("ip"), "network.dns.ip")
    ip_v4 = parse_ipv4(ip.get("v4")) if "v4" in ip else defaults.ip_v4
    zones = data.get("ignoredZones")
    return DNSSettings(
        name=str(data.get("name", defaults.name) or ""),
        ip_v4=ip_v4 if ip_v4 is not None else defaults.ip_v4,
        tls_name=str(data.get("tlsName", defaults.tls_name) or ""),
        tls=bool(data.get("tls", defaults.tls)),
        ignored_zones=_strings(zones, "network.dns.ignoredZones") if zones is not None else DEFAULT_IGNORED_ZONES,
        adblock=bool(data.get("adblock", defaults.adblock)),
        block_lists=_strings(data.get("blockLists"), "network.dns.blockLists"),
        block_hosts=_strings(data.get("blockHosts"), "network.dns.blockHosts"),
        extra=_extra(data, DNS_FIELDS, "network.dns"),
    )


def dict_to_topology(data: Mapping[str, Any]) -> Topology:
    data = _mapping(data, "backup")
    if "server" not in data:
        raise ValidationFailed("Topology has no server")
    devices = data.get("devices")
    if devices is None:
        devices = []
    if not isinstance(devices, list):
        raise ValidationFailed("'devices' must be a list")
    network = _mapping(data.get("network"), "network")

    return Topology(
        version=str(data.get("version") or SCHEMA_VERSION),
        server=dict_to_server(_mapping(data["server"], "server")),
        devices=tuple(dict_to_device(d, i) for i, d in enumerate(devices)),
        network=NetworkSettings(
            dns=dict_to_dns(_mapping(network.get("dns"), "network.dns")),
            extra=_extra(network, frozenset({"dns"}), "network"),
        ),
        keys=dict_to_keys(data.get("keys"), "keys"),
        extra=_extra(data, TOPOLOGY_FIELDS, "backup"),
    )


# ---------- modèle -> dict ----------

def keys_to_dict(keys: Optional[KeyPair]) -> Optional[Dict[str, str]]:
    if keys is None:
        return None
    return {"public": keys.public, "private": keys.private}


def device_to_dict(device: Device) -> Dict[str, Any]:
    ip: Dict[str, Any] = {"v4": device.ip.v4}
    if device.ip.v6 is not None:
        ip["v6"] = device.ip.v6
    data: Dict[str, Any] = dict(device.extra)
    data.update({
        "id": device.id,
        "name": device.name,
        "ip": ip,
        "type": device.type.value,
        "keys": keys_to_dict(device.keys),
        "routed": device.routed,
        "additionalDNSServers": list(device.additional_dns_servers),
        "MTU": device.mtu,
    })
    return data


def topology_to_dict(topology: Topology) -> Dict[str, Any]:
    s = topology.server
    dns = topology.network.dns

    server: Dict[str, Any] = dict(s.extra)
    server.update({
        "ip": {"v4": list(s.ip.v4) if s.ip.v4 is not None else None, "v6": s.ip.v6},
        "port": s.port,
        "keys": keys_to_dict(s.keys),
        "hostname": s.hostname,
        "subnet": {"v4": s.subnet.v4, "v6": s.subnet.v6},
        "name": s.name,
    })

    dns_data: Dict[str, Any] = dict(dns.extra)
    dns_data.update({
        "name": dns.name,
        "ip": {"v4": list(dns.ip_v4)},
        "tlsName": dns.tls_name,
        "tls": dns.tls,
        "ignoredZones": list(dns.ignored_zones),
        "adblock": dns.adblock,
        "blockLists": list(dns.block_lists),
        "blockHosts": list(dns.block_hosts),
    })
    network: Dict[str, Any] = dict(topology.network.extra)
    network["dns"] = dns_data

    data: Dict[str, Any] = dict(topology.extra)
    data.update({
        "version": topology.version,
        "server": server,
        "devices": [device_to_dict(d) for d in topology.devices],
        "network": network,
        "keys": keys_to_dict(topology.keys),
    })
    return data
