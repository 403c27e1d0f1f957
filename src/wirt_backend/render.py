# src/wirt_backend/render.py
"""
Rendus texte par défaut : configs wg-quick et Corefile CoreDNS.

Fonctions pures : même entrée, même texte à l'octet près. Les pairs et les
enregistrements DNS sont triés par adresse pour ne pas dépendre de l'ordre
des appareils dans la sauvegarde.
"""
from __future__ import annotations
from typing import List, Sequence

from .models import Device, NetworkSettings, Server


KEEPALIVE = 25


def _ordered(devices: Sequence[Device]) -> List[Device]:
    return sorted(devices, key=lambda d: (d.ip.v4, d.id or ""))


# ---------- Rendu des configs ----------

def render_server_config(server: Server, devices: Sequence[Device]) -> str:
    lines = [
        "[Interface]",
        f"Address = {server.address_v4}/24",
    ]
    if server.subnet.v6:
        lines.append(f"Address = {server.address_v6}/64")
    lines += [
        f"ListenPort = {server.port}",
        f"PrivateKey = {server.keys.private}",
        "",  # blank line
    ]

    for d in _ordered(devices):
        allowed = [f"{d.address_v4(server)}/32"]
        if server.subnet.v6:
            allowed.append(f"{d.address_v6(server)}/128")
        lines.append("[Peer]")
        lines.append(f"# {d.name}")
        lines.append(f"PublicKey = {d.keys.public}")
        lines.append(f"AllowedIPs = {', '.join(allowed)}")
        lines.append("")  # blank

    return "\n".join(lines).strip() + "\n"


def render_device_config(device: Device, server: Server) -> str:
    dns = [server.address_v4, *device.additional_dns_servers]
    lines = [
        "[Interface]",
        f"Address = {device.address_v4(server)}",
        f"PrivateKey = {device.keys.private}",
        f"DNS = {','.join(dns)}",
    ]
    if device.mtu:
        lines.append(f"MTU = {device.mtu}")

    if device.routed:
        allowed = ["0.0.0.0/0", "::/0"]
    else:
        allowed = [f"{server.subnet.v4}.0/24"]
        if server.subnet.v6:
            allowed.append(f"{server.subnet.v6}::/64")

    lines += [
        "",
        "[Peer]",
        f"PublicKey = {server.keys.public}",
        f"AllowedIPs = {', '.join(allowed)}",
    ]

    host = server.endpoint_host
    if host and server.port:
        lines.append(f"Endpoint = {host}:{server.port}")

    # keepalive forcé pour le roaming des téléphones
    lines.append(f"PersistentKeepalive = {KEEPALIVE}")

    return "\n".join(lines).strip() + "\n"


def render_dns_zone(server: Server, devices: Sequence[Device], network: NetworkSettings) -> str:
    dns = network.dns
    zone = dns.name
    upstream = ".".join(str(octet) for octet in dns.ip_v4)

    def fqdn(name: str) -> str:
        return f"{name}.{zone}" if zone else name

    lines: List[str] = []
    for ignored in dns.ignored_zones:
        lines += [
            f"{ignored} {{",
            "    template ANY ANY {",
            "        rcode NXDOMAIN",
            "    }",
            "}",
            "",
        ]

    lines += [
        ". {",
        "    reload",
        "    errors",
        "    hosts {",
        f"        {server.address_v4} {fqdn('wirtbot')}",
    ]
    for d in _ordered(devices):
        names = fqdn(d.name)
        lines.append(f"        {d.address_v4(server)} {names}")
        if server.subnet.v6:
            lines.append(f"        {d.address_v6(server)} {names}")
    if dns.adblock:
        for host in sorted(dns.block_hosts):
            lines.append(f"        0.0.0.0 {host}")
    lines += [
        "        fallthrough",
        "    }",
    ]

    if dns.adblock:
        for url in dns.block_lists:
            lines.append(f"    blocklist {url}")

    if dns.tls:
        lines += [
            f"    forward . tls://{upstream} {{",
            f"        tls_servername {dns.tls_name}",
            "    }",
        ]
    else:
        lines.append(f"    forward . {upstream}")
    lines += [
        "    cache",
        "}",
    ]

    return "\n".join(lines).strip() + "\n"
