# src/wirt_backend/derive.py
"""
Which devices feed which artifact, and when an artifact can be rendered at all.

The text itself comes from the render collaborators bundled in
:class:`Renderers`; they may be plain functions or coroutines.
"""
from __future__ import annotations
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, Tuple, Union

from . import render
from .models import Device, NetworkSettings, Server, Topology

Text = Union[str, Awaitable[str]]


@dataclass(frozen=True)
class Renderers:
    server: Callable[[Server, Sequence[Device]], Text] = render.render_server_config
    device: Callable[[Device, Server], Text] = render.render_device_config
    dns: Callable[[Server, Sequence[Device], NetworkSettings], Text] = render.render_dns_zone


async def _resolve(value: Any) -> str:
    if inspect.isawaitable(value):
        value = await value
    return value


def server_peers(topology: Topology) -> Tuple[Device, ...]:
    # les brouillons et les appareils sans clés n'apparaissent jamais comme pairs
    return tuple(d for d in topology.real_devices if d.keys is not None)


def can_render_device(device: Device, server: Server) -> bool:
    return not device.is_draft and device.keys is not None and server.keys is not None


def is_complete_edit(device: Device, server: Server) -> bool:
    """Garde du formulaire d'édition : ne rien rendre tant qu'il est incomplet."""
    return bool(
        device.type
        and device.ip.v4
        and device.keys
        and server.port
        and server.keys
    )


async def derive_server_config(topology: Topology, renderers: Renderers) -> Optional[str]:
    # ni clés ni port : le dernier texte rendu reste en place
    if topology.server.keys is None or topology.server.port is None:
        return None
    return await _resolve(renderers.server(topology.server, server_peers(topology)))


async def derive_device_config(device: Device, topology: Topology, renderers: Renderers) -> Optional[str]:
    if not can_render_device(device, topology.server):
        return None
    return await _resolve(renderers.device(device, topology.server))


async def derive_dns_zone(topology: Topology, renderers: Renderers) -> Optional[str]:
    dns = topology.network.dns
    if dns.tls and not dns.tls_name:
        return None
    return await _resolve(
        renderers.dns(topology.server, topology.real_devices, topology.network)
    )
