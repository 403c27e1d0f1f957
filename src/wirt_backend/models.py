# src/wirt_backend/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


SCHEMA_VERSION = "2.6.0"

DEFAULT_IGNORED_ZONES: Tuple[str, ...] = ("fritz.box", "home", "lan", "local")

IPv4Tuple = Tuple[int, int, int, int]


class DeviceType(str, Enum):
    ANDROID = "Android"
    WINDOWS = "Windows"
    MACOS = "MacOS"
    IOS = "iOS"
    LINUX = "Linux"
    FREEBSD = "FreeBSD"

    @property
    def is_mobile(self) -> bool:
        return self in (DeviceType.ANDROID, DeviceType.IOS)


@dataclass(frozen=True)
class KeyPair:
    public: str
    private: str = field(repr=False)


@dataclass(frozen=True)
class ServerIP:
    v4: Optional[IPv4Tuple] = None  # IP publique, ex (1, 2, 3, 4)
    v6: str = ""


@dataclass(frozen=True)
class Subnet:
    v4: str = "10.10.0"                 # sans le "." final
    v6: str = "1010:1010:1010:1010"     # sans le ":" final


@dataclass(frozen=True)
class Server:
    ip: ServerIP = field(default_factory=ServerIP)
    port: Optional[int] = None
    keys: Optional[KeyPair] = None
    hostname: str = ""
    subnet: Subnet = field(default_factory=Subnet)
    name: str = ""
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def address_v4(self) -> str:
        return f"{self.subnet.v4}.1"

    @property
    def address_v6(self) -> str:
        return f"{self.subnet.v6}::1"

    @property
    def endpoint_host(self) -> Optional[str]:
        # Le hostname l'emporte sur l'IP brute
        if self.hostname:
            return self.hostname
        if self.ip.v4 is not None:
            return ".".join(str(octet) for octet in self.ip.v4)
        if self.ip.v6:
            return f"[{self.ip.v6}]"
        return None


@dataclass(frozen=True)
class DeviceIP:
    v4: int                     # partie hôte, ex 2 -> 10.10.0.2
    v6: Optional[str] = None


@dataclass(frozen=True)
class Device:
    name: str
    ip: DeviceIP
    type: DeviceType
    id: Optional[str] = None    # None = brouillon (formulaire en cours)
    keys: Optional[KeyPair] = None
    routed: bool = False
    additional_dns_servers: Tuple[str, ...] = ()
    mtu: Optional[int] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_draft(self) -> bool:
        return not self.id

    def address_v4(self, server: Server) -> str:
        return f"{server.subnet.v4}.{self.ip.v4}"

    def address_v6(self, server: Server) -> str:
        host = self.ip.v6 if self.ip.v6 else str(self.ip.v4)
        return f"{server.subnet.v6}::{host}"


@dataclass(frozen=True)
class DNSSettings:
    name: str = "wirt.internal"
    ip_v4: IPv4Tuple = (1, 1, 1, 1)
    tls_name: str = "cloudflare-dns.com"
    tls: bool = True
    ignored_zones: Tuple[str, ...] = DEFAULT_IGNORED_ZONES
    adblock: bool = True
    block_lists: Tuple[str, ...] = ()
    block_hosts: Tuple[str, ...] = ()
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NetworkSettings:
    dns: DNSSettings = field(default_factory=DNSSettings)
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Topology:
    version: str = SCHEMA_VERSION
    server: Server = field(default_factory=Server)
    devices: Tuple[Device, ...] = ()
    network: NetworkSettings = field(default_factory=NetworkSettings)
    keys: Optional[KeyPair] = None      # clés de signature pour l'API du WirtBot
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def real_devices(self) -> Tuple[Device, ...]:
        return tuple(d for d in self.devices if not d.is_draft)

    def find_device(self, device_id: str) -> Optional[Device]:
        for device in self.devices:
            if device.id and device.id == device_id:
                return device
        return None

    def find_device_by_name(self, name: str) -> Optional[Device]:
        for device in self.real_devices:
            if device.name == name:
                return device
        return None

    @property
    def push_destination(self) -> str:
        if self.network.dns.name:
            return f"wirtbot.{self.network.dns.name}"
        return self.server.address_v4


@dataclass
class Artifacts:
    """Derived config texts. Caches only, rebuilt from the topology."""

    server_config: str = ""
    dns_zone: str = ""
    device_configs: Dict[str, str] = field(default_factory=dict)
