# src/wirt_backend/store.py
"""
Owner of the live topology and of the configs derived from it.

Every mutation goes through an intent coroutine. An intent validates against
the current topology, provisions any missing keys (outside the commit lock,
under a per-entity lock), then commits under the store lock: the new
topology replaces the old one, the artifacts named by the invalidation table
are re-rendered and the state file is rewritten. Pushes to the WirtBot are
sent after the lock is released through one ordered channel per artifact.
"""
from __future__ import annotations
import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from .alerts import AlertQueue
from .derive import (
    Renderers,
    derive_device_config,
    derive_dns_zone,
    derive_server_config,
    is_complete_edit,
)
from .errors import KeyProvisioningFailed, PersistFailed, PushFailed, ValidationFailed, WirtError
from .ipam import allocate_host, is_host_free
from .keys import (
    KeyGenerator,
    KeyProvisioner,
    SERVER_HANDLE,
    SIGNING_HANDLE,
    generate_keypair,
    generate_signing_keys,
)
from .migrations import migrate
from .models import Artifacts, Device, DeviceIP, KeyPair, Topology
from .push import ArtifactKind, PushChannel, Pusher
from .schema import topology_to_dict
from .state import load_state, parse_backup_text, save_state
from .validation import (
    check_dns,
    check_topology,
    parse_device_type,
    parse_dns_servers,
    parse_ipv4,
    strip_subnet,
    unique,
)

logger = logging.getLogger(__name__)


class Readiness(str, Enum):
    UNINITIALIZED = "uninitialized"
    PROVISIONING = "provisioning"
    OPERATIONAL = "operational"


class MutationKind(str, Enum):
    SERVER_ADDRESSING = "server-addressing"
    SERVER_LABEL = "server-label"
    SERVER_KEYS = "server-keys"
    DEVICE_ADDED = "device-added"
    DEVICE_UPDATED = "device-updated"
    DEVICE_REMOVED = "device-removed"
    DRAFTS_REMOVED = "drafts-removed"
    DNS_NAME = "dns-name"
    DNS_SETTINGS = "dns-settings"
    KEYS_PROVISIONED = "keys-provisioned"
    BACKUP_IMPORTED = "backup-imported"
    RESYNC = "resync"
    RESTORE = "restore"


class DeviceScope(str, Enum):
    NONE = "none"
    ONE = "one"
    ALL = "all"


@dataclass(frozen=True)
class Invalidation:
    server: bool
    dns: bool
    devices: DeviceScope = DeviceScope.NONE
    pushes: FrozenSet[ArtifactKind] = frozenset()
    guarded: bool = False   # ne rendre l'appareil que si le formulaire est complet


BOTH = frozenset({ArtifactKind.SERVER, ArtifactKind.DNS})

INVALIDATIONS: Dict[MutationKind, Invalidation] = {
    MutationKind.SERVER_ADDRESSING: Invalidation(True, True, DeviceScope.ALL, BOTH),
    MutationKind.SERVER_KEYS: Invalidation(True, True, DeviceScope.ALL, BOTH),
    MutationKind.SERVER_LABEL: Invalidation(True, True, DeviceScope.NONE, BOTH),
    MutationKind.DEVICE_ADDED: Invalidation(True, True, DeviceScope.ONE, BOTH),
    MutationKind.DEVICE_UPDATED: Invalidation(True, True, DeviceScope.ONE, BOTH, guarded=True),
    MutationKind.DEVICE_REMOVED: Invalidation(True, True, DeviceScope.NONE, BOTH),
    MutationKind.DRAFTS_REMOVED: Invalidation(False, False),
    # la destination des envois dépend du nom de zone
    MutationKind.DNS_NAME: Invalidation(False, True, DeviceScope.NONE, BOTH),
    MutationKind.DNS_SETTINGS: Invalidation(False, True, DeviceScope.NONE, frozenset({ArtifactKind.DNS})),
    MutationKind.KEYS_PROVISIONED: Invalidation(True, True, DeviceScope.ALL, BOTH),
    MutationKind.BACKUP_IMPORTED: Invalidation(True, True, DeviceScope.ALL, BOTH),
    MutationKind.RESYNC: Invalidation(True, True, DeviceScope.ALL, BOTH),
    MutationKind.RESTORE: Invalidation(True, True, DeviceScope.ALL),
}

DEVICE_FIELDS = frozenset(
    {"name", "ip_v4", "ip_v6", "type", "routed", "additional_dns_servers", "mtu"}
)


@dataclass
class SyncReport:
    mutation: MutationKind
    rendered: List[str] = field(default_factory=list)
    pushed: List[ArtifactKind] = field(default_factory=list)
    warnings: List[WirtError] = field(default_factory=list)
    device: Optional[Device] = None

    @property
    def ok(self) -> bool:
        return not self.warnings


PushJob = Tuple[ArtifactKind, int, str, str]


class TopologyStore:
    def __init__(
        self,
        topology: Optional[Topology] = None,
        *,
        renderers: Optional[Renderers] = None,
        keygen: Optional[KeyGenerator] = None,
        signing_keygen: Optional[KeyGenerator] = None,
        pusher: Optional[Pusher] = None,
        alerts: Optional[AlertQueue] = None,
        state_path: Optional[Path] = None,
    ) -> None:
        topology = topology if topology is not None else Topology()
        check_topology(topology)
        self._topology = topology
        self._artifacts = Artifacts()
        self._renderers = renderers or Renderers()
        self._wg_keys = KeyProvisioner(keygen or generate_keypair)
        self._signing_keys = KeyProvisioner(signing_keygen or generate_signing_keys, label="signing")
        self._channels = {kind: PushChannel(kind, pusher) for kind in ArtifactKind}
        self._generations = {kind: 0 for kind in ArtifactKind}
        self._lock = asyncio.Lock()
        self._entity_locks: Dict[str, asyncio.Lock] = {}
        self._provisioning_server = False
        self.alerts = alerts if alerts is not None else AlertQueue()
        self.state_path = state_path
        self._remember_keys(topology)

    @classmethod
    async def open(cls, path: Path, **kwargs: Any) -> "TopologyStore":
        """Charge l'état persisté (migré si besoin) et reconstruit les configs."""
        path = Path(path)
        topology = load_state(path) if path.exists() else None
        store = cls(topology, state_path=path, **kwargs)
        await store.restore()
        return store

    def attach_pusher(self, pusher: Optional[Pusher]) -> None:
        self._channels = {kind: PushChannel(kind, pusher) for kind in ArtifactKind}

    # ---------- Lecture ----------

    @property
    def topology(self) -> Topology:
        return self._topology

    @property
    def readiness(self) -> Readiness:
        if self._topology.server.keys is not None:
            return Readiness.OPERATIONAL
        if self._provisioning_server:
            return Readiness.PROVISIONING
        return Readiness.UNINITIALIZED

    @property
    def server_config(self) -> str:
        return self._artifacts.server_config

    @property
    def dns_zone(self) -> str:
        return self._artifacts.dns_zone

    def device_config(self, device_id: str) -> Optional[str]:
        return self._artifacts.device_configs.get(device_id)

    def export_backup(self) -> Dict[str, Any]:
        return topology_to_dict(self._topology)

    # ---------- Serveur ----------

    async def set_server(
        self,
        *,
        ip: Any = None,
        ip_v6: Optional[str] = None,
        port: Optional[int] = None,
        hostname: Optional[str] = None,
        subnet_v4: Optional[str] = None,
        subnet_v6: Optional[str] = None,
        name: Optional[str] = None,
    ) -> SyncReport:
        """
        Update server fields; ``None`` leaves a field unchanged, ``""`` clears
        a text field. The first call provisions the server (and signing) keys.
        """
        changes: Dict[str, Any] = {}
        current = self._topology.server
        if ip is not None or ip_v6 is not None:
            changes["ip"] = replace(
                current.ip,
                **({"v4": parse_ipv4(ip)} if ip is not None else {}),
                **({"v6": ip_v6.strip()} if ip_v6 is not None else {}),
            )
        if port is not None:
            changes["port"] = port
        if hostname is not None:
            changes["hostname"] = hostname.strip()
        if subnet_v4 is not None or subnet_v6 is not None:
            changes["subnet"] = replace(
                current.subnet,
                **({"v4": strip_subnet(subnet_v4, ".")} if subnet_v4 is not None else {}),
                **({"v6": strip_subnet(subnet_v6, ":")} if subnet_v6 is not None else {}),
            )
        if name is not None:
            changes["name"] = name.strip()
        check_topology(replace(self._topology, server=replace(current, **changes)))

        warnings: List[WirtError] = []
        keys = self._topology.server.keys
        if keys is None:
            try:
                keys = await self._provision_server()
            except KeyProvisioningFailed as exc:
                warnings.append(exc)
                self.alerts.add_warning(f"Server keys could not be generated: {exc.reason}")
        signing = await self._ensure_signing_keys(warnings)

        async with self._lock:
            before = self._topology.server
            server = replace(before, **changes)
            if server.keys is None and keys is not None:
                server = replace(server, keys=keys)
            candidate = replace(self._topology, server=server, keys=self._topology.keys or signing)
            check_topology(candidate)

            addressing = any(
                getattr(before, attr) != getattr(server, attr)
                for attr in ("ip", "port", "keys", "hostname", "subnet")
            )
            kind = MutationKind.SERVER_ADDRESSING if addressing else MutationKind.SERVER_LABEL
            report = SyncReport(kind, warnings=warnings)
            jobs = await self._commit(kind, candidate, report)
        await self._dispatch(jobs, report)
        return report

    async def regenerate_server_keys(self) -> SyncReport:
        """Destructive: every device has to re-import its config afterwards."""
        async with self._entity_lock(SERVER_HANDLE):
            self._provisioning_server = True
            try:
                keys = await self._wg_keys.regenerate(SERVER_HANDLE)
            finally:
                self._provisioning_server = False
        logger.warning("Server keys regenerated, every device config changes")
        async with self._lock:
            candidate = replace(self._topology, server=replace(self._topology.server, keys=keys))
            report = SyncReport(MutationKind.SERVER_KEYS)
            jobs = await self._commit(MutationKind.SERVER_KEYS, candidate, report)
        await self._dispatch(jobs, report)
        return report

    # ---------- Appareils ----------

    async def add_device(
        self,
        name: str,
        type: Any,
        *,
        ip_v4: Optional[int] = None,
        ip_v6: Optional[str] = None,
        routed: bool = False,
        additional_dns_servers: Iterable[str] = (),
        mtu: Optional[int] = None,
    ) -> SyncReport:
        snapshot = self._topology
        if snapshot.server.keys is None:
            self.alerts.add_warning("Device could not be added: no server configured yet")
            raise ValidationFailed("No server configured, set up the server before adding devices")

        auto_ip = ip_v4 is None
        device = Device(
            id=uuid.uuid4().hex,
            name=name.strip(),
            ip=DeviceIP(v4=allocate_host(snapshot) if auto_ip else ip_v4, v6=ip_v6 or None),
            type=parse_device_type(type),
            routed=bool(routed),
            additional_dns_servers=parse_dns_servers(additional_dns_servers),
            mtu=mtu,
        )
        check_topology(replace(snapshot, devices=(*snapshot.devices, device)))

        async with self._entity_lock(device.id):
            try:
                keys = await self._wg_keys.ensure(device.id)
            except KeyProvisioningFailed as exc:
                self.alerts.add_warning(f"Device '{device.name}' could not be added: {exc.reason}")
                self._entity_locks.pop(device.id, None)
                raise
        device = replace(device, keys=keys)

        async with self._lock:
            current = self._topology
            if auto_ip and not is_host_free(current, device.ip.v4):
                device = replace(device, ip=replace(device.ip, v4=allocate_host(current)))
            candidate = replace(current, devices=(*current.devices, device))
            try:
                check_topology(candidate)
            except ValidationFailed:
                self._wg_keys.forget(device.id)
                self._entity_locks.pop(device.id, None)
                raise
            report = SyncReport(MutationKind.DEVICE_ADDED, device=device)
            jobs = await self._commit(MutationKind.DEVICE_ADDED, candidate, report, device.id)
        await self._dispatch(jobs, report)
        return report

    async def update_device(self, device_id: str, **changes: Any) -> SyncReport:
        forbidden = set(changes) - DEVICE_FIELDS
        if forbidden:
            raise ValidationFailed(f"Cannot update {', '.join(sorted(forbidden))} of a device")

        async with self._entity_lock(device_id):
            async with self._lock:
                current = self._topology.find_device(device_id)
                if current is None:
                    raise ValidationFailed(f"Unknown device: {device_id}")
                updated = _apply_device_changes(current, changes)
                candidate = replace(
                    self._topology,
                    devices=tuple(updated if d is current else d for d in self._topology.devices),
                )
                check_topology(candidate)
                report = SyncReport(MutationKind.DEVICE_UPDATED, device=updated)
                jobs = await self._commit(MutationKind.DEVICE_UPDATED, candidate, report, device_id)
        await self._dispatch(jobs, report)
        return report

    async def remove_device(self, device_id: str) -> SyncReport:
        async with self._entity_lock(device_id):
            async with self._lock:
                device = self._topology.find_device(device_id)
                if device is None:
                    self.alerts.add_warning("Device could not be removed: unknown device")
                    raise ValidationFailed(f"Unknown device: {device_id}")
                candidate = replace(
                    self._topology,
                    devices=tuple(d for d in self._topology.devices if d is not device),
                )
                # la paire de clés disparaît avec l'appareil
                self._wg_keys.forget(device_id)
                self._artifacts.device_configs.pop(device_id, None)
                report = SyncReport(MutationKind.DEVICE_REMOVED, device=device)
                jobs = await self._commit(MutationKind.DEVICE_REMOVED, candidate, report)
        self._entity_locks.pop(device_id, None)
        self.alerts.add_success(f"Device '{device.name}' removed")
        await self._dispatch(jobs, report)
        return report

    async def remove_drafts(self) -> SyncReport:
        async with self._lock:
            candidate = replace(
                self._topology,
                devices=tuple(d for d in self._topology.devices if not d.is_draft),
            )
            report = SyncReport(MutationKind.DRAFTS_REMOVED)
            jobs = await self._commit(MutationKind.DRAFTS_REMOVED, candidate, report)
        await self._dispatch(jobs, report)
        return report

    async def provision_missing_keys(self) -> SyncReport:
        """Key the server and every real device that has no keys yet."""
        warnings: List[WirtError] = []
        issued: Dict[str, KeyPair] = {}
        server_keys = self._topology.server.keys
        if server_keys is None:
            try:
                server_keys = await self._provision_server()
            except KeyProvisioningFailed as exc:
                warnings.append(exc)
                self.alerts.add_warning(f"Server keys could not be generated: {exc.reason}")
        if server_keys is not None:
            for device in self._topology.real_devices:
                if device.keys is not None:
                    continue
                async with self._entity_lock(device.id):
                    try:
                        issued[device.id] = await self._wg_keys.ensure(device.id)
                    except KeyProvisioningFailed as exc:
                        warnings.append(exc)
                        self.alerts.add_warning(f"Keys for '{device.name}' could not be generated")
        signing = await self._ensure_signing_keys(warnings)

        async with self._lock:
            t = self._topology
            server = t.server if t.server.keys is not None else replace(t.server, keys=server_keys)
            devices = tuple(
                replace(d, keys=issued[d.id]) if d.keys is None and d.id in issued else d
                for d in t.devices
            )
            candidate = replace(t, server=server, devices=devices, keys=t.keys or signing)
            check_topology(candidate)
            report = SyncReport(MutationKind.KEYS_PROVISIONED, warnings=warnings)
            jobs = await self._commit(MutationKind.KEYS_PROVISIONED, candidate, report)
        await self._dispatch(jobs, report)
        return report

    # ---------- DNS ----------

    async def set_dns(
        self,
        *,
        name: Optional[str] = None,
        ip_v4: Any = None,
        tls_name: Optional[str] = None,
        tls: Optional[bool] = None,
        ignored_zones: Optional[Iterable[str]] = None,
        adblock: Optional[bool] = None,
        block_lists: Optional[Iterable[str]] = None,
        block_hosts: Optional[Iterable[str]] = None,
    ) -> SyncReport:
        changes: Dict[str, Any] = {}
        if name is not None:
            changes["name"] = name.strip()
        if ip_v4 is not None:
            parsed = parse_ipv4(ip_v4)
            if parsed is None:
                raise ValidationFailed("DNS upstream address must not be empty")
            changes["ip_v4"] = parsed
        if tls_name is not None:
            changes["tls_name"] = tls_name.strip()
        if tls is not None:
            changes["tls"] = bool(tls)
        if ignored_zones is not None:
            changes["ignored_zones"] = unique(ignored_zones)
        if adblock is not None:
            changes["adblock"] = bool(adblock)
        if block_lists is not None:
            changes["block_lists"] = unique(block_lists)
        if block_hosts is not None:
            changes["block_hosts"] = unique(block_hosts)

        async with self._lock:
            t = self._topology
            dns = replace(t.network.dns, **changes)
            candidate = replace(t, network=replace(t.network, dns=dns))
            check_dns(dns)
            check_topology(candidate)
            renamed = dns.name != t.network.dns.name
            kind = MutationKind.DNS_NAME if renamed else MutationKind.DNS_SETTINGS
            report = SyncReport(kind)
            jobs = await self._commit(kind, candidate, report)
        await self._dispatch(jobs, report)
        return report

    # ---------- Sauvegardes ----------

    async def import_backup(self, backup: Union[str, Mapping[str, Any]]) -> SyncReport:
        """
        Migrate *backup* and replace the whole topology with it. The current
        topology is left untouched when the backup is rejected.
        """
        try:
            raw = parse_backup_text(backup) if isinstance(backup, str) else backup
            topology = migrate(raw)
        except WirtError as exc:
            self.alerts.add_warning(f"Backup could not be imported: {exc}")
            raise

        async with self._lock:
            self._artifacts = Artifacts()
            self._wg_keys.clear()
            self._signing_keys.clear()
            self._remember_keys(topology)
            report = SyncReport(MutationKind.BACKUP_IMPORTED)
            jobs = await self._commit(MutationKind.BACKUP_IMPORTED, topology, report)
        self.alerts.add_success("Backup imported")
        await self._dispatch(jobs, report)
        return report

    # ---------- Recalcul complet ----------

    async def resync(self) -> SyncReport:
        """Re-render everything and push again, e.g. after a failed push."""
        async with self._lock:
            report = SyncReport(MutationKind.RESYNC)
            jobs = await self._commit(MutationKind.RESYNC, self._topology, report, persist=False)
        await self._dispatch(jobs, report)
        return report

    async def restore(self) -> SyncReport:
        async with self._lock:
            report = SyncReport(MutationKind.RESTORE)
            await self._commit(MutationKind.RESTORE, self._topology, report, persist=False)
        return report

    # ---------- Interne ----------

    def _entity_lock(self, handle: str) -> asyncio.Lock:
        return self._entity_locks.setdefault(handle, asyncio.Lock())

    def _remember_keys(self, topology: Topology) -> None:
        if topology.server.keys is not None:
            self._wg_keys.remember(SERVER_HANDLE, topology.server.keys)
        if topology.keys is not None:
            self._signing_keys.remember(SIGNING_HANDLE, topology.keys)
        for device in topology.real_devices:
            if device.keys is not None:
                self._wg_keys.remember(device.id, device.keys)

    async def _provision_server(self) -> KeyPair:
        async with self._entity_lock(SERVER_HANDLE):
            self._provisioning_server = True
            try:
                return await self._wg_keys.ensure(SERVER_HANDLE, self._topology.server.keys)
            finally:
                self._provisioning_server = False

    async def _ensure_signing_keys(self, warnings: List[WirtError]) -> Optional[KeyPair]:
        if self._topology.keys is not None:
            return self._topology.keys
        async with self._entity_lock(SIGNING_HANDLE):
            try:
                return await self._signing_keys.ensure(SIGNING_HANDLE, self._topology.keys)
            except KeyProvisioningFailed as exc:
                warnings.append(exc)
                return None

    async def _commit(
        self,
        kind: MutationKind,
        topology: Topology,
        report: SyncReport,
        device_id: Optional[str] = None,
        persist: bool = True,
    ) -> List[PushJob]:
        # appelé avec self._lock acquis
        self._topology = topology
        invalidation = INVALIDATIONS[kind]
        await self._recompute(invalidation, device_id, report)
        logger.info("Committed %s (rendered: %s)", kind.value, ", ".join(report.rendered) or "nothing")

        if persist and self.state_path is not None:
            try:
                save_state(topology, self.state_path)
            except PersistFailed as exc:
                logger.warning("%s", exc)
                report.warnings.append(exc)
                self.alerts.add_warning(str(exc))

        jobs: List[PushJob] = []
        host = topology.push_destination
        texts = {
            ArtifactKind.SERVER: self._artifacts.server_config,
            ArtifactKind.DNS: self._artifacts.dns_zone,
        }
        for artifact in ArtifactKind:
            if artifact in invalidation.pushes and texts[artifact]:
                self._generations[artifact] += 1
                jobs.append((artifact, self._generations[artifact], texts[artifact], host))
        return jobs

    async def _recompute(self, invalidation: Invalidation, device_id: Optional[str], report: SyncReport) -> None:
        t = self._topology
        if invalidation.server:
            text = await derive_server_config(t, self._renderers)
            if text is not None:
                self._artifacts.server_config = text
                report.rendered.append("server")

        targets: Tuple[Device, ...] = ()
        if invalidation.devices is DeviceScope.ALL:
            targets = t.real_devices
        elif invalidation.devices is DeviceScope.ONE and device_id is not None:
            device = t.find_device(device_id)
            if device is not None and (not invalidation.guarded or is_complete_edit(device, t.server)):
                targets = (device,)
        for device in targets:
            text = await derive_device_config(device, t, self._renderers)
            if text is not None:
                self._artifacts.device_configs[device.id] = text
                report.rendered.append(f"device:{device.id}")

        if invalidation.dns:
            text = await derive_dns_zone(t, self._renderers)
            if text is not None:
                self._artifacts.dns_zone = text
                report.rendered.append("dns")

    async def _dispatch(self, jobs: List[PushJob], report: SyncReport) -> None:
        for kind, generation, text, host in jobs:
            try:
                if await self._channels[kind].deliver(generation, text, host):
                    report.pushed.append(kind)
            except PushFailed as exc:
                logger.warning("%s", exc)
                report.warnings.append(exc)
                self.alerts.add_warning(str(exc))


def _apply_device_changes(device: Device, changes: Mapping[str, Any]) -> Device:
    values: Dict[str, Any] = {}
    ip = device.ip
    if "ip_v4" in changes:
        ip = replace(ip, v4=changes["ip_v4"])
    if "ip_v6" in changes:
        ip = replace(ip, v6=changes["ip_v6"] or None)
    if ip != device.ip:
        values["ip"] = ip
    if "name" in changes:
        values["name"] = str(changes["name"]).strip()
    if "type" in changes:
        values["type"] = parse_device_type(changes["type"])
    if "routed" in changes:
        values["routed"] = bool(changes["routed"])
    if "additional_dns_servers" in changes:
        values["additional_dns_servers"] = parse_dns_servers(changes["additional_dns_servers"])
    if "mtu" in changes:
        values["mtu"] = changes["mtu"]
    return replace(device, **values)
