# src/wirt_backend/migrations.py
"""
Upgrade chain for topologies written by older releases.

A backup is handled as ``(declared version, raw fields)``. Each step is gated
on the declared version only: a step runs when the backup predates the release
that introduced the step's format change. Steps work on a deep copy of the
raw mapping, own exactly one concern, never delete known fields and are
idempotent. After the last step the result must parse and validate as a
current-schema :class:`Topology`, otherwise the backup is rejected.
"""
from __future__ import annotations
import copy
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from packaging.version import InvalidVersion, Version

from .errors import UnmigratableBackup, ValidationFailed
from .models import DEFAULT_IGNORED_ZONES, SCHEMA_VERSION, Topology
from .schema import dict_to_topology
from .validation import check_topology, parse_ipv4

logger = logging.getLogger(__name__)

OLDEST_SUPPORTED = Version("0.0.0")
CURRENT = Version(SCHEMA_VERSION)

RawTopology = Dict[str, Any]


@dataclass(frozen=True)
class MigrationStep:
    before: Version      # s'applique aux sauvegardes antérieures à cette version
    concern: str
    apply: Callable[[RawTopology], RawTopology]

    def applies_to(self, declared: Version) -> bool:
        return declared < self.before


def parse_version(value: Any) -> Version:
    """Version déclarée ; absente ou illisible = la plus ancienne."""
    if value is None or isinstance(value, bool):
        return OLDEST_SUPPORTED
    try:
        return Version(str(value).strip())
    except InvalidVersion:
        logger.warning("Unparsable backup version %r, applying every migration", value)
        return OLDEST_SUPPORTED


# ---------- Étapes ----------

def _section(raw: RawTopology, *path: str) -> Optional[Dict[str, Any]]:
    node: Any = raw
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node if isinstance(node, dict) else None


def _octets(section: Optional[Dict[str, Any]]) -> None:
    if section is None or "v4" not in section:
        return
    value = section["v4"]
    if isinstance(value, (str, list, tuple)):
        try:
            octets = parse_ipv4(value)
        except ValidationFailed:
            return  # laissé tel quel, la validation finale tranchera
        section["v4"] = list(octets) if octets is not None else None


def dotted_ips_to_octets(raw: RawTopology) -> RawTopology:
    """< 2.3.4 : les IPv4 du serveur et du DNS étaient des chaînes "1.2.3.4"."""
    _octets(_section(raw, "server", "ip"))
    _octets(_section(raw, "network", "dns", "ip"))
    return raw


def strip_subnet_separators(raw: RawTopology) -> RawTopology:
    """< 2.5.0 : les préfixes de sous-réseau finissaient par "." ou ":"."""
    subnet = _section(raw, "server", "subnet")
    if subnet is None:
        return raw
    for key, separator in (("v4", "."), ("v6", ":")):
        if isinstance(subnet.get(key), str):
            subnet[key] = subnet[key].rstrip(separator)
    return raw


def default_dns_filtering(raw: RawTopology) -> RawTopology:
    """< 2.5.0 : ignoredZones et adblock n'existaient pas."""
    network = raw.setdefault("network", {})
    if not isinstance(network, dict):
        return raw
    dns = network.setdefault("dns", {})
    if not isinstance(dns, dict):
        return raw
    dns.setdefault("ignoredZones", list(DEFAULT_IGNORED_ZONES))
    dns.setdefault("adblock", True)
    return raw


STEPS: Tuple[MigrationStep, ...] = (
    MigrationStep(Version("2.3.4"), "ipv4 octets", dotted_ips_to_octets),
    MigrationStep(Version("2.5.0"), "subnet separators", strip_subnet_separators),
    MigrationStep(Version("2.5.0"), "dns filtering defaults", default_dns_filtering),
)


# ---------- Moteur ----------

def pending_steps(declared: Version, steps: Tuple[MigrationStep, ...] = STEPS) -> List[MigrationStep]:
    ordered = sorted(steps, key=lambda step: step.before)
    return [step for step in ordered if step.applies_to(declared)]


def migrate(
    raw: Mapping[str, Any],
    declared_version: Any = None,
    steps: Tuple[MigrationStep, ...] = STEPS,
) -> Topology:
    """
    Upgrade *raw* to the current schema and validate it.

    *declared_version* defaults to the backup's own ``version`` field.
    Raises :class:`UnmigratableBackup` when no valid topology comes out.
    """
    if not isinstance(raw, Mapping):
        raise UnmigratableBackup(f"Backup must be a JSON object, got {type(raw).__name__}")
    if declared_version is None:
        declared_version = raw.get("version")
    declared = parse_version(declared_version)
    if declared > CURRENT:
        raise UnmigratableBackup(
            f"Backup version {declared} is newer than supported schema {SCHEMA_VERSION}"
        )

    data: RawTopology = copy.deepcopy(dict(raw))
    for step in pending_steps(declared, steps):
        logger.debug("Applying migration '%s' (< %s)", step.concern, step.before)
        data = step.apply(data)

    try:
        topology = dict_to_topology(data)
        check_topology(topology)
    except ValidationFailed as exc:
        raise UnmigratableBackup(f"Backup {declared} is not a valid topology: {exc}") from exc

    if declared < CURRENT:
        logger.info("Migrated backup from %s to %s", declared, SCHEMA_VERSION)
    return replace(topology, version=SCHEMA_VERSION)
