import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import qrcode

from wirt_backend.config import AppConfig, ConfigError, load_config
from wirt_backend.errors import ValidationFailed, WirtError
from wirt_backend.models import Device
from wirt_backend.push import pusher_from_config
from wirt_backend.state import read_backup, write_backup
from wirt_backend.store import SyncReport, TopologyStore


# ---------------------------------------------------
# Helpers
# ---------------------------------------------------

async def open_store(config: AppConfig) -> TopologyStore:
    store = await TopologyStore.open(config.state_file)
    store.attach_pusher(pusher_from_config(config.push, lambda: store.topology.keys))
    return store


def find_device(store: TopologyStore, ref: str) -> Device:
    device = store.topology.find_device(ref) or store.topology.find_device_by_name(ref)
    if device is None:
        raise ValidationFailed(f"Appareil introuvable : {ref}")
    return device


def split_list(value: Optional[str]) -> Optional[list]:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def print_report(report: SyncReport) -> None:
    for warning in report.warnings:
        print(f"[!] {warning}")
    if report.pushed:
        print(f"[+] Envoyé au WirtBot : {', '.join(kind.value for kind in report.pushed)}")


def write_private(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    # Attention aux permissions : 600 recommandé
    path.chmod(0o600)
    return path


def write_qr(path: Path, conf: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    img = qrcode.make(conf)
    img.save(str(path))
    return path


# ---------------------------------------------------
# Commande : init / set-server
# ---------------------------------------------------

async def cmd_init(args, config: AppConfig) -> int:
    print("[*] Initialisation du serveur WirtBot...")
    store = await open_store(config)

    await store.set_dns(name=args.dns_name or config.defaults.dns_name)
    report = await store.set_server(
        ip=args.ip,
        port=args.port or config.defaults.port,
        hostname=args.hostname,
        subnet_v4=args.subnet or config.defaults.subnet_v4,
        subnet_v6=args.subnet_v6 or config.defaults.subnet_v6,
        name=args.name,
    )
    print_report(report)

    server = store.topology.server
    print("[+] Serveur initialisé.")
    print("[+] Adresse :", server.address_v4)
    print(f"[+] Fichier {config.state_file} écrit.")
    return 0


async def cmd_set_server(args, config: AppConfig) -> int:
    store = await open_store(config)
    report = await store.set_server(
        ip=args.ip,
        ip_v6=args.ip_v6,
        port=args.port,
        hostname=args.hostname,
        subnet_v4=args.subnet,
        subnet_v6=args.subnet_v6,
        name=args.name,
    )
    print_report(report)
    print("[+] Serveur mis à jour.")
    return 0


async def cmd_regenerate_keys(args, config: AppConfig) -> int:
    if not args.yes:
        print("[ERREUR] Toutes les configs des appareils changent, confirme avec --yes.")
        return 1
    store = await open_store(config)
    report = await store.regenerate_server_keys()
    print_report(report)
    print("[OK] Nouvelles clés serveur. Réexporte les configs de tous les appareils.")
    return 0


# ---------------------------------------------------
# Commandes : appareils
# ---------------------------------------------------

async def cmd_add_device(args, config: AppConfig) -> int:
    store = await open_store(config)
    report = await store.add_device(
        args.name,
        args.type,
        ip_v4=args.ip,
        routed=args.routed,
        additional_dns_servers=split_list(args.dns) or [],
        mtu=args.mtu,
    )
    print_report(report)

    device = report.device
    print(f"[+] Appareil ajouté : {device.name} ({device.address_v4(store.topology.server)})")
    print("[+] Configuration client :")
    print(store.device_config(device.id))
    return 0


async def cmd_update_device(args, config: AppConfig) -> int:
    store = await open_store(config)
    device = find_device(store, args.device)

    changes = {}
    for option, key in (("name", "name"), ("ip", "ip_v4"), ("type", "type"), ("routed", "routed"), ("mtu", "mtu")):
        value = getattr(args, option)
        if value is not None:
            changes[key] = value
    if args.dns is not None:
        changes["additional_dns_servers"] = split_list(args.dns)

    report = await store.update_device(device.id, **changes)
    print_report(report)
    print(f"[OK] Appareil mis à jour : {report.device.name}")
    return 0


async def cmd_remove_device(args, config: AppConfig) -> int:
    store = await open_store(config)
    device = find_device(store, args.device)
    report = await store.remove_device(device.id)
    print_report(report)
    print(f"[OK] Appareil supprimé : {device.name}")
    return 0


async def cmd_list(args, config: AppConfig) -> int:
    store = await open_store(config)
    topology = store.topology

    print("=== Serveur ===")
    s = topology.server
    print(f"Nom       : {s.name}")
    print(f"Adresse   : {s.address_v4}")
    print(f"Port      : {s.port}")
    print(f"Endpoint  : {s.endpoint_host}")
    print(f"État      : {store.readiness.value}\n")

    print("=== Appareils ===")
    if not topology.devices:
        print("Aucun appareil.")
    else:
        for d in topology.devices:
            label = d.id or "brouillon"
            print(f"- {d.name} ({d.address_v4(s)}) [{d.type.value}] {label}")
    return 0


async def cmd_provision_keys(args, config: AppConfig) -> int:
    store = await open_store(config)
    report = await store.provision_missing_keys()
    print_report(report)
    print("[OK] Clés manquantes générées." if report.ok else "[!] Certaines clés manquent encore.")
    return 0 if report.ok else 1


# ---------------------------------------------------
# Commande : set-dns
# ---------------------------------------------------

async def cmd_set_dns(args, config: AppConfig) -> int:
    store = await open_store(config)
    report = await store.set_dns(
        name=args.name,
        ip_v4=args.ip,
        tls_name=args.tls_name,
        tls=args.tls,
        ignored_zones=split_list(args.ignored_zones),
        adblock=args.adblock,
        block_lists=args.block_list,
        block_hosts=args.block_host,
    )
    print_report(report)
    print("[+] DNS mis à jour.")
    return 0


# ---------------------------------------------------
# Commandes : export
# ---------------------------------------------------

async def cmd_export_device(args, config: AppConfig) -> int:
    store = await open_store(config)
    device = find_device(store, args.device)
    conf = store.device_config(device.id)
    if conf is None:
        print("[ERREUR] Pas encore de config pour cet appareil (clés manquantes).")
        return 1

    path = write_private(config.configs_dir / f"{device.name}.conf", conf)
    print(f"[OK] Config générée : {path}")
    if args.qr or device.type.is_mobile:
        qr_path = write_qr(config.configs_dir / f"{device.name}.png", conf)
        print(f"[OK] QR code généré : {qr_path}")
    print("\n--- Configuration ---\n")
    print(conf)
    return 0


async def cmd_generate_qr(args, config: AppConfig) -> int:
    store = await open_store(config)
    device = find_device(store, args.device)
    conf = store.device_config(device.id)
    if conf is None:
        print("[ERREUR] Pas encore de config pour cet appareil (clés manquantes).")
        return 1

    path = write_qr(config.configs_dir / f"{device.name}.png", conf)
    print(f"[OK] QR code généré : {path}")
    return 0


async def cmd_export_server(args, config: AppConfig) -> int:
    store = await open_store(config)
    if not store.server_config:
        print("[ERREUR] Le serveur n'a pas encore de clés.")
        return 1
    server_path = write_private(config.configs_dir / "server.conf", store.server_config)
    dns_path = write_private(config.configs_dir / "Corefile", store.dns_zone)
    print(f"[+] Fichier serveur : {server_path}")
    print(f"[+] Fichier DNS     : {dns_path}")
    return 0


# ---------------------------------------------------
# Commandes : sauvegardes
# ---------------------------------------------------

async def cmd_export_backup(args, config: AppConfig) -> int:
    store = await open_store(config)
    path = write_backup(store.topology, Path(args.path))
    print(f"[OK] Sauvegarde écrite : {path}")
    return 0


async def cmd_import_backup(args, config: AppConfig) -> int:
    store = await open_store(config)
    report = await store.import_backup(read_backup(Path(args.path)))
    print_report(report)
    print(f"[OK] Sauvegarde importée ({len(store.topology.real_devices)} appareils).")
    return 0


async def cmd_resync(args, config: AppConfig) -> int:
    store = await open_store(config)
    report = await store.resync()
    print_report(report)
    print("[OK] Configs renvoyées." if report.ok else "[!] Envoi incomplet.")
    return 0 if report.ok else 1


# ---------------------------------------------------
# CLI / Parser
# ---------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wirt")
    parser.add_argument("--config", help="chemin du fichier wirt.yml")
    parser.add_argument("--state", help="chemin du fichier d'état JSON")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd")

    def server_options(p, defaults: bool):
        p.add_argument("--ip", help="IP publique du serveur, ex 1.2.3.4")
        p.add_argument("--port", type=int)
        p.add_argument("--hostname")
        p.add_argument("--subnet", help="préfixe v4, ex 10.10.0")
        p.add_argument("--subnet-v6")
        p.add_argument("--name")
        if not defaults:
            p.add_argument("--ip-v6")

    # init
    p_init = sub.add_parser("init")
    server_options(p_init, defaults=True)
    p_init.add_argument("--dns-name")
    p_init.set_defaults(func=cmd_init)

    # set-server
    p_server = sub.add_parser("set-server")
    server_options(p_server, defaults=False)
    p_server.set_defaults(func=cmd_set_server)

    p_regen = sub.add_parser("regenerate-server-keys")
    p_regen.add_argument("--yes", action="store_true")
    p_regen.set_defaults(func=cmd_regenerate_keys)

    # add-device
    p_add = sub.add_parser("add-device")
    p_add.add_argument("name")
    p_add.add_argument("--type", default="Linux")
    p_add.add_argument("--ip", type=int, help="partie hôte, ex 2 pour 10.10.0.2")
    p_add.add_argument("--routed", action="store_true")
    p_add.add_argument("--dns", help="DNS additionnels, séparés par des virgules")
    p_add.add_argument("--mtu", type=int)
    p_add.set_defaults(func=cmd_add_device)

    # update-device
    p_upd = sub.add_parser("update-device")
    p_upd.add_argument("device", help="nom ou id")
    p_upd.add_argument("--name")
    p_upd.add_argument("--type")
    p_upd.add_argument("--ip", type=int)
    p_upd.add_argument("--routed", action=argparse.BooleanOptionalAction, default=None)
    p_upd.add_argument("--dns")
    p_upd.add_argument("--mtu", type=int)
    p_upd.set_defaults(func=cmd_update_device)

    # remove-device
    p_rm = sub.add_parser("remove-device")
    p_rm.add_argument("device", help="nom ou id")
    p_rm.set_defaults(func=cmd_remove_device)

    # list-devices
    p_list = sub.add_parser("list-devices")
    p_list.set_defaults(func=cmd_list)

    p_keys = sub.add_parser("provision-keys")
    p_keys.set_defaults(func=cmd_provision_keys)

    # set-dns
    p_dns = sub.add_parser("set-dns")
    p_dns.add_argument("--name")
    p_dns.add_argument("--ip", help="résolveur amont, ex 1.1.1.1")
    p_dns.add_argument("--tls-name")
    p_dns.add_argument("--tls", action=argparse.BooleanOptionalAction, default=None)
    p_dns.add_argument("--ignored-zones")
    p_dns.add_argument("--adblock", action=argparse.BooleanOptionalAction, default=None)
    p_dns.add_argument("--block-list", action="append")
    p_dns.add_argument("--block-host", action="append")
    p_dns.set_defaults(func=cmd_set_dns)

    # export-device
    p_export = sub.add_parser("export-device")
    p_export.add_argument("device", help="nom ou id")
    p_export.add_argument("--qr", action="store_true")
    p_export.set_defaults(func=cmd_export_device)

    # generate-qr
    p_qr = sub.add_parser("generate-qr")
    p_qr.add_argument("device", help="nom ou id")
    p_qr.set_defaults(func=cmd_generate_qr)

    p_srv = sub.add_parser("export-server")
    p_srv.set_defaults(func=cmd_export_server)

    # sauvegardes
    p_bk = sub.add_parser("export-backup")
    p_bk.add_argument("path")
    p_bk.set_defaults(func=cmd_export_backup)

    p_imp = sub.add_parser("import-backup")
    p_imp.add_argument("path")
    p_imp.set_defaults(func=cmd_import_backup)

    p_sync = sub.add_parser("resync")
    p_sync.set_defaults(func=cmd_resync)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        overrides = {"state_file": args.state} if args.state else None
        config = load_config(args.config, overrides=overrides)
        return asyncio.run(args.func(args, config))
    except ConfigError as exc:
        print(f"[ERREUR] Configuration : {exc}")
        return 1
    except WirtError as exc:
        print(f"[ERREUR] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
