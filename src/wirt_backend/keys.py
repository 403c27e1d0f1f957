# src/wirt_backend/keys.py
from __future__ import annotations
import asyncio
import base64
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .errors import KeyProvisioningFailed
from .models import KeyPair

logger = logging.getLogger(__name__)

KeyGenerator = Callable[[], Awaitable[KeyPair]]

SERVER_HANDLE = "server"
SIGNING_HANDLE = "signing"


# ---------- Génération de clés ----------

async def _run(cmd: List[str], stdin: Optional[str] = None) -> str:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if stdin is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    data = stdin.encode() if stdin is not None else None
    stdout, stderr = await proc.communicate(data)
    if proc.returncode != 0:
        raise RuntimeError(f"{' '.join(cmd)} exited with {proc.returncode}: {stderr.decode().strip()}")
    return stdout.decode().strip()


async def generate_keypair() -> KeyPair:
    """
    Paire WireGuard via wg(8). Nécessite 'wg' installé sur la machine.
    """
    priv = await _run(["wg", "genkey"])
    # pubkey lit la clé privée sur stdin
    pub = await _run(["wg", "pubkey"], stdin=priv + "\n")
    if not priv or not pub:
        raise RuntimeError("wg returned an empty key")
    return KeyPair(public=pub, private=priv)


async def generate_signing_keys() -> KeyPair:
    """Paire Ed25519 utilisée pour signer les mises à jour envoyées au WirtBot."""
    private_key = Ed25519PrivateKey.generate()
    private_raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return KeyPair(
        public=base64.b64encode(public_raw).decode(),
        private=base64.b64encode(private_raw).decode(),
    )


def sign(keys: KeyPair, payload: bytes) -> str:
    private_key = Ed25519PrivateKey.from_private_bytes(base64.b64decode(keys.private))
    return base64.b64encode(private_key.sign(payload)).decode()


# ---------- Provisioning (une seule paire par entité) ----------

class KeyProvisioner:
    """
    Wraps a key capability so that each entity handle gets exactly one pair.

    Concurrent callers for the same handle share the in-flight generation.
    Issued pairs are remembered until ``forget`` is called.
    """

    def __init__(self, generate: KeyGenerator, label: str = "wireguard") -> None:
        self._generate = generate
        self._label = label
        self._pending: Dict[str, "asyncio.Future[KeyPair]"] = {}
        self._issued: Dict[str, KeyPair] = {}

    async def ensure(self, handle: str, current: Optional[KeyPair] = None) -> KeyPair:
        if current is not None:
            return current
        if handle in self._issued:
            return self._issued[handle]

        pending = self._pending.get(handle)
        if pending is not None:
            return await asyncio.shield(pending)

        future: "asyncio.Future[KeyPair]" = asyncio.get_running_loop().create_future()
        self._pending[handle] = future
        try:
            keys = await self._generate()
        except KeyProvisioningFailed as exc:
            self._fail(future, exc)
            raise
        except Exception as exc:
            error = KeyProvisioningFailed(handle, str(exc) or exc.__class__.__name__)
            self._fail(future, error)
            logger.warning("%s key generation failed for %s: %s", self._label, handle, exc)
            raise error from exc
        else:
            self._issued[handle] = keys
            future.set_result(keys)
        finally:
            del self._pending[handle]
            if not future.done():
                future.cancel()

        logger.debug("Issued %s key pair for %s", self._label, handle)
        return keys

    async def regenerate(self, handle: str) -> KeyPair:
        self.forget(handle)
        return await self.ensure(handle)

    def issued(self, handle: str) -> Optional[KeyPair]:
        return self._issued.get(handle)

    def remember(self, handle: str, keys: KeyPair) -> None:
        self._issued[handle] = keys

    def forget(self, handle: str) -> None:
        self._issued.pop(handle, None)

    def clear(self) -> None:
        self._issued.clear()

    @staticmethod
    def _fail(future: "asyncio.Future[KeyPair]", error: Exception) -> None:
        future.set_exception(error)
        # les autres appelants relèvent l'erreur eux-mêmes
        future.exception()
