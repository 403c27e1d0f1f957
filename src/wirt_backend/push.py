# src/wirt_backend/push.py
from __future__ import annotations
import asyncio
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol

import httpx

from .config import PushConfig
from .errors import PushFailed
from .keys import sign
from .models import KeyPair

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Wirt-Signature"


class ArtifactKind(str, Enum):
    SERVER = "server"
    DNS = "dns"


class Pusher(Protocol):
    async def push(self, kind: ArtifactKind, text: str, host: str) -> None:
        """Deliver *text* to the WirtBot at *host*; raise PushFailed on error."""


# ---------- API du WirtBot ----------

class ApiPusher:
    """POST des configs sur l'API HTTP du WirtBot, signées si possible."""

    def __init__(
        self,
        port: int = 3030,
        scheme: str = "http",
        timeout: float = 10.0,
        signing_keys: Callable[[], Optional[KeyPair]] = lambda: None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.port = port
        self.scheme = scheme
        self.timeout = timeout
        self._signing_keys = signing_keys
        self._transport = transport

    def url_for(self, kind: ArtifactKind, host: str) -> str:
        return f"{self.scheme}://{host}:{self.port}/update/{kind.value}"

    async def push(self, kind: ArtifactKind, text: str, host: str) -> None:
        body = text.encode()
        headers = {"Content-Type": "text/plain; charset=utf-8"}
        keys = self._signing_keys()
        if keys is not None:
            headers[SIGNATURE_HEADER] = sign(keys, body)

        url = self.url_for(kind, host)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, content=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PushFailed(kind.value, host, str(exc) or exc.__class__.__name__) from exc
        logger.debug("Pushed %s config to %s", kind.value, url)


# ---------- Répertoire local (disposition du Core) ----------

class DirectoryPusher:
    FILENAMES = {ArtifactKind.SERVER: "server.conf", ArtifactKind.DNS: "Corefile"}

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, kind: ArtifactKind) -> Path:
        return self.directory / self.FILENAMES[kind]

    async def push(self, kind: ArtifactKind, text: str, host: str) -> None:
        path = self.path_for(kind)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(f".{path.name}.tmp")
            tmp.write_text(text, encoding="utf-8")
            # Attention aux permissions : 600 recommandé
            tmp.chmod(0o600)
            os.replace(tmp, path)
        except OSError as exc:
            raise PushFailed(kind.value, str(path), str(exc)) from exc
        logger.debug("Wrote %s config for %s to %s", kind.value, host, path)


# ---------- Ordonnancement ----------

class PushChannel:
    """
    Delivers pushes of one artifact kind in generation order.

    A push whose generation is older than one already sent is dropped, so the
    remote side never sees an older topology after a newer one.
    """

    def __init__(self, kind: ArtifactKind, pusher: Optional[Pusher]) -> None:
        self.kind = kind
        self._pusher = pusher
        self._lock = asyncio.Lock()
        self._sent = 0

    @property
    def last_generation(self) -> int:
        return self._sent

    async def deliver(self, generation: int, text: str, host: str) -> Optional[bool]:
        """
        Returns True when pushed, None when superseded or no pusher is set.
        Raises PushFailed.
        """
        if self._pusher is None:
            return None
        async with self._lock:
            if generation <= self._sent:
                logger.debug("Skipping %s push #%d, #%d already sent", self.kind.value, generation, self._sent)
                return None
            self._sent = generation
            await self._pusher.push(self.kind, text, host)
            return True


def pusher_from_config(
    config: PushConfig,
    signing_keys: Callable[[], Optional[KeyPair]] = lambda: None,
) -> Optional[Pusher]:
    if config.mode == "api":
        return ApiPusher(
            port=config.api_port,
            scheme=config.api_scheme,
            timeout=config.timeout,
            signing_keys=signing_keys,
        )
    if config.mode == "directory":
        return DirectoryPusher(config.directory)
    return None
