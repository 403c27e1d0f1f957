# src/wirt_backend/errors.py
from __future__ import annotations


class WirtError(RuntimeError):
    """Base class for every failure the backend reports to its callers."""


class ValidationFailed(WirtError):
    """A mutation would break a topology invariant; nothing was changed."""


class KeyProvisioningFailed(WirtError):
    """The key generation capability failed; the entity stays keyless."""

    def __init__(self, handle: str, reason: str) -> None:
        super().__init__(f"Key generation failed for '{handle}': {reason}")
        self.handle = handle
        self.reason = reason


class UnmigratableBackup(WirtError):
    """A backup could not be upgraded to the current schema."""


class PushFailed(WirtError):
    """A derived config could not be delivered to the remote WirtBot."""

    def __init__(self, kind: str, destination: str, reason: str) -> None:
        super().__init__(f"Push of {kind} config to {destination} failed: {reason}")
        self.kind = kind
        self.destination = destination
        self.reason = reason


class PersistFailed(WirtError):
    """The topology could not be written to its state file."""
