# src/wirt_backend/alerts.py
from __future__ import annotations
import itertools
import time
from dataclasses import dataclass
from typing import Callable, List


@dataclass(frozen=True)
class Alert:
    id: int
    type: str          # "info" | "warning" | "success"
    message: str
    created: float


class AlertQueue:
    """
    Messages courts destinés à l'utilisateur.

    Un message identique remplace le précédent, seuls les ``limit`` plus récents
    sont gardés et chacun expire après ``ttl`` secondes.
    """

    def __init__(self, limit: int = 5, ttl: float = 2.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.ttl = ttl
        self._clock = clock
        self._ids = itertools.count(1)
        self._alerts: List[Alert] = []

    def add(self, message: str, type: str = "info") -> Alert:
        self._alerts = [a for a in self._alerts if a.message != message]
        alert = Alert(id=next(self._ids), type=type, message=message, created=self._clock())
        self._alerts = [*self._alerts[-(self.limit - 1):], alert] if self.limit > 1 else [alert]
        return alert

    def add_info(self, message: str) -> Alert:
        return self.add(message, "info")

    def add_warning(self, message: str) -> Alert:
        return self.add(message, "warning")

    def add_success(self, message: str) -> Alert:
        return self.add(message, "success")

    def remove(self, alert_id: int) -> None:
        self._alerts = [a for a in self._alerts if a.id != alert_id]

    def active(self) -> List[Alert]:
        now = self._clock()
        self._alerts = [a for a in self._alerts if now - a.created < self.ttl]
        return list(self._alerts)

    def __len__(self) -> int:
        return len(self._alerts)
