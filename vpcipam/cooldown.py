"""Cooldown tracking for recently freed IP addresses."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable

__all__ = ["IP_RECONCILE_COOLDOWN", "ReconcileCooldownCache"]

log = logging.getLogger(__name__)

# Seconds an unassigned IP must wait before reconciliation may re-add it.
IP_RECONCILE_COOLDOWN = 60.0


class ReconcileCooldownCache:
    """Remembers recently freed IPs so stale instance metadata does not re-add them."""

    def __init__(
        self,
        cooldown: float = IP_RECONCILE_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cooldown = cooldown
        self._clock = clock
        self._expiry: dict[str, float] = {}
        self._lock = threading.Lock()

    def add(self, ips: Iterable[str]) -> None:
        """Start the cooldown for each of the given IPs."""
        with self._lock:
            expiry = self._clock() + self._cooldown
            for ip in ips:
                self._expiry[ip] = expiry

    def remove(self, ip: str) -> None:
        """Forget an IP; unknown IPs are ignored."""
        with self._lock:
            log.debug("Removing %s from cooldown cache.", ip)
            self._expiry.pop(ip, None)

    def recently_freed(self, ip: str) -> tuple[bool, bool]:
        """Return (found, still in cooldown) for an IP."""
        with self._lock:
            expiry = self._expiry.get(ip)
            if expiry is None:
                return False, False
            cooling = self._clock() < expiry
            log.debug(
                "Checking if IP %s has been recently freed. Cooldown expires at: %s. (Cooldown: %s)",
                ip,
                expiry,
                cooling,
            )
            return True, cooling

    def __contains__(self, ip: object) -> bool:
        with self._lock:
            return ip in self._expiry

    def __len__(self) -> int:
        with self._lock:
            return len(self._expiry)