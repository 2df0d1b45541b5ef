"""Process-scoped cache of resolved IP addresses."""
from __future__ import annotations

import threading
from typing import Dict, Optional

import structlog

from geoenrich.resolve.models import LocationRecord

LOGGER = structlog.get_logger(__name__)


class LocationCache:
    """Maps normalised IP addresses to their resolved location.

    Entries live for the lifetime of the process and are never evicted.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, LocationRecord] = {}
        self._lock = threading.Lock()

    def get(self, ip: str) -> Optional[LocationRecord]:
        with self._lock:
            record = self._entries.get(ip)
        if record is None:
            LOGGER.debug("cache_miss", ip=ip)
        else:
            LOGGER.debug("cache_hit", ip=ip)
        return record

    def put(self, ip: str, record: LocationRecord) -> None:
        with self._lock:
            self._entries[ip] = record
        LOGGER.debug("cache_set", ip=ip, provider=record.provider.value)

    def snapshot(self) -> Dict[str, LocationRecord]:
        """Return a shallow copy of all cached entries."""
        with self._lock:
            return dict(self._entries)

    def __contains__(self, ip: object) -> bool:
        with self._lock:
            return ip in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
