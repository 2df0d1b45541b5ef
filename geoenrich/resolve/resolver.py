"""Cache-first resolution of IP addresses across an ordered provider chain."""
from __future__ import annotations

from typing import Optional, Sequence

import structlog

from geoenrich.observability.metrics import MetricsRegistry
from geoenrich.observability.tracing import log_provider_failure, span
from geoenrich.resolve.cache import LocationCache
from geoenrich.resolve.errors import ProviderError
from geoenrich.resolve.models import LocationRecord
from geoenrich.resolve.private_ip import is_private_ip, normalize_ip
from geoenrich.resolve.providers import LocationProvider

LOGGER = structlog.get_logger(__name__)


class GeoResolver:
    """Resolves an address to a single location, or None when nobody knows it.

    Providers are tried in the order given until one answers. A provider
    failure never escapes this class; it only moves the lookup along the
    chain. Successful lookups are cached, failures and private addresses
    are not.
    """

    def __init__(
        self,
        providers: Sequence[LocationProvider],
        cache: LocationCache,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._providers = list(providers)
        self._cache = cache
        self._metrics = metrics or MetricsRegistry()

    @property
    def cache(self) -> LocationCache:
        return self._cache

    async def resolve(self, raw_ip: str) -> Optional[LocationRecord]:
        """Return the location for ``raw_ip`` or None when it cannot be determined."""
        self._metrics.incr("lookups")
        ip = normalize_ip(raw_ip or "")
        if not ip:
            return None
        if is_private_ip(ip):
            LOGGER.info("private_ip_skipped", ip=ip)
            self._metrics.incr("private_skips")
            return None

        cached = self._cache.get(ip)
        if cached is not None:
            self._metrics.incr("cache_hits")
            return cached

        for provider in self._providers:
            name = provider.provider.value
            try:
                with span(name=f"lookup:{name}", ip=ip):
                    record = await provider.lookup(ip)
            except ProviderError as exc:
                self._metrics.incr("provider_failures")
                log_provider_failure(provider=name, ip=ip, reason=str(exc))
                continue
            self._cache.put(ip, record)
            self._metrics.incr(f"resolved_{name}")
            LOGGER.info("ip_resolved", ip=ip, provider=name, city=record.city, country=record.country_code)
            return record

        self._metrics.incr("unresolved")
        LOGGER.warning("ip_unresolved", ip=ip, providers=[p.provider.value for p in self._providers])
        return None
