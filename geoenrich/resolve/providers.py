"""Adapters for the external IP geolocation services."""
from __future__ import annotations

from typing import Dict, List, Optional, Protocol

import httpx
import structlog
from pydantic import ValidationError

from geoenrich.resolve.errors import ConfigurationError, ProviderError
from geoenrich.resolve.models import LocationRecord, Provider
from geoenrich.resolve.private_ip import is_private_ip

LOGGER = structlog.get_logger(__name__)

IPAPI_CO_URL = "https://ipapi.co"
IP_API_COM_URL = "http://ip-api.com"
GOOGLE_GEOLOCATE_URL = "https://www.googleapis.com/geolocation/v1/geolocate"
GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

# The Geolocation API has no IP parameter; with considerIp it falls back to
# the caller's IP context when these access points cannot be matched.
_SYNTHETIC_ACCESS_POINTS = [
    {"macAddress": "00:00:00:00:00:00", "signalStrength": -65, "signalToNoiseRatio": 0},
    {"macAddress": "00:00:00:00:00:01", "signalStrength": -70, "signalToNoiseRatio": 0},
]


class LocationProvider(Protocol):
    """Anything that can turn a public IP address into a location."""

    provider: Provider

    async def lookup(self, ip: str) -> LocationRecord:
        ...


async def _request_json(
    client: httpx.AsyncClient,
    provider: Provider,
    method: str,
    url: str,
    **kwargs: object,
) -> Dict[str, object]:
    try:
        response = await client.request(method, url, **kwargs)  # type: ignore[arg-type]
    except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as exc:
        raise ProviderError(provider.value, f"request failed: {exc}") from exc
    LOGGER.debug("provider_response", provider=provider.value, status=response.status_code)
    if not response.is_success:
        raise ProviderError(
            provider.value,
            f"lookup failed with status {response.status_code}",
            status_code=response.status_code,
        )
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderError(provider.value, "response body is not JSON") from exc
    if not isinstance(payload, dict):
        raise ProviderError(provider.value, "unexpected response shape")
    return payload


def _build_record(provider: Provider, **fields: object) -> LocationRecord:
    try:
        return LocationRecord(provider=provider, **fields)
    except ValidationError as exc:
        raise ProviderError(provider.value, f"invalid location payload: {exc.error_count()} error(s)") from exc


class IpapiCoProvider:
    """Primary free lookup against ipapi.co."""

    provider = Provider.IPAPI_CO

    def __init__(self, client: httpx.AsyncClient, *, base_url: str = IPAPI_CO_URL) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def lookup(self, ip: str) -> LocationRecord:
        data = await _request_json(self._client, self.provider, "GET", f"{self._base_url}/{ip}/json/")
        if data.get("error"):
            raise ProviderError(self.provider.value, f"API error: {data.get('reason', 'unknown')}")
        return _build_record(
            self.provider,
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            city=data.get("city"),
            region=data.get("region"),
            country=data.get("country_name"),
            country_code=data.get("country_code"),
            timezone=data.get("timezone"),
        )


class IpApiComProvider:
    """Secondary free lookup against ip-api.com, which has higher rate limits."""

    provider = Provider.IP_API_COM

    def __init__(self, client: httpx.AsyncClient, *, base_url: str = IP_API_COM_URL) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def lookup(self, ip: str) -> LocationRecord:
        data = await _request_json(self._client, self.provider, "GET", f"{self._base_url}/json/{ip}")
        if data.get("status") == "fail":
            raise ProviderError(self.provider.value, f"API error: {data.get('message', 'unknown')}")
        return _build_record(
            self.provider,
            latitude=data.get("lat"),
            longitude=data.get("lon"),
            city=data.get("city"),
            region=data.get("regionName"),
            country=data.get("country"),
            country_code=data.get("countryCode"),
            timezone=data.get("timezone"),
        )


def _address_parts(result: Dict[str, object]) -> Dict[str, str]:
    parts = {"city": "", "region": "", "country": "", "country_code": ""}
    components = result.get("address_components")
    if not isinstance(components, list):
        return parts
    for component in components:
        if not isinstance(component, dict):
            continue
        types = component.get("types")
        if not isinstance(types, list):
            continue
        if "locality" in types:
            parts["city"] = component.get("long_name", "")
        elif "administrative_area_level_1" in types:
            parts["region"] = component.get("long_name", "")
        elif "country" in types:
            parts["country"] = component.get("long_name", "")
            parts["country_code"] = component.get("short_name", "")
    return parts


class GoogleMapsProvider:
    """Paid fallback: Google geolocation followed by reverse geocoding.

    Only consulted once both free services have failed. Never populates a
    timezone, but carries the accuracy radius reported by the geolocation step.
    """

    provider = Provider.GOOGLE

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: Optional[str],
        geolocate_url: str = GOOGLE_GEOLOCATE_URL,
        geocode_url: str = GOOGLE_GEOCODE_URL,
    ) -> None:
        self._client = client
        self._api_key = api_key or ""
        self._geolocate_url = geolocate_url
        self._geocode_url = geocode_url

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def _geolocate(self) -> Dict[str, object]:
        data = await _request_json(
            self._client,
            self.provider,
            "POST",
            self._geolocate_url,
            params={"key": self._api_key},
            json={"considerIp": True, "wifiAccessPoints": _SYNTHETIC_ACCESS_POINTS},
        )
        if data.get("error"):
            error = data["error"]
            message = error.get("message", "unknown") if isinstance(error, dict) else str(error)
            raise ProviderError(self.provider.value, f"geolocation error: {message}")
        location = data.get("location")
        if not isinstance(location, dict) or location.get("lat") is None or location.get("lng") is None:
            raise ProviderError(self.provider.value, "invalid coordinates from geolocation")
        return {"lat": location["lat"], "lng": location["lng"], "accuracy": data.get("accuracy")}

    async def _reverse_geocode(self, lat: object, lng: object) -> Dict[str, str]:
        data = await _request_json(
            self._client,
            self.provider,
            "GET",
            self._geocode_url,
            params={"latlng": f"{lat},{lng}", "key": self._api_key},
        )
        results = data.get("results")
        if data.get("status") != "OK" or not isinstance(results, list) or not results:
            raise ProviderError(self.provider.value, f"geocoding error: {data.get('status') or 'no results'}")
        if not isinstance(results[0], dict):
            raise ProviderError(self.provider.value, "unexpected geocoding result shape")
        return _address_parts(results[0])

    async def lookup(self, ip: str) -> LocationRecord:
        if not self.configured:
            raise ConfigurationError(self.provider.value, "Google Maps API key not configured")
        if is_private_ip(ip):
            raise ConfigurationError(self.provider.value, f"refusing private address {ip}")
        coords = await self._geolocate()
        parts = await self._reverse_geocode(coords["lat"], coords["lng"])
        return _build_record(
            self.provider,
            latitude=coords["lat"],
            longitude=coords["lng"],
            timezone=None,
            accuracy=coords["accuracy"],
            **parts,
        )


def default_providers(client: httpx.AsyncClient, *, google_api_key: Optional[str]) -> List[LocationProvider]:
    """Return the fallback chain: free services first, the paid one last."""
    return [
        IpapiCoProvider(client),
        IpApiComProvider(client),
        GoogleMapsProvider(client, api_key=google_api_key),
    ]
