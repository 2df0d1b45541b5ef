import asyncio
import json

import httpx
import pytest

from geoenrich.resolve.errors import ConfigurationError, ProviderError
from geoenrich.resolve.models import Provider
from geoenrich.resolve.providers import (
    GoogleMapsProvider,
    IpApiComProvider,
    IpapiCoProvider,
    default_providers,
)

from stubs import IP_API_COM_PAYLOAD, IPAPI_CO_PAYLOAD, mock_client

GEOCODE_PAYLOAD = {
    "status": "OK",
    "results": [
        {
            "address_components": [
                {"long_name": "1600", "short_name": "1600", "types": ["street_number"]},
                {"long_name": "Mountain View", "short_name": "Mountain View", "types": ["locality", "political"]},
                {"long_name": "California", "short_name": "CA", "types": ["administrative_area_level_1", "political"]},
                {"long_name": "United States", "short_name": "US", "types": ["country", "political"]},
            ]
        },
        {"address_components": [{"long_name": "Elsewhere", "short_name": "EW", "types": ["locality"]}]},
    ],
}


def _lookup(provider, ip="8.8.8.8"):
    return asyncio.run(provider.lookup(ip))


def test_ipapi_co_maps_fields():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json=IPAPI_CO_PAYLOAD)

    record = _lookup(IpapiCoProvider(mock_client(handler)))
    assert seen == ["https://ipapi.co/8.8.8.8/json/"]
    assert record.provider is Provider.IPAPI_CO
    assert (record.latitude, record.longitude) == (37.4, -122.1)
    assert record.city == "Mountain View"
    assert record.region == "California"
    assert record.country == "United States"
    assert record.country_code == "US"
    assert record.timezone == "America/Los_Angeles"
    assert record.accuracy is None


def test_ipapi_co_embedded_error():
    client = mock_client(lambda request: httpx.Response(200, json={"error": True, "reason": "RateLimited"}))
    with pytest.raises(ProviderError, match="RateLimited"):
        _lookup(IpapiCoProvider(client))


def test_ipapi_co_http_status():
    client = mock_client(lambda request: httpx.Response(429, json={}))
    with pytest.raises(ProviderError) as excinfo:
        _lookup(IpapiCoProvider(client))
    assert excinfo.value.status_code == 429


def test_ipapi_co_missing_coordinates():
    payload = dict(IPAPI_CO_PAYLOAD, latitude=None)
    client = mock_client(lambda request: httpx.Response(200, json=payload))
    with pytest.raises(ProviderError, match="invalid location payload"):
        _lookup(IpapiCoProvider(client))


def test_transport_error_becomes_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(ProviderError, match="request failed"):
        _lookup(IpapiCoProvider(mock_client(handler)))


def test_ip_api_com_maps_fields():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json=IP_API_COM_PAYLOAD)

    record = _lookup(IpApiComProvider(mock_client(handler)), ip="1.2.3.4")
    assert seen == ["http://ip-api.com/json/1.2.3.4"]
    assert record.provider is Provider.IP_API_COM
    assert record.city == "Frankfurt am Main"
    assert record.region == "Hesse"
    assert record.country_code == "DE"
    assert record.timezone == "Europe/Berlin"


def test_ip_api_com_fail_status():
    client = mock_client(lambda request: httpx.Response(200, json={"status": "fail", "message": "reserved range"}))
    with pytest.raises(ProviderError, match="reserved range"):
        _lookup(IpApiComProvider(client))


def test_google_requires_api_key():
    calls = []
    client = mock_client(lambda request: calls.append(request) or httpx.Response(200, json={}))
    with pytest.raises(ConfigurationError):
        _lookup(GoogleMapsProvider(client, api_key=""))
    assert calls == []


def test_google_rejects_private_ip():
    calls = []
    client = mock_client(lambda request: calls.append(request) or httpx.Response(200, json={}))
    with pytest.raises(ConfigurationError):
        _lookup(GoogleMapsProvider(client, api_key="secret"), ip="10.1.2.3")
    assert calls == []


def test_google_geolocate_then_reverse_geocode():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.host == "www.googleapis.com":
            return httpx.Response(200, json={"location": {"lat": 37.42, "lng": -122.08}, "accuracy": 1500.0})
        return httpx.Response(200, json=GEOCODE_PAYLOAD)

    record = _lookup(GoogleMapsProvider(mock_client(handler), api_key="secret"))

    geolocate, geocode = requests
    assert geolocate.method == "POST"
    assert geolocate.url.params["key"] == "secret"
    body = json.loads(geolocate.content)
    assert body["considerIp"] is True
    assert body["wifiAccessPoints"]
    assert geocode.method == "GET"
    assert geocode.url.params["latlng"] == "37.42,-122.08"

    assert record.provider is Provider.GOOGLE
    assert record.city == "Mountain View"
    assert record.region == "California"
    assert record.country == "United States"
    assert record.country_code == "US"
    assert record.timezone is None
    assert record.accuracy == 1500.0


def test_google_zero_results():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "www.googleapis.com":
            return httpx.Response(200, json={"location": {"lat": 1.0, "lng": 2.0}, "accuracy": 10.0})
        return httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []})

    with pytest.raises(ProviderError, match="ZERO_RESULTS"):
        _lookup(GoogleMapsProvider(mock_client(handler), api_key="secret"))


def test_google_geolocation_error_status():
    client = mock_client(
        lambda request: httpx.Response(403, json={"error": {"code": 403, "message": "API key invalid"}})
    )
    with pytest.raises(ProviderError) as excinfo:
        _lookup(GoogleMapsProvider(client, api_key="secret"))
    assert excinfo.value.status_code == 403


def test_default_chain_order():
    client = mock_client(lambda request: httpx.Response(200, json={}))
    chain = default_providers(client, google_api_key=None)
    assert [p.provider for p in chain] == [Provider.IPAPI_CO, Provider.IP_API_COM, Provider.GOOGLE]


@pytest.mark.parametrize("ip", ["1.2.3.4\x01", "1." + "9" * 70000], ids=["control-char", "oversized"])
def test_unrequestable_address_becomes_provider_error(ip):
    calls = []
    client = mock_client(lambda request: calls.append(request) or httpx.Response(200, json=IPAPI_CO_PAYLOAD))
    with pytest.raises(ProviderError, match="request failed"):
        _lookup(IpapiCoProvider(client), ip=ip)
    assert calls == []


def _google_with_geocode(body):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "www.googleapis.com":
            return httpx.Response(200, json={"location": {"lat": 1.0, "lng": 2.0}, "accuracy": 10.0})
        return httpx.Response(200, json=body)

    return GoogleMapsProvider(mock_client(handler), api_key="secret")


def test_google_skips_malformed_address_components():
    body = {"status": "OK", "results": [{"address_components": ["bogus", {"types": "locality"}, None]}]}
    record = _lookup(_google_with_geocode(body))
    assert record.provider is Provider.GOOGLE
    assert (record.city, record.region, record.country, record.country_code) == ("", "", "", "")


@pytest.mark.parametrize("results", [{"x": 1}, ["bogus"], "nope"])
def test_google_malformed_results_become_provider_error(results):
    with pytest.raises(ProviderError):
        _lookup(_google_with_geocode({"status": "OK", "results": results}))
