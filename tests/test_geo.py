from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import httpx

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from memberportal.geo import (
    IPAPI_CO,
    GeoResolver,
    Provider,
    parse_ip_api_com,
    parse_ipapi_co,
    parse_ipwho_is,
    public_ip_discovery,
    server_geo_resolver,
)
from memberportal.models import UNKNOWN

IPWHO_PAYLOAD = {
    "success": True,
    "country": "Canada",
    "country_code": "CA",
    "city": "Toronto",
    "region": "Ontario",
    "region_code": "ON",
    "latitude": 43.65,
    "longitude": -79.38,
    "postal": "M5H",
    "timezone": {"id": "America/Toronto"},
    "connection": {"asn": 577, "isp": "Bell Canada", "org": "Bell"},
}


def _provider_key(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}"


def test_server_chain_skips_slow_providers_and_stops_at_first_answer() -> None:
    calls: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        key = _provider_key(request)
        calls.append(key)
        if key in {"https://ipapi.co", "http://ip-api.com"}:
            await asyncio.sleep(1)
        if key == "https://ipwho.is":
            return httpx.Response(200, json=IPWHO_PAYLOAD)
        return httpx.Response(200, json={"status": "success", "country": "Elsewhere", "city": "Nowhere"})

    resolver = server_geo_resolver(timeout=0.05, transport=httpx.MockTransport(handler))
    snapshot = asyncio.run(resolver.resolve("203.0.113.7"))

    assert snapshot is not None
    assert snapshot.country == "Canada"
    assert snapshot.city == "Toronto"
    assert snapshot.timezone == "America/Toronto"
    assert calls == ["https://ipapi.co", "http://ip-api.com", "https://ipwho.is"]


def test_server_chain_returns_none_when_every_provider_fails() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(_provider_key(request))
        if request.url.host == "ipwho.is":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(503, text="unavailable")

    resolver = server_geo_resolver(timeout=1.0, transport=httpx.MockTransport(handler))

    assert asyncio.run(resolver.resolve("203.0.113.7")) is None
    assert asyncio.run(resolver.resolve_or_unknown("203.0.113.7")).is_unknown
    assert calls[:4] == [
        "https://ipapi.co",
        "http://ip-api.com",
        "https://ipwho.is",
        "https://ip-api.com",
    ]


def test_provider_error_payload_moves_to_next_provider() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "ipapi.co":
            return httpx.Response(200, json={"error": True, "reason": "RateLimited"})
        return httpx.Response(
            200,
            json={
                "status": "success",
                "country": "Germany",
                "countryCode": "DE",
                "city": "Berlin",
                "as": "AS3320 Deutsche Telekom AG",
            },
        )

    resolver = server_geo_resolver(timeout=1.0, transport=httpx.MockTransport(handler))
    snapshot = asyncio.run(resolver.resolve("198.51.100.20"))

    assert snapshot is not None
    assert snapshot.country == "Germany"
    assert snapshot.asn == "AS3320"


def test_unknown_ip_is_not_looked_up() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json={})

    resolver = server_geo_resolver(transport=httpx.MockTransport(handler))

    assert asyncio.run(resolver.resolve(UNKNOWN)) is None
    assert asyncio.run(resolver.resolve("")) is None
    assert calls == []


def test_parsers_normalise_provider_payloads() -> None:
    ipapi = parse_ipapi_co(
        {
            "country_name": "Japan",
            "country_code": "JP",
            "city": "Tokyo",
            "region": "Tokyo",
            "org": "NTT",
            "latitude": "35.69",
            "longitude": 139.69,
            "postal": "",
        }
    )
    assert ipapi is not None
    assert ipapi.country == "Japan"
    assert ipapi.isp == "NTT"
    assert ipapi.latitude == 35.69
    assert ipapi.postalCode == UNKNOWN

    assert parse_ip_api_com({"status": "fail", "message": "private range"}) is None

    ipwho = parse_ipwho_is(IPWHO_PAYLOAD)
    assert ipwho is not None
    assert ipwho.asn == "577"
    assert ipwho.isp == "Bell Canada"
    assert parse_ipwho_is({"success": False}) is None


def test_ip_discovery_skips_invalid_and_failing_services() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        if request.url.host == "api.ipify.org":
            return httpx.Response(200, json={"ip": "not-an-ip"})
        if request.url.host == "api64.ipify.org":
            raise httpx.ConnectError("unreachable", request=request)
        return httpx.Response(200, text="198.51.100.4\n")

    discovery = public_ip_discovery(transport=httpx.MockTransport(handler))

    assert asyncio.run(discovery.discover()) == "198.51.100.4"
    assert calls == ["api.ipify.org", "api64.ipify.org", "icanhazip.com"]


def test_ip_discovery_reports_unknown_when_exhausted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    discovery = public_ip_discovery(transport=httpx.MockTransport(handler))

    assert asyncio.run(discovery.discover()) == UNKNOWN


def test_nested_payload_of_the_wrong_type_does_not_break_the_chain() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        key = _provider_key(request)
        calls.append(key)
        if key == "https://ipwho.is":
            return httpx.Response(200, json={**IPWHO_PAYLOAD, "timezone": "Europe/Paris", "connection": [577]})
        return httpx.Response(503)

    resolver = server_geo_resolver(timeout=1.0, transport=httpx.MockTransport(handler))
    snapshot = asyncio.run(resolver.resolve("203.0.113.7"))

    assert snapshot is not None
    assert snapshot.city == "Toronto"
    assert snapshot.timezone == UNKNOWN
    assert calls == ["https://ipapi.co", "http://ip-api.com", "https://ipwho.is"]


def test_broken_parser_falls_through_to_next_provider() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "ipapi.co":
            return httpx.Response(200, json={"country_name": "Japan", "city": "Tokyo"})
        return httpx.Response(200, json={})

    def explode(response: httpx.Response) -> None:
        raise AttributeError("unexpected payload shape")

    broken = Provider(name="broken", build_url=lambda ip: f"https://broken.example/{ip}", parse=explode)
    resolver = GeoResolver([broken, IPAPI_CO], timeout=1.0, transport=httpx.MockTransport(handler))
    snapshot = asyncio.run(resolver.resolve("203.0.113.7"))

    assert snapshot is not None
    assert snapshot.city == "Tokyo"


def test_parser_ignores_non_object_nested_fields() -> None:
    snapshot = parse_ipwho_is({**IPWHO_PAYLOAD, "timezone": "Europe/Paris", "connection": None})

    assert snapshot is not None
    assert snapshot.timezone == UNKNOWN
    assert snapshot.isp == UNKNOWN
    assert snapshot.city == "Toronto"


def test_unusable_ip_resolves_to_none_without_raising() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"country_name": "Nowhere"})

    resolver = server_geo_resolver(timeout=1.0, transport=httpx.MockTransport(handler))

    assert asyncio.run(resolver.resolve("1.2.3.4\x7f")) is None
    assert asyncio.run(resolver.resolve_or_unknown("1.2.3.4\x7f")).is_unknown
