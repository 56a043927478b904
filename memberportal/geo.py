"""Best-effort geolocation and public IP discovery over ordered provider chains."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Mapping, Optional, Sequence, TypeVar

import httpx

from .models import UNKNOWN, GeoSnapshot

logger = logging.getLogger("memberportal.geo")

T = TypeVar("T")

SERVER_GEO_TIMEOUT = 5.0
CLIENT_GEO_TIMEOUT = 4.0
IP_LOOKUP_TIMEOUT = 3.0

_IPV4_PATTERN = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")
_IP_API_FIELDS = "status,message,country,countryCode,region,regionName,city,lat,lon,timezone,isp,org,as,zip"


class ProviderMiss(Exception):
    """Raised by a parser when a provider answered without usable data."""


@dataclass(frozen=True)
class Provider(Generic[T]):
    """A single lookup service: how to reach it and how to read its answer."""

    name: str
    build_url: Callable[[str], str]
    parse: Callable[[httpx.Response], Optional[T]]
    headers: Mapping[str, str] = field(default_factory=dict)


class ProviderChain(Generic[T]):
    """Try providers strictly in order and return the first parsed result.

    Every attempt is individually time-boxed. Timeouts, transport errors,
    non-2xx answers and payloads the parser rejects all count as misses and
    move on to the next provider. ``lookup`` never raises for provider
    failures; it returns ``None`` once the chain is exhausted.
    """

    def __init__(
        self,
        providers: Sequence[Provider[T]],
        *,
        timeout: float,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not providers:
            raise ValueError("At least one provider is required")
        if timeout <= 0:
            raise ValueError("Provider timeout must be positive")
        self._providers = tuple(providers)
        self._timeout = timeout
        self._client = client
        self._transport = transport

    @property
    def providers(self) -> tuple[Provider[T], ...]:
        return self._providers

    @property
    def timeout(self) -> float:
        return self._timeout

    async def lookup(self, key: str = "") -> Optional[T]:
        if self._client is not None:
            return await self._walk(self._client, key)
        async with httpx.AsyncClient(transport=self._transport) as client:
            return await self._walk(client, key)

    async def _walk(self, client: httpx.AsyncClient, key: str) -> Optional[T]:
        for provider in self._providers:
            try:
                result = await asyncio.wait_for(self._attempt(client, provider, key), self._timeout)
            except asyncio.TimeoutError:
                logger.warning("%s timed out after %.1fs", provider.name, self._timeout)
                continue
            except httpx.HTTPError as exc:
                logger.warning("Failed to fetch from %s: %s", provider.name, exc)
                continue
            except ProviderMiss as exc:
                logger.warning("%s returned invalid data: %s", provider.name, exc)
                continue
            except Exception as exc:  # noqa: BLE001 - a broken provider is just a miss
                logger.warning("%s lookup failed: %s", provider.name, exc)
                continue

            if result is None:
                logger.warning("%s returned invalid data", provider.name)
                continue

            logger.debug("Lookup resolved by %s", provider.name)
            return result
        return None

    async def _attempt(self, client: httpx.AsyncClient, provider: Provider[T], key: str) -> Optional[T]:
        response = await client.get(provider.build_url(key), headers=dict(provider.headers))
        if response.status_code >= 400:
            raise ProviderMiss(f"HTTP {response.status_code}")
        return provider.parse(response)


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _json_payload(response: httpx.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderMiss("response was not JSON") from exc
    if not isinstance(payload, dict):
        raise ProviderMiss("response was not a JSON object")
    return payload


# ----------------------------------------------------------------------
# Geolocation providers
# ----------------------------------------------------------------------
def parse_ipapi_co(payload: Mapping[str, Any]) -> Optional[GeoSnapshot]:
    if payload.get("error"):
        return None
    return GeoSnapshot.build(
        country=payload.get("country_name") or payload.get("country"),
        countryCode=payload.get("country_code"),
        city=payload.get("city"),
        region=payload.get("region"),
        regionCode=payload.get("region_code"),
        timezone=payload.get("timezone"),
        isp=payload.get("org") or payload.get("isp"),
        org=payload.get("org"),
        asn=payload.get("asn"),
        latitude=payload.get("latitude"),
        longitude=payload.get("longitude"),
        postalCode=payload.get("postal"),
    )


def parse_ip_api_com(payload: Mapping[str, Any]) -> Optional[GeoSnapshot]:
    if payload.get("status") != "success":
        return None
    autonomous_system = payload.get("as")
    return GeoSnapshot.build(
        country=payload.get("country"),
        countryCode=payload.get("countryCode"),
        city=payload.get("city"),
        region=payload.get("regionName") or payload.get("region"),
        regionCode=payload.get("region"),
        timezone=payload.get("timezone"),
        isp=payload.get("isp"),
        org=payload.get("org"),
        asn=str(autonomous_system).split(" ")[0] if autonomous_system else None,
        latitude=payload.get("lat"),
        longitude=payload.get("lon"),
        postalCode=payload.get("zip"),
    )


def parse_ipwho_is(payload: Mapping[str, Any]) -> Optional[GeoSnapshot]:
    if not payload.get("success"):
        return None
    timezone = _mapping(payload.get("timezone"))
    connection = _mapping(payload.get("connection"))
    asn = connection.get("asn")
    return GeoSnapshot.build(
        country=payload.get("country"),
        countryCode=payload.get("country_code"),
        city=payload.get("city"),
        region=payload.get("region"),
        regionCode=payload.get("region_code"),
        timezone=timezone.get("name") or timezone.get("id"),
        isp=connection.get("isp"),
        org=connection.get("org"),
        asn=str(asn) if asn else None,
        latitude=payload.get("latitude"),
        longitude=payload.get("longitude"),
        postalCode=payload.get("postal"),
    )


def _geo_provider(
    name: str,
    build_url: Callable[[str], str],
    parser: Callable[[Mapping[str, Any]], Optional[GeoSnapshot]],
) -> Provider[GeoSnapshot]:
    return Provider(name=name, build_url=build_url, parse=lambda response: parser(_json_payload(response)))


IPAPI_CO = _geo_provider("ipapi.co", lambda ip: f"https://ipapi.co/{ip}/json/", parse_ipapi_co)
IP_API_HTTP = _geo_provider(
    "ip-api.com (HTTP)",
    lambda ip: f"http://ip-api.com/json/{ip}?fields={_IP_API_FIELDS}",
    parse_ip_api_com,
)
IPWHO_IS = _geo_provider("ipwho.is", lambda ip: f"https://ipwho.is/{ip}", parse_ipwho_is)
IP_API_HTTPS = _geo_provider(
    "ip-api.com (HTTPS)",
    lambda ip: f"https://ip-api.com/json/{ip}?fields={_IP_API_FIELDS}",
    parse_ip_api_com,
)

SERVER_GEO_PROVIDERS: tuple[Provider[GeoSnapshot], ...] = (IPAPI_CO, IP_API_HTTP, IPWHO_IS, IP_API_HTTPS)
CLIENT_GEO_PROVIDERS: tuple[Provider[GeoSnapshot], ...] = (IPAPI_CO,)


class GeoResolver(ProviderChain[GeoSnapshot]):
    """Resolve an IP address to a :class:`GeoSnapshot` using a provider chain."""

    async def resolve(self, ip: Optional[str]) -> Optional[GeoSnapshot]:
        if not ip or ip == UNKNOWN:
            return None
        candidate = ip.strip()
        try:
            ipaddress.ip_address(candidate)
        except ValueError:
            logger.warning("Skipping geolocation for malformed IP %r", candidate)
            return None
        snapshot = await self.lookup(candidate)
        if snapshot is None:
            logger.warning("All geolocation providers failed for %s", ip)
        return snapshot

    async def resolve_or_unknown(self, ip: Optional[str]) -> GeoSnapshot:
        return await self.resolve(ip) or GeoSnapshot.unknown()


def server_geo_resolver(
    *,
    timeout: float = SERVER_GEO_TIMEOUT,
    client: httpx.AsyncClient | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GeoResolver:
    return GeoResolver(SERVER_GEO_PROVIDERS, timeout=timeout, client=client, transport=transport)


def client_geo_resolver(
    *,
    timeout: float = CLIENT_GEO_TIMEOUT,
    client: httpx.AsyncClient | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GeoResolver:
    return GeoResolver(CLIENT_GEO_PROVIDERS, timeout=timeout, client=client, transport=transport)


# ----------------------------------------------------------------------
# Public IP discovery
# ----------------------------------------------------------------------
def _validated_ip(candidate: Any) -> str:
    text = str(candidate or "").strip()
    if not _IPV4_PATTERN.match(text):
        raise ProviderMiss(f"invalid IP format {text!r}")
    return text


def _parse_json_ip(response: httpx.Response) -> Optional[str]:
    return _validated_ip(_json_payload(response).get("ip"))


def _parse_text_ip(response: httpx.Response) -> Optional[str]:
    return _validated_ip(response.text)


_JSON_ACCEPT = {"Accept": "application/json"}

IP_DISCOVERY_PROVIDERS: tuple[Provider[str], ...] = (
    Provider("api.ipify.org", lambda _: "https://api.ipify.org?format=json", _parse_json_ip, _JSON_ACCEPT),
    Provider("api64.ipify.org", lambda _: "https://api64.ipify.org?format=json", _parse_json_ip, _JSON_ACCEPT),
    Provider("icanhazip.com", lambda _: "https://icanhazip.com", _parse_text_ip),
    Provider("ifconfig.me", lambda _: "https://ifconfig.me/ip", _parse_text_ip),
)


class PublicIPDiscovery(ProviderChain[str]):
    """Find the caller's public IPv4 address, or ``"Unknown"``."""

    async def discover(self) -> str:
        ip = await self.lookup()
        if ip is None:
            logger.warning(
                "All IP discovery services failed; the server will derive the IP from request headers"
            )
            return UNKNOWN
        return ip


def public_ip_discovery(
    *,
    timeout: float = IP_LOOKUP_TIMEOUT,
    client: httpx.AsyncClient | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PublicIPDiscovery:
    return PublicIPDiscovery(IP_DISCOVERY_PROVIDERS, timeout=timeout, client=client, transport=transport)


__all__ = [
    "CLIENT_GEO_PROVIDERS",
    "GeoResolver",
    "IP_DISCOVERY_PROVIDERS",
    "Provider",
    "ProviderChain",
    "ProviderMiss",
    "PublicIPDiscovery",
    "SERVER_GEO_PROVIDERS",
    "client_geo_resolver",
    "parse_ip_api_com",
    "parse_ipapi_co",
    "parse_ipwho_is",
    "public_ip_discovery",
    "server_geo_resolver",
]
