"""Client-side device fingerprinting and login telemetry assembly."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from .geo import GeoResolver, PublicIPDiscovery
from .models import UNKNOWN, DeviceSnapshot, GeoSnapshot, LoginMethod

logger = logging.getLogger("memberportal.fingerprint")

_CHROME_FAMILY = re.compile(r"chrome|crios|crmo", re.IGNORECASE)
_BROWSER_VERSION = re.compile(r"(?:Chrome|Firefox|Safari|Edge|Opera)/(\d+)", re.IGNORECASE)
_MOBILE = re.compile(r"Mobi|Android", re.IGNORECASE)


@dataclass(frozen=True)
class ClientEnvironment:
    """What the browser runtime exposes at the call site.

    ``ua_brands``/``ua_platform`` mirror the structured user-agent client
    hints; they are ``None`` on browsers that do not implement them.
    """

    user_agent: str = ""
    ua_brands: Optional[Sequence[str]] = None
    ua_platform: Optional[str] = None
    language: Optional[str] = None
    languages: Optional[Sequence[str]] = None
    platform: Optional[str] = None
    cookie_enabled: bool = False
    do_not_track: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    screen_color_depth: Optional[int] = None
    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None
    timezone: Optional[str] = None
    timezone_offset: Optional[int] = None
    online: bool = True
    hardware_concurrency: Optional[int] = None
    device_memory: Optional[float] = None


def detect_browser(env: ClientEnvironment) -> str:
    if env.ua_brands:
        brands = list(env.ua_brands)
        if "Google Chrome" in brands:
            return "Chrome"
        if "Microsoft Edge" in brands:
            return "Edge"
        if "Chromium" in brands:
            return "Chromium"
        return brands[0] or UNKNOWN

    ua = env.user_agent
    if _CHROME_FAMILY.search(ua):
        return "Chrome"
    if re.search(r"firefox|fxios", ua, re.IGNORECASE):
        return "Firefox"
    if re.search(r"safari", ua, re.IGNORECASE) and not _CHROME_FAMILY.search(ua):
        return "Safari"
    if re.search(r"edg", ua, re.IGNORECASE):
        return "Edge"
    if re.search(r"opr/", ua, re.IGNORECASE):
        return "Opera"
    return UNKNOWN


def detect_browser_version(env: ClientEnvironment) -> str:
    match = _BROWSER_VERSION.search(env.user_agent)
    return match.group(1) if match else UNKNOWN


def detect_os(env: ClientEnvironment) -> str:
    if env.ua_platform:
        return env.ua_platform
    ua = env.user_agent
    if re.search(r"windows", ua, re.IGNORECASE):
        return "Windows"
    if re.search(r"macintosh|mac os x", ua, re.IGNORECASE):
        return "Mac"
    if re.search(r"linux", ua, re.IGNORECASE):
        return "Linux"
    if re.search(r"android", ua, re.IGNORECASE):
        return "Android"
    if re.search(r"iphone|ipad|ipod", ua, re.IGNORECASE):
        return "iOS"
    return UNKNOWN


def collect_device_metadata(env: ClientEnvironment) -> DeviceSnapshot:
    """Flatten ``env`` into a :class:`DeviceSnapshot` with every key present."""

    return DeviceSnapshot(
        device="Mobile" if _MOBILE.search(env.user_agent) else "Desktop",
        browser=detect_browser(env),
        browser_version=detect_browser_version(env),
        os=detect_os(env),
        user_agent=env.user_agent or UNKNOWN,
        language=env.language or UNKNOWN,
        languages=",".join(env.languages) if env.languages else UNKNOWN,
        platform=env.platform or UNKNOWN,
        cookie_enabled="Yes" if env.cookie_enabled else "No",
        do_not_track=env.do_not_track or UNKNOWN,
        screen_width=env.screen_width,
        screen_height=env.screen_height,
        screen_color_depth=env.screen_color_depth,
        viewport_width=env.viewport_width or None,
        viewport_height=env.viewport_height or None,
        device_timezone=env.timezone or UNKNOWN,
        timezone_offset=env.timezone_offset,
        online_status="Online" if env.online else "Offline",
        hardware_concurrency=env.hardware_concurrency or None,
        device_memory=env.device_memory or None,
    )


@dataclass
class ClientTelemetry:
    """Gathers the IP, geolocation and device data attached to a login event.

    Both lookups are optional; without them the payload carries ``"Unknown"``
    values and the server backfills what it can from request headers.
    """

    environment: ClientEnvironment = field(default_factory=ClientEnvironment)
    ip_discovery: Optional[PublicIPDiscovery] = None
    geo_resolver: Optional[GeoResolver] = None

    async def locate(self) -> tuple[str, GeoSnapshot]:
        ip = UNKNOWN
        if self.ip_discovery is not None:
            ip = await self.ip_discovery.discover()

        geo = GeoSnapshot.unknown()
        if self.geo_resolver is not None and ip != UNKNOWN:
            geo = await self.geo_resolver.resolve_or_unknown(ip)
            if geo.is_unknown:
                logger.warning("Client-side geolocation failed; the server will attempt the lookup")
        return ip, geo

    async def login_payload(
        self,
        *,
        user_id: str,
        email: str,
        login_method: LoginMethod,
        login_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        ip, geo = await self.locate()
        payload: Dict[str, Any] = {
            "user_id": user_id,
            "email": email,
            "ip_address": ip,
            "login_method": login_method.value,
            "login_time": (login_time or datetime.now(timezone.utc)).isoformat(),
        }
        payload.update(geo.to_record())
        payload.update(collect_device_metadata(self.environment).to_record())
        return payload


__all__ = [
    "ClientEnvironment",
    "ClientTelemetry",
    "collect_device_metadata",
    "detect_browser",
    "detect_browser_version",
    "detect_os",
]
