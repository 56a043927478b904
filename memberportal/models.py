"""Domain models shared by the portal endpoints and the client shell."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

UNKNOWN = "Unknown"
# Largest value an SQLite INTEGER column accepts.
_MAX_DEVICE_INT = 2**63 - 1


class Role(str, Enum):
    """Membership roles stored on the ``users`` table."""

    GUEST = "guest"
    MEMBER = "member"
    ADMIN = "admin"
    MODERATOR = "moderator"
    NEW = "new"
    DECLINED = "declined"


BLOCKED_ROLES = frozenset({Role.NEW.value, Role.DECLINED.value})
PASSWORD_ROLES = frozenset({Role.ADMIN.value, Role.MODERATOR.value})


def is_blocked_role(role: Optional[str]) -> bool:
    """Return ``True`` when ``role`` must never be admitted to the portal."""

    if not role:
        return False
    return role.strip().lower() in BLOCKED_ROLES


class LoginMethod(str, Enum):
    PASSWORD = "password"
    OTP = "otp"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class User:
    """Represents a member account stored in the portal database."""

    id: str
    email: str
    role: str
    created_at: datetime
    name: Optional[str] = None
    last_login: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    disclaimer_accepted_at: Optional[datetime] = None


def _text(value: Any) -> str:
    if value is None:
        return UNKNOWN
    text = str(value).strip()
    return text or UNKNOWN


def _number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass(frozen=True)
class GeoSnapshot:
    """Normalised geolocation result; unresolved fields read ``"Unknown"``."""

    country: str = UNKNOWN
    countryCode: str = UNKNOWN
    city: str = UNKNOWN
    region: str = UNKNOWN
    regionCode: str = UNKNOWN
    timezone: str = UNKNOWN
    isp: str = UNKNOWN
    org: str = UNKNOWN
    asn: str = UNKNOWN
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    postalCode: str = UNKNOWN

    @classmethod
    def unknown(cls) -> "GeoSnapshot":
        return cls()

    @classmethod
    def build(cls, **values: Any) -> "GeoSnapshot":
        """Create a snapshot, coercing missing or empty values to the defaults."""

        cleaned: Dict[str, Any] = {}
        for item in fields(cls):
            raw = values.get(item.name)
            if item.name in {"latitude", "longitude"}:
                cleaned[item.name] = _number(raw)
            else:
                cleaned[item.name] = _text(raw)
        return cls(**cleaned)

    @property
    def is_unknown(self) -> bool:
        return self.country == UNKNOWN and self.city == UNKNOWN

    def to_record(self) -> Dict[str, Any]:
        """Column layout used by the ``user_logins`` table and tracking payloads."""

        return {
            "country": self.country,
            "country_code": self.countryCode,
            "city": self.city,
            "region": self.region,
            "region_code": self.regionCode,
            "timezone": self.timezone,
            "isp": self.isp,
            "organization": self.org,
            "asn": self.asn,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "postal_code": self.postalCode,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "GeoSnapshot":
        return cls.build(
            country=record.get("country"),
            countryCode=record.get("country_code"),
            city=record.get("city"),
            region=record.get("region"),
            regionCode=record.get("region_code"),
            timezone=record.get("timezone"),
            isp=record.get("isp"),
            org=record.get("organization"),
            asn=record.get("asn"),
            latitude=record.get("latitude"),
            longitude=record.get("longitude"),
            postalCode=record.get("postal_code"),
        )


@dataclass(frozen=True)
class DeviceSnapshot:
    """Browser and runtime metadata captured when a member signs in."""

    device: str = UNKNOWN
    browser: str = UNKNOWN
    browser_version: str = UNKNOWN
    os: str = UNKNOWN
    user_agent: str = UNKNOWN
    language: str = UNKNOWN
    languages: str = UNKNOWN
    platform: str = UNKNOWN
    cookie_enabled: str = UNKNOWN
    do_not_track: str = UNKNOWN
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    screen_color_depth: Optional[int] = None
    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None
    device_timezone: str = UNKNOWN
    timezone_offset: Optional[int] = None
    online_status: str = UNKNOWN
    hardware_concurrency: Optional[int] = None
    device_memory: Optional[float] = None

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "DeviceSnapshot":
        cleaned: Dict[str, Any] = {}
        for item in fields(cls):
            raw = record.get(item.name)
            if item.default is None:
                number = _number(raw)
                if number is not None and item.name != "device_memory":
                    number = int(number) if abs(number) <= _MAX_DEVICE_INT else None
                cleaned[item.name] = number
            else:
                cleaned[item.name] = _text(raw)
        return cls(**cleaned)


@dataclass(frozen=True)
class LoginEvent:
    """Append-only record of a successful admission."""

    user_id: str
    email: str
    ip_address: str
    login_method: str
    login_time: datetime
    geo: GeoSnapshot = field(default_factory=GeoSnapshot)
    device: DeviceSnapshot = field(default_factory=DeviceSnapshot)
    id: Optional[int] = None

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "id": self.id,
            "user_id": self.user_id,
            "email": self.email,
            "ip_address": self.ip_address,
            "login_method": self.login_method,
            "login_time": self.login_time.isoformat(),
        }
        record.update(self.geo.to_record())
        record.update(self.device.to_record())
        return record


__all__ = [
    "BLOCKED_ROLES",
    "DeviceSnapshot",
    "GeoSnapshot",
    "LoginEvent",
    "LoginMethod",
    "PASSWORD_ROLES",
    "Role",
    "UNKNOWN",
    "User",
    "is_blocked_role",
]
