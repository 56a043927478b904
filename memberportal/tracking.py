"""Server-side login event recording and activity tracking."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from .database import DataStoreError, Database
from .geo import GeoResolver
from .models import UNKNOWN, DeviceSnapshot, GeoSnapshot, LoginEvent, LoginMethod

logger = logging.getLogger("memberportal.tracking")

# Preference order for deriving the caller's address from proxy headers.
FORWARDED_IP_HEADERS = (
    "x-nf-client-connection-ip",
    "x-forwarded-for",
    "x-real-ip",
    "client-ip",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case sensitive; starlette's Headers are not.
        for key, candidate in headers.items():
            if key.lower() == name:
                value = candidate
                break
    return value


def resolve_client_ip(supplied: Optional[str], headers: Mapping[str, str]) -> str:
    """Pick the caller-supplied IP when usable, otherwise the first proxy header."""

    if supplied and supplied.strip() and supplied.strip() != UNKNOWN:
        return supplied.strip()

    for name in FORWARDED_IP_HEADERS:
        value = _header(headers, name)
        if not value:
            continue
        if name == "x-forwarded-for":
            value = value.split(",")[0]
        value = value.strip()
        if value:
            return value
    return UNKNOWN


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if value:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp: {value!r}") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return _utcnow()


def _login_method(value: Any) -> str:
    try:
        return LoginMethod(str(value).strip().lower()).value
    except ValueError:
        return LoginMethod.UNKNOWN.value


class LoginRecorder:
    """Persist one :class:`LoginEvent` per call and stamp the user's markers."""

    def __init__(
        self,
        database: Database,
        geo_resolver: Optional[GeoResolver] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._database = database
        self._geo_resolver = geo_resolver
        self._clock = clock

    async def record(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> LoginEvent:
        user_id = str(payload.get("user_id") or "").strip()
        email = str(payload.get("email") or "").strip()
        if not user_id or not email:
            raise ValueError("user_id and email are required")

        ip_address = resolve_client_ip(payload.get("ip_address"), headers)
        geo = await self._resolve_geo(GeoSnapshot.from_record(payload), ip_address)
        login_time = _parse_timestamp(payload.get("login_time")) if payload.get("login_time") else self._clock()

        event = LoginEvent(
            user_id=user_id,
            email=email,
            ip_address=ip_address,
            login_method=_login_method(payload.get("login_method")),
            login_time=login_time,
            geo=geo,
            device=DeviceSnapshot.from_record(payload),
        )

        stored = self._database.insert_login(event)
        logger.info("Login tracked for user %s (method=%s, ip=%s)", user_id, stored.login_method, ip_address)

        try:
            if not self._database.touch_login(user_id, login_time):
                logger.warning("No user row matched %s when updating last_login", user_id)
        except DataStoreError as exc:
            logger.warning("Failed to update last_login for %s: %s", user_id, exc.message)

        return stored

    async def _resolve_geo(self, supplied: GeoSnapshot, ip_address: str) -> GeoSnapshot:
        if not supplied.is_unknown:
            return supplied
        if self._geo_resolver is None or ip_address == UNKNOWN:
            return supplied
        resolved = await self._geo_resolver.resolve(ip_address)
        if resolved is None:
            return GeoSnapshot.unknown()
        logger.info("Server-side geolocation resolved %s", ip_address)
        return resolved


@dataclass(frozen=True)
class ActivityResult:
    tracked: bool
    activity_time: datetime

    @property
    def message(self) -> str:
        if self.tracked:
            return "Activity tracked successfully"
        return "User not found, activity not tracked"


class ActivityRecorder:
    """Update ``users.last_activity`` for heartbeat pings."""

    def __init__(self, database: Database, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._database = database
        self._clock = clock

    def record(self, user_id: Optional[str], email: Optional[str], activity_time: Any = None) -> ActivityResult:
        if not user_id or not email:
            raise ValueError("user_id and email are required")

        when = _parse_timestamp(activity_time) if activity_time else self._clock()

        if self._database.get_user(str(user_id)) is None:
            # Accounts that are still being provisioned ping before their row exists.
            logger.warning("Activity ping for unknown user %s", user_id)
            return ActivityResult(tracked=False, activity_time=when)

        self._database.touch_activity(str(user_id), when)
        logger.debug("Updated last_activity for user %s", user_id)
        return ActivityResult(tracked=True, activity_time=when)


__all__ = [
    "ActivityRecorder",
    "ActivityResult",
    "FORWARDED_IP_HEADERS",
    "LoginRecorder",
    "resolve_client_ip",
]
