"""HTTP client used by the client shell to reach the portal endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import httpx


class PortalAPIError(Exception):
    """Raised when a portal endpoint cannot be reached or answers with an error."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class DirectoryEntry:
    id: str
    email: str
    role: Optional[str]


@dataclass(frozen=True)
class PasswordLogin:
    token: str
    user: DirectoryEntry


@dataclass(frozen=True)
class RemoteDisclaimerStatus:
    needs_disclaimer: bool
    last_accepted_at: Optional[datetime]


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("API base URL must not be empty")
    return cleaned.rstrip("/")


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class PortalClient:
    """Thin async wrapper around the portal JSON endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=_normalize_base_url(base_url),
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "PortalClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            raise PortalAPIError(f"Failed to contact portal API: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            default = f"Portal API request failed with status {response.status_code}"
            raise PortalAPIError(_extract_error_message(data, default), status_code=response.status_code)

        if not isinstance(data, dict):
            raise PortalAPIError("Portal API returned an unexpected response payload")
        return data

    async def check_user(self, email: str) -> Optional[DirectoryEntry]:
        data = await self._request("POST", "/checkUser", json={"email": email})
        user = data.get("user")
        if not isinstance(user, dict):
            return None
        try:
            return DirectoryEntry(id=str(user["id"]), email=str(user["email"]), role=user.get("role"))
        except KeyError as exc:
            raise PortalAPIError("Portal API response was missing required fields") from exc

    async def password_login(self, email: str, password: str) -> PasswordLogin:
        data = await self._request("POST", "/passwordLogin", json={"email": email, "password": password})
        token = data.get("token")
        user = data.get("user")
        if not token or not isinstance(user, dict):
            raise PortalAPIError("Portal API response was missing required fields")
        try:
            entry = DirectoryEntry(id=str(user["id"]), email=str(user["email"]), role=user.get("role"))
        except KeyError as exc:
            raise PortalAPIError("Portal API response was missing required fields") from exc
        return PasswordLogin(token=str(token), user=entry)

    async def track_login(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/trackLogin", json=payload)

    async def track_activity(self, user_id: str, email: str, activity_time: Optional[datetime] = None) -> None:
        body: Dict[str, Any] = {"user_id": user_id, "email": email}
        if activity_time is not None:
            body["activity_time"] = activity_time.isoformat()
        await self._request("POST", "/trackActivity", json=body)

    async def disclaimer_status(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> RemoteDisclaimerStatus:
        params = {key: value for key, value in (("userId", user_id), ("email", email)) if value}
        data = await self._request("GET", "/disclaimerAcceptance", params=params)
        return RemoteDisclaimerStatus(
            needs_disclaimer=bool(data.get("needsDisclaimer", True)),
            last_accepted_at=_parse_datetime(data.get("lastAcceptedAt")),
        )

    async def accept_disclaimer(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[datetime]:
        body = {key: value for key, value in (("userId", user_id), ("email", email)) if value}
        data = await self._request("POST", "/disclaimerAcceptance", json=body)
        return _parse_datetime(data.get("acceptedAt"))


__all__ = ["DirectoryEntry", "PasswordLogin", "PortalAPIError", "PortalClient", "RemoteDisclaimerStatus"]
