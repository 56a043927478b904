from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from memberportal.api_client import PortalAPIError, PortalClient


def _client(handler) -> PortalClient:
    return PortalClient("https://portal.example.org/api/", transport=httpx.MockTransport(handler))


def test_check_user_returns_directory_entry() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append({"path": request.url.path, "body": json.loads(request.content)})
        return httpx.Response(200, json={"user": {"id": "u-1", "email": "a@example.org", "role": "admin"}})

    async def scenario():
        async with _client(handler) as client:
            return await client.check_user("a@example.org")

    entry = asyncio.run(scenario())

    assert entry is not None
    assert entry.role == "admin"
    assert seen == [{"path": "/api/checkUser", "body": {"email": "a@example.org"}}]


def test_check_user_without_match_returns_none() -> None:
    async def scenario():
        async with _client(lambda request: httpx.Response(200, json={"user": None})) as client:
            return await client.check_user("ghost@example.org")

    assert asyncio.run(scenario()) is None


def test_errors_carry_server_message_and_status() -> None:
    async def scenario():
        async with _client(lambda request: httpx.Response(404, json={"error": "User not found"})) as client:
            await client.disclaimer_status(user_id="missing")

    with pytest.raises(PortalAPIError) as excinfo:
        asyncio.run(scenario())

    assert str(excinfo.value) == "User not found"
    assert excinfo.value.status_code == 404


def test_transport_failures_become_portal_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def scenario():
        async with _client(handler) as client:
            await client.track_activity("u-1", "a@example.org")

    with pytest.raises(PortalAPIError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.status_code is None


def test_disclaimer_round_trip_parses_timestamps() -> None:
    accepted = "2024-06-01T12:00:00+00:00"

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            assert request.url.params["userId"] == "u-1"
            assert "email" not in request.url.params
            return httpx.Response(200, json={"needsDisclaimer": False, "lastAcceptedAt": accepted})
        assert json.loads(request.content) == {"userId": "u-1", "email": "a@example.org"}
        return httpx.Response(200, json={"success": True, "acceptedAt": accepted})

    async def scenario():
        async with _client(handler) as client:
            status = await client.disclaimer_status(user_id="u-1")
            when = await client.accept_disclaimer(user_id="u-1", email="a@example.org")
            return status, when

    status, when = asyncio.run(scenario())

    expected = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    assert status.needs_disclaimer is False
    assert status.last_accepted_at == expected
    assert when == expected


def test_empty_base_url_is_rejected() -> None:
    with pytest.raises(ValueError):
        PortalClient("  ")


def test_password_login_returns_token_and_user() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"email": "a@example.org", "password": " s3cret "}
        return httpx.Response(
            200,
            json={"token": "password_login_abc", "user": {"id": "u-1", "email": "a@example.org", "role": "admin"}},
        )

    async def scenario():
        async with _client(handler) as client:
            return await client.password_login("a@example.org", " s3cret ")

    login = asyncio.run(scenario())

    assert login.token == "password_login_abc"
    assert login.user.id == "u-1"
    assert login.user.role == "admin"


def test_password_login_without_token_is_an_error() -> None:
    async def scenario():
        async with _client(lambda request: httpx.Response(200, json={"user": None})) as client:
            await client.password_login("a@example.org", "s3cret")

    with pytest.raises(PortalAPIError):
        asyncio.run(scenario())
