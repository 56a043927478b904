from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import httpx

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from memberportal.fingerprint import (
    ClientEnvironment,
    ClientTelemetry,
    collect_device_metadata,
    detect_browser,
    detect_browser_version,
    detect_os,
)
from memberportal.geo import client_geo_resolver, public_ip_discovery
from memberportal.models import UNKNOWN, LoginMethod

FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:120.0) Gecko/20100101 Firefox/120.0"
SAFARI_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Safari/605.1.15"
)
CHROME_ANDROID = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)


def test_structured_brands_take_precedence_over_user_agent() -> None:
    env = ClientEnvironment(user_agent=FIREFOX_LINUX, ua_brands=["Not.A/Brand", "Google Chrome"])
    assert detect_browser(env) == "Chrome"
    assert detect_browser(ClientEnvironment(ua_brands=["Microsoft Edge", "Chromium"])) == "Edge"
    assert detect_browser(ClientEnvironment(ua_brands=["Chromium"])) == "Chromium"
    assert detect_browser(ClientEnvironment(ua_brands=["Brave"])) == "Brave"


def test_user_agent_detection() -> None:
    firefox = ClientEnvironment(user_agent=FIREFOX_LINUX)
    assert detect_browser(firefox) == "Firefox"
    assert detect_browser_version(firefox) == "120"
    assert detect_os(firefox) == "Linux"

    safari = ClientEnvironment(user_agent=SAFARI_MAC)
    assert detect_browser(safari) == "Safari"
    assert detect_os(safari) == "Mac"

    chrome = ClientEnvironment(user_agent=CHROME_ANDROID)
    assert detect_browser(chrome) == "Chrome"
    assert detect_browser_version(chrome) == "120"

    assert detect_browser(ClientEnvironment(user_agent="curl/8.0")) == UNKNOWN
    assert detect_os(ClientEnvironment(user_agent="curl/8.0", ua_platform="Windows")) == "Windows"


def test_device_metadata_fills_every_field() -> None:
    snapshot = collect_device_metadata(ClientEnvironment())
    record = snapshot.to_record()

    assert record["device"] == "Desktop"
    assert record["user_agent"] == UNKNOWN
    assert record["languages"] == UNKNOWN
    assert record["cookie_enabled"] == "No"
    assert record["online_status"] == "Online"
    assert record["screen_width"] is None
    assert record["device_memory"] is None


def test_device_metadata_for_mobile_browser() -> None:
    env = ClientEnvironment(
        user_agent=CHROME_ANDROID,
        languages=["en-GB", "fr"],
        cookie_enabled=True,
        screen_width=412,
        screen_height=915,
        viewport_width=412,
        viewport_height=0,
        timezone="Europe/London",
        timezone_offset=0,
        online=False,
        hardware_concurrency=8,
    )
    snapshot = collect_device_metadata(env)

    assert snapshot.device == "Mobile"
    assert snapshot.languages == "en-GB,fr"
    assert snapshot.cookie_enabled == "Yes"
    assert snapshot.viewport_height is None
    assert snapshot.device_timezone == "Europe/London"
    assert snapshot.timezone_offset == 0
    assert snapshot.online_status == "Offline"
    assert snapshot.hardware_concurrency == 8


def test_login_payload_combines_ip_geo_and_device() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.ipify.org":
            return httpx.Response(200, json={"ip": "203.0.113.5"})
        if request.url.host == "ipapi.co":
            assert request.url.path == "/203.0.113.5/json/"
            return httpx.Response(200, json={"country_name": "Canada", "city": "Ottawa", "org": "Rogers"})
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    telemetry = ClientTelemetry(
        environment=ClientEnvironment(user_agent=FIREFOX_LINUX, language="en-CA"),
        ip_discovery=public_ip_discovery(transport=transport),
        geo_resolver=client_geo_resolver(transport=transport),
    )

    payload = asyncio.run(
        telemetry.login_payload(user_id="u-1", email="member@example.org", login_method=LoginMethod.OTP)
    )

    assert payload["user_id"] == "u-1"
    assert payload["login_method"] == "otp"
    assert payload["ip_address"] == "203.0.113.5"
    assert payload["country"] == "Canada"
    assert payload["city"] == "Ottawa"
    assert payload["browser"] == "Firefox"
    assert payload["language"] == "en-CA"
    assert "login_time" in payload


def test_login_payload_without_lookups_uses_unknown_values() -> None:
    payload = asyncio.run(
        ClientTelemetry().login_payload(user_id="u-2", email="a@example.org", login_method=LoginMethod.PASSWORD)
    )

    assert payload["ip_address"] == UNKNOWN
    assert payload["country"] == UNKNOWN
    assert payload["login_method"] == "password"
