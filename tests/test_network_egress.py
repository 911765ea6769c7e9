from __future__ import annotations

import httpx
import pytest

from convoflow.service.errors import EgressBlockedError
from convoflow.service.network import (
    GuardedHttpClient,
    build_egress_policy,
    is_blocked_address,
    validate_url,
)


@pytest.mark.parametrize(
    "url",
    [
        "http://127.0.0.1/admin",
        "http://localhost:8080/",
        "http://api.localhost/",
        "http://10.0.0.5/",
        "http://192.168.1.1/",
        "http://169.254.169.254/latest/meta-data/",
        "http://[::1]/",
        "http://[::ffff:127.0.0.1]/",
        "http://0.0.0.0/",
        "ftp://example.com/file",
        "file:///etc/passwd",
        "http:///no-host",
    ],
)
def test_blocked_targets(url):
    with pytest.raises(EgressBlockedError):
        validate_url(url)


def test_public_targets_and_allowlist():
    assert validate_url("https://api.example.com/v1") == "api.example.com"
    assert validate_url("http://93.184.216.34/") == "93.184.216.34"

    policy = build_egress_policy(allowlist=["*.example.com", "203.0.113.0/24"])
    assert validate_url("https://api.example.com/", policy) == "api.example.com"
    with pytest.raises(EgressBlockedError):
        validate_url("https://evil.test/", policy)


def test_blocked_address_classification():
    assert is_blocked_address("127.0.0.1")
    assert is_blocked_address("fe80::1")
    assert is_blocked_address("not-an-ip")
    assert not is_blocked_address("8.8.8.8")


@pytest.mark.asyncio
async def test_loopback_request_is_refused_before_any_connection():
    calls = []

    def _handler(request):
        calls.append(request)
        return httpx.Response(200, json={"ok": True})

    client = GuardedHttpClient(build_egress_policy(), transport=httpx.MockTransport(_handler))

    with pytest.raises(EgressBlockedError):
        await client.request("GET", "http://127.0.0.1:6379/")
    assert calls == []


@pytest.mark.asyncio
async def test_public_request_returns_status_and_json_body():
    seen = []

    def _handler(request):
        seen.append((request.method, str(request.url), request.headers.get("X-Api-Key")))
        return httpx.Response(201, json={"ticket": 17})

    client = GuardedHttpClient(build_egress_policy(), transport=httpx.MockTransport(_handler))
    result = await client.request(
        "post", "https://api.example.com/tickets", headers={"X-Api-Key": "k"}, json={"subject": "hi"}
    )

    assert result == {"status_code": 201, "ok": True, "body": {"ticket": 17}}
    assert seen == [("POST", "https://api.example.com/tickets", "k")]


@pytest.mark.asyncio
async def test_redirects_are_not_followed_and_text_bodies_pass_through():
    def _handler(request):
        return httpx.Response(302, headers={"Location": "http://127.0.0.1/"}, text="moved")

    client = GuardedHttpClient(build_egress_policy(), transport=httpx.MockTransport(_handler))
    result = await client.request("GET", "https://api.example.com/")

    assert result["status_code"] == 302
    assert result["ok"] is False
    assert result["body"] == "moved"


@pytest.mark.asyncio
async def test_transport_timeouts_surface_as_timeout_errors():
    def _handler(request):
        raise httpx.ConnectTimeout("too slow", request=request)

    client = GuardedHttpClient(build_egress_policy(), transport=httpx.MockTransport(_handler))

    with pytest.raises(TimeoutError):
        await client.request("GET", "https://api.example.com/")


def _resolver_returning(*addresses):
    lookups = []

    async def _resolve(host, port):
        lookups.append((host, port))
        return list(addresses)

    return _resolve, lookups


@pytest.mark.asyncio
async def test_request_connects_to_the_vetted_address_with_original_host():
    seen = []

    def _handler(request):
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    resolver, lookups = _resolver_returning("93.184.216.34")
    client = GuardedHttpClient(
        build_egress_policy(), transport=httpx.MockTransport(_handler), resolver=resolver
    )
    await client.request("GET", "https://api.example.com:8443/status")

    assert lookups == [("api.example.com", 8443)]
    request = seen[0]
    assert request.url.host == "93.184.216.34"
    assert request.url.port == 8443
    assert request.headers["Host"] == "api.example.com:8443"
    assert request.extensions["sni_hostname"] == "api.example.com"


@pytest.mark.asyncio
async def test_ipv6_answers_are_pinned_in_brackets():
    seen = []

    def _handler(request):
        seen.append(request)
        return httpx.Response(204)

    resolver, _ = _resolver_returning("2606:2800:220:1:248:1893:25c8:1946")
    client = GuardedHttpClient(
        build_egress_policy(), transport=httpx.MockTransport(_handler), resolver=resolver
    )
    await client.request("GET", "http://api.example.com/")

    assert seen[0].url.host == "2606:2800:220:1:248:1893:25c8:1946"
    assert seen[0].headers["Host"] == "api.example.com"
    assert "sni_hostname" not in seen[0].extensions


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "answers",
    [("10.0.0.7",), ("93.184.216.34", "127.0.0.1"), ("169.254.169.254",), ()],
)
async def test_name_resolving_to_blocked_network_is_refused(answers):
    calls = []

    def _handler(request):
        calls.append(request)
        return httpx.Response(200)

    resolver, lookups = _resolver_returning(*answers)
    client = GuardedHttpClient(
        build_egress_policy(), transport=httpx.MockTransport(_handler), resolver=resolver
    )

    with pytest.raises(EgressBlockedError):
        await client.request("GET", "https://rebind.example.com/")
    assert len(lookups) == 1
    assert calls == []
