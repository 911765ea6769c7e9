"""Outbound HTTP for workflow actions.

Every request passes an egress check before any socket is opened: only
http(s) URLs, no loopback/private/link-local/reserved targets (literal or
resolved), and an optional host allowlist. Names are resolved once and the
connection goes to the vetted address with the original Host header, so a
second lookup cannot rebind the target. Requests carry a hard timeout and
never follow redirects, so a public host cannot bounce the call inward.
"""
from __future__ import annotations

import asyncio
import ipaddress
import socket
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence
from urllib.parse import urlparse

import httpx

from convoflow.logging import get_logger
from convoflow.service.errors import EgressBlockedError

logger = get_logger(__name__)

_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}
_ALLOWED_SCHEMES = {"http", "https"}
MAX_RESPONSE_BYTES = 1_000_000


@dataclass
class EgressPolicy:
    """Network egress policy for the API-call action.

    Attributes:
        allowlist: Optional target host patterns (hostname, *.wildcard, or CIDR).
            Empty means any public host.
        proxy_url: Optional HTTP proxy all requests must use
        connect_timeout: Connection timeout in seconds
        total_timeout: Total request timeout in seconds
    """

    allowlist: list[str] = field(default_factory=list)
    proxy_url: Optional[str] = None
    connect_timeout: float = 10.0
    total_timeout: float = 30.0


def _normalize_allowlist(entries: Sequence[str] | None) -> list[str]:
    normalized: list[str] = []
    for entry in entries or []:
        stripped = entry.strip().lower()
        if stripped:
            normalized.append(stripped)
    return normalized


def build_egress_policy(
    *,
    allowlist: Sequence[str] | None = None,
    proxy_url: Optional[str] = None,
    connect_timeout: float = 10.0,
    total_timeout: float = 30.0,
) -> EgressPolicy:
    """Create a normalized EgressPolicy from raw values."""

    return EgressPolicy(
        allowlist=_normalize_allowlist(list(allowlist or [])),
        proxy_url=proxy_url,
        connect_timeout=connect_timeout,
        total_timeout=total_timeout,
    )


def _host_matches_allowlist(host: str, allowlist: Sequence[str]) -> bool:
    if not host:
        return False
    lowered = host.lower()
    for entry in allowlist:
        candidate = entry.lower()
        if candidate.startswith("*."):
            if lowered.endswith(candidate[1:]):
                return True
        elif lowered == candidate:
            return True
        elif "/" in candidate:
            try:
                net = ipaddress.ip_network(candidate, strict=False)
                if ipaddress.ip_address(host) in net:
                    return True
            except ValueError:
                continue
    return False


def is_blocked_address(address: str) -> bool:
    """True for any address that must never be an outbound target."""
    try:
        ip_obj = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip_obj, ipaddress.IPv6Address) and ip_obj.ipv4_mapped:
        ip_obj = ip_obj.ipv4_mapped
    return (
        ip_obj.is_loopback
        or ip_obj.is_private
        or ip_obj.is_link_local
        or ip_obj.is_reserved
        or ip_obj.is_multicast
        or ip_obj.is_unspecified
    )


def validate_url(url: str, policy: Optional[EgressPolicy] = None) -> str:
    """Static checks that need no DNS. Returns the target hostname."""
    try:
        parsed = urlparse(url)
    except ValueError as exc:
        raise EgressBlockedError("invalid URL format") from exc
    if parsed.scheme.lower() not in _ALLOWED_SCHEMES:
        raise EgressBlockedError("only http(s) URLs are allowed")
    host = (parsed.hostname or "").strip().lower()
    if not host:
        raise EgressBlockedError("URL is missing a host")
    if host in _BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        raise EgressBlockedError(f"target host '{host}' is a loopback address")
    try:
        ipaddress.ip_address(host)
        literal = True
    except ValueError:
        literal = False
    if literal and is_blocked_address(host):
        raise EgressBlockedError(f"target host '{host}' is on a blocked network")
    if policy and policy.allowlist and not _host_matches_allowlist(host, policy.allowlist):
        raise EgressBlockedError(f"target host '{host}' is not allowlisted")
    return host


Resolver = Callable[[str, int], Awaitable[List[str]]]


async def resolve_addresses(host: str, port: int) -> List[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError as exc:
        raise EgressBlockedError(f"could not resolve host '{host}'") from exc
    return [info[4][0] for info in infos]


async def resolve_and_check(host: str, port: int, resolver: Resolver = resolve_addresses) -> str:
    """Resolve ``host`` once and return the address the request must connect to.

    Refuses if any answer lands on a blocked network. The caller connects to
    the returned address rather than the name, so a second lookup cannot
    rebind the target.
    """
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass
    addresses = await resolver(host, port)
    if not addresses:
        raise EgressBlockedError(f"could not resolve host '{host}'")
    for address in addresses:
        if is_blocked_address(address):
            raise EgressBlockedError(f"target host '{host}' resolves to a blocked network")
    return addresses[0].split("%", 1)[0]


class GuardedHttpClient:
    """Outbound HTTP capability enforcing the egress policy and a hard timeout."""

    def __init__(
        self,
        policy: EgressPolicy,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        resolver: Optional[Resolver] = None,
    ):
        self.policy = policy
        self._transport = transport
        # an injected transport without a resolver skips DNS and pinning entirely
        self._resolver = resolver or (None if transport is not None else resolve_addresses)

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> dict:
        host = validate_url(url, self.policy)
        target = httpx.URL(url)
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        extensions: dict[str, Any] = {}
        if self._resolver is not None:
            port = target.port or (443 if target.scheme == "https" else 80)
            address = await resolve_and_check(host, port, self._resolver)
            if address != host:
                request_headers["Host"] = target.netloc.decode("ascii")
                if target.scheme == "https":
                    extensions["sni_hostname"] = host
                if ipaddress.ip_address(address).version == 6:
                    address = f"[{address}]"
                target = target.copy_with(host=address)

        total = min(timeout, self.policy.total_timeout) if timeout else self.policy.total_timeout
        client_timeout = httpx.Timeout(total, connect=min(self.policy.connect_timeout, total))
        client_kwargs: dict[str, Any] = {"timeout": client_timeout, "follow_redirects": False}
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        elif self.policy.proxy_url:
            client_kwargs["proxy"] = self.policy.proxy_url
        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                response = await client.request(
                    method.upper(),
                    target,
                    headers=request_headers,
                    json=json if method.upper() != "GET" else None,
                    extensions=extensions or None,
                )
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"outbound request to '{host}' timed out") from exc
        except httpx.HTTPError as exc:
            raise ConnectionError(f"outbound request to '{host}' failed: {exc}") from exc

        body: Any
        raw = response.content[:MAX_RESPONSE_BYTES]
        try:
            body = response.json() if len(response.content) <= MAX_RESPONSE_BYTES else None
        except ValueError:
            body = None
        if body is None:
            body = raw.decode(response.encoding or "utf-8", errors="replace")
        logger.info(
            "outbound_http_request",
            method=method.upper(),
            host=host,
            status_code=response.status_code,
        )
        return {
            "status_code": response.status_code,
            "ok": response.is_success,
            "body": body,
        }
