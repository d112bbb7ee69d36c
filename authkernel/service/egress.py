from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence
from urllib.parse import urlparse

import httpx

from authkernel.logging import get_logger

logger = get_logger(__name__)


class EgressError(Exception):
    """Outbound request refused by policy or failed in transport."""


@dataclass
class ActionNetworkPolicy:
    """Egress policy for SEND_REQUEST actions.

    Attributes:
        allowlist: Allowed target host patterns (hostname, ``*.suffix`` or CIDR)
        proxy_url: Optional HTTP proxy all action requests must use
        connect_timeout: Connection timeout in seconds
        total_timeout: Total request timeout in seconds
    """

    allowlist: list[str] = field(default_factory=list)
    proxy_url: Optional[str] = None
    connect_timeout: float = 3.0
    total_timeout: float = 5.0


def _normalize_allowlist(entries: Sequence[str] | None) -> list[str]:
    normalized: list[str] = []
    for entry in entries or []:
        stripped = entry.strip().lower()
        if stripped:
            normalized.append(stripped)
    return normalized


def build_action_network_policy(
    *,
    allowlist: Sequence[str] | None,
    proxy_url: Optional[str],
    connect_timeout: float = 3.0,
    total_timeout: float = 5.0,
) -> ActionNetworkPolicy:
    """Create a normalized ActionNetworkPolicy from raw values."""

    return ActionNetworkPolicy(
        allowlist=_normalize_allowlist(list(allowlist or [])),
        proxy_url=proxy_url,
        connect_timeout=connect_timeout,
        total_timeout=total_timeout,
    )


def host_matches_allowlist(host: str, allowlist: Sequence[str]) -> bool:
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
                if ipaddress.ip_address(host) in ipaddress.ip_network(candidate, strict=False):
                    return True
            except ValueError:
                continue
    return False


class AllowlistedFetcher:
    """Async HTTP client enforcing the action allowlist.

    ``client`` may be injected (tests pass one built on ``httpx.MockTransport``);
    otherwise a short-lived ``httpx.AsyncClient`` is opened per request.
    """

    def __init__(self, policy: ActionNetworkPolicy, *, client: Optional[httpx.AsyncClient] = None):
        self.policy = policy
        self._client = client

    def check_url(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise EgressError("only http and https URLs are allowed")
        host = parsed.hostname
        if not host:
            raise EgressError("URL is missing host")
        if not self.policy.allowlist:
            raise EgressError("action network allowlist is empty; outbound request blocked")
        if not host_matches_allowlist(host, self.policy.allowlist):
            raise EgressError(f"target host '{host}' is not allowlisted")
        return host

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        json: Any = None,
        data: Any = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        host = self.check_url(url)
        total = min(timeout, self.policy.total_timeout) if timeout else self.policy.total_timeout
        request_timeout = httpx.Timeout(total, connect=min(self.policy.connect_timeout, total))
        try:
            if self._client is not None:
                return await self._client.request(
                    method,
                    url,
                    headers=headers,
                    json=json,
                    data=data,
                    timeout=request_timeout,
                    follow_redirects=False,
                )
            async with httpx.AsyncClient(proxy=self.policy.proxy_url) as client:
                return await client.request(
                    method,
                    url,
                    headers=headers,
                    json=json,
                    data=data,
                    timeout=request_timeout,
                    follow_redirects=False,
                )
        except httpx.TimeoutException as exc:
            logger.warning("action_request_timeout", host=host)
            raise EgressError("outbound request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("action_request_failed", host=host, error=str(exc))
            raise EgressError(f"outbound request failed: {exc}") from exc
