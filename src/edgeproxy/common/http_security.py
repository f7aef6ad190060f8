"""Shared HTTP security helpers."""

from __future__ import annotations

import hmac
from ipaddress import ip_address, ip_network
from typing import Iterable, Optional

import structlog
from fastapi import HTTPException, Request, status

LOGGER = structlog.get_logger("edgeproxy.http_security")


def parse_networks(cidrs: Iterable[str]) -> list:
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ip_network(cidr, strict=False))
        except ValueError:
            LOGGER.warning("ignoring_invalid_proxy_cidr", cidr=cidr)
    return networks


def resolve_client_ip(request: Request, trusted_proxies: list) -> str:
    """
    Get the client IP, only trusting X-Forwarded-For from known proxies.

    Args:
        request: incoming request
        trusted_proxies: parsed networks of proxies allowed to set X-Forwarded-For

    Returns:
        Client IP address, or "unknown" when the transport has no peer
    """
    source_ip = request.client.host if request.client else None
    if not source_ip:
        return "unknown"
    if not trusted_proxies:
        return source_ip

    try:
        source = ip_address(source_ip)
    except ValueError:
        return source_ip
    if any(source in network for network in trusted_proxies):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # First hop is the original client
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return source_ip


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Enforce metrics endpoint authentication via token or localhost constraint."""
    if token:
        expected = f"Bearer {token}"
        auth_header = request.headers.get("authorization")
        if not auth_header or not hmac.compare_digest(auth_header, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client_host = request.client.host if request.client else None
    if not client_host:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied")
    try:
        loopback = ip_address(client_host).is_loopback
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied") from exc
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
