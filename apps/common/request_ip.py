"""
Secure client IP detection for the code ledger

Proxy headers are honoured only when the direct peer is a trusted proxy, so a
forged X-Forwarded-For can't bypass rate limits on code redemption or poison
audit rows.

Configuration is done via IPWARE_TRUSTED_PROXY_LIST in Django settings:
- Dev/Test: [] (REMOTE_ADDR only)
- Prod: ['10.0.0.0/8'] or whatever the load balancer range is

Usage:
    from apps.common.request_ip import get_safe_client_ip

    client_ip = get_safe_client_ip(request)
"""

import ipaddress

from django.conf import settings
from django.http import HttpRequest

DEFAULT_CLIENT_IP = "127.0.0.1"


def _is_valid_ip(ip: str) -> bool:
    try:
        ipaddress.ip_address(ip)
        return True
    except ValueError:
        return False


def _is_trusted_proxy(ip: str, trusted_proxies: list[str]) -> bool:
    """Check if an IP address is in the trusted proxy list (supports CIDR)."""
    try:
        ip_addr = ipaddress.ip_address(ip)
    except ValueError:
        return False

    for proxy in trusted_proxies:
        try:
            if "/" in proxy:
                if ip_addr in ipaddress.ip_network(proxy, strict=False):
                    return True
            elif ip_addr == ipaddress.ip_address(proxy):
                return True
        except ValueError:
            continue
    return False


def _first_header_ip(value: str | None) -> str | None:
    if not value:
        return None
    candidate = value.split(",")[0].strip()
    return candidate if candidate and _is_valid_ip(candidate) else None


def get_safe_client_ip(request: HttpRequest) -> str:
    """
    Get the real client IP address, respecting proxy trust configuration.

    Falls back to REMOTE_ADDR whenever the peer is not trusted or the
    forwarded headers hold nothing usable, and to 127.0.0.1 when even
    REMOTE_ADDR is missing.
    """
    remote_addr = request.META.get("REMOTE_ADDR") or DEFAULT_CLIENT_IP
    trusted_proxies = list(getattr(settings, "IPWARE_TRUSTED_PROXY_LIST", []))

    if not trusted_proxies or not _is_trusted_proxy(remote_addr, trusted_proxies):
        return remote_addr

    # Original client is the first entry of the chain
    for header in ("HTTP_X_FORWARDED_FOR", "HTTP_X_REAL_IP"):
        client_ip = _first_header_ip(request.META.get(header))
        if client_ip:
            return client_ip
    return remote_addr
