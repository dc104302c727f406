"""
Callback URL safety checks and payload signing.

Completion callbacks are POSTed from inside the worker network, so
every caller-supplied URL is checked before use:

- ``http``/``https`` only, bounded length;
- ``localhost`` and hosts resolving to private, loopback,
  link-local or otherwise reserved addresses are refused unless
  listed in ``SSRF_EXEMPT_HOSTNAMES``;
- when ``ALLOWED_URL_DOMAINS`` is set, the host must be one of
  those domains or a subdomain of one.

The host is resolved here, before the request is sent, so a DNS
answer that changes between the two lookups is not caught.
"""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import logging
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from urllib.parse import urlparse

from rate_extract.core.config import get_settings

logger = logging.getLogger(__name__)

MAX_URL_LENGTH: int = 2048

_DNS_TIMEOUT_S: float = 5.0

_BLOCKED_HOSTNAMES: frozenset[str] = frozenset({"localhost", "localhost.localdomain"})


def _address_is_internal(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
        or address in ipaddress.IPv4Network("100.64.0.0/10")
    )


def resolves_to_internal(host: str) -> bool:
    """Return ``True`` if *host* cannot be resolved or any answer is internal."""
    try:
        with ThreadPoolExecutor(max_workers=1) as pool:
            answers = pool.submit(
                socket.getaddrinfo,
                host,
                None,
                socket.AF_UNSPEC,
                socket.SOCK_STREAM,
            ).result(timeout=_DNS_TIMEOUT_S)
    except FutureTimeoutError:
        logger.warning("DNS lookup timed out for %s", host)
        return True
    except socket.gaierror:
        logger.warning("DNS lookup failed for %s", host)
        return True

    for *_, sockaddr in answers:
        try:
            address = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if _address_is_internal(address):
            logger.warning("Refusing %s: resolves to internal address %s", host, address)
            return True
    return False


def validate_url(url: str, *, purpose: str = "callback_url") -> str:
    """Return *url* unchanged if it is safe to request from the server.

    Args:
        url: Caller-supplied URL.
        purpose: Label used in error messages.

    Raises:
        ValueError: Describing the first failed check.
    """
    if len(url) > MAX_URL_LENGTH:
        raise ValueError(f"{purpose} exceeds {MAX_URL_LENGTH} characters")

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"{purpose} must use http or https, not '{parsed.scheme}'")

    host = (parsed.hostname or "").lower()
    if not host:
        raise ValueError(f"{purpose} has no hostname")

    settings = get_settings()
    exempt = host in settings.ssrf_exempt_hostnames_list

    if not exempt and host in _BLOCKED_HOSTNAMES:
        raise ValueError(f"{purpose} host '{host}' is not allowed")

    allowed = settings.allowed_url_domains_list
    if allowed and not any(host == d or host.endswith(f".{d}") for d in allowed):
        raise ValueError(f"{purpose} host '{host}' is not in the allowed domains")

    if not exempt and resolves_to_internal(host):
        raise ValueError(f"{purpose} resolves to a private or reserved address")

    return url


def sign_payload(
    body: bytes,
    secret: str,
    *,
    timestamp: int | None = None,
) -> tuple[str, int]:
    """HMAC-SHA256 over ``"{timestamp}." + body``.

    Returns:
        ``(hex_signature, timestamp)``.
    """
    if timestamp is None:
        timestamp = int(time.time())
    digest = hmac.new(
        secret.encode(),
        f"{timestamp}.".encode() + body,
        hashlib.sha256,
    ).hexdigest()
    return digest, timestamp
