"""URL validation for the fetcher.

Syntactic checks always run; host checks that refuse private, loopback and
link-local destinations run when private networks are blocked.
"""

import ipaddress
import logging
import socket
from typing import Set
from urllib.parse import urlparse

from services.shared.errors import ValidationError

logger = logging.getLogger(__name__)

PRIVATE_IP_RANGES = [
    ipaddress.ip_network('10.0.0.0/8'),        # RFC 1918
    ipaddress.ip_network('172.16.0.0/12'),     # RFC 1918
    ipaddress.ip_network('192.168.0.0/16'),    # RFC 1918
    ipaddress.ip_network('127.0.0.0/8'),       # Loopback
    ipaddress.ip_network('169.254.0.0/16'),    # Link-local
    ipaddress.ip_network('::1/128'),           # IPv6 loopback
    ipaddress.ip_network('fc00::/7'),          # IPv6 unique local
    ipaddress.ip_network('fe80::/10'),         # IPv6 link-local
    ipaddress.ip_network('0.0.0.0/8'),         # "This" network
    ipaddress.ip_network('224.0.0.0/4'),       # Multicast
    ipaddress.ip_network('240.0.0.0/4'),       # Reserved
]

ALLOWED_SCHEMES = {'http', 'https'}

LOCALHOST_NAMES = {'localhost', 'localhost.localdomain', '0.0.0.0', '0', 'local'}


class SSRFError(ValidationError):
    """Raised when a URL points at a private or internal destination."""
    pass


def is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is in a private range.

    Unparseable addresses count as private.
    """
    try:
        ip = ipaddress.ip_address(ip_str)
        return any(ip in network for network in PRIVATE_IP_RANGES)
    except ValueError:
        return True


def resolve_hostname(hostname: str) -> Set[str]:
    """Resolve a hostname and refuse it if any address is private.

    Raises:
        SSRFError: If resolution fails or yields a private address
    """
    try:
        addr_info = socket.getaddrinfo(hostname, None)
    except socket.gaierror as e:
        raise SSRFError(f"Failed to resolve hostname {hostname}: {e}") from e

    ips = {info[4][0] for info in addr_info}
    private_ips = sorted(ip for ip in ips if is_private_ip(ip))
    if private_ips:
        raise SSRFError(f"Hostname {hostname} resolves to private IP(s): {private_ips}")
    return ips


def validate_url(url: str) -> str:
    """Check that ``url`` is a well-formed absolute http(s) URL.

    Returns:
        The URL stripped of surrounding whitespace

    Raises:
        ValidationError: If the URL is empty, relative or uses another scheme
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("URL must be a non-empty string")

    url = url.strip()
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError as e:
        raise ValidationError(f"Malformed URL {url!r}: {e}") from e

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise ValidationError(
            f"Scheme '{parsed.scheme}' not allowed for {url!r}; use http or https"
        )
    if not parsed.hostname:
        raise ValidationError(f"URL {url!r} has no hostname")
    if port == 0:
        raise ValidationError(f"URL {url!r} has an invalid port")

    return url


def check_url_ssrf(url: str) -> None:
    """Refuse URLs whose host is local or resolves to a private network.

    Raises:
        SSRFError: If the URL is deemed unsafe
    """
    hostname = urlparse(url).hostname or ""
    if hostname.lower() in LOCALHOST_NAMES:
        logger.warning(f"SSRF protection blocked URL: {url}")
        raise SSRFError(f"Localhost hostname '{hostname}' is blocked")

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        resolve_hostname(hostname)
        return

    if is_private_ip(str(ip)):
        logger.warning(f"SSRF protection blocked URL: {url}")
        raise SSRFError(f"Private IP address '{hostname}' is blocked")
