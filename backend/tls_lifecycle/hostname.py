"""
Public hostname of the node for automatic certificates.

The node is reachable as ``<ip-with-dashes>.<dns-proxy>``, a name the DNS
proxy resolves back to the embedded address, so no DNS records have to be
managed per node.
"""
import ipaddress
import logging
from pathlib import Path
from typing import Optional

import httpx

from .errors import ConfigError


logger = logging.getLogger(__name__)

PUBLIC_IP_SERVICE = "https://api.ipify.org"


async def resolve_public_ip(
    ip_address_file: Optional[str] = None,
    timeout: float = 10.0,
) -> str:
    """
    Get the node's public IPv4 address.

    Args:
        ip_address_file: File holding the address; queried from a public
            echo service when not set
        timeout: Request timeout in seconds

    Raises:
        ConfigError: if no valid IPv4 address can be determined
    """
    if ip_address_file:
        try:
            address = Path(ip_address_file).read_text().strip()
        except OSError as e:
            raise ConfigError(f"Cannot read IP address file {ip_address_file}: {e}") from e
    else:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.get(PUBLIC_IP_SERVICE)
                resp.raise_for_status()
                address = resp.text.strip()
        except httpx.HTTPError as e:
            raise ConfigError(f"Cannot get IP address of the node: {e}") from e

    try:
        ipaddress.IPv4Address(address)
    except ValueError as e:
        raise ConfigError(f"Not a valid IPv4 address: {address!r}") from e

    logger.info("[TLS-SETTINGS] IP address: %s", address)
    return address


def build_node_hostname(address: str, dns_proxy: str) -> str:
    """Hostname under the DNS proxy that resolves to ``address``."""
    if not dns_proxy:
        raise ConfigError("dns_proxy must be set to derive the node hostname")
    return f"{address.replace('.', '-')}.{dns_proxy}"


def write_node_url(directory: Path, hostname: str, port: int) -> str:
    """Record the node's public HTTPS URL in ``url.txt`` and return it."""
    url = f"https://{hostname}:{port}"
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "url.txt").write_text(url)
    return url
