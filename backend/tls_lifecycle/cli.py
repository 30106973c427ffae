"""
Command-line entry point.

Usage::

    tls-lifecycle -c /config/tls_settings.json
    python -m tls_lifecycle -c tls_settings.json --log-level debug
"""
import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional

from .app import create_app
from .errors import ConfigError, IssuanceError, StoreError
from .hostname import build_node_hostname, resolve_public_ip, write_node_url
from .https_server import HTTPSServerManager, TLSContextSwitcher
from .log import setup_logging
from .manager import create_certificate_provider
from .routes import set_certificate_provider
from .settings import NodeTLSSettings, load_tls_settings


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tls-lifecycle",
        description="Serve the node's HTTPS endpoint with automatically managed certificates.",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="PATH",
        help="Path to the TLS settings file (default: $CONFIG_DIR/tls_settings.json).",
    )
    parser.add_argument(
        "--log-level",
        metavar="LEVEL",
        help="Log level (default: $LOG_LEVEL or INFO).",
    )
    return parser


async def _resolve_hostnames(settings: NodeTLSSettings) -> list[str]:
    if settings.hostnames:
        return settings.hostnames
    address = await resolve_public_ip(settings.ip_address_file)
    hostname = build_node_hostname(address, settings.dns_proxy)
    logger.info("[TLS-SETTINGS] Domain name: %s", hostname)
    return [hostname]


async def run(settings: NodeTLSSettings) -> None:
    """Obtain credentials, then serve HTTPS until the server exits."""
    switcher = TLSContextSwitcher()

    hostnames = None
    if settings.mode == "auto":
        hostnames = await _resolve_hostnames(settings)
        url = write_node_url(Path(settings.storage_dir), hostnames[0], settings.https_port)
        logger.info("[TLS-SETTINGS] Node URL: %s", url)

    provider = create_certificate_provider(settings, switcher, hostnames)
    set_certificate_provider(provider)

    # The listener comes up first: TLS-ALPN-01 validation of the first
    # certificate is answered by this server
    server = HTTPSServerManager(switcher, settings.https_address, settings.https_port)
    try:
        await server.start(create_app())
        await provider.init(switcher.apply)
        await server.wait()
    finally:
        await server.stop()
        await provider.close()
        set_certificate_provider(None)


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        settings = load_tls_settings(Path(args.config) if args.config else None)
        if not settings.enabled:
            logger.error("[TLS-SETTINGS] TLS is not enabled in the settings file")
            return 1
        asyncio.run(run(settings))
    except (ConfigError, IssuanceError, StoreError) as e:
        logger.critical("Cannot start the HTTPS endpoint: %s", e)
        return 1
    except KeyboardInterrupt:
        pass
    return 0
