"""
HTTPS server credential management.

The public REST endpoint is served in-process by uvicorn with a TLS context
whose SNI callback picks the credentials for each handshake. New credentials
are published by swapping a single reference, so a renewal or an operator
rotation takes effect for the next handshake without restarting the server
or dropping established connections. The same callback serves TLS-ALPN-01
challenge certificates for hostnames that have one installed.
"""
import asyncio
import logging
import ssl
import tempfile
from pathlib import Path
from typing import Optional

import uvicorn

from .storage import CertificateMaterial


logger = logging.getLogger(__name__)

HTTP_ALPN_PROTOCOLS = ["http/1.1"]


def create_server_context(
    cert_pem: str,
    key_pem: str,
    alpn_protocols: Optional[list[str]] = None,
) -> ssl.SSLContext:
    """
    Build a server-side TLS context from PEM text.

    The ssl module only loads key material from files, so the PEMs pass
    through a private temporary directory that is removed straight away.

    Raises:
        ssl.SSLError: if the certificate or key cannot be loaded
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    with tempfile.TemporaryDirectory(prefix="tls-") as tmp:
        cert_file = Path(tmp) / "cert.pem"
        key_file = Path(tmp) / "key.pem"
        cert_file.write_text(cert_pem)
        key_file.touch(mode=0o600)
        key_file.write_text(key_pem)
        context.load_cert_chain(certfile=str(cert_file), keyfile=str(key_file))

    if alpn_protocols:
        context.set_alpn_protocols(alpn_protocols)
    return context


class TLSContextSwitcher:
    """
    Hot-swappable TLS credentials with a per-hostname override table.

    ``server_context`` is the context handed to the listener. Its SNI
    callback selects an installed override for the requested hostname, or
    the current credentials otherwise.

    The SNI callback runs before ALPN is negotiated, so while a TLS-ALPN-01
    challenge certificate is installed every handshake naming that hostname
    gets the self-signed challenge certificate, ordinary clients included.
    Challenges are withdrawn as soon as the ACME authorizations are settled,
    which keeps that window to the validation itself.
    """

    def __init__(self):
        self._current: Optional[ssl.SSLContext] = None
        self._overrides: dict[str, ssl.SSLContext] = {}

        self.server_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self.server_context.minimum_version = ssl.TLSVersion.TLSv1_2
        self.server_context.set_alpn_protocols(HTTP_ALPN_PROTOCOLS)
        self.server_context.sni_callback = self._select_context

    @property
    def has_credentials(self) -> bool:
        return self._current is not None

    def set_credentials(self, private_key_pem: str, certificate_chain_pem: str) -> None:
        """Publish new credentials for subsequent handshakes."""
        context = create_server_context(
            certificate_chain_pem, private_key_pem, alpn_protocols=HTTP_ALPN_PROTOCOLS
        )
        self._current = context
        logger.info("[TLS-SERVER] TLS credentials updated")

    def apply(self, material: CertificateMaterial) -> None:
        """Certificate provider callback: publish the given material."""
        self.set_credentials(material.private_key_pem, material.certificate_chain_pem)

    def install(self, domain: str, context: ssl.SSLContext) -> None:
        """Serve ``context`` to handshakes whose SNI equals ``domain``."""
        self._overrides[domain.lower()] = context
        logger.debug("[TLS-SERVER] Installed SNI override for %s", domain)

    def remove(self, domain: str) -> None:
        """Drop the SNI override for ``domain``, if any."""
        if self._overrides.pop(domain.lower(), None) is not None:
            logger.debug("[TLS-SERVER] Removed SNI override for %s", domain)

    def context_for(self, server_name: Optional[str]) -> Optional[ssl.SSLContext]:
        """The context a handshake with this SNI value would use."""
        if server_name:
            override = self._overrides.get(server_name.lower())
            if override is not None:
                return override
        return self._current

    def _select_context(self, ssl_object, server_name, _base_context):
        context = self.context_for(server_name)
        if context is None:
            logger.warning("[TLS-SERVER] Handshake for %s refused, no credentials yet", server_name)
            return ssl.ALERT_DESCRIPTION_HANDSHAKE_FAILURE
        ssl_object.context = context
        return None


class HTTPSServerManager:
    """
    Runs the REST application over HTTPS in-process.

    uvicorn is given the switcher's server context directly instead of key
    and certificate paths, so credential changes never need a restart.
    """

    def __init__(self, switcher: TLSContextSwitcher, host: str = "0.0.0.0", port: int = 4000):
        self._switcher = switcher
        self._host = host
        self._port = port
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        """Check if HTTPS server is running."""
        return self._task is not None and not self._task.done()

    @property
    def port(self) -> int:
        return self._port

    def _build_config(self, app) -> uvicorn.Config:
        # Reject non-int and out-of-range ports
        if not isinstance(self._port, int) or not (0 <= self._port <= 65535):
            raise ValueError(f"Invalid port: {self._port}")
        config = uvicorn.Config(
            app,
            host=self._host,
            port=self._port,
            log_config=None,
            lifespan="off",
        )
        config.load()
        config.ssl = self._switcher.server_context
        return config

    async def start(self, app) -> None:
        """Start serving ``app`` on the configured address."""
        async with self._lock:
            if self.is_running:
                logger.debug("[TLS-SERVER] HTTPS server already running")
                return

            self._server = uvicorn.Server(self._build_config(app))
            self._task = asyncio.create_task(self._server.serve())
            logger.info("[TLS-SERVER] Starting HTTPS server on %s:%s", self._host, self._port)

    async def stop(self) -> bool:
        """
        Stop the HTTPS server.

        Returns:
            True if stopped, False if it wasn't running
        """
        async with self._lock:
            if not self.is_running:
                logger.debug("[TLS-SERVER] HTTPS server not running")
                return False

            self._server.should_exit = True
            await self._task
            self._server = None
            self._task = None
            logger.info("[TLS-SERVER] HTTPS server stopped")
            return True

    async def wait(self) -> None:
        """Wait until the server exits on its own (e.g. on a signal)."""
        if self._task is not None:
            await self._task

    def get_status(self) -> dict:
        """Get current HTTPS server status."""
        return {
            "running": self.is_running,
            "port": self._port,
            "has_credentials": self._switcher.has_credentials,
        }
