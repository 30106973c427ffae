"""
ACME challenge responders for HTTP-01 and TLS-ALPN-01 validation.

Each responder implements the offer/withdraw hooks the ACME client calls
around a challenge: offer makes the proof reachable, withdraw takes it away
again once the challenge is settled.
"""
import asyncio
import logging
import ssl
from typing import Optional, Protocol

from aiohttp import web

from .errors import ForgeryError
from .forge import ACME_TLS_ALPN_PROTOCOL, AlpnCertificateForge
from .https_server import create_server_context
from .settings import AddAlpnChallenge, RemoveAlpnChallenge


logger = logging.getLogger(__name__)

ACME_CHALLENGE_PATH = "/.well-known/acme-challenge/"


class ChallengeHandlers(Protocol):
    """Hooks the ACME client calls for every challenge it answers."""

    async def on_offer(self, identifier: str, token: str, key_authorization: str) -> None:
        ...

    async def on_withdraw(self, identifier: str, token: str) -> None:
        ...


class HttpChallengeResponder:
    """
    Answers HTTP-01 challenges from an ephemeral HTTP listener.

    The listener is started when the first token is offered and stopped when
    the last outstanding token is withdrawn, so the port is only held during
    challenge windows. Requests outside the challenge path are redirected to
    the HTTPS endpoint.
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 80):
        """
        Initialize the responder.

        Args:
            host: Address to bind the listener to
            port: Port to bind to (usually 80 for HTTP-01)
        """
        self.host = host
        self.port = port
        self._challenges: dict[str, str] = {}
        self._runner: Optional[web.AppRunner] = None
        self._lock = asyncio.Lock()

    @property
    def is_listening(self) -> bool:
        return self._runner is not None

    @property
    def pending_count(self) -> int:
        """Number of outstanding challenge tokens."""
        return len(self._challenges)

    def get_response(self, token: str) -> Optional[str]:
        """Get the key authorization registered for a token."""
        return self._challenges.get(token)

    async def offer(self, token: str, key_authorization: str) -> None:
        """
        Register a token, starting the shared listener if needed.

        Raises:
            OSError: if the listener cannot bind
        """
        async with self._lock:
            self._challenges[token] = key_authorization
            logger.info("[TLS-CHALLENGE] Registered HTTP-01 challenge: %s", token)
            if self._runner is None:
                try:
                    await self._start_listener()
                except OSError:
                    self._challenges.pop(token, None)
                    raise

    async def withdraw(self, token: str) -> None:
        """Remove a token, stopping the listener once none are left."""
        async with self._lock:
            if self._challenges.pop(token, None) is not None:
                logger.info("[TLS-CHALLENGE] Cleared HTTP-01 challenge: %s", token)
            if not self._challenges and self._runner is not None:
                await self._stop_listener()

    async def on_offer(self, identifier: str, token: str, key_authorization: str) -> None:
        await self.offer(token, key_authorization)

    async def on_withdraw(self, identifier: str, token: str) -> None:
        await self.withdraw(token)

    async def close(self) -> None:
        """Drop all challenges and release the port."""
        async with self._lock:
            self._challenges.clear()
            if self._runner is not None:
                await self._stop_listener()

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(ACME_CHALLENGE_PATH + "{token}", self._handle_challenge)
        app.router.add_route("*", "/{tail:.*}", self._handle_redirect)
        return app

    async def _start_listener(self) -> None:
        runner = web.AppRunner(self._build_app(), access_log=None)
        await runner.setup()
        try:
            site = web.TCPSite(runner, self.host, self.port)
            await site.start()
        except OSError as e:
            await runner.cleanup()
            logger.error(
                "[TLS-CHALLENGE] Failed to start HTTP challenge listener on %s:%s: %s",
                self.host, self.port, e,
            )
            raise
        self._runner = runner
        logger.info("[TLS-CHALLENGE] HTTP challenge listener started on %s:%s", self.host, self.port)

    async def _stop_listener(self) -> None:
        runner, self._runner = self._runner, None
        await runner.cleanup()
        logger.info("[TLS-CHALLENGE] HTTP challenge listener stopped")

    async def _handle_challenge(self, request: web.Request) -> web.Response:
        """Handle an ACME challenge request."""
        token = request.match_info["token"]
        logger.info("[TLS-CHALLENGE] Received challenge request for token=%s", token)

        response = self.get_response(token)
        if response is None:
            logger.warning("[TLS-CHALLENGE] Challenge not found for token: %s", token)
            raise web.HTTPNotFound()
        return web.Response(text=response, content_type="text/plain")

    async def _handle_redirect(self, request: web.Request) -> web.Response:
        raise web.HTTPFound(f"https://{request.host}{request.path_qs}")


class AlpnChallengeResponder:
    """
    Answers TLS-ALPN-01 challenges through the live HTTPS server.

    Offering a challenge forges a certificate for the domain and installs it
    in the server's per-hostname table; withdrawing removes it.
    """

    def __init__(
        self,
        add_alpn_challenge: AddAlpnChallenge,
        remove_alpn_challenge: RemoveAlpnChallenge,
        forge: Optional[AlpnCertificateForge] = None,
    ):
        self._add_alpn_challenge = add_alpn_challenge
        self._remove_alpn_challenge = remove_alpn_challenge
        self._forge = forge or AlpnCertificateForge()
        self._installed: dict[str, ssl.SSLContext] = {}

    @property
    def installed_domains(self) -> list[str]:
        return list(self._installed)

    async def offer(self, domain: str, key_authorization: str) -> None:
        """
        Forge and install the challenge certificate for a domain.

        Raises:
            ForgeryError: if the certificate or its TLS context cannot be built
        """
        try:
            challenge = await asyncio.to_thread(self._forge.build, domain, key_authorization)
            try:
                context = create_server_context(
                    challenge.cert_pem,
                    challenge.key_pem,
                    alpn_protocols=[ACME_TLS_ALPN_PROTOCOL],
                )
            except (ssl.SSLError, OSError) as e:
                raise ForgeryError(domain, f"Cannot load challenge certificate: {e}") from e
        except ForgeryError as e:
            logger.error("[TLS-CHALLENGE] TLS-ALPN-01 challenge for %s failed: %s", domain, e)
            raise

        logger.info("[TLS-CHALLENGE] Adding ALPN challenge for %s", domain)
        self._add_alpn_challenge(domain, context)
        self._installed[domain] = context

    async def withdraw(self, domain: str) -> None:
        """Remove the challenge certificate for a domain."""
        logger.info("[TLS-CHALLENGE] Removing ALPN challenge for %s", domain)
        self._installed.pop(domain, None)
        self._remove_alpn_challenge(domain)

    async def on_offer(self, identifier: str, token: str, key_authorization: str) -> None:
        await self.offer(identifier, key_authorization)

    async def on_withdraw(self, identifier: str, token: str) -> None:
        await self.withdraw(identifier)
