"""
ACME client used to obtain the node's certificate.

The RFC 8555 exchange (directory, account, order, authorization polling,
finalization) is delegated to the ``acme`` library. This module only wires
its blocking calls onto worker threads and routes each selected challenge
through the offer/withdraw hooks of a challenge responder.
"""
import asyncio
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Protocol

import josepy as jose
from acme import challenges, client, errors, messages
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .challenges import ChallengeHandlers
from .errors import IssuanceError
from .settings import ChallengeType, LETSENCRYPT_PRODUCTION


logger = logging.getLogger(__name__)

USER_AGENT = "lp-node-tls"
ACCOUNT_KEY_SIZE = 2048
DEFAULT_FINALIZE_TIMEOUT = timedelta(minutes=3)


class EmptyChallengeResponse(challenges.ChallengeResponse):
    """Challenge response with an empty payload, as RFC 8555 posts for every type."""

    typ = "tls-alpn-01"


def challenge_type(chall) -> Optional[str]:
    """Type of a challenge, including ones the acme library does not model."""
    if isinstance(chall, challenges.UnrecognizedChallenge):
        return chall.jobj.get("type")
    return getattr(chall, "typ", None)


def raw_key_authorization(token: str, account_key: jose.JWK) -> str:
    """token || '.' || base64url(JWK thumbprint), RFC 8555 section 8.1."""
    thumbprint = jose.b64encode(account_key.thumbprint()).decode("ascii")
    return f"{token}.{thumbprint}"


class AcmeProtocolClient(Protocol):
    """Obtains a certificate chain for a CSR, answering challenges via ``handlers``."""

    async def request_certificate(self, csr_der: bytes, handlers: ChallengeHandlers) -> str:
        ...


class LetsEncryptClient:
    """
    ACME client for Let's Encrypt certificate issuance.

    Supports the HTTP-01 and TLS-ALPN-01 challenge types; the type is fixed
    per client and must match the responder passed as ``handlers``.
    """

    def __init__(
        self,
        account_key_path: Path,
        challenge_type: ChallengeType = "http-01",
        directory_url: str = LETSENCRYPT_PRODUCTION,
        email: Optional[str] = None,
        finalize_timeout: timedelta = DEFAULT_FINALIZE_TIMEOUT,
    ):
        """
        Initialize ACME client.

        Args:
            account_key_path: Path to store/load the account key
            challenge_type: Challenge type to answer for every authorization
            directory_url: ACME directory URL
            email: Optional contact email for the ACME account
            finalize_timeout: How long to wait for validation and issuance
        """
        self.account_key_path = Path(account_key_path)
        self.challenge_type = challenge_type
        self.directory_url = directory_url
        self.email = email
        self.finalize_timeout = finalize_timeout

    def _load_or_create_account_key(self) -> jose.JWKRSA:
        """Load existing account key or create a new one."""
        if self.account_key_path.exists():
            try:
                key_data = self.account_key_path.read_bytes()
                private_key = serialization.load_pem_private_key(key_data, password=None)
                logger.debug("[TLS-ACME] Loaded existing ACME account key")
                return jose.JWKRSA(key=private_key)
            except (OSError, ValueError) as e:
                logger.warning("[TLS-ACME] Failed to load account key, creating new: %s", e)

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=ACCOUNT_KEY_SIZE)

        try:
            self.account_key_path.parent.mkdir(parents=True, exist_ok=True)
            key_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            self.account_key_path.write_bytes(key_pem)
            os.chmod(self.account_key_path, 0o600)
            logger.info("[TLS-ACME] Created and saved new ACME account key")
        except OSError as e:
            logger.warning("[TLS-ACME] Failed to save account key: %s", e)

        return jose.JWKRSA(key=private_key)

    def _connect(self) -> client.ClientV2:
        """Fetch the directory and register (or look up) the account."""
        account_key = self._load_or_create_account_key()
        net = client.ClientNetwork(account_key, user_agent=USER_AGENT)
        directory = client.ClientV2.get_directory(self.directory_url, net)
        acme = client.ClientV2(directory, net=net)

        registration = messages.NewRegistration.from_data(
            email=self.email,
            terms_of_service_agreed=True,
        )
        try:
            acme.new_account(registration)
            logger.info("[TLS-ACME] Registered new ACME account")
        except errors.ConflictError as e:
            # Account already exists for this key; the error carries its URI
            acme.query_registration(
                messages.RegistrationResource(body=messages.Registration(), uri=e.location)
            )
            logger.debug("[TLS-ACME] Using existing ACME account %s", e.location)
        return acme

    def _select_challenge(self, authz: messages.AuthorizationResource) -> messages.ChallengeBody:
        for challb in authz.body.challenges:
            if challenge_type(challb.chall) == self.challenge_type:
                return challb
        raise IssuanceError(
            f"No {self.challenge_type} challenge offered for {authz.body.identifier.value}"
        )

    async def request_certificate(self, csr_der: bytes, handlers: ChallengeHandlers) -> str:
        """
        Request a certificate for the given CSR.

        Every challenge offered through ``handlers`` is withdrawn as soon as
        the authorizations are settled, before finalization, and in any case
        before this returns.

        Args:
            csr_der: DER-encoded certificate signing request
            handlers: Challenge responder matching ``challenge_type``

        Returns:
            PEM certificate chain, leaf first

        Raises:
            IssuanceError: on any protocol, network or validation failure
        """
        offered: list[tuple[str, str]] = []
        try:
            csr_pem = x509.load_der_x509_csr(csr_der).public_bytes(serialization.Encoding.PEM)

            acme = await asyncio.to_thread(self._connect)
            order = await asyncio.to_thread(acme.new_order, csr_pem)

            pending = [
                (authz, self._select_challenge(authz))
                for authz in order.authorizations
                if authz.body.status != messages.STATUS_VALID
            ]
            results = await asyncio.gather(
                *(self._offer(acme, handlers, authz, challb, offered) for authz, challb in pending),
                return_exceptions=True,
            )

            failed = []
            for (authz, challb), result in zip(pending, results):
                if isinstance(result, BaseException):
                    failed.append(authz)
                    logger.error(
                        "[TLS-ACME] %s challenge for %s could not be offered: %s",
                        self.challenge_type, authz.body.identifier.value, result,
                    )
                    continue
                await asyncio.to_thread(acme.answer_challenge, challb, result)

            # Failed identifiers are deactivated so polling ends without
            # waiting for their authorizations to time out
            for authz in failed:
                await asyncio.to_thread(acme.deactivate_authorization, authz)

            deadline = datetime.now() + self.finalize_timeout
            order = await asyncio.to_thread(acme.poll_authorizations, order, deadline)
            await self._withdraw_all(handlers, offered)
            order = await asyncio.to_thread(acme.finalize_order, order, deadline)

            logger.info("[TLS-ACME] Certificate request success!")
            return order.fullchain_pem

        except IssuanceError:
            raise
        except Exception as e:
            raise IssuanceError(f"ACME certificate request failed: {e}") from e
        finally:
            await self._withdraw_all(handlers, offered)

    async def _withdraw_all(
        self, handlers: ChallengeHandlers, offered: list[tuple[str, str]]
    ) -> None:
        while offered:
            identifier, token = offered.pop()
            try:
                await handlers.on_withdraw(identifier, token)
            except Exception as e:
                logger.warning(
                    "[TLS-ACME] Failed to withdraw challenge for %s: %s", identifier, e
                )

    async def _offer(
        self,
        acme: client.ClientV2,
        handlers: ChallengeHandlers,
        authz: messages.AuthorizationResource,
        challb: messages.ChallengeBody,
        offered: list[tuple[str, str]],
    ):
        identifier = authz.body.identifier.value
        chall = challb.chall
        if isinstance(chall, challenges.UnrecognizedChallenge):
            # Recent acme releases no longer model tls-alpn-01
            token = chall.jobj["token"]
            key_authorization = raw_key_authorization(token, acme.net.key)
            response = EmptyChallengeResponse()
        else:
            token = chall.encode("token")
            key_authorization = chall.key_authorization(acme.net.key)
            response = chall.response(acme.net.key)

        offered.append((identifier, token))
        logger.info("[TLS-ACME] Offering %s challenge for %s", self.challenge_type, identifier)
        await handlers.on_offer(identifier, token, key_authorization)
        return response
