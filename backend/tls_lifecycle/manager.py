"""
Certificate providers for the node's HTTPS endpoint.

Two strategies share one contract: ``init(notify)`` publishes the current
key/certificate pair and every later replacement through ``notify``, so the
HTTPS server never needs to know which one is active.

- CertificateLifecycleManager obtains certificates through ACME and renews
  them before they expire.
- ManualCertificateProvider serves operator-supplied files and follows the
  operator's rotations of them.
"""
import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .acme_client import AcmeProtocolClient, LetsEncryptClient
from .challenges import AlpnChallengeResponder, HttpChallengeResponder
from .errors import ConfigError, IssuanceError, StoreError
from .https_server import TLSContextSwitcher
from .settings import ManagerConfig, NodeTLSSettings
from .storage import CertificateMaterial, CertificateStore


logger = logging.getLogger(__name__)

Notify = Callable[[CertificateMaterial], None]

CSR_KEY_SIZE = 2048


class ManagerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    WAITING_FIRST_CERT = "waiting_first_cert"
    SERVING = "serving"


class CertificateProvider(Protocol):
    """What the HTTPS server and the TLS API need from either certificate source."""

    mode: str
    state: ManagerState
    material: Optional[CertificateMaterial]
    last_renewal_attempt: Optional[datetime]
    last_renewal_error: Optional[str]

    @property
    def is_renewing(self) -> bool:
        ...

    async def init(self, notify: Notify) -> None:
        ...

    async def close(self) -> None:
        ...


def build_csr(hostnames: list[str], private_key_pem: Optional[str] = None) -> tuple[str, bytes]:
    """
    Build a CSR for the hostnames, reusing the given key if there is one.

    The first hostname is the subject CN; all of them go into the SAN.

    Returns:
        Tuple of (private key PEM, DER-encoded CSR)
    """
    if private_key_pem is None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=CSR_KEY_SIZE)
        private_key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
    else:
        key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)

    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostnames[0])]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(h) for h in hostnames]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return private_key_pem, csr.public_bytes(serialization.Encoding.DER)


class CertificateLifecycleManager:
    """
    Keeps an ACME-issued certificate current.

    At most one renewal runs at a time; a check triggered while one is in
    flight is dropped, not queued. A failed renewal leaves the previous
    certificate in place and is retried on the next scheduled check.
    """

    mode = "auto"

    def __init__(
        self,
        config: ManagerConfig,
        acme_client: Optional[AcmeProtocolClient] = None,
        store: Optional[CertificateStore] = None,
        responder: Union[HttpChallengeResponder, AlpnChallengeResponder, None] = None,
    ):
        self.config = config
        self.store = store or CertificateStore(config.key_file, config.cert_file)
        self.responder = responder or self._build_responder()
        self.acme_client = acme_client or LetsEncryptClient(
            account_key_path=config.account_key_path,
            challenge_type=config.challenge_type,
            directory_url=config.acme_directory_url,
            email=config.acme_email,
        )

        self.state = ManagerState.UNINITIALIZED
        self.material: Optional[CertificateMaterial] = None
        self.last_renewal_attempt: Optional[datetime] = None
        self.last_renewal_error: Optional[str] = None

        self._notify: Optional[Notify] = None
        self._renew_lock = asyncio.Lock()
        self._timer_task: Optional[asyncio.Task] = None
        self._background_task: Optional[asyncio.Task] = None

    def _build_responder(self) -> Union[HttpChallengeResponder, AlpnChallengeResponder]:
        if self.config.challenge_type == "http-01":
            return HttpChallengeResponder(
                host=self.config.http_listen_address,
                port=self.config.http_listen_port,
            )
        return AlpnChallengeResponder(
            self.config.add_alpn_challenge,
            self.config.remove_alpn_challenge,
        )

    @property
    def is_renewing(self) -> bool:
        return self._renew_lock.locked()

    async def init(self, notify: Notify) -> None:
        """
        Publish the stored certificate, or obtain the first one.

        With a stored pair the node starts serving it immediately and the
        renewal check runs in the background. Without one, the first
        issuance is awaited and its failure propagates: the node cannot serve
        TLS without a certificate.

        Raises:
            IssuanceError: first issuance failed
            StoreError: first certificate could not be written
        """
        self._notify = notify
        material = await asyncio.to_thread(self.store.load)

        if material is not None:
            logger.info(
                "[TLS-RENEWAL] Loaded stored certificate, expires %s",
                material.not_after.isoformat(),
            )
            self.material = material
            self.state = ManagerState.SERVING
            self._publish(material)
            self._background_task = asyncio.create_task(self._checked_renewal())
        else:
            logger.info("[TLS-RENEWAL] No stored certificate, requesting the first one")
            self.state = ManagerState.WAITING_FIRST_CERT
            await self.check_and_renew()

        self._timer_task = asyncio.create_task(self._renewal_loop())

    async def check_and_renew(self) -> bool:
        """
        Renew the certificate if it is within the renewal buffer.

        Returns:
            True if a new certificate was issued and published, False if no
            renewal was due or another renewal was already in flight

        Raises:
            IssuanceError: the ACME exchange failed
            StoreError: the new pair could not be written
        """
        if self._renew_lock.locked():
            logger.info("[TLS-RENEWAL] Renewal already in progress, skipping")
            return False

        async with self._renew_lock:
            current = await asyncio.to_thread(self.store.load)
            if current is not None:
                remaining = current.remaining()
                if remaining > self.config.renew_buffer:
                    logger.debug(
                        "[TLS-RENEWAL] Not renewing, certificate still valid for %s days",
                        remaining.days,
                    )
                    return False
                logger.info(
                    "[TLS-RENEWAL] Certificate expires in %s days, initiating renewal",
                    max(0, remaining.days),
                )

            self.last_renewal_attempt = datetime.now(timezone.utc)
            try:
                material = await self._issue()
                await asyncio.to_thread(self.store.save, material)
            except (IssuanceError, StoreError) as e:
                self.last_renewal_error = str(e)
                logger.error(
                    "[TLS-RENEWAL] Certificate request for %s (%s) failed at %s: %s",
                    ", ".join(self.config.hostnames),
                    self.config.challenge_type,
                    self.last_renewal_attempt.isoformat(),
                    e,
                )
                raise

            self.last_renewal_error = None
            self.material = material
            self.state = ManagerState.SERVING
            logger.info(
                "[TLS-RENEWAL] Certificate renewed, expires %s", material.not_after.isoformat()
            )
            self._publish(material)
            return True

    async def _issue(self) -> CertificateMaterial:
        key_pem = await asyncio.to_thread(self.store.load_private_key)
        if key_pem is None:
            logger.info("[TLS-RENEWAL] Creating new CSR key")
        key_pem, csr_der = await asyncio.to_thread(build_csr, self.config.hostnames, key_pem)

        chain_pem = await self.acme_client.request_certificate(csr_der, self.responder)
        try:
            return CertificateMaterial.from_pems(key_pem, chain_pem)
        except ValueError as e:
            raise IssuanceError(f"Issued certificate is unusable: {e}") from e

    def _publish(self, material: CertificateMaterial) -> None:
        if self._notify is None:
            return
        try:
            self._notify(material)
        except Exception as e:
            logger.error("[TLS-RENEWAL] Certificate update callback failed: %s", e)

    async def _checked_renewal(self) -> None:
        try:
            await self.check_and_renew()
        except (IssuanceError, StoreError):
            logger.warning(
                "[TLS-RENEWAL] Keeping current certificate, retrying in %s",
                self.config.check_interval,
            )
        except Exception as e:
            logger.exception("[TLS-RENEWAL] Error in certificate renewal check: %s", e)

    async def _renewal_loop(self) -> None:
        interval = self.config.check_interval.total_seconds()
        logger.info(
            "[TLS-RENEWAL] Certificate renewal task started (checking every %s seconds)",
            interval,
        )
        while True:
            await asyncio.sleep(interval)
            await self._checked_renewal()

    async def close(self) -> None:
        """Stop scheduled checks and release challenge resources."""
        for task in (self._timer_task, self._background_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._timer_task = None
        self._background_task = None
        if isinstance(self.responder, HttpChallengeResponder):
            await self.responder.close()
        logger.info("[TLS-RENEWAL] Certificate renewal manager stopped")


class ManualCertificateProvider:
    """Serves operator-supplied key and certificate files."""

    mode = "manual"

    def __init__(self, key_file: Path, cert_file: Path, store: Optional[CertificateStore] = None):
        self.store = store or CertificateStore(Path(key_file), Path(cert_file))
        self.state = ManagerState.UNINITIALIZED
        self.material: Optional[CertificateMaterial] = None
        self.last_renewal_attempt: Optional[datetime] = None
        self.last_renewal_error: Optional[str] = None
        self.is_renewing = False

        self._notify: Optional[Notify] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._watch_task: Optional[asyncio.Task] = None

    async def init(self, notify: Notify) -> None:
        """
        Publish the operator's pair and start following changes to it.

        Raises:
            StoreError: the files are missing or do not form a matching pair
        """
        self._notify = notify
        material = await asyncio.to_thread(self.store.load)
        if material is None:
            raise StoreError(
                "Manual certificate files are missing or do not match",
                str(self.store.cert_path),
            )

        logger.info("[TLS-STORAGE] Using existing SSL certs from %s", self.store.cert_path)
        self.material = material
        self.state = ManagerState.SERVING
        notify(material)

        self._stop_event = asyncio.Event()
        self._watch_task = asyncio.create_task(
            self.store.watch(self._on_change, stop_event=self._stop_event, last=material)
        )
        self._watch_task.add_done_callback(self._on_watch_done)

    def _on_change(self, material: CertificateMaterial) -> None:
        self.material = material
        self._notify(material)

    def _on_watch_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("[TLS-STORAGE] Certificate file watch stopped: %s", error)

    async def close(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            # Failures are logged by the done callback, not raised here
            await asyncio.wait([task])


def create_certificate_provider(
    settings: NodeTLSSettings,
    switcher: TLSContextSwitcher,
    hostnames: Optional[list[str]] = None,
) -> CertificateProvider:
    """
    Build the provider selected by the settings' mode.

    Raises:
        ConfigError: the settings are incomplete for the selected mode
    """
    if settings.mode == "manual":
        if not settings.is_configured_for_manual():
            raise ConfigError("cert_file and key_file must be set for manual certificate mode")
        return ManualCertificateProvider(Path(settings.key_file), Path(settings.cert_file))

    config = settings.to_manager_config(
        hostnames or settings.hostnames,
        add_alpn_challenge=switcher.install,
        remove_alpn_challenge=switcher.remove,
    )
    return CertificateLifecycleManager(config)
