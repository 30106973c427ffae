"""
Certificate storage and validation.

Keeps the node's {private key, certificate chain} pair on disk, replacing each
file atomically, and validates that a key and chain belong together before
anything reads them as a pair. In manual certificate mode it also watches the
operator's files for external rotation.
"""
import asyncio
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from watchfiles import awatch

from .errors import StoreError


logger = logging.getLogger(__name__)

PEM_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"

# Manual-mode watcher retries while the operator is mid-replace
WATCH_READ_ATTEMPTS = 3
WATCH_RETRY_DELAY = 0.5


@dataclass(frozen=True)
class CertificateMaterial:
    """An immutable private key / certificate chain pair."""

    private_key_pem: str
    certificate_chain_pem: str
    not_after: datetime

    @classmethod
    def from_pems(
        cls,
        private_key_pem: str | bytes,
        certificate_chain_pem: str | bytes,
    ) -> "CertificateMaterial":
        """
        Build material from PEM text, checking that key and leaf match.

        Raises:
            ValueError: if either PEM is unparseable or they do not match
        """
        if isinstance(private_key_pem, bytes):
            private_key_pem = private_key_pem.decode("utf-8")
        if isinstance(certificate_chain_pem, bytes):
            certificate_chain_pem = certificate_chain_pem.decode("utf-8")

        leaf = load_leaf_certificate(certificate_chain_pem.encode("utf-8"))
        key = serialization.load_pem_private_key(
            private_key_pem.encode("utf-8"), password=None
        )
        if not public_keys_match(leaf.public_key(), key.public_key()):
            raise ValueError("Private key does not match certificate")

        return cls(
            private_key_pem=private_key_pem,
            certificate_chain_pem=certificate_chain_pem,
            not_after=leaf.not_valid_after_utc,
        )

    def remaining(self, now: Optional[datetime] = None) -> timedelta:
        """Time left until the leaf certificate expires."""
        now = now or datetime.now(timezone.utc)
        return self.not_after - now

    def days_until_expiry(self) -> int:
        return max(0, self.remaining().days)


def load_leaf_certificate(chain_pem: bytes) -> x509.Certificate:
    """Parse the first certificate of a PEM chain (leaf first)."""
    if PEM_CERT_MARKER not in chain_pem:
        raise ValueError("No PEM certificate found in chain")
    return x509.load_pem_x509_certificate(chain_pem)


def public_keys_match(a, b) -> bool:
    """Compare two public keys by their SubjectPublicKeyInfo encoding."""
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    return (
        a.public_bytes(serialization.Encoding.DER, fmt)
        == b.public_bytes(serialization.Encoding.DER, fmt)
    )


def _atomic_write(path: Path, data: bytes, mode: int) -> None:
    """Write to a temp file beside the target, fsync, then rename over it."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class CertificateStore:
    """Reads and writes the key/certificate pair on disk."""

    def __init__(self, key_path: Path, cert_path: Path):
        self.key_path = Path(key_path)
        self.cert_path = Path(cert_path)
        self._lock = threading.Lock()

    def ensure_directory(self) -> None:
        """Ensure the directories holding the pair exist."""
        for directory in {self.key_path.parent, self.cert_path.parent}:
            try:
                if not directory.exists():
                    directory.mkdir(parents=True, exist_ok=True)
                    os.chmod(directory, 0o700)
            except OSError as e:
                raise StoreError(f"Cannot create TLS directory: {e}", str(directory)) from e

    def has_certificate(self) -> bool:
        """Check if both files exist."""
        return self.cert_path.exists() and self.key_path.exists()

    def _read_pair(self) -> tuple[bytes, bytes]:
        with self._lock:
            key_pem = self.key_path.read_bytes()
            cert_pem = self.cert_path.read_bytes()
        return key_pem, cert_pem

    def load(self) -> Optional[CertificateMaterial]:
        """
        Load the stored pair.

        Returns:
            The material, or None if either file is missing, unreadable or
            the two files do not form a matching pair
        """
        try:
            key_pem, cert_pem = self._read_pair()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("[TLS-STORAGE] Failed to read certificate files: %s", e)
            return None

        try:
            return CertificateMaterial.from_pems(key_pem, cert_pem)
        except ValueError as e:
            logger.warning("[TLS-STORAGE] Stored certificate pair is not usable: %s", e)
            return None

    def load_private_key(self) -> Optional[str]:
        """Load the stored private key alone, for reuse in a new CSR."""
        try:
            with self._lock:
                key_pem = self.key_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("[TLS-STORAGE] Failed to read private key: %s", e)
            return None

        try:
            serialization.load_pem_private_key(key_pem, password=None)
        except ValueError as e:
            logger.warning("[TLS-STORAGE] Stored private key is not usable: %s", e)
            return None
        return key_pem.decode("utf-8")

    def save(self, material: CertificateMaterial) -> None:
        """
        Persist a pair.

        The key is replaced first. A crash between the two replaces leaves a
        pair that load() rejects as mismatched, never one it returns.

        Raises:
            StoreError: if either file cannot be written
        """
        self.ensure_directory()
        with self._lock:
            try:
                _atomic_write(self.key_path, material.private_key_pem.encode("utf-8"), 0o600)
                _atomic_write(
                    self.cert_path, material.certificate_chain_pem.encode("utf-8"), 0o640
                )
            except OSError as e:
                raise StoreError(f"Failed to save certificate: {e}") from e
        logger.info("[TLS-STORAGE] Key & certificate written to %s", self.cert_path.parent)

    async def _read_consistent_pair(self) -> Optional[CertificateMaterial]:
        for attempt in range(1, WATCH_READ_ATTEMPTS + 1):
            try:
                key_pem, cert_pem = await asyncio.to_thread(self._read_pair)
                return CertificateMaterial.from_pems(key_pem, cert_pem)
            except (OSError, ValueError) as e:
                logger.debug(
                    "[TLS-STORAGE] Certificate pair not readable yet (attempt %s/%s): %s",
                    attempt, WATCH_READ_ATTEMPTS, e,
                )
                if attempt < WATCH_READ_ATTEMPTS:
                    await asyncio.sleep(WATCH_RETRY_DELAY)
        return None

    def _watched_paths(self) -> set[Path]:
        """Configured paths plus the files they currently resolve to."""
        configured = {self.key_path.absolute(), self.cert_path.absolute()}
        return configured | {p.resolve() for p in configured}

    async def watch(
        self,
        notify: Callable[[CertificateMaterial], None],
        stop_event: Optional[asyncio.Event] = None,
        last: Optional[CertificateMaterial] = None,
    ) -> None:
        """
        Watch the key and certificate files and report rotated pairs.

        Every change event to either file re-reads both. ``notify`` is only
        called for a self-consistent pair that differs from the last one
        reported, so replacing the key and the certificate in two separate
        writes never publishes a mismatched combination.

        Args:
            notify: Called with each new consistent pair
            stop_event: Ends the watch when set
            last: The pair already in use, to suppress a duplicate notify
        """
        watched = self._watched_paths()
        directories = {str(p.parent) for p in watched}

        logger.info(
            "[TLS-STORAGE] Watching %s and %s for changes", self.key_path, self.cert_path
        )

        # Atomic replaces swap the inode and a re-pointed symlink no longer
        # resolves to the old target, so match event paths as reported
        async for changes in awatch(
            *directories,
            watch_filter=lambda _change, path: Path(path) in watched,
            stop_event=stop_event,
        ):
            logger.debug("[TLS-STORAGE] File change events: %s", changes)
            watched |= self._watched_paths()
            material = await self._read_consistent_pair()
            if material is None:
                logger.warning(
                    "[TLS-STORAGE] Certificate files changed but do not form a valid pair yet"
                )
                continue
            if material == last:
                continue

            last = material
            logger.info(
                "[TLS-STORAGE] Certificate files rotated, new certificate expires %s",
                material.not_after.isoformat(),
            )
            try:
                notify(material)
            except Exception as e:
                logger.error("[TLS-STORAGE] Certificate change callback failed: %s", e)
