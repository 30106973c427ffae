"""
Unit tests for the certificate store.
Tests atomic save/load of the key/certificate pair and the manual-mode watcher.
"""
import asyncio
import os
import stat
from datetime import timedelta
from unittest.mock import patch

import pytest

from tests.certs import make_key, make_material
from tls_lifecycle.errors import StoreError
from tls_lifecycle.storage import CertificateMaterial, CertificateStore


@pytest.fixture
def store(tmp_path):
    return CertificateStore(tmp_path / "ssl" / "key.pem", tmp_path / "ssl" / "cert.pem")


class TestCertificateMaterial:
    """Tests for CertificateMaterial construction."""

    def test_reads_expiry_from_leaf(self):
        """not_after comes from the first certificate of the chain."""
        material = make_material(days_left=20)
        assert timedelta(days=19) < material.remaining() <= timedelta(days=20)
        assert material.days_until_expiry() in (19, 20)

    def test_rejects_mismatched_pair(self):
        """A key that does not belong to the leaf is rejected."""
        material = make_material(days_left=20)
        other = make_material(days_left=20)
        with pytest.raises(ValueError):
            CertificateMaterial.from_pems(other.private_key_pem, material.certificate_chain_pem)

    def test_rejects_chain_without_certificate(self):
        """A chain with no PEM certificate is rejected."""
        material = make_material(days_left=20)
        with pytest.raises(ValueError):
            CertificateMaterial.from_pems(material.private_key_pem, "not a certificate")

    def test_accepts_bytes(self):
        """PEMs may be given as bytes."""
        material = make_material(days_left=20)
        again = CertificateMaterial.from_pems(
            material.private_key_pem.encode(), material.certificate_chain_pem.encode()
        )
        assert again == material


class TestLoadSave:
    """Tests for CertificateStore.load() and save()."""

    def test_round_trip_is_byte_identical(self, store):
        """save() followed by load() returns an identical value."""
        material = make_material(days_left=30)
        store.save(material)

        loaded = store.load()

        assert loaded == material
        assert store.key_path.read_text() == material.private_key_pem
        assert store.cert_path.read_text() == material.certificate_chain_pem

    def test_load_returns_none_when_nothing_stored(self, store):
        """No files means no material."""
        assert store.load() is None
        assert store.has_certificate() is False

    def test_load_returns_none_when_cert_missing(self, store):
        """A key alone is never returned as a half pair."""
        store.save(make_material(days_left=30))
        store.cert_path.unlink()
        assert store.load() is None

    def test_load_returns_none_when_key_missing(self, store):
        """A certificate alone is never returned as a half pair."""
        store.save(make_material(days_left=30))
        store.key_path.unlink()
        assert store.load() is None

    def test_load_returns_none_for_mismatched_files(self, store):
        """Key from one pair and cert from another is rejected."""
        first = make_material(days_left=30)
        second = make_material(days_left=30)
        store.save(first)
        store.cert_path.write_text(second.certificate_chain_pem)
        assert store.load() is None

    def test_load_returns_none_for_garbage(self, store):
        """Corrupt files are treated as absent."""
        store.ensure_directory()
        store.key_path.write_text("garbage")
        store.cert_path.write_text("garbage")
        assert store.load() is None

    def test_load_private_key_alone(self, store):
        """The key can be read without a certificate, for reuse."""
        material = make_material(days_left=30)
        store.save(material)
        store.cert_path.unlink()
        assert store.load_private_key() == material.private_key_pem

    def test_load_private_key_missing(self, store):
        assert store.load_private_key() is None

    def test_save_restricts_key_permissions(self, store):
        """The private key is only readable by the owner."""
        store.save(make_material(days_left=30))
        assert stat.S_IMODE(os.stat(store.key_path).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(store.cert_path).st_mode) == 0o640

    def test_save_leaves_no_temp_files(self, store):
        """Only the two target files remain after a save."""
        store.save(make_material(days_left=30))
        assert sorted(p.name for p in store.key_path.parent.iterdir()) == ["cert.pem", "key.pem"]

    def test_failed_save_keeps_previous_pair(self, store):
        """A write failure raises StoreError and leaves the old pair intact."""
        original = make_material(days_left=10)
        store.save(original)

        with patch("tls_lifecycle.storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StoreError):
                store.save(make_material(days_left=90))

        assert store.load() == original
        assert sorted(p.name for p in store.key_path.parent.iterdir()) == ["cert.pem", "key.pem"]


def _fake_awatch(steps):
    """Build an awatch replacement that runs each step before yielding a change."""

    def fake(*paths, watch_filter=None, stop_event=None):
        async def gen():
            for step in steps:
                step()
                yield {("modified", "changed")}
        return gen()

    return fake


class TestWatch:
    """Tests for CertificateStore.watch() in manual certificate mode."""

    @pytest.mark.asyncio
    async def test_two_step_rotation_notifies_consistent_pair_only(self, store):
        """Replacing key then cert notifies once, with the new matching pair."""
        old = make_material(days_left=30)
        store.save(old)
        new_key = make_key()
        new = make_material(days_left=90, key=new_key)

        steps = [
            lambda: store.key_path.write_text(new.private_key_pem),
            lambda: store.cert_path.write_text(new.certificate_chain_pem),
        ]
        notified = []

        with patch("tls_lifecycle.storage.awatch", _fake_awatch(steps)), \
             patch("tls_lifecycle.storage.WATCH_RETRY_DELAY", 0):
            await store.watch(notified.append, last=old)

        assert notified == [new]

    @pytest.mark.asyncio
    async def test_unchanged_pair_is_not_renotified(self, store):
        """A change event that leaves the pair as it was is ignored."""
        current = make_material(days_left=30)
        store.save(current)
        notified = []

        with patch("tls_lifecycle.storage.awatch", _fake_awatch([lambda: None])):
            await store.watch(notified.append, last=current)

        assert notified == []

    @pytest.mark.asyncio
    async def test_unreadable_files_are_not_fatal(self, store):
        """A missing file during rotation is logged and the watch continues."""
        current = make_material(days_left=30)
        store.save(current)
        replacement = make_material(days_left=60)
        notified = []

        def restore():
            store.save(replacement)

        steps = [store.cert_path.unlink, restore]
        with patch("tls_lifecycle.storage.awatch", _fake_awatch(steps)), \
             patch("tls_lifecycle.storage.WATCH_RETRY_DELAY", 0):
            await store.watch(notified.append, last=current)

        assert notified == [replacement]

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_watch(self, store):
        """An exception from the callback is logged, later changes still arrive."""
        store.save(make_material(days_left=30))
        first = make_material(days_left=60)
        second = make_material(days_left=90)
        seen = []

        def notify(material):
            seen.append(material)
            if len(seen) == 1:
                raise RuntimeError("server refused credentials")

        steps = [lambda: store.save(first), lambda: store.save(second)]
        with patch("tls_lifecycle.storage.awatch", _fake_awatch(steps)):
            await store.watch(notify)

        assert seen == [first, second]

    @pytest.mark.asyncio
    async def test_watch_stops_on_event(self, store):
        """The real watcher returns once the stop event is set."""
        store.save(make_material(days_left=30))
        stop = asyncio.Event()
        task = asyncio.create_task(store.watch(lambda m: None, stop_event=stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

    def test_watched_paths_keep_symlink_names(self, tmp_path):
        """Symlinked files are matched by their configured path and their target."""
        archive = tmp_path / "archive"
        live = tmp_path / "live"
        archive.mkdir()
        live.mkdir()
        (archive / "key1.pem").write_text("key")
        (live / "key.pem").symlink_to(archive / "key1.pem")
        store = CertificateStore(live / "key.pem", live / "cert.pem")

        watched = store._watched_paths()

        assert live / "key.pem" in watched
        assert (archive / "key1.pem").resolve() in watched
        assert live / "cert.pem" in watched

    @pytest.mark.asyncio
    async def test_symlink_rotation_is_reported(self, tmp_path):
        """Re-pointing live symlinks at a new archive pair publishes that pair."""
        archive = tmp_path / "archive"
        live = tmp_path / "live"
        archive.mkdir()
        live.mkdir()
        old = make_material(days_left=5)
        new = make_material(days_left=90)
        (archive / "key1.pem").write_text(old.private_key_pem)
        (archive / "cert1.pem").write_text(old.certificate_chain_pem)
        (live / "key.pem").symlink_to(archive / "key1.pem")
        (live / "cert.pem").symlink_to(archive / "cert1.pem")
        store = CertificateStore(live / "key.pem", live / "cert.pem")

        seen = []
        stop = asyncio.Event()
        task = asyncio.create_task(store.watch(seen.append, stop_event=stop, last=old))
        try:
            await asyncio.sleep(0.5)

            (archive / "key2.pem").write_text(new.private_key_pem)
            (archive / "cert2.pem").write_text(new.certificate_chain_pem)
            for name, target in (("key.pem", "key2.pem"), ("cert.pem", "cert2.pem")):
                staging = live / f".{name}.new"
                os.symlink(archive / target, staging)
                os.replace(staging, live / name)

            for _ in range(200):
                if seen:
                    break
                await asyncio.sleep(0.05)

            assert seen == [new]
        finally:
            stop.set()
            await asyncio.wait_for(task, timeout=5)
