"""Tests for certificate discovery and the registry."""

import os

import pytest

from certops.core.exceptions import ConflictError, NotFoundError
from certops.engine import Engine
from certops.models.certificate import Encoding, KeyType
from certops.services.crypto_service import ca_extensions
from certops.services.discovery import (
    find_key_file,
    is_certificate_candidate,
    scan_certificate_files,
)
from certops.services.registry import RegistryEventKind


def write(path, data: bytes) -> str:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    return path


@pytest.fixture
def pki(crypto):
    """Root, intermediate and leaf certificates with their keys."""
    root_key = crypto.generate_private_key(KeyType.EC, 256)
    root = crypto.create_self_signed("CN=Disk Root", root_key, 3650)

    int_key = crypto.generate_private_key(KeyType.EC, 256)
    intermediate = crypto.sign_csr(
        crypto.create_csr("CN=Disk Intermediate", int_key), root, root_key, 1825, ca_extensions(0)
    )

    leaf_key = crypto.generate_private_key(KeyType.EC, 256)
    leaf = crypto.sign_csr(
        crypto.create_csr("CN=web.example.com", leaf_key, ["web.example.com"]), intermediate, int_key, 90
    )
    return {
        "root": (root, root_key),
        "intermediate": (intermediate, int_key),
        "leaf": (leaf, leaf_key),
    }


@pytest.fixture
def populated_dir(settings, crypto, pki):
    """Certificate directory laid out the way external tools leave it."""
    certs = settings.certs_dir
    root, root_key = pki["root"]
    intermediate, int_key = pki["intermediate"]
    leaf, leaf_key = pki["leaf"]

    write(os.path.join(certs, "root", "root.crt"), crypto.encode_certificate(root))
    write(os.path.join(certs, "root", "root.key"), crypto.serialize_private_key(root_key))
    write(os.path.join(certs, "intermediate.der"), crypto.encode_certificate(intermediate, Encoding.DER))
    write(os.path.join(certs, "web", "cert.pem"), crypto.encode_certificate(leaf))
    write(os.path.join(certs, "web", "privkey.pem"), crypto.serialize_private_key(leaf_key))
    write(os.path.join(certs, "web", "chain.pem"), crypto.encode_certificate(intermediate))
    write(os.path.join(certs, "web", "fullchain.pem"), crypto.encode_certificate(leaf) + crypto.encode_certificate(intermediate))
    # Noise the scan must ignore
    write(os.path.join(certs, "notes.pem"), b"not a certificate")
    write(os.path.join(certs, "web", "cert.pem.bak.20250101000000"), crypto.encode_certificate(leaf))
    write(os.path.join(certs, "backups", "old.crt"), crypto.encode_certificate(root))
    return certs


@pytest.fixture
async def disk_engine(settings, clock, populated_dir):
    engine = Engine(settings, clock=clock)
    await engine.start()
    yield engine
    await engine.stop()


class TestDiscovery:
    """Test which files are treated as certificates and companions."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("site.crt", True),
            ("site.pem", True),
            ("site.der", True),
            ("site.cer", True),
            ("site.key", False),
            ("site-key.pem", False),
            ("privkey.pem", False),
            ("chain.pem", False),
            ("fullchain.pem", False),
            ("site-chain.pem", False),
            ("site.crt.bak.20250101000000", False),
            (".hidden.crt", False),
            ("site.txt", False),
        ],
    )
    def test_is_certificate_candidate(self, name, expected):
        assert is_certificate_candidate(f"/certs/{name}") is expected

    def test_find_key_file_order(self, tmp_path):
        """Test <base>.key wins over directory-wide key names."""
        cert = write(str(tmp_path / "site.crt"), b"")
        write(str(tmp_path / "privkey.pem"), b"")
        assert find_key_file(cert) == str(tmp_path / "privkey.pem")

        write(str(tmp_path / "site.key"), b"")
        assert find_key_file(cert) == str(tmp_path / "site.key")

    def test_scan_is_sorted_and_skips_backups(self, populated_dir):
        found = [os.path.relpath(p, populated_dir) for p in scan_certificate_files(populated_dir)]

        assert found == [
            "intermediate.der",
            "notes.pem",
            os.path.join("root", "root.crt"),
            os.path.join("web", "cert.pem"),
        ]


class TestCertificateRegistry:
    """Test suite for the certificate registry."""

    @pytest.mark.asyncio
    async def test_load_scans_directory(self, disk_engine, crypto, pki):
        """Test all certificates are registered with companion files."""
        certificates = disk_engine.list_certificates()
        by_cn = {c.common_name: c for c in certificates}

        assert set(by_cn) == {"Disk Root", "Disk Intermediate", "web.example.com"}
        leaf = by_cn["web.example.com"]
        assert leaf.key_path.endswith(os.path.join("web", "privkey.pem"))
        assert leaf.chain_path.endswith(os.path.join("web", "chain.pem"))
        assert leaf.fullchain_path.endswith(os.path.join("web", "fullchain.pem"))
        assert by_cn["Disk Intermediate"].original_encoding == Encoding.DER
        assert by_cn["Disk Intermediate"].key_path is None
        assert leaf.fingerprint == crypto.fingerprint(pki["leaf"][0])

    @pytest.mark.asyncio
    async def test_issuer_graph(self, disk_engine):
        """Test signed_by and signs links follow AKI to SKI."""
        by_cn = {c.common_name: c for c in disk_engine.list_certificates()}
        root = by_cn["Disk Root"]
        intermediate = by_cn["Disk Intermediate"]
        leaf = by_cn["web.example.com"]

        assert root.signed_by is None
        assert root.signs == [intermediate.fingerprint]
        assert intermediate.signed_by == root.fingerprint
        assert intermediate.signs == [leaf.fingerprint]
        assert leaf.signed_by == intermediate.fingerprint
        assert leaf.signs == []
        assert disk_engine.registry.issuer_depth(leaf.fingerprint) == 2

    @pytest.mark.asyncio
    async def test_lookup_normalizes_fingerprint(self, disk_engine):
        cert = disk_engine.list_certificates()[0]
        colon = ":".join(cert.fingerprint[i:i + 2] for i in range(0, len(cert.fingerprint), 2)).lower()

        assert disk_engine.get_certificate(colon).fingerprint == cert.fingerprint
        with pytest.raises(NotFoundError):
            disk_engine.get_certificate("00" * 32)

    @pytest.mark.asyncio
    async def test_list_filters(self, disk_engine):
        """Test CA-only and expiring-within filters."""
        assert {c.common_name for c in disk_engine.list_certificates(ca_only=True)} == {
            "Disk Root",
            "Disk Intermediate",
        }
        assert [c.common_name for c in disk_engine.list_certificates(expiring_within=100)] == ["web.example.com"]

    @pytest.mark.asyncio
    async def test_duplicate_files_register_once(self, settings, clock, crypto, pki):
        root, _ = pki["root"]
        write(os.path.join(settings.certs_dir, "a.crt"), crypto.encode_certificate(root))
        write(os.path.join(settings.certs_dir, "b.crt"), crypto.encode_certificate(root))

        async with Engine(settings, clock=clock) as engine:
            certificates = engine.list_certificates()

        assert len(certificates) == 1
        assert certificates[0].cert_path.endswith("a.crt")

    @pytest.mark.asyncio
    async def test_update_persists_and_rejects_non_editable(self, disk_engine, settings, clock):
        """Test metadata updates persist across restarts."""
        leaf = next(c for c in disk_engine.list_certificates() if not c.is_ca)

        updated = await disk_engine.update_certificate(leaf.fingerprint, {"name": "Web", "autoRenew": False})
        assert updated.name == "Web"
        assert updated.auto_renew is False
        with pytest.raises(ValueError):
            await disk_engine.update_certificate(leaf.fingerprint, {"subject": "CN=evil"})

        async with Engine(settings, clock=clock) as engine:
            reloaded = engine.get_certificate(leaf.fingerprint)
        assert reloaded.name == "Web"
        assert reloaded.auto_renew is False

    @pytest.mark.asyncio
    async def test_delete_requires_cascade(self, disk_engine):
        """Test deleting an issuer without cascade is refused."""
        root = next(c for c in disk_engine.list_certificates() if c.is_root_ca)

        with pytest.raises(ConflictError):
            await disk_engine.delete_certificate(root.fingerprint)
        assert len(disk_engine.list_certificates()) == 3

    @pytest.mark.asyncio
    async def test_cascade_delete_keeps_files(self, disk_engine):
        """Test cascade removes descendants from the registry but not from disk."""
        root = next(c for c in disk_engine.list_certificates() if c.is_root_ca)

        removed = await disk_engine.delete_certificate(root.fingerprint, cascade=True)

        assert len(removed) == 3
        assert disk_engine.list_certificates() == []
        assert all(os.path.exists(c.cert_path) for c in removed)

    @pytest.mark.asyncio
    async def test_delete_files(self, disk_engine):
        """Test delete_files removes the certificate and its companions."""
        leaf = next(c for c in disk_engine.list_certificates() if not c.is_ca)

        await disk_engine.delete_certificate(leaf.fingerprint, delete_files=True)

        assert not os.path.exists(leaf.cert_path)
        assert not os.path.exists(leaf.key_path)
        intermediate = next(c for c in disk_engine.list_certificates() if c.common_name == "Disk Intermediate")
        assert intermediate.signs == []

    @pytest.mark.asyncio
    async def test_refresh_picks_up_new_file(self, disk_engine, crypto, settings):
        """Test a file dropped into the directory is registered."""
        events = []
        disk_engine.registry.subscribe(events.append)
        key = crypto.generate_private_key(KeyType.EC, 256)
        cert = crypto.create_self_signed("CN=Dropped", key, 30)
        path = write(os.path.join(settings.certs_dir, "dropped.crt"), crypto.encode_certificate(cert))

        await disk_engine.registry.refresh_file(path)

        assert disk_engine.registry.find_by_path(path).common_name == "Dropped"
        assert [e.kind for e in events] == [RegistryEventKind.ADDED]

    @pytest.mark.asyncio
    async def test_refresh_replaced_file_keeps_policy(self, disk_engine, crypto, pki, clock):
        """Test an externally replaced certificate keeps its stored policy."""
        leaf = next(c for c in disk_engine.list_certificates() if not c.is_ca)
        await disk_engine.update_certificate(leaf.fingerprint, {"name": "Web", "renewDaysBeforeExpiry": 7})
        intermediate, int_key = pki["intermediate"]
        existing, _ = pki["leaf"]
        clock.advance(days=1)
        replacement, data = crypto.renew(existing, intermediate, int_key)
        write(leaf.cert_path, data)

        await disk_engine.registry.refresh_file(leaf.cert_path)

        assert disk_engine.registry.find(leaf.fingerprint) is None
        current = disk_engine.get_certificate(crypto.fingerprint(replacement))
        assert current.name == "Web"
        assert current.renew_days_before_expiry == 7
        assert current.signed_by == leaf.signed_by

    @pytest.mark.asyncio
    async def test_refresh_removed_file(self, disk_engine):
        """Test a removed leaf is dropped while a removed issuer is kept."""
        leaf = next(c for c in disk_engine.list_certificates() if not c.is_ca)
        root = next(c for c in disk_engine.list_certificates() if c.is_root_ca)
        os.remove(leaf.cert_path)
        os.remove(root.cert_path)

        await disk_engine.registry.refresh_file(leaf.cert_path)
        await disk_engine.registry.refresh_file(root.cert_path)

        assert disk_engine.registry.find(leaf.fingerprint) is None
        assert disk_engine.registry.find(root.fingerprint) is not None
