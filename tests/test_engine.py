"""End-to-end tests for the certificate lifecycle engine."""

import json
import os

import pytest
from cryptography.hazmat.primitives import serialization

from certops.core.exceptions import (
    ConflictError,
    KeyMismatchError,
    ParseError,
    PassphraseUnavailableError,
    StorageError,
)
from certops.engine import Engine
from certops.models.certificate import Encoding, KeyType


class TestCertificateAuthorities:
    """Test CA creation and passphrase handling."""

    @pytest.mark.asyncio
    async def test_self_signed_root(self, engine, settings, clock):
        """Test an RSA-4096 root CA with an encrypted key."""
        root = await engine.create_root_ca(
            "CN=Test Root,O=Acme", days=3650, key_algorithm=KeyType.RSA, key_size=4096, passphrase="root-pass"
        )

        assert root.is_root_ca
        assert root.is_ca
        assert root.signed_by is None
        assert "keyCertSign" in root.key_usage
        assert root.key_type == KeyType.RSA
        assert root.key_size == 4096
        assert root.name == "Test Root"
        assert root.cert_path == os.path.join(settings.certs_dir, "Test_Root.crt")
        assert root.has_stored_passphrase
        assert await engine.has_ca_passphrase(root.fingerprint)
        with open(root.key_path, "rb") as f:
            assert b"ENCRYPTED" in f.read()
        assert oct(os.stat(root.key_path).st_mode & 0o777) == oct(0o600)

        await engine.stop()
        async with Engine(settings, clock=clock) as restarted:
            reloaded = restarted.get_certificate(root.fingerprint)
            assert reloaded.is_root_ca
            assert reloaded.has_stored_passphrase
            # The stored passphrase still unlocks the key after a restart
            leaf = await restarted.issue_certificate(root.fingerprint, "after-restart.example.com", key_algorithm=KeyType.EC)
            assert leaf.signed_by == root.fingerprint

    @pytest.mark.asyncio
    async def test_root_defaults_from_global_validity(self, engine, clock):
        await engine.update_global_defaults({"caValidityPeriod": {"rootCA": 100}})

        root = await engine.create_root_ca("CN=Short Root", key_algorithm=KeyType.EC)

        assert (root.valid_to - clock.now).days == 100

    @pytest.mark.asyncio
    async def test_duplicate_name_conflicts(self, engine, root_ca):
        with pytest.raises(ConflictError):
            await engine.create_root_ca("CN=Test Root", key_algorithm=KeyType.EC)

    @pytest.mark.asyncio
    async def test_intermediate_chain(self, engine, root_ca):
        """Test an intermediate CA and a leaf below it carry the full chain."""
        intermediate = await engine.create_intermediate_ca(
            root_ca.fingerprint, "CN=Issuing CA,O=Acme", key_algorithm=KeyType.EC
        )
        leaf = await engine.issue_certificate(intermediate.fingerprint, "deep.example.com", key_algorithm=KeyType.EC)

        assert intermediate.is_ca
        assert not intermediate.is_root_ca
        assert intermediate.path_len_constraint == 0
        assert intermediate.signed_by == root_ca.fingerprint
        assert engine.get_certificate(root_ca.fingerprint).signs == [intermediate.fingerprint]
        chain = engine.crypto.load_certificates(open(leaf.chain_path, "rb").read())
        assert [engine.crypto.fingerprint(c) for c in chain] == [intermediate.fingerprint, root_ca.fingerprint]

    @pytest.mark.asyncio
    async def test_set_passphrase_is_verified(self, engine):
        root = await engine.create_root_ca("CN=Locked", key_algorithm=KeyType.EC, passphrase="right")
        await engine.clear_ca_passphrase(root.fingerprint)
        assert not await engine.has_ca_passphrase(root.fingerprint)

        with pytest.raises(PassphraseUnavailableError):
            await engine.set_ca_passphrase(root.fingerprint, "wrong")
        await engine.set_ca_passphrase(root.fingerprint, "right")

        assert await engine.has_ca_passphrase(root.fingerprint)
        assert engine.get_certificate(root.fingerprint).has_stored_passphrase

    @pytest.mark.asyncio
    async def test_non_ca_cannot_sign(self, engine, leaf):
        with pytest.raises(ValueError):
            await engine.issue_certificate(leaf.fingerprint, "nope.example.com", key_algorithm=KeyType.EC)


class TestIssuance:
    """Test issuing and signing certificates."""

    @pytest.mark.asyncio
    async def test_ca_signs_leaf(self, engine, root_ca, leaf, clock):
        """Test the issued leaf's facts and files."""
        assert leaf.issuer_cn == "Test Root"
        assert leaf.sans.domains == ["api.example.com"]
        assert leaf.sans.ips == ["10.0.0.5"]
        assert not leaf.is_ca
        assert leaf.signed_by == root_ca.fingerprint
        assert (leaf.valid_to - leaf.valid_from).days == 90
        assert os.path.basename(leaf.key_path) == "api.example.com.key"
        with open(leaf.key_path, "rb") as f:
            key = engine.crypto.load_private_key(f.read())
        with open(leaf.cert_path, "rb") as f:
            assert engine.crypto.validate_key_pair(f.read(), key)

        activity = (await engine.get_activities(limit=1))[0]
        assert activity.type == "certificate"
        assert activity.data["action"] == "create"
        assert activity.data["issuer"] == root_ca.fingerprint

    @pytest.mark.asyncio
    async def test_sign_external_csr(self, engine, root_ca):
        """Test signing a CSR whose key never reaches the engine."""
        key = engine.crypto.generate_private_key(KeyType.EC, 256)
        csr = engine.crypto.create_csr("CN=device-42", key, ["device-42.iot.example.com"])
        pem = csr.public_bytes(serialization.Encoding.PEM)

        cert = await engine.sign_csr(root_ca.fingerprint, pem, days=30)

        assert cert.common_name == "device-42"
        assert "device-42.iot.example.com" in cert.sans.domains
        assert cert.key_path is None
        assert cert.signed_by == root_ca.fingerprint

    @pytest.mark.asyncio
    async def test_sign_invalid_csr(self, engine, root_ca):
        with pytest.raises(ParseError):
            await engine.sign_csr(root_ca.fingerprint, b"garbage")


class TestImportExport:
    """Test importing and exporting certificate material."""

    @pytest.mark.asyncio
    async def test_import_pem_with_key(self, engine, crypto):
        key = crypto.generate_private_key(KeyType.EC, 256)
        cert = crypto.create_self_signed("CN=Imported CA", key, 365)

        imported = await engine.import_certificate(
            crypto.encode_certificate(cert), key_data=crypto.serialize_private_key(key, "pw"), passphrase="pw"
        )
        again = await engine.import_certificate(crypto.encode_certificate(cert, Encoding.DER))

        assert imported.fingerprint == crypto.fingerprint(cert)
        assert imported.cert_path.endswith("Imported_CA.crt")
        assert imported.key_path.endswith("Imported_CA.key")
        assert imported.has_stored_passphrase
        assert again.fingerprint == imported.fingerprint
        assert len(engine.list_certificates()) == 1

    @pytest.mark.asyncio
    async def test_import_mismatched_key(self, engine, crypto):
        cert = crypto.create_self_signed("CN=Mismatch", crypto.generate_private_key(KeyType.EC, 256), 30)
        other = crypto.generate_private_key(KeyType.EC, 256)

        with pytest.raises(KeyMismatchError):
            await engine.import_certificate(crypto.encode_certificate(cert), key_data=crypto.serialize_private_key(other))
        assert engine.list_certificates() == []

    @pytest.mark.asyncio
    async def test_import_garbage(self, engine):
        with pytest.raises(ParseError):
            await engine.import_certificate(b"definitely not a certificate")

    @pytest.mark.asyncio
    async def test_p12_round_trip(self, engine, root_ca, leaf):
        """Test exportP12 then importP12 yields the same certificates."""
        data = await engine.export_p12(leaf.fingerprint, "bundle-pass", save=True)

        saved = engine.get_certificate(leaf.fingerprint)
        assert saved.p12_path.endswith("api.example.com.p12")
        assert os.path.exists(saved.p12_path)

        certificate, key, chain = engine.crypto.import_p12(data, "bundle-pass")
        assert engine.crypto.fingerprint(certificate) == leaf.fingerprint
        assert [engine.crypto.fingerprint(c) for c in chain] == [root_ca.fingerprint]
        with open(leaf.key_path, "rb") as f:
            original_key = engine.crypto.load_private_key(f.read())
        assert key.private_numbers() == original_key.private_numbers()

        with pytest.raises(PassphraseUnavailableError):
            await engine.import_p12(data, "wrong-pass")

    @pytest.mark.asyncio
    async def test_import_p12_registers_files(self, engine, crypto):
        root_key = crypto.generate_private_key(KeyType.EC, 256)
        root = crypto.create_self_signed("CN=Bundle Root", root_key, 365)
        key = crypto.generate_private_key(KeyType.EC, 256)
        cert = crypto.sign_csr(crypto.create_csr("CN=bundle.example.com", key), root, root_key, 30)
        data = crypto.export_p12(cert, key, [root], passphrase="pw")

        imported = await engine.import_p12(data, "pw")

        assert imported.fingerprint == crypto.fingerprint(cert)
        assert imported.p12_path.endswith("bundle.example.com.p12")
        assert imported.key_path.endswith("bundle.example.com.key")
        assert imported.chain_path.endswith("bundle.example.com.chain")
        # The chain file is a companion, not a registered certificate
        assert len(engine.list_certificates()) == 1

    @pytest.mark.asyncio
    async def test_p7_export_and_import(self, engine, crypto, root_ca, leaf):
        """Test PKCS#7 export carries the chain and import names collisions apart."""
        bundle = await engine.export_p7(leaf.fingerprint)
        assert {engine.crypto.fingerprint(c) for c in engine.crypto.import_p7(bundle)} == {
            leaf.fingerprint,
            root_ca.fingerprint,
        }

        other = crypto.create_self_signed("CN=Test Root", crypto.generate_private_key(KeyType.EC, 256), 30)
        existing, _ = crypto.load_certificate(open(root_ca.cert_path, "rb").read())
        imported = await engine.import_p7(crypto.export_p7([other, existing]))

        fingerprint = crypto.fingerprint(other)
        assert imported[0].name == f"Test Root-{fingerprint[:8].lower()}"
        assert imported[1].fingerprint == root_ca.fingerprint
        assert len(engine.list_certificates()) == 3


class TestEngineLifecycle:
    """Test startup, deletion and cross-component flows."""

    @pytest.mark.asyncio
    async def test_startup_activity(self, engine):
        activities = await engine.get_activities(activity_type="system")

        assert activities[0].data == {"action": "startup", "certificates": 0}

    @pytest.mark.asyncio
    async def test_delete_refused_then_cascade(self, engine, root_ca, leaf):
        """Test deleting a root that still signs a leaf."""
        with pytest.raises(ConflictError):
            await engine.delete_certificate(root_ca.fingerprint)

        removed = await engine.delete_certificate(root_ca.fingerprint, cascade=True, delete_files=True, user="ops")

        assert {c.fingerprint for c in removed} == {root_ca.fingerprint, leaf.fingerprint}
        assert engine.list_certificates() == []
        for path in (root_ca.cert_path, root_ca.key_path, leaf.cert_path, leaf.key_path, leaf.chain_path):
            assert not os.path.exists(path)
        deletes = await engine.get_activities(search="Certificate deleted")
        assert len(deletes) == 2
        assert all(a.user == "ops" for a in deletes)

    @pytest.mark.asyncio
    async def test_partial_deploy_failure(self, engine, leaf, tmp_path, transport_handler):
        """Test copy, failing command and webhook in one run."""
        out = tmp_path / "out.pem"
        await engine.add_deploy_action(leaf.fingerprint, {"type": "copy", "destination": str(out)})
        await engine.add_deploy_action(leaf.fingerprint, {"type": "command", "command": "/bin/false"})
        await engine.add_deploy_action(leaf.fingerprint, {"type": "webhook", "url": "https://hooks.internal/deploy"})

        result = await engine.deploy_certificate(leaf.fingerprint)

        assert result.executed == 3
        assert result.succeeded == 2
        assert [r.success for r in result.results] == [True, False, True]
        assert out.read_bytes() == open(leaf.cert_path, "rb").read()
        assert len(transport_handler.requests) == 1

    @pytest.mark.asyncio
    async def test_restart_keeps_state(self, engine, settings, clock, root_ca, leaf):
        """Test fingerprints, policy and deploy actions survive a restart."""
        await engine.update_certificate(leaf.fingerprint, {"name": "API", "renewDaysBeforeExpiry": 14})
        action = await engine.add_deploy_action(leaf.fingerprint, {"type": "command", "command": "true"})
        await engine.stop()

        async with Engine(settings, clock=clock) as restarted:
            certificates = {c.fingerprint: c for c in restarted.list_certificates()}
            assert set(certificates) == {root_ca.fingerprint, leaf.fingerprint}
            reloaded = certificates[leaf.fingerprint]
            assert reloaded.name == "API"
            assert reloaded.renew_days_before_expiry == 14
            assert [a.id for a in reloaded.deploy_actions] == [action.id]
            assert reloaded.signed_by == root_ca.fingerprint

    @pytest.mark.asyncio
    async def test_invalid_config_fails_startup(self, settings, clock):
        with open(settings.config_file, "w") as f:
            f.write("{\"globalDefaults\": ")

        with pytest.raises(StorageError):
            await Engine(settings, clock=clock).start()

    @pytest.mark.asyncio
    async def test_corrupt_encryption_key_fails_startup(self, settings, clock):
        with open(settings.encryption_key_file, "wb") as f:
            f.write(b"\x00" * 7)

        with pytest.raises(StorageError):
            await Engine(settings, clock=clock).start()

    @pytest.mark.asyncio
    async def test_config_document_is_camel_case(self, engine, settings, leaf):
        await engine.update_global_defaults({"renewDaysBeforeExpiry": 21}, user="ops")

        with open(settings.config_file) as f:
            document = json.load(f)

        assert document["globalDefaults"]["renewDaysBeforeExpiry"] == 21
        assert document["certificates"][leaf.fingerprint]["keyPath"] == leaf.key_path
        latest = (await engine.get_activities(limit=1))[0]
        assert latest.data == {"action": "config-update", "fields": ["renewDaysBeforeExpiry"], "user": "ops"}

    @pytest.mark.asyncio
    async def test_clear_activities(self, engine, leaf):
        await engine.clear_activities()

        assert await engine.get_activities() == []
