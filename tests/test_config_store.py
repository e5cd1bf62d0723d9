"""Tests for the config store and passphrase vault."""

import json
import os
import stat

import pytest

from certops.core.exceptions import PassphraseUnavailableError, StorageError
from certops.services.config_store import ConfigStore
from certops.services.passphrase_vault import PassphraseVault


class TestConfigStore:
    """Test suite for the JSON configuration document."""

    @pytest.fixture
    def path(self, tmp_path):
        return str(tmp_path / "cert-config.json")

    @pytest.fixture
    async def store(self, path):
        store = ConfigStore(path)
        await store.load()
        return store

    @pytest.mark.asyncio
    async def test_missing_file_uses_defaults(self, store, path):
        """Test a missing document yields defaults without creating the file."""
        defaults = await store.get_global_defaults()

        assert defaults.renewal_schedule == "0 0 * * *"
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_update_is_persisted_camel_case(self, store, path):
        """Test updates are written as camelCase JSON with mode 0600."""
        await store.update_certificate_config("ab:cd", {"name": "API", "renewDaysBeforeExpiry": 10})

        with open(path) as f:
            raw = json.load(f)
        assert raw["certificates"]["ABCD"] == {
            "name": "API",
            "renewDaysBeforeExpiry": 10,
            "deployActions": [],
            "hasStoredPassphrase": False,
        }
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_load_rekeys_fingerprints(self, path):
        """Test entries stored under non-canonical keys are found."""
        with open(path, "w") as f:
            json.dump({"certificates": {"ab:cd:ef": {"name": "legacy"}}}, f)
        store = ConfigStore(path)
        await store.load()

        config = await store.get_certificate_config("ABCDEF")

        assert config.name == "legacy"

    @pytest.mark.asyncio
    async def test_invalid_json(self, path):
        """Test an unparsable document raises StorageError."""
        with open(path, "w") as f:
            f.write("{not json")

        with pytest.raises(StorageError):
            await ConfigStore(path).load()

    @pytest.mark.asyncio
    async def test_failed_mutation_leaves_document(self, store):
        """Test an invalid patch leaves the in-memory document unchanged."""
        with pytest.raises(ValueError):
            await store.update_global_defaults({"renewalSchedule": "whenever"})

        assert (await store.get_global_defaults()).renewal_schedule == "0 0 * * *"

    @pytest.mark.asyncio
    async def test_failed_write_keeps_file_and_document(self, store, path, monkeypatch):
        """Test a failing rename leaves the old file and the in-memory document."""
        await store.update_global_defaults({"renewalSchedule": "0 3 * * *"})
        with open(path, "rb") as f:
            before = f.read()

        def failing_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("certops.core.storage.os.replace", failing_replace)
        with pytest.raises(StorageError):
            await store.update_global_defaults({"renewalSchedule": "0 4 * * *"})

        with open(path, "rb") as f:
            assert f.read() == before
        assert json.loads(before)["globalDefaults"]["renewalSchedule"] == "0 3 * * *"
        assert (await store.get_global_defaults()).renewal_schedule == "0 3 * * *"
        assert [p for p in os.listdir(os.path.dirname(path)) if p.endswith(".tmp")] == []

    @pytest.mark.asyncio
    async def test_move_and_remove(self, store):
        """Test re-keying and removing an entry."""
        await store.update_certificate_config("AA", {"name": "old"})
        await store.move_certificate_config("AA", "bb")

        assert await store.get_certificate_config("AA") is None
        assert (await store.get_certificate_config("BB")).name == "old"
        assert await store.remove_certificate_config("bb")
        assert await store.get_certificate_config("BB") is None

    @pytest.mark.asyncio
    async def test_survives_reload(self, store, path):
        await store.update_global_defaults({"renewalSchedule": "0 3 * * 1", "enableCertificateBackups": False})

        reloaded = ConfigStore(path)
        await reloaded.load()
        defaults = await reloaded.get_global_defaults()

        assert defaults.renewal_schedule == "0 3 * * 1"
        assert defaults.enable_certificate_backups is False


class TestPassphraseVault:
    """Test suite for encrypted CA passphrases."""

    @pytest.fixture
    async def store(self, tmp_path):
        store = ConfigStore(str(tmp_path / "cert-config.json"))
        await store.load()
        return store

    @pytest.fixture
    def key_file(self, tmp_path):
        return str(tmp_path / ".encryption-key")

    @pytest.fixture
    def vault(self, key_file, store):
        return PassphraseVault(key_file, store)

    def test_encrypt_decrypt(self, vault, key_file):
        """Test AES-256-CBC round trip and key file creation."""
        ciphertext, iv = vault.encrypt("correct horse")

        assert len(bytes.fromhex(iv)) == 16
        assert len(bytes.fromhex(ciphertext)) % 16 == 0
        assert vault.decrypt(ciphertext, iv) == "correct horse"
        assert os.path.getsize(key_file) == 32
        assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o600

    def test_fresh_iv_per_encryption(self, vault):
        first = vault.encrypt("same")
        second = vault.encrypt("same")

        assert first[1] != second[1]
        assert first[0] != second[0]

    @pytest.mark.asyncio
    async def test_store_and_get(self, vault, store, key_file):
        """Test stored passphrases survive a new vault instance."""
        await vault.store("aa:bb", "s3cret")

        config = await store.get_certificate_config("AABB")
        assert config.has_stored_passphrase
        assert "s3cret" not in config.encrypted_passphrase

        fresh = PassphraseVault(key_file, store)
        assert await fresh.has("AABB")
        assert await fresh.get("AABB") == "s3cret"

    @pytest.mark.asyncio
    async def test_get_without_passphrase(self, vault):
        assert await vault.get("CC") is None
        assert not await vault.has("CC")

    @pytest.mark.asyncio
    async def test_missing_key_file(self, vault, store, key_file):
        """Test a deleted key file makes stored passphrases unavailable."""
        await vault.store("AA", "s3cret")
        os.remove(key_file)

        fresh = PassphraseVault(key_file, store)
        with pytest.raises(PassphraseUnavailableError):
            await fresh.get("AA")

    @pytest.mark.asyncio
    async def test_corrupt_key_file(self, key_file, store):
        """Test a key file of the wrong size is rejected at startup."""
        with open(key_file, "wb") as f:
            f.write(b"short")

        with pytest.raises(StorageError):
            PassphraseVault(key_file, store).check_key_file()

    @pytest.mark.asyncio
    async def test_delete(self, vault, store):
        await vault.store("AA", "s3cret")
        await vault.delete("AA")

        config = await store.get_certificate_config("AA")
        assert not config.has_stored_passphrase
        assert config.encrypted_passphrase is None
        assert await vault.get("AA") is None
