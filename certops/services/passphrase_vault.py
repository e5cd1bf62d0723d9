"""
Passphrase Vault - AES-256-CBC encryption of CA key passphrases.

The 32-byte key lives in <config_dir>/.encryption-key (mode 0600). It is
created once and never rewritten; ciphertext and IV are stored as hex inside
the certificate's entry in the config store.
"""

import os
import secrets
from typing import Dict, Optional, Tuple

import structlog
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from certops.core.exceptions import PassphraseUnavailableError, StorageError
from certops.core.fingerprints import normalize_fingerprint
from certops.services.config_store import ConfigStore, find_certificate_key
from certops.schemas.config import ConfigDocument

logger = structlog.get_logger()

KEY_SIZE = 32
IV_SIZE = 16


class PassphraseVault:
    """Encrypted passphrase storage layered in front of the config store."""

    def __init__(self, key_file: str, config_store: ConfigStore):
        self.key_file = key_file
        self.config_store = config_store
        self._key: Optional[bytes] = None
        self._cache: Dict[str, str] = {}

    # Key file

    def _read_key(self) -> bytes:
        try:
            with open(self.key_file, "rb") as f:
                key = f.read()
        except OSError as e:
            raise StorageError(f"Encryption key file {self.key_file} cannot be read: {e}") from e
        if len(key) != KEY_SIZE:
            raise StorageError(f"Encryption key file {self.key_file} is corrupt")
        return key

    def check_key_file(self) -> None:
        """
        Load the key if the file exists.

        Raises:
            StorageError: If the file exists but is unreadable or corrupt
        """
        if os.path.exists(self.key_file):
            self._key = self._read_key()

    def ensure_key(self) -> bytes:
        """Return the key, creating the key file on first use."""
        if self._key is not None:
            return self._key
        try:
            fd = os.open(self.key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            self._key = self._read_key()
            return self._key
        except OSError as e:
            raise StorageError(f"Cannot create encryption key file {self.key_file}: {e}") from e

        key = secrets.token_bytes(KEY_SIZE)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
            f.flush()
            os.fsync(f.fileno())
        logger.info("Generated passphrase encryption key", path=self.key_file)
        self._key = key
        return key

    def _existing_key(self) -> bytes:
        if self._key is not None:
            return self._key
        if not os.path.exists(self.key_file):
            raise PassphraseUnavailableError("Encryption key file is missing")
        try:
            self._key = self._read_key()
        except StorageError as e:
            raise PassphraseUnavailableError(str(e)) from e
        return self._key

    # Cipher

    def encrypt(self, plaintext: str, iv: Optional[bytes] = None) -> Tuple[str, str]:
        """
        Encrypt with AES-256-CBC and PKCS7 padding.

        Returns:
            (ciphertext hex, iv hex)
        """
        key = self.ensure_key()
        iv = iv or secrets.token_bytes(IV_SIZE)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        data = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(data) + encryptor.finalize()
        return ciphertext.hex(), iv.hex()

    def decrypt(self, ciphertext_hex: str, iv_hex: str) -> str:
        """
        Raises:
            PassphraseUnavailableError: Missing key file, wrong key or corrupt data
        """
        key = self._existing_key()
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            data = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(data) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise PassphraseUnavailableError("Stored passphrase could not be decrypted") from e

    # Stored passphrases

    async def store(self, fingerprint: str, passphrase: str) -> None:
        fingerprint = normalize_fingerprint(fingerprint)
        encrypted, iv = self.encrypt(passphrase)
        await self.config_store.update_certificate_config(
            fingerprint,
            {
                "has_stored_passphrase": True,
                "encrypted_passphrase": encrypted,
                "passphrase_iv": iv,
            },
        )
        self._cache[fingerprint] = passphrase
        logger.info("Stored CA passphrase", fingerprint=fingerprint)

    async def get(self, fingerprint: str) -> Optional[str]:
        """Decrypted passphrase, or None when none is stored."""
        fingerprint = normalize_fingerprint(fingerprint)
        if fingerprint in self._cache:
            return self._cache[fingerprint]
        config = await self.config_store.get_certificate_config(fingerprint)
        if config is None or not config.has_stored_passphrase:
            return None
        if not config.encrypted_passphrase or not config.passphrase_iv:
            raise PassphraseUnavailableError("Stored passphrase record is incomplete")
        passphrase = self.decrypt(config.encrypted_passphrase, config.passphrase_iv)
        self._cache[fingerprint] = passphrase
        return passphrase

    async def has(self, fingerprint: str) -> bool:
        fingerprint = normalize_fingerprint(fingerprint)
        if fingerprint in self._cache:
            return True
        config = await self.config_store.get_certificate_config(fingerprint)
        return bool(config and config.has_stored_passphrase)

    async def delete(self, fingerprint: str) -> None:
        fingerprint = normalize_fingerprint(fingerprint)
        self._cache.pop(fingerprint, None)

        def apply(document: ConfigDocument) -> None:
            key = find_certificate_key(document, fingerprint)
            if key is None:
                return
            entry = document.certificates[key]
            entry.has_stored_passphrase = False
            entry.encrypted_passphrase = None
            entry.passphrase_iv = None

        await self.config_store.mutate(apply)
        logger.info("Deleted CA passphrase", fingerprint=fingerprint)

    def rename(self, old_fingerprint: str, new_fingerprint: str) -> None:
        """Move the cached passphrase after a fingerprint change."""
        old = normalize_fingerprint(old_fingerprint)
        if old in self._cache:
            self._cache[normalize_fingerprint(new_fingerprint)] = self._cache.pop(old)

    def forget(self, fingerprint: str) -> None:
        self._cache.pop(normalize_fingerprint(fingerprint), None)
