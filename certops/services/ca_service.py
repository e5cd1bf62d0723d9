"""
Certificate Authority service: root and intermediate CA creation, CA key
loading and stored CA passphrases.
"""

import asyncio
from typing import List, Optional, Tuple

import structlog
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes

from certops.core.exceptions import (
    NotFoundError,
    PassphraseRequiredError,
)
from certops.models.certificate import Certificate, KeyType
from certops.services.activity_service import ActivityService
from certops.services.config_store import ConfigStore
from certops.services.crypto_service import CryptoService, ca_extensions
from certops.services.file_store import CertificateFileStore
from certops.services.passphrase_vault import PassphraseVault
from certops.services.registry import CertificateRegistry

logger = structlog.get_logger()


class CaService:
    """Creates CAs and unlocks their signing keys."""

    def __init__(
        self,
        crypto: CryptoService,
        registry: CertificateRegistry,
        config_store: ConfigStore,
        vault: PassphraseVault,
        file_store: CertificateFileStore,
        activity: ActivityService,
    ):
        self.crypto = crypto
        self.registry = registry
        self.config_store = config_store
        self.vault = vault
        self.file_store = file_store
        self.activity = activity

    async def load_certificate(self, cert: Certificate) -> x509.Certificate:
        data = await self.file_store.read(cert.cert_path)
        certificate, _ = self.crypto.load_certificate(data)
        return certificate

    async def load_private_key(
        self,
        cert: Certificate,
        passphrase: Optional[str] = None,
    ) -> CertificateIssuerPrivateKeyTypes:
        """
        Load a certificate's private key, unlocking it with the given or the stored passphrase.

        Raises:
            NotFoundError: No key file is known for the certificate
            PassphraseRequiredError: Key is encrypted and no passphrase is known
            PassphraseUnavailableError: Passphrase is wrong or cannot be decrypted
        """
        if not cert.key_path:
            raise NotFoundError(f"No private key available for {cert.display_name}")
        data = await self.file_store.read(cert.key_path)

        if passphrase is None and self.crypto.is_key_encrypted(data):
            passphrase = await self.vault.get(cert.fingerprint)
            if passphrase is None:
                raise PassphraseRequiredError(
                    f"Private key of {cert.display_name} is encrypted and no passphrase is stored"
                )
        return self.crypto.load_private_key(data, passphrase)

    async def load_signing_pair(
        self,
        fingerprint: str,
        passphrase: Optional[str] = None,
    ) -> Tuple[Certificate, x509.Certificate, CertificateIssuerPrivateKeyTypes]:
        """Registry entity, certificate and key of a CA able to sign."""
        ca = self.registry.get(fingerprint)
        if not ca.is_ca:
            raise ValueError(f"{ca.display_name} is not a CA certificate")
        certificate = await self.load_certificate(ca)
        key = await self.load_private_key(ca, passphrase)
        self.crypto.require_key_pair(certificate, key)
        return ca, certificate, key

    async def chain_for(self, cert: Certificate) -> List[x509.Certificate]:
        """Issuer certificates above cert, nearest first, as registered."""
        chain: List[x509.Certificate] = []
        seen = {cert.fingerprint}
        current = cert
        while current.signed_by and current.signed_by not in seen:
            issuer = self.registry.find(current.signed_by)
            if issuer is None:
                break
            seen.add(issuer.fingerprint)
            chain.append(await self.load_certificate(issuer))
            current = issuer
        return chain

    async def create_root_ca(
        self,
        subject: str,
        days: Optional[int] = None,
        key_algorithm: KeyType = KeyType.RSA,
        key_size: Optional[int] = None,
        passphrase: Optional[str] = None,
        name: Optional[str] = None,
        path_length: Optional[int] = None,
    ) -> Certificate:
        """
        Create a self-signed root CA and register it.

        Args:
            subject: Subject DN, e.g. "CN=Test Root,O=Acme"
            days: Validity; defaults to caValidityPeriod.rootCA
            key_algorithm: RSA or EC
            key_size: RSA bits or EC curve size
            passphrase: Encrypts the key file and is stored in the vault
            name: Display name and file stem; defaults to the CN
            path_length: pathLenConstraint

        Returns:
            Registered certificate
        """
        defaults = await self.config_store.get_global_defaults()
        days = days or defaults.ca_validity_period.root_ca
        name_obj = self.crypto.parse_subject_dn(subject)
        name = name or self.crypto.common_name(name_obj) or "root-ca"
        cert_path, key_path = self.file_store.new_paths(name, ".crt", ".key")

        key, key_pem = await asyncio.to_thread(self.crypto.generate_key, key_algorithm, key_size, passphrase)
        certificate = await asyncio.to_thread(
            self.crypto.create_self_signed, name_obj, key, days, ca_extensions(path_length)
        )

        await self.file_store.write(key_path, key_pem, mode=0o600)
        await self.file_store.write(cert_path, self.crypto.encode_certificate(certificate))

        cert = await self.registry.register(cert_path, {"name": name, "key_path": key_path})
        if passphrase:
            await self.vault.store(cert.fingerprint, passphrase)
            self.registry.set_passphrase_flag(cert.fingerprint, True)
            cert.has_stored_passphrase = True

        logger.info("Root CA created", fingerprint=cert.fingerprint, subject=cert.subject, days=days)
        await self.activity.record_certificate_activity("create", cert, {"kind": "root-ca"})
        return cert

    async def create_intermediate_ca(
        self,
        issuer_fingerprint: str,
        subject: str,
        days: Optional[int] = None,
        key_algorithm: KeyType = KeyType.RSA,
        key_size: Optional[int] = None,
        passphrase: Optional[str] = None,
        issuer_passphrase: Optional[str] = None,
        name: Optional[str] = None,
        path_length: Optional[int] = 0,
    ) -> Certificate:
        """Create an intermediate CA signed by a registered CA."""
        defaults = await self.config_store.get_global_defaults()
        days = days or defaults.ca_validity_period.intermediate_ca
        issuer, issuer_cert, issuer_key = await self.load_signing_pair(issuer_fingerprint, issuer_passphrase)

        name_obj = self.crypto.parse_subject_dn(subject)
        name = name or self.crypto.common_name(name_obj) or "intermediate-ca"
        cert_path, key_path, chain_path = self.file_store.new_paths(name, ".crt", ".key", ".chain")

        key, key_pem = await asyncio.to_thread(self.crypto.generate_key, key_algorithm, key_size, passphrase)
        csr = await asyncio.to_thread(self.crypto.create_csr, name_obj, key)
        certificate = await asyncio.to_thread(
            self.crypto.sign_csr, csr, issuer_cert, issuer_key, days, ca_extensions(path_length)
        )
        chain = [issuer_cert] + await self.chain_for(issuer)

        await self.file_store.write(key_path, key_pem, mode=0o600)
        await self.file_store.write(chain_path, b"".join(self.crypto.encode_certificate(c) for c in chain))
        await self.file_store.write(cert_path, self.crypto.encode_certificate(certificate))

        cert = await self.registry.register(
            cert_path, {"name": name, "key_path": key_path, "chain_path": chain_path}
        )
        if passphrase:
            await self.vault.store(cert.fingerprint, passphrase)
            self.registry.set_passphrase_flag(cert.fingerprint, True)
            cert.has_stored_passphrase = True

        logger.info(
            "Intermediate CA created",
            fingerprint=cert.fingerprint,
            issuer=issuer.fingerprint,
            days=days,
        )
        await self.activity.record_certificate_activity(
            "create", cert, {"kind": "intermediate-ca", "issuer": issuer.fingerprint}
        )
        return cert

    async def set_passphrase(self, fingerprint: str, passphrase: str) -> None:
        """
        Store a CA key passphrase after checking it unlocks the key.

        Raises:
            PassphraseUnavailableError: The passphrase does not decrypt the key
        """
        cert = self.registry.get(fingerprint)
        if cert.key_path:
            key = await self.load_private_key(cert, passphrase)
            certificate = await self.load_certificate(cert)
            self.crypto.require_key_pair(certificate, key)
        await self.vault.store(cert.fingerprint, passphrase)
        self.registry.set_passphrase_flag(cert.fingerprint, True)

    async def clear_passphrase(self, fingerprint: str) -> None:
        cert = self.registry.get(fingerprint)
        await self.vault.delete(cert.fingerprint)
        self.registry.set_passphrase_flag(cert.fingerprint, False)

    async def has_passphrase(self, fingerprint: str) -> bool:
        cert = self.registry.get(fingerprint)
        return await self.vault.has(cert.fingerprint)
