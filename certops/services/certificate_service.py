"""
Certificate service for issuance, CSR signing, imports and bundle exports
"""

import asyncio
import os
from typing import List, Optional

import structlog
from cryptography import x509

from certops.core.exceptions import KeyMismatchError, NotFoundError
from certops.models.certificate import Certificate, Encoding, KeyType
from certops.services.activity_service import ActivityService
from certops.services.ca_service import CaService
from certops.services.config_store import ConfigStore
from certops.services.crypto_service import CryptoService, ExtensionList, normalize_sans
from certops.services.file_store import CertificateFileStore
from certops.services.registry import CertificateRegistry

logger = structlog.get_logger()


class CertificateService:
    """End-entity issuance and PKCS#12 / PKCS#7 conversions."""

    def __init__(
        self,
        crypto: CryptoService,
        registry: CertificateRegistry,
        ca_service: CaService,
        config_store: ConfigStore,
        file_store: CertificateFileStore,
        activity: ActivityService,
    ):
        self.crypto = crypto
        self.registry = registry
        self.ca_service = ca_service
        self.config_store = config_store
        self.file_store = file_store
        self.activity = activity

    def _pem_bundle(self, certificates: List[x509.Certificate]) -> bytes:
        return b"".join(self.crypto.encode_certificate(c) for c in certificates)

    async def issue_certificate(
        self,
        issuer_fingerprint: str,
        common_name: str,
        domains: Optional[List[str]] = None,
        ips: Optional[List[str]] = None,
        subject: Optional[str] = None,
        days: Optional[int] = None,
        key_algorithm: KeyType = KeyType.RSA,
        key_size: Optional[int] = None,
        name: Optional[str] = None,
        issuer_passphrase: Optional[str] = None,
        extensions: Optional[ExtensionList] = None,
    ) -> Certificate:
        """
        Issue an end-entity certificate with a freshly generated key.

        Writes <name>.crt, <name>.key and <name>.chain under the certificate
        directory and registers the result.

        Args:
            issuer_fingerprint: Registered CA that signs
            common_name: Subject CN (also the first DNS SAN when hostname-shaped)
            domains / ips: Additional subjectAltName entries
            subject: Full DN; defaults to "CN=<common_name>"
            days: Validity; defaults to caValidityPeriod.standard
            key_algorithm / key_size: Key to generate
            name: Display name and file stem; defaults to the CN
            issuer_passphrase: Unlocks the CA key when none is stored
            extensions: Overrides the default end-entity extensions

        Returns:
            Registered certificate
        """
        defaults = await self.config_store.get_global_defaults()
        days = days or defaults.ca_validity_period.standard
        issuer, issuer_cert, issuer_key = await self.ca_service.load_signing_pair(
            issuer_fingerprint, issuer_passphrase
        )

        sans = normalize_sans(common_name, domains or [], ips or [])
        name = name or common_name
        cert_path, key_path, chain_path = self.file_store.new_paths(name, ".crt", ".key", ".chain")

        key, key_pem = await asyncio.to_thread(self.crypto.generate_key, key_algorithm, key_size)
        csr = await asyncio.to_thread(
            self.crypto.create_csr, subject or f"CN={common_name}", key, sans.domains, sans.ips
        )
        certificate = await asyncio.to_thread(
            self.crypto.sign_csr, csr, issuer_cert, issuer_key, days, extensions
        )
        chain = [issuer_cert] + await self.ca_service.chain_for(issuer)

        await self.file_store.write(key_path, key_pem, mode=0o600)
        await self.file_store.write(chain_path, self._pem_bundle(chain))
        await self.file_store.write(cert_path, self.crypto.encode_certificate(certificate))

        cert = await self.registry.register(
            cert_path, {"name": name, "key_path": key_path, "chain_path": chain_path}
        )
        logger.info("Certificate issued", fingerprint=cert.fingerprint, issuer=issuer.fingerprint, days=days)
        await self.activity.record_certificate_activity("create", cert, {"issuer": issuer.fingerprint})
        return cert

    async def sign_csr(
        self,
        issuer_fingerprint: str,
        csr_data: bytes,
        days: Optional[int] = None,
        name: Optional[str] = None,
        issuer_passphrase: Optional[str] = None,
        extensions: Optional[ExtensionList] = None,
    ) -> Certificate:
        """
        Sign an externally generated CSR; no private key is stored.

        Raises:
            VerifyFailedError: CSR signature does not verify
        """
        defaults = await self.config_store.get_global_defaults()
        days = days or defaults.ca_validity_period.standard
        csr = self.crypto.load_csr(csr_data)
        issuer, issuer_cert, issuer_key = await self.ca_service.load_signing_pair(
            issuer_fingerprint, issuer_passphrase
        )

        name = name or self.crypto.common_name(csr.subject) or "certificate"
        cert_path, chain_path = self.file_store.new_paths(name, ".crt", ".chain")
        certificate = await asyncio.to_thread(
            self.crypto.sign_csr, csr, issuer_cert, issuer_key, days, extensions
        )
        chain = [issuer_cert] + await self.ca_service.chain_for(issuer)

        await self.file_store.write(chain_path, self._pem_bundle(chain))
        await self.file_store.write(cert_path, self.crypto.encode_certificate(certificate))

        cert = await self.registry.register(cert_path, {"name": name, "chain_path": chain_path})
        logger.info("CSR signed", fingerprint=cert.fingerprint, issuer=issuer.fingerprint, days=days)
        await self.activity.record_certificate_activity("create", cert, {"issuer": issuer.fingerprint, "fromCsr": True})
        return cert

    async def import_certificate(
        self,
        cert_data: bytes,
        key_data: Optional[bytes] = None,
        passphrase: Optional[str] = None,
        chain_data: Optional[bytes] = None,
        name: Optional[str] = None,
    ) -> Certificate:
        """
        Import a PEM or DER certificate with an optional private key and chain.

        The certificate keeps its encoding on disk.

        Raises:
            ParseError: Not a certificate
            KeyMismatchError: The key does not belong to the certificate
        """
        certificate, encoding = self.crypto.load_certificate(cert_data)
        fingerprint = self.crypto.fingerprint(certificate)
        existing = self.registry.find(fingerprint)
        if existing is not None:
            return existing

        key_pem = None
        if key_data:
            key = self.crypto.load_private_key(key_data, passphrase)
            if not self.crypto.validate_key_pair(certificate, key):
                raise KeyMismatchError("Private key does not match the certificate")
            key_pem = self.crypto.serialize_private_key(key, passphrase)

        name = name or self.crypto.common_name(certificate.subject) or fingerprint[:16]
        extension = ".der" if encoding == Encoding.DER else ".crt"
        cert_path = self.file_store.new_paths(name, extension)[0]
        patch = {"name": name}

        if key_pem is not None:
            key_path = self.file_store.new_paths(name, ".key")[0]
            await self.file_store.write(key_path, key_pem, mode=0o600)
            patch["key_path"] = key_path
        if chain_data:
            chain = self.crypto.load_certificates(chain_data)
            chain_path = self.file_store.new_paths(name, ".chain")[0]
            await self.file_store.write(chain_path, self._pem_bundle(chain))
            patch["chain_path"] = chain_path
        await self.file_store.write(cert_path, self.crypto.encode_certificate(certificate, encoding))

        cert = await self.registry.register(cert_path, patch)
        if key_pem is not None and passphrase and cert.is_ca:
            await self.ca_service.set_passphrase(cert.fingerprint, passphrase)
            cert.has_stored_passphrase = True
        await self.activity.record_certificate_activity("import", cert, {"format": encoding.value})
        return cert

    async def import_p12(self, data: bytes, passphrase: Optional[str] = None, name: Optional[str] = None) -> Certificate:
        """
        Import a PKCS#12 bundle: end entity, private key and chain.

        Raises:
            PassphraseUnavailableError: Wrong passphrase
        """
        certificate, key, chain = self.crypto.import_p12(data, passphrase)
        fingerprint = self.crypto.fingerprint(certificate)
        existing = self.registry.find(fingerprint)
        if existing is not None:
            return existing

        name = name or self.crypto.common_name(certificate.subject) or fingerprint[:16]
        cert_path, p12_path = self.file_store.new_paths(name, ".crt", ".p12")
        patch = {"name": name, "p12_path": p12_path}

        if key is not None:
            key_path = self.file_store.new_paths(name, ".key")[0]
            await self.file_store.write(key_path, self.crypto.serialize_private_key(key), mode=0o600)
            patch["key_path"] = key_path
        if chain:
            chain_path = self.file_store.new_paths(name, ".chain")[0]
            await self.file_store.write(chain_path, self._pem_bundle(chain))
            patch["chain_path"] = chain_path
        await self.file_store.write(p12_path, data, mode=0o600)
        await self.file_store.write(cert_path, self.crypto.encode_certificate(certificate))

        cert = await self.registry.register(cert_path, patch)
        await self.activity.record_certificate_activity("import", cert, {"format": "PKCS12"})
        return cert

    async def import_p7(self, data: bytes) -> List[Certificate]:
        """Import every certificate of a PKCS#7 bundle as its own entity."""
        imported = []
        for certificate in self.crypto.import_p7(data):
            fingerprint = self.crypto.fingerprint(certificate)
            existing = self.registry.find(fingerprint)
            if existing is not None:
                imported.append(existing)
                continue
            name = self.crypto.common_name(certificate.subject) or fingerprint[:16]
            if os.path.exists(self.file_store.path_for(name, ".crt")):
                name = f"{name}-{fingerprint[:8].lower()}"
            cert_path = self.file_store.new_paths(name, ".crt")[0]
            await self.file_store.write(cert_path, self.crypto.encode_certificate(certificate))
            cert = await self.registry.register(cert_path, {"name": name})
            await self.activity.record_certificate_activity("import", cert, {"format": "PKCS7"})
            imported.append(cert)
        return imported

    async def export_p12(
        self,
        fingerprint: str,
        passphrase: Optional[str] = None,
        algorithm: str = "aes256",
        friendly_name: Optional[str] = None,
        key_passphrase: Optional[str] = None,
        save: bool = False,
    ) -> bytes:
        """
        Build a PKCS#12 bundle of certificate, key and registered chain.

        Args:
            passphrase: Protects the bundle
            algorithm: "aes256" or "3des"
            friendly_name: Alias; defaults to the certificate name
            key_passphrase: Unlocks an encrypted key when none is stored
            save: Also write <cert>.p12 next to the certificate and record it

        Raises:
            NotFoundError: Unknown fingerprint or no private key
        """
        cert = self.registry.get(fingerprint)
        if not cert.key_path:
            raise NotFoundError(f"No private key available for {cert.display_name}")
        certificate = await self.ca_service.load_certificate(cert)
        key = await self.ca_service.load_private_key(cert, key_passphrase)
        chain = await self.ca_service.chain_for(cert)

        data = await asyncio.to_thread(
            self.crypto.export_p12,
            certificate,
            key,
            chain,
            passphrase,
            friendly_name or cert.display_name,
            algorithm,
        )

        if save:
            p12_path = os.path.splitext(cert.cert_path)[0] + ".p12"
            await self.file_store.write(p12_path, data, mode=0o600)
            await self.registry.update(cert.fingerprint, {"p12_path": p12_path})

        await self.activity.record_certificate_activity("export", cert, {"format": "PKCS12", "saved": save})
        return data

    async def export_p7(self, fingerprint: str, include_chain: bool = True, encoding: Encoding = Encoding.PEM) -> bytes:
        cert = self.registry.get(fingerprint)
        certificates = [await self.ca_service.load_certificate(cert)]
        if include_chain:
            certificates.extend(await self.ca_service.chain_for(cert))
        data = self.crypto.export_p7(certificates, encoding)
        await self.activity.record_certificate_activity("export", cert, {"format": "PKCS7"})
        return data
