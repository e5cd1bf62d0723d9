"""
Cryptographic primitives for certificate lifecycle operations

Parses and emits certificates and keys (PEM and DER), generates RSA/EC keys,
builds CSRs, signs and renews certificates and converts PKCS#12 / PKCS#7
bundles. Everything here is synchronous and CPU-bound; async callers run it
through asyncio.to_thread.
"""

import ipaddress
import secrets
from datetime import datetime, timedelta
from typing import Tuple, List, Optional, Union

import structlog
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.x509.oid import NameOID, ExtensionOID, ExtendedKeyUsageOID, SignatureAlgorithmOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec, ed25519, ed448
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes, CertificateIssuerPrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12, pkcs7

from certops.core.exceptions import (
    ParseError,
    KeyMismatchError,
    PassphraseRequiredError,
    PassphraseUnavailableError,
    SigningError,
    VerifyFailedError,
)
from certops.core.storage import Clock, utc_now
from certops.models.certificate import CertInfo, Encoding, KeyType, SubjectAltNames

logger = structlog.get_logger()

# (extension value, critical) pairs, in the order they are added to a certificate
ExtensionList = List[Tuple[x509.ExtensionType, bool]]

RSA_KEY_SIZES = (2048, 3072, 4096)

EC_CURVES = {
    256: ec.SECP256R1,
    384: ec.SECP384R1,
    521: ec.SECP521R1,
}

EC_CURVE_ALIASES = {
    "P-256": 256, "P256": 256, "PRIME256V1": 256, "SECP256R1": 256,
    "P-384": 384, "P384": 384, "SECP384R1": 384,
    "P-521": 521, "P521": 521, "SECP521R1": 521,
}

DN_ATTRIBUTES = {
    "CN": NameOID.COMMON_NAME,
    "O": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "C": NameOID.COUNTRY_NAME,
    "ST": NameOID.STATE_OR_PROVINCE_NAME,
    "S": NameOID.STATE_OR_PROVINCE_NAME,
    "L": NameOID.LOCALITY_NAME,
    "EMAIL": NameOID.EMAIL_ADDRESS,
    "EMAILADDRESS": NameOID.EMAIL_ADDRESS,
    "DC": NameOID.DOMAIN_COMPONENT,
    "SERIALNUMBER": NameOID.SERIAL_NUMBER,
}

DN_LABELS = {
    NameOID.COMMON_NAME: "CN",
    NameOID.ORGANIZATION_NAME: "O",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "OU",
    NameOID.COUNTRY_NAME: "C",
    NameOID.STATE_OR_PROVINCE_NAME: "ST",
    NameOID.LOCALITY_NAME: "L",
    NameOID.EMAIL_ADDRESS: "emailAddress",
    NameOID.DOMAIN_COMPONENT: "DC",
    NameOID.SERIAL_NUMBER: "serialNumber",
}

SIGNATURE_ALGORITHMS = {
    SignatureAlgorithmOID.RSA_WITH_SHA1: "sha1WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA256: "sha256WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA384: "sha384WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA512: "sha512WithRSAEncryption",
    SignatureAlgorithmOID.RSASSA_PSS: "rsassaPss",
    SignatureAlgorithmOID.ECDSA_WITH_SHA1: "ecdsa-with-SHA1",
    SignatureAlgorithmOID.ECDSA_WITH_SHA256: "ecdsa-with-SHA256",
    SignatureAlgorithmOID.ECDSA_WITH_SHA384: "ecdsa-with-SHA384",
    SignatureAlgorithmOID.ECDSA_WITH_SHA512: "ecdsa-with-SHA512",
    SignatureAlgorithmOID.ED25519: "ED25519",
}

EXTENDED_KEY_USAGES = {
    ExtendedKeyUsageOID.SERVER_AUTH: "serverAuth",
    ExtendedKeyUsageOID.CLIENT_AUTH: "clientAuth",
    ExtendedKeyUsageOID.CODE_SIGNING: "codeSigning",
    ExtendedKeyUsageOID.EMAIL_PROTECTION: "emailProtection",
    ExtendedKeyUsageOID.TIME_STAMPING: "timeStamping",
    ExtendedKeyUsageOID.OCSP_SIGNING: "OCSPSigning",
}

KEY_USAGE_FLAGS = (
    ("digital_signature", "digitalSignature"),
    ("content_commitment", "nonRepudiation"),
    ("key_encipherment", "keyEncipherment"),
    ("data_encipherment", "dataEncipherment"),
    ("key_agreement", "keyAgreement"),
    ("key_cert_sign", "keyCertSign"),
    ("crl_sign", "cRLSign"),
)


def build_key_usage(**flags: bool) -> x509.KeyUsage:
    """KeyUsage with every flag False unless given."""
    values = {attr: False for attr, _ in KEY_USAGE_FLAGS}
    values.update(encipher_only=False, decipher_only=False)
    values.update(flags)
    return x509.KeyUsage(**values)


def ca_extensions(path_length: Optional[int] = None) -> ExtensionList:
    """Default extensions for a CA certificate."""
    return [
        (x509.BasicConstraints(ca=True, path_length=path_length), True),
        (build_key_usage(key_cert_sign=True, crl_sign=True), True),
    ]


def end_entity_extensions() -> ExtensionList:
    """Default extensions for an end-entity certificate."""
    return [
        (x509.BasicConstraints(ca=False, path_length=None), True),
        (build_key_usage(digital_signature=True, key_encipherment=True), True),
    ]


def _read_der_tlv(data: bytes, offset: int = 0) -> Tuple[int, bytes, int]:
    """
    Read one DER TLV.

    Returns:
        (tag, value, offset of the next TLV)
    """
    if offset + 2 > len(data):
        raise ValueError("Truncated DER")
    tag = data[offset]
    length = data[offset + 1]
    offset += 2
    if length & 0x80:
        count = length & 0x7F
        if count == 0 or offset + count > len(data):
            raise ValueError("Unsupported DER length")
        length = int.from_bytes(data[offset:offset + count], "big")
        offset += count
    end = offset + length
    if end > len(data):
        raise ValueError("Truncated DER")
    return tag, data[offset:end], end


def key_id_from_raw_ski(raw: bytes) -> Optional[str]:
    """SubjectKeyIdentifier extnValue is an OCTET STRING holding the key id."""
    tag, value, _ = _read_der_tlv(raw)
    if tag != 0x04:
        return None
    return value.hex().upper()


def key_id_from_raw_aki(raw: bytes) -> Optional[str]:
    """AuthorityKeyIdentifier is a SEQUENCE whose [0] IMPLICIT member is the key id."""
    tag, body, _ = _read_der_tlv(raw)
    if tag != 0x30:
        return None
    offset = 0
    while offset < len(body):
        tag, value, offset = _read_der_tlv(body, offset)
        if tag == 0x80:
            return value.hex().upper()
    return None


def _is_hostname(value: str) -> bool:
    if not value or " " in value or "=" in value:
        return False
    try:
        ipaddress.ip_address(value)
        return False
    except ValueError:
        return True


def normalize_sans(common_name: Optional[str], domains: List[str], ips: List[str]) -> SubjectAltNames:
    """
    Lowercase and dedupe DNS names with a hostname-shaped CN forced first.
    """
    ordered: List[str] = []
    if common_name and _is_hostname(common_name):
        ordered.append(common_name.strip().lower())
    for domain in domains:
        domain = domain.strip().lower()
        if domain and domain not in ordered:
            ordered.append(domain)
    seen_ips: List[str] = []
    for ip in ips:
        ip = str(ip).strip()
        if ip and ip not in seen_ips:
            seen_ips.append(ip)
    return SubjectAltNames(domains=ordered, ips=seen_ips)


class CryptoService:
    """X.509 and key operations used by the engine"""

    def __init__(self, clock: Optional[Clock] = None):
        self.hash_algorithm = hashes.SHA256()
        self.clock = clock or utc_now

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    def parse_subject_dn(self, subject_dn: str) -> x509.Name:
        """
        Parse subject DN string into x509.Name object

        Args:
            subject_dn: Subject DN string like "CN=Test CA, O=Test Org, C=US"

        Returns:
            x509.Name object

        Raises:
            ValueError: If no recognised attribute is present
        """
        name_attributes = []

        for part in subject_dn.split(','):
            if '=' not in part:
                continue
            attr_name, attr_value = part.split('=', 1)
            oid = DN_ATTRIBUTES.get(attr_name.strip().upper())
            if oid is None:
                # Skip unknown attributes
                continue
            name_attributes.append(x509.NameAttribute(oid, attr_value.strip()))

        if not name_attributes:
            raise ValueError(f"Invalid subject DN: {subject_dn!r}")

        return x509.Name(name_attributes)

    def format_name(self, name: x509.Name) -> str:
        """Render a Name in its encoded order, e.g. "CN=Test Root,O=Acme"."""
        parts = []
        for attribute in name:
            label = DN_LABELS.get(attribute.oid, attribute.oid.dotted_string)
            parts.append(f"{label}={attribute.value}")
        return ",".join(parts)

    def _to_name(self, subject: Union[str, x509.Name]) -> x509.Name:
        if isinstance(subject, x509.Name):
            return subject
        return self.parse_subject_dn(subject)

    @staticmethod
    def common_name(name: x509.Name) -> Optional[str]:
        attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
        return str(attrs[0].value) if attrs else None

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    def load_certificate(self, data: bytes) -> Tuple[x509.Certificate, Encoding]:
        """
        Load a single certificate, trying PEM first and then DER.

        Raises:
            ParseError: If the data is neither
        """
        if b"-----BEGIN" in data:
            try:
                return x509.load_pem_x509_certificate(data), Encoding.PEM
            except ValueError as e:
                raise ParseError(f"Invalid PEM certificate: {e}") from e
        try:
            return x509.load_der_x509_certificate(data), Encoding.DER
        except ValueError as e:
            raise ParseError(f"Data is neither a PEM nor a DER certificate: {e}") from e

    def load_certificates(self, data: bytes) -> List[x509.Certificate]:
        """Load every certificate in a PEM bundle, or a single DER certificate."""
        if b"-----BEGIN CERTIFICATE-----" in data:
            try:
                return x509.load_pem_x509_certificates(data)
            except ValueError as e:
                raise ParseError(f"Invalid PEM bundle: {e}") from e
        return [self.load_certificate(data)[0]]

    def fingerprint(self, cert: x509.Certificate) -> str:
        """Uppercase hex SHA-256 over the DER body."""
        return cert.fingerprint(hashes.SHA256()).hex().upper()

    def encode_certificate(self, cert: x509.Certificate, encoding: Encoding = Encoding.PEM) -> bytes:
        if Encoding(encoding) == Encoding.DER:
            return cert.public_bytes(serialization.Encoding.DER)
        return cert.public_bytes(serialization.Encoding.PEM)

    def pem_to_der(self, data: bytes) -> bytes:
        cert, _ = self.load_certificate(data)
        return self.encode_certificate(cert, Encoding.DER)

    def der_to_pem(self, data: bytes) -> bytes:
        cert, _ = self.load_certificate(data)
        return self.encode_certificate(cert, Encoding.PEM)

    def parse(self, data: bytes) -> CertInfo:
        """
        Parse certificate bytes into CertInfo.

        Args:
            data: PEM or DER certificate

        Returns:
            CertInfo with every field populated from the X.509 structure

        Raises:
            ParseError: If the data is not a certificate
        """
        cert, encoding = self.load_certificate(data)
        return self.certificate_info(cert, encoding)

    def certificate_info(self, cert: x509.Certificate, encoding: Encoding = Encoding.PEM) -> CertInfo:
        """Extract CertInfo from a loaded certificate."""
        try:
            extensions = list(cert.extensions)
        except ValueError as e:
            logger.warning("Certificate extensions could not be decoded", error=str(e))
            extensions = []

        ski = aki = None
        is_ca = False
        path_len = None
        key_usage: List[str] = []
        extended_key_usage: List[str] = []
        domains: List[str] = []
        ips: List[str] = []

        for ext in extensions:
            value = ext.value
            if ext.oid == ExtensionOID.SUBJECT_KEY_IDENTIFIER:
                if isinstance(value, x509.SubjectKeyIdentifier):
                    ski = value.digest.hex().upper()
                elif isinstance(value, x509.UnrecognizedExtension):
                    try:
                        ski = key_id_from_raw_ski(value.value)
                    except ValueError:
                        logger.warning("Malformed subjectKeyIdentifier")
            elif ext.oid == ExtensionOID.AUTHORITY_KEY_IDENTIFIER:
                if isinstance(value, x509.AuthorityKeyIdentifier):
                    if value.key_identifier:
                        aki = value.key_identifier.hex().upper()
                elif isinstance(value, x509.UnrecognizedExtension):
                    try:
                        aki = key_id_from_raw_aki(value.value)
                    except ValueError:
                        logger.warning("Malformed authorityKeyIdentifier")
            elif isinstance(value, x509.BasicConstraints):
                is_ca = value.ca
                path_len = value.path_length
            elif isinstance(value, x509.KeyUsage):
                key_usage = [label for attr, label in KEY_USAGE_FLAGS if getattr(value, attr)]
                if value.key_agreement:
                    if value.encipher_only:
                        key_usage.append("encipherOnly")
                    if value.decipher_only:
                        key_usage.append("decipherOnly")
            elif isinstance(value, x509.ExtendedKeyUsage):
                extended_key_usage = [
                    EXTENDED_KEY_USAGES.get(oid, oid.dotted_string) for oid in value
                ]
            elif isinstance(value, x509.SubjectAlternativeName):
                domains = value.get_values_for_type(x509.DNSName)
                ips = [str(ip) for ip in value.get_values_for_type(x509.IPAddress)]

        public_key = cert.public_key()
        key_type = key_size = None
        if isinstance(public_key, rsa.RSAPublicKey):
            key_type, key_size = KeyType.RSA, public_key.key_size
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            key_type, key_size = KeyType.EC, public_key.curve.key_size

        common_name = self.common_name(cert.subject)
        is_self_signed = cert.issuer == cert.subject

        return CertInfo(
            fingerprint=self.fingerprint(cert),
            common_name=common_name,
            subject=self.format_name(cert.subject),
            issuer=self.format_name(cert.issuer),
            issuer_cn=self.common_name(cert.issuer),
            serial_number=format(cert.serial_number, "X"),
            signature_algorithm=SIGNATURE_ALGORITHMS.get(
                cert.signature_algorithm_oid, cert.signature_algorithm_oid.dotted_string
            ),
            subject_key_identifier=ski,
            authority_key_identifier=aki,
            key_type=key_type,
            key_size=key_size,
            valid_from=cert.not_valid_before_utc,
            valid_to=cert.not_valid_after_utc,
            sans=normalize_sans(common_name, domains, ips),
            is_ca=is_ca,
            path_len_constraint=path_len,
            is_self_signed=is_self_signed,
            is_root_ca=is_ca and is_self_signed,
            key_usage=key_usage,
            extended_key_usage=extended_key_usage,
            original_encoding=encoding,
        )

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def generate_private_key(self, algorithm: Union[KeyType, str] = KeyType.RSA, size: Union[int, str, None] = None) -> PrivateKeyTypes:
        """
        Generate a private key

        Args:
            algorithm: RSA or EC
            size: RSA modulus bits (2048/3072/4096) or EC curve (256/384/521, "P-256", ...)

        Returns:
            Private key instance
        """
        algorithm = KeyType(str(getattr(algorithm, "value", algorithm)).upper())

        if algorithm == KeyType.RSA:
            bits = int(size or 2048)
            if bits not in RSA_KEY_SIZES:
                raise ValueError(f"Unsupported RSA key size: {bits}")
            return rsa.generate_private_key(public_exponent=65537, key_size=bits)

        if isinstance(size, str) and not size.isdigit():
            bits = EC_CURVE_ALIASES.get(size.upper())
            if bits is None:
                raise ValueError(f"Unsupported EC curve: {size}")
        else:
            bits = int(size or 256)
        curve = EC_CURVES.get(bits)
        if curve is None:
            raise ValueError(f"Unsupported EC curve size: {bits}")
        return ec.generate_private_key(curve())

    def serialize_private_key(self, key: PrivateKeyTypes, passphrase: Optional[str] = None) -> bytes:
        """PKCS#8 PEM, encrypted when a passphrase is given."""
        if passphrase:
            encryption = serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
        else:
            encryption = serialization.NoEncryption()
        return key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )

    def generate_key(self, algorithm: Union[KeyType, str] = KeyType.RSA, size: Union[int, str, None] = None, passphrase: Optional[str] = None) -> Tuple[PrivateKeyTypes, bytes]:
        """Generate a key and its PKCS#8 PEM."""
        key = self.generate_private_key(algorithm, size)
        return key, self.serialize_private_key(key, passphrase)

    def is_key_encrypted(self, data: bytes) -> bool:
        return b"ENCRYPTED" in data

    def load_private_key(self, data: bytes, passphrase: Optional[str] = None) -> PrivateKeyTypes:
        """
        Load a PEM or DER private key

        Raises:
            PassphraseRequiredError: Key is encrypted and no passphrase was given
            PassphraseUnavailableError: The passphrase does not decrypt the key
            ParseError: Data is not a private key
        """
        password = passphrase.encode("utf-8") if passphrase else None
        if password and not self.is_key_encrypted(data) and b"-----BEGIN" in data:
            password = None

        loader = (
            serialization.load_pem_private_key
            if b"-----BEGIN" in data
            else serialization.load_der_private_key
        )
        try:
            return loader(data, password=password)
        except TypeError as e:
            if password is None:
                raise PassphraseRequiredError("Private key is encrypted and no passphrase is available") from e
            # Passphrase supplied for an unencrypted DER key
            return loader(data, password=None)
        except ValueError as e:
            if password is not None:
                raise PassphraseUnavailableError("Passphrase does not decrypt the private key") from e
            raise ParseError(f"Invalid private key: {e}") from e
        except UnsupportedAlgorithm as e:
            raise ParseError(f"Unsupported private key algorithm: {e}") from e

    def validate_key_pair(self, cert: Union[x509.Certificate, bytes], key: Union[PrivateKeyTypes, bytes], passphrase: Optional[str] = None) -> bool:
        """
        True iff the key's public half equals the certificate's SubjectPublicKeyInfo.
        """
        if isinstance(cert, bytes):
            cert, _ = self.load_certificate(cert)
        if isinstance(key, bytes):
            key = self.load_private_key(key, passphrase)

        cert_pub_bytes = cert.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        key_pub_bytes = key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return cert_pub_bytes == key_pub_bytes

    def require_key_pair(self, cert: x509.Certificate, key: PrivateKeyTypes) -> None:
        if not self.validate_key_pair(cert, key):
            raise KeyMismatchError("Certificate and private key do not match")

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def new_serial_number(self) -> int:
        """19 random bytes prefixed with 0x01 so the integer is positive and full length."""
        return int.from_bytes(b"\x01" + secrets.token_bytes(19), "big")

    def _validity(self, days: int) -> Tuple[datetime, datetime]:
        if days < 1:
            raise ValueError("Validity must be at least one day")
        not_before = self.clock()
        return not_before, not_before + timedelta(days=days)

    @staticmethod
    def _san_extension(domains: Optional[List[str]], ips: Optional[List[str]]) -> Optional[x509.SubjectAlternativeName]:
        names: List[x509.GeneralName] = []
        for domain in domains or []:
            names.append(x509.DNSName(domain))
        for ip in ips or []:
            names.append(x509.IPAddress(ipaddress.ip_address(ip)))
        return x509.SubjectAlternativeName(names) if names else None

    @staticmethod
    def _authority_key_identifier(issuer_cert: Optional[x509.Certificate], issuer_key: CertificateIssuerPrivateKeyTypes) -> x509.AuthorityKeyIdentifier:
        if issuer_cert is not None:
            try:
                ski = issuer_cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
                return x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ski)
            except x509.ExtensionNotFound:
                pass
        return x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key())

    def signature_hash(self, key: PrivateKeyTypes) -> Optional[hashes.HashAlgorithm]:
        # EdDSA keys hash internally and must be signed with no digest
        if isinstance(key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
            return None
        return self.hash_algorithm

    def _sign(self, builder, key: CertificateIssuerPrivateKeyTypes):
        """
        Sign a certificate or CSR builder.

        Raises:
            SigningError: The library refused the key or builder contents
        """
        try:
            return builder.sign(key, self.signature_hash(key))
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningError(f"Signing failed: {e}") from e

    def _add_extensions(self, builder, extensions: ExtensionList, public_key, aki: x509.AuthorityKeyIdentifier):
        for value, critical in extensions:
            if value.oid in (ExtensionOID.SUBJECT_KEY_IDENTIFIER, ExtensionOID.AUTHORITY_KEY_IDENTIFIER):
                continue
            builder = builder.add_extension(value, critical=critical)
        builder = builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False
        )
        builder = builder.add_extension(aki, critical=False)
        return builder

    def create_self_signed(
        self,
        subject: Union[str, x509.Name],
        key: CertificateIssuerPrivateKeyTypes,
        days: int,
        extensions: Optional[ExtensionList] = None,
        domains: Optional[List[str]] = None,
        ips: Optional[List[str]] = None,
    ) -> x509.Certificate:
        """
        Create a self-signed certificate (a root CA by default).

        Args:
            subject: DN string or Name
            key: Signing key; its public half is certified
            days: Validity in days from now
            extensions: Overrides the default CA extensions
            domains / ips: Optional subjectAltName entries

        Returns:
            Signed certificate
        """
        name = self._to_name(subject)
        not_before, not_after = self._validity(days)
        extensions = list(extensions) if extensions is not None else ca_extensions()
        san = self._san_extension(domains, ips)
        if san is not None:
            extensions.append((san, False))

        public_key = key.public_key()
        aki = x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key)

        builder = x509.CertificateBuilder()
        builder = builder.subject_name(name)
        builder = builder.issuer_name(name)
        builder = builder.public_key(public_key)
        builder = builder.serial_number(self.new_serial_number())
        builder = builder.not_valid_before(not_before)
        builder = builder.not_valid_after(not_after)
        builder = self._add_extensions(builder, extensions, public_key, aki)

        certificate = self._sign(builder, key)
        logger.info("Created self-signed certificate", subject=self.format_name(name), days=days)
        return certificate

    def create_csr(
        self,
        subject: Union[str, x509.Name],
        key: CertificateIssuerPrivateKeyTypes,
        domains: Optional[List[str]] = None,
        ips: Optional[List[str]] = None,
    ) -> x509.CertificateSigningRequest:
        """Build a CSR; requested SANs go into the extensionRequest attribute."""
        builder = x509.CertificateSigningRequestBuilder().subject_name(self._to_name(subject))
        san = self._san_extension(domains, ips)
        if san is not None:
            builder = builder.add_extension(san, critical=False)
        return self._sign(builder, key)

    def load_csr(self, data: bytes) -> x509.CertificateSigningRequest:
        try:
            if b"-----BEGIN" in data:
                return x509.load_pem_x509_csr(data)
            return x509.load_der_x509_csr(data)
        except ValueError as e:
            raise ParseError(f"Invalid certificate signing request: {e}") from e

    def sign_csr(
        self,
        csr: x509.CertificateSigningRequest,
        ca_cert: x509.Certificate,
        ca_key: CertificateIssuerPrivateKeyTypes,
        days: int,
        extensions: Optional[ExtensionList] = None,
    ) -> x509.Certificate:
        """
        Sign a Certificate Signing Request with a CA.

        Args:
            csr: Request whose subject and public key are certified
            ca_cert: Issuer certificate
            ca_key: Issuer private key
            days: Validity in days
            extensions: Overrides the default end-entity extensions

        Returns:
            Signed certificate

        Raises:
            VerifyFailedError: If the CSR signature does not verify
            KeyMismatchError: If ca_key does not belong to ca_cert
        """
        if not csr.is_signature_valid:
            raise VerifyFailedError("CSR signature is invalid")
        self.require_key_pair(ca_cert, ca_key)

        extensions = list(extensions) if extensions is not None else end_entity_extensions()
        present = {value.oid for value, _ in extensions}

        # Copy requested SANs unless the caller supplied its own
        if ExtensionOID.SUBJECT_ALTERNATIVE_NAME not in present:
            try:
                san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
                extensions.append((san.value, san.critical))
            except x509.ExtensionNotFound:
                pass

        public_key = csr.public_key()
        not_before, not_after = self._validity(days)

        builder = x509.CertificateBuilder()
        builder = builder.subject_name(csr.subject)
        builder = builder.issuer_name(ca_cert.subject)
        builder = builder.public_key(public_key)
        builder = builder.serial_number(self.new_serial_number())
        builder = builder.not_valid_before(not_before)
        builder = builder.not_valid_after(not_after)
        builder = self._add_extensions(
            builder, extensions, public_key, self._authority_key_identifier(ca_cert, ca_key)
        )

        certificate = self._sign(builder, ca_key)
        logger.info(
            "Signed certificate request",
            subject=self.format_name(csr.subject),
            issuer=self.format_name(ca_cert.subject),
            days=days,
        )
        return certificate

    def renew(
        self,
        existing: x509.Certificate,
        ca_cert: x509.Certificate,
        ca_key: CertificateIssuerPrivateKeyTypes,
        days: Optional[int] = None,
        original_encoding: Encoding = Encoding.PEM,
    ) -> Tuple[x509.Certificate, bytes]:
        """
        Re-issue a certificate with a new serial and validity.

        Subject and public key are preserved. Extensions are copied in order
        except SKI/AKI, which are regenerated from the current keys.

        Args:
            existing: Certificate to renew
            ca_cert: Issuer (the certificate itself when self-signed)
            ca_key: Issuer private key
            days: Validity in days; defaults to the span of the existing certificate
            original_encoding: Encoding of the returned bytes

        Returns:
            (new certificate, encoded bytes)
        """
        self.require_key_pair(ca_cert, ca_key)
        if days is None:
            span = existing.not_valid_after_utc - existing.not_valid_before_utc
            days = max(1, round(span.total_seconds() / 86400))

        public_key = existing.public_key()
        self_signed = existing.issuer == existing.subject
        if self_signed:
            aki = x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key())
        else:
            aki = self._authority_key_identifier(ca_cert, ca_key)

        not_before, not_after = self._validity(days)

        builder = x509.CertificateBuilder()
        builder = builder.subject_name(existing.subject)
        builder = builder.issuer_name(ca_cert.subject)
        builder = builder.public_key(public_key)
        builder = builder.serial_number(self.new_serial_number())
        builder = builder.not_valid_before(not_before)
        builder = builder.not_valid_after(not_after)

        try:
            extensions = list(existing.extensions)
        except ValueError:
            extensions = []

        has_ski = has_aki = False
        for ext in extensions:
            if ext.oid == ExtensionOID.SUBJECT_KEY_IDENTIFIER:
                builder = builder.add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False
                )
                has_ski = True
            elif ext.oid == ExtensionOID.AUTHORITY_KEY_IDENTIFIER:
                builder = builder.add_extension(aki, critical=False)
                has_aki = True
            else:
                builder = builder.add_extension(ext.value, critical=ext.critical)
        if not has_ski:
            builder = builder.add_extension(
                x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False
            )
        if not has_aki:
            builder = builder.add_extension(aki, critical=False)

        certificate = self._sign(builder, ca_key)
        logger.info(
            "Renewed certificate",
            subject=self.format_name(existing.subject),
            old_fingerprint=self.fingerprint(existing),
            new_fingerprint=self.fingerprint(certificate),
            days=days,
        )
        return certificate, self.encode_certificate(certificate, original_encoding)

    def verify_issued_by(self, cert: x509.Certificate, issuer: x509.Certificate) -> bool:
        """True when issuer's key signed cert and the names chain."""
        try:
            cert.verify_directly_issued_by(issuer)
            return True
        except (ValueError, TypeError, InvalidSignature):
            return False

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------

    def export_p12(
        self,
        cert: x509.Certificate,
        key: Optional[PrivateKeyTypes],
        chain: Optional[List[x509.Certificate]] = None,
        passphrase: Optional[str] = None,
        friendly_name: Optional[str] = None,
        algorithm: str = "aes256",
    ) -> bytes:
        """
        Serialize a PKCS#12 bundle

        Args:
            cert: End-entity certificate
            key: Its private key
            chain: Additional CA certificates
            passphrase: Protects the SafeBags; unencrypted when empty
            friendly_name: Alias stored in the friendlyName attribute
            algorithm: "aes256" or "3des"
        """
        if passphrase:
            password = passphrase.encode("utf-8")
            builder = serialization.PrivateFormat.PKCS12.encryption_builder().kdf_rounds(50000)
            if algorithm.lower() in ("3des", "des3", "tripledes"):
                builder = builder.key_cert_algorithm(
                    pkcs12.PBES.PBESv1SHA1And3KeyTripleDESCBC
                ).hmac_hash(hashes.SHA1())
            elif algorithm.lower() in ("aes256", "aes-256", "aes"):
                builder = builder.key_cert_algorithm(
                    pkcs12.PBES.PBESv2SHA256AndAES256CBC
                ).hmac_hash(hashes.SHA256())
            else:
                raise ValueError(f"Unsupported PKCS#12 algorithm: {algorithm}")
            encryption = builder.build(password)
        else:
            encryption = serialization.NoEncryption()

        return pkcs12.serialize_key_and_certificates(
            name=friendly_name.encode("utf-8") if friendly_name else None,
            key=key,
            cert=cert,
            cas=chain or None,
            encryption_algorithm=encryption,
        )

    def import_p12(self, data: bytes, passphrase: Optional[str] = None) -> Tuple[x509.Certificate, Optional[PrivateKeyTypes], List[x509.Certificate]]:
        """
        Parse PKCS#12 data into (end entity, key, chain).

        The certificate whose public key matches the private key is the end
        entity; the others form the chain.

        Raises:
            PassphraseUnavailableError: Wrong passphrase (or corrupt bundle)
            ParseError: No certificate in the bundle
        """
        password = passphrase.encode("utf-8") if passphrase else None
        try:
            key, cert, additional = pkcs12.load_key_and_certificates(data, password)
        except ValueError as e:
            raise PassphraseUnavailableError("Could not decrypt PKCS#12 bundle") from e

        certificates = ([cert] if cert is not None else []) + list(additional or [])
        if not certificates:
            raise ParseError("No certificate found in PKCS#12 bundle")

        end_entity = certificates[0]
        if key is not None:
            for candidate in certificates:
                if self.validate_key_pair(candidate, key):
                    end_entity = candidate
                    break
        chain = [c for c in certificates if c is not end_entity]
        return end_entity, key, chain

    def export_p7(self, certs: List[x509.Certificate], encoding: Encoding = Encoding.PEM) -> bytes:
        """PKCS#7 signed-data with no signers and the certificates list populated."""
        wire = serialization.Encoding.DER if Encoding(encoding) == Encoding.DER else serialization.Encoding.PEM
        return pkcs7.serialize_certificates(certs, wire)

    def import_p7(self, data: bytes) -> List[x509.Certificate]:
        try:
            if b"-----BEGIN" in data:
                certs = pkcs7.load_pem_pkcs7_certificates(data)
            else:
                certs = pkcs7.load_der_pkcs7_certificates(data)
        except ValueError as e:
            raise ParseError(f"Invalid PKCS#7 bundle: {e}") from e
        if not certs:
            raise ParseError("PKCS#7 bundle contains no certificates")
        return certs
