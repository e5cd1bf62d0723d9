"""
Error kinds raised by the certificate lifecycle engine.
"""


class CertOpsError(Exception):
    """Base exception for engine operations."""
    pass


class ParseError(CertOpsError):
    """Data does not parse as a PEM or DER certificate (or key)."""
    pass


class KeyMismatchError(CertOpsError):
    """Certificate and private key don't match."""
    pass


class PassphraseRequiredError(CertOpsError):
    """Private key is encrypted and no passphrase is known."""
    pass


class PassphraseUnavailableError(CertOpsError):
    """Stored or supplied passphrase could not be used."""
    pass


class VerifyFailedError(CertOpsError):
    """CSR or chain signature verification failed."""
    pass


class SigningError(CertOpsError):
    """The signing key or certificate contents were rejected while signing."""
    pass


class NotFoundError(CertOpsError):
    """Fingerprint (or deploy action) unknown to the registry."""
    pass


class ConflictError(CertOpsError):
    """Operation refused because other certificates depend on the target."""
    pass


class StorageError(CertOpsError):
    """Disk read/write or atomic rename failure."""
    pass


class DeployError(CertOpsError):
    """A deployment action failed."""

    def __init__(self, action_type: str, message: str):
        super().__init__(message)
        self.action_type = action_type
        self.message = message

    def __str__(self) -> str:
        return f"{self.action_type}: {self.message}"


class CanceledError(CertOpsError):
    """Task observed a cancellation request."""
    pass
