"""
Certificate entity held by the registry.
"""

from typing import Optional, List
from datetime import datetime, timedelta
from enum import Enum
from pydantic import Field

from certops.schemas.base import CamelModel
from certops.schemas.deploy_action import DeployAction


class KeyType(str, Enum):
    RSA = "RSA"
    EC = "EC"


class Encoding(str, Enum):
    PEM = "PEM"
    DER = "DER"


class SubjectAltNames(CamelModel):
    """DNS names (CN first when hostname-shaped) and IP addresses."""
    domains: List[str] = Field(default_factory=list)
    ips: List[str] = Field(default_factory=list)


class CertInfo(CamelModel):
    """Everything that can be read from the certificate itself."""
    fingerprint: str
    common_name: Optional[str] = None
    subject: str = ""
    issuer: str = ""
    issuer_cn: Optional[str] = Field(default=None, alias="issuerCN")
    serial_number: str = ""
    signature_algorithm: str = ""
    subject_key_identifier: Optional[str] = None
    authority_key_identifier: Optional[str] = None
    key_type: Optional[KeyType] = None
    key_size: Optional[int] = None
    valid_from: datetime
    valid_to: datetime
    sans: SubjectAltNames = Field(default_factory=SubjectAltNames)
    is_ca: bool = Field(default=False, alias="isCA")
    path_len_constraint: Optional[int] = None
    is_self_signed: bool = False
    is_root_ca: bool = Field(default=False, alias="isRootCA")
    key_usage: List[str] = Field(default_factory=list)
    extended_key_usage: List[str] = Field(default_factory=list)
    original_encoding: Encoding = Encoding.PEM


class Certificate(CertInfo):
    """A registered certificate: parsed facts, file refs, policy and graph links."""
    cert_path: str
    key_path: Optional[str] = None
    chain_path: Optional[str] = None
    fullchain_path: Optional[str] = None
    p12_path: Optional[str] = None

    name: Optional[str] = None
    auto_renew: bool = True
    renew_days_before_expiry: Optional[int] = None
    deploy_actions: List[DeployAction] = Field(default_factory=list)
    has_stored_passphrase: bool = False

    signed_by: Optional[str] = None
    signs: List[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.common_name or self.fingerprint[:16]

    def days_until_expiry(self, now: datetime) -> int:
        return (self.valid_to - now).days

    def is_expired(self, now: datetime) -> bool:
        return self.valid_to <= now

    def renewal_threshold(self, default_days: int) -> int:
        if self.renew_days_before_expiry is None:
            return default_days
        return self.renew_days_before_expiry

    def needs_renewal(self, now: datetime, default_days: int = 30) -> bool:
        """True when auto-renew is on and remaining validity is at or below the threshold."""
        if not self.auto_renew:
            return False
        return (self.valid_to - now) <= timedelta(days=self.renewal_threshold(default_days))
