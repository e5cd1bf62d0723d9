"""
Pydantic schemas for the persisted configuration document (cert-config.json).
"""

from typing import Optional, List, Dict
from datetime import datetime
from pydantic import Field, field_validator
from croniter import croniter

from certops.schemas.base import CamelModel
from certops.schemas.connections import SmtpSettings, NginxProxyManagerSettings
from certops.schemas.deploy_action import DeployAction


class CaValidityPeriod(CamelModel):
    """Validity in days used when creating certificates."""
    root_ca: int = Field(default=3650, ge=1, alias="rootCA")
    intermediate_ca: int = Field(default=1825, ge=1, alias="intermediateCA")
    standard: int = Field(default=365, ge=1)


class EmailDefaults(CamelModel):
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)


class DeploymentDefaults(CamelModel):
    """Connection settings that actions fall back to."""
    email: EmailDefaults = Field(default_factory=EmailDefaults)
    nginx_proxy_manager: NginxProxyManagerSettings = Field(default_factory=NginxProxyManagerSettings)


class GlobalDefaults(CamelModel):
    """Engine-wide policy persisted alongside per-certificate config."""
    ca_validity_period: CaValidityPeriod = Field(default_factory=CaValidityPeriod)
    renew_days_before_expiry: int = Field(default=30, ge=0)
    enable_auto_renewal_job: bool = True
    renewal_schedule: str = "0 0 * * *"
    last_renewal_check: Optional[datetime] = None
    enable_certificate_backups: bool = True
    auto_renew_by_default: bool = True
    deployment: DeploymentDefaults = Field(default_factory=DeploymentDefaults)

    @field_validator("renewal_schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        v = v.strip()
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v}")
        return v


class CertificateConfig(CamelModel):
    """Stored policy and metadata for one certificate."""
    name: Optional[str] = None
    auto_renew: Optional[bool] = None
    renew_days_before_expiry: Optional[int] = Field(default=None, ge=0)
    deploy_actions: List[DeployAction] = Field(default_factory=list)
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    chain_path: Optional[str] = None
    fullchain_path: Optional[str] = None
    p12_path: Optional[str] = None

    # Passphrase vault fields
    has_stored_passphrase: bool = False
    encrypted_passphrase: Optional[str] = None
    passphrase_iv: Optional[str] = Field(default=None, alias="passphraseIV")


class ConfigDocument(CamelModel):
    """Root of cert-config.json."""
    global_defaults: GlobalDefaults = Field(default_factory=GlobalDefaults)
    certificates: Dict[str, CertificateConfig] = Field(default_factory=dict)
