"""
Pydantic schemas for persisted documents and operation results.
"""

from .activity import Activity
from .config import (
    CaValidityPeriod,
    CertificateConfig,
    ConfigDocument,
    DeploymentDefaults,
    GlobalDefaults,
)
from .connections import NginxProxyManagerSettings, SmtpSettings
from .deploy_action import (
    ACTION_TYPES,
    DeployAction,
    parse_deploy_action,
)
from .deploy_result import ActionResult, DeployResult
from .renewal import RenewalReport, RenewedCertificate

__all__ = [
    "Activity",
    # Configuration
    "CaValidityPeriod",
    "CertificateConfig",
    "ConfigDocument",
    "DeploymentDefaults",
    "GlobalDefaults",
    "NginxProxyManagerSettings",
    "SmtpSettings",
    # Deployment
    "ACTION_TYPES",
    "DeployAction",
    "parse_deploy_action",
    "ActionResult",
    "DeployResult",
    # Renewal
    "RenewalReport",
    "RenewedCertificate",
]
