"""
Engine - builds and owns every certops component.

One Engine is constructed per process (or per test) from explicit Settings;
nothing below it is a module-level singleton. It exposes the caller-facing
operations and runs the background tasks (file watcher, renewal scheduler).
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import httpx
import structlog

from certops.core.config import Settings
from certops.core.storage import Clock, utc_now
from certops.models.certificate import Certificate, Encoding
from certops.schemas.activity import Activity, ActivityType
from certops.schemas.config import GlobalDefaults
from certops.schemas.deploy_action import DeployAction
from certops.schemas.deploy_result import DeployResult
from certops.schemas.renewal import RenewalReport
from certops.services.activity_service import ActivityService
from certops.services.ca_service import CaService
from certops.services.certificate_service import CertificateService
from certops.services.config_store import ConfigStore
from certops.services.crypto_service import CryptoService
from certops.services.deploy_service import DeployService, DockerClientFactory, SmtpFactory
from certops.services.file_store import CertificateFileStore
from certops.services.file_watcher import FileWatcher, WatchEventKind
from certops.services.passphrase_vault import PassphraseVault
from certops.services.registry import CertificateRegistry
from certops.services.renewal_service import RenewalService

logger = structlog.get_logger()

# Global default fields whose change restarts the renewal scheduler
SCHEDULE_FIELDS = ("renewal_schedule", "renewalSchedule", "enable_auto_renewal_job", "enableAutoRenewalJob")


class Engine:
    """Certificate lifecycle engine."""

    def __init__(
        self,
        settings: Settings,
        clock: Optional[Clock] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        docker_client_factory: Optional[DockerClientFactory] = None,
        smtp_factory: Optional[SmtpFactory] = None,
    ):
        self.settings = settings
        self.clock = clock or utc_now

        self.crypto = CryptoService(clock=self.clock)
        self.config_store = ConfigStore(settings.config_file)
        self.vault = PassphraseVault(settings.encryption_key_file, self.config_store)
        self.activity = ActivityService(settings.activities_file, max_items=settings.activity_max_items, clock=self.clock)
        self.file_store = CertificateFileStore(settings.certs_dir, clock=self.clock)
        self.registry = CertificateRegistry(
            settings.certs_dir,
            self.crypto,
            self.config_store,
            self.vault,
            self.file_store,
            clock=self.clock,
        )
        self.watcher = FileWatcher(
            settings.certs_dir,
            self._on_file_event,
            debounce_ms=settings.watcher_debounce_ms,
            ignore_window_ms=settings.ignore_window_ms,
        )
        self.file_store.set_ignore_callback(self.watcher.ignore_file_paths)

        self.ca_service = CaService(
            self.crypto, self.registry, self.config_store, self.vault, self.file_store, self.activity
        )
        self.certificate_service = CertificateService(
            self.crypto, self.registry, self.ca_service, self.config_store, self.file_store, self.activity
        )
        self.deploy_service = DeployService(
            self.crypto,
            self.registry,
            self.config_store,
            self.file_store,
            self.activity,
            clock=self.clock,
            default_timeout=settings.deploy_action_timeout,
            http_timeout=settings.http_action_timeout,
            transfer_timeout=settings.transfer_action_timeout,
            http_transport=http_transport,
            docker_client_factory=docker_client_factory,
            smtp_factory=smtp_factory,
            docker_host=settings.docker_host,
        )
        self.renewal = RenewalService(
            self.crypto,
            self.registry,
            self.ca_service,
            self.config_store,
            self.file_store,
            self.activity,
            self.deploy_service,
            clock=self.clock,
        )
        self.started = False

    async def _on_file_event(self, path: str, kind: WatchEventKind) -> None:
        await self.registry.refresh_file(path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Load state and start background tasks.

        Raises:
            StorageError: Encryption key file or config document is unreadable
        """
        if self.started:
            return
        logger.info("Starting certops engine", config_dir=self.settings.config_dir, certs_dir=self.settings.certs_dir)
        self.vault.check_key_file()
        await self.config_store.load()
        await self.activity.load()
        await self.registry.load()

        if self.settings.enable_file_watch:
            await self.watcher.start()
        defaults = await self.config_store.get_global_defaults()
        if defaults.enable_auto_renewal_job:
            await self.renewal.start()

        self.started = True
        await self.activity.record_system_activity("startup", {"certificates": len(self.registry)})
        logger.info("Certops engine started", certificates=len(self.registry))

    async def stop(self) -> None:
        if not self.started:
            return
        logger.info("Stopping certops engine")
        await self.renewal.stop()
        await self.watcher.stop()
        self.started = False
        await self.activity.record_system_activity("shutdown")
        logger.info("Certops engine stopped")

    async def __aenter__(self) -> "Engine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    def list_certificates(self, ca_only: bool = False, expiring_within: Optional[int] = None) -> List[Certificate]:
        return self.registry.list(ca_only=ca_only, expiring_within=expiring_within)

    def get_certificate(self, fingerprint: str) -> Certificate:
        return self.registry.get(fingerprint)

    async def create_root_ca(self, subject: str, **kwargs) -> Certificate:
        return await self.ca_service.create_root_ca(subject, **kwargs)

    async def create_intermediate_ca(self, issuer_fingerprint: str, subject: str, **kwargs) -> Certificate:
        return await self.ca_service.create_intermediate_ca(issuer_fingerprint, subject, **kwargs)

    async def issue_certificate(self, issuer_fingerprint: str, common_name: str, **kwargs) -> Certificate:
        return await self.certificate_service.issue_certificate(issuer_fingerprint, common_name, **kwargs)

    async def sign_csr(self, issuer_fingerprint: str, csr_data: bytes, **kwargs) -> Certificate:
        return await self.certificate_service.sign_csr(issuer_fingerprint, csr_data, **kwargs)

    async def import_certificate(self, cert_data: bytes, **kwargs) -> Certificate:
        return await self.certificate_service.import_certificate(cert_data, **kwargs)

    async def import_p12(self, data: bytes, passphrase: Optional[str] = None, name: Optional[str] = None) -> Certificate:
        return await self.certificate_service.import_p12(data, passphrase, name)

    async def import_p7(self, data: bytes) -> List[Certificate]:
        return await self.certificate_service.import_p7(data)

    async def export_p12(self, fingerprint: str, passphrase: Optional[str] = None, **kwargs) -> bytes:
        return await self.certificate_service.export_p12(fingerprint, passphrase, **kwargs)

    async def export_p7(self, fingerprint: str, include_chain: bool = True, encoding: Encoding = Encoding.PEM) -> bytes:
        return await self.certificate_service.export_p7(fingerprint, include_chain, encoding)

    async def update_certificate(self, fingerprint: str, patch: Dict[str, Any], user: Optional[str] = None) -> Certificate:
        """
        Update name, renewal policy, deploy actions or companion file paths.

        Raises:
            NotFoundError: Unknown fingerprint
            ValueError: A field is not editable or invalid
        """
        cert = await self.registry.update(fingerprint, patch)
        await self.activity.record_certificate_activity("update", cert, {"fields": sorted(patch)}, user)
        return cert

    async def delete_certificate(
        self,
        fingerprint: str,
        cascade: bool = False,
        delete_files: bool = False,
        user: Optional[str] = None,
    ) -> List[Certificate]:
        """
        Raises:
            NotFoundError: Unknown fingerprint
            ConflictError: It signs other certificates and cascade is False
        """
        removed = await self.registry.delete(fingerprint, cascade=cascade, delete_files=delete_files)
        for cert in removed:
            await self.activity.record_certificate_activity(
                "delete", cert, {"cascade": cascade, "deleteFiles": delete_files}, user
            )
        return removed

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    async def list_deploy_actions(self, fingerprint: str) -> List[DeployAction]:
        return await self.deploy_service.list_actions(fingerprint)

    async def add_deploy_action(self, fingerprint: str, action: Union[DeployAction, Dict[str, Any]]) -> DeployAction:
        return await self.deploy_service.add_action(fingerprint, action)

    async def update_deploy_action(self, fingerprint: str, ref: Union[str, int], patch: Dict[str, Any]) -> DeployAction:
        return await self.deploy_service.update_action(fingerprint, ref, patch)

    async def delete_deploy_action(self, fingerprint: str, ref: Union[str, int]) -> DeployAction:
        return await self.deploy_service.delete_action(fingerprint, ref)

    async def reorder_deploy_actions(self, fingerprint: str, order: List[int]) -> List[DeployAction]:
        return await self.deploy_service.reorder_actions(fingerprint, order)

    async def toggle_deploy_action(self, fingerprint: str, ref: Union[str, int], enabled: Optional[bool] = None) -> DeployAction:
        return await self.deploy_service.toggle_action(fingerprint, ref, enabled)

    async def deploy_certificate(self, fingerprint: str, action_ids: Optional[List[str]] = None) -> DeployResult:
        return await self.deploy_service.deploy(fingerprint, action_ids)

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    async def renew_certificate(
        self,
        fingerprint: str,
        days: Optional[int] = None,
        deploy: bool = True,
        passphrase: Optional[str] = None,
    ) -> Certificate:
        return await self.renewal.renew_certificate(fingerprint, days=days, deploy=deploy, passphrase=passphrase)

    async def run_renewal_check(self) -> RenewalReport:
        return await self.renewal.run_check()

    async def next_renewal_check(self) -> Optional[datetime]:
        defaults = await self.config_store.get_global_defaults()
        if not defaults.enable_auto_renewal_job:
            return None
        return self.renewal.next_run(defaults.renewal_schedule)

    # ------------------------------------------------------------------
    # CA passphrases
    # ------------------------------------------------------------------

    async def set_ca_passphrase(self, fingerprint: str, passphrase: str) -> None:
        await self.ca_service.set_passphrase(fingerprint, passphrase)

    async def clear_ca_passphrase(self, fingerprint: str) -> None:
        await self.ca_service.clear_passphrase(fingerprint)

    async def has_ca_passphrase(self, fingerprint: str) -> bool:
        return await self.ca_service.has_passphrase(fingerprint)

    # ------------------------------------------------------------------
    # Global defaults
    # ------------------------------------------------------------------

    async def get_global_defaults(self) -> GlobalDefaults:
        return await self.config_store.get_global_defaults()

    async def update_global_defaults(self, patch: Dict[str, Any], user: Optional[str] = None) -> GlobalDefaults:
        """
        Merge a patch into the global defaults.

        Raises:
            ValueError: Invalid value (e.g. a malformed cron expression)
        """
        defaults = await self.config_store.update_global_defaults(patch)
        if self.started and any(field in patch for field in SCHEDULE_FIELDS):
            await self.renewal.reschedule()
        await self.activity.record_system_activity("config-update", {"fields": sorted(patch), "user": user})
        return defaults

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    async def get_activities(
        self,
        limit: int = 50,
        activity_type: Optional[ActivityType] = None,
        search: Optional[str] = None,
    ) -> List[Activity]:
        return await self.activity.get_activities(limit=limit, activity_type=activity_type, search=search)

    async def clear_activities(self) -> None:
        await self.activity.clear_activities()
