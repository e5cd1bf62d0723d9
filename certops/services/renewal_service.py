"""
Renewal service - re-issues certificates nearing expiry and runs their
deployment actions.

A cron-scheduled task (croniter) runs the renewal check. Renewing a
certificate keeps its subject, key and extensions; only the validity window,
serial and fingerprint change. The stored policy follows the new fingerprint.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from croniter import croniter

from certops.core.exceptions import CanceledError, CertOpsError, NotFoundError
from certops.core.storage import Clock, utc_now
from certops.models.certificate import Certificate
from certops.schemas.renewal import RenewalReport, RenewedCertificate
from certops.services.activity_service import ActivityService
from certops.services.ca_service import CaService
from certops.services.config_store import ConfigStore
from certops.services.crypto_service import CryptoService
from certops.services.deploy_service import DeployService
from certops.services.file_store import CertificateFileStore
from certops.services.registry import CertificateRegistry

logger = structlog.get_logger()


class RenewalService:
    """Threshold-driven renewal with a cron-scheduled background check."""

    def __init__(
        self,
        crypto: CryptoService,
        registry: CertificateRegistry,
        ca_service: CaService,
        config_store: ConfigStore,
        file_store: CertificateFileStore,
        activity: ActivityService,
        deploy_service: DeployService,
        clock: Optional[Clock] = None,
    ):
        self.crypto = crypto
        self.registry = registry
        self.ca_service = ca_service
        self.config_store = config_store
        self.file_store = file_store
        self.activity = activity
        self.deploy_service = deploy_service
        self.clock = clock or utc_now

        self._locks: Dict[str, asyncio.Lock] = {}
        self._check_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def _lock_for(self, fingerprint: str) -> asyncio.Lock:
        return self._locks.setdefault(fingerprint, asyncio.Lock())

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    async def candidates(self, now: Optional[datetime] = None) -> List[Certificate]:
        """
        Certificates due for renewal, issuers before the certificates they sign.
        """
        defaults = await self.config_store.get_global_defaults()
        now = now or self.clock()
        due = [
            cert for cert in self.registry.list()
            if cert.needs_renewal(now, defaults.renew_days_before_expiry)
        ]
        due.sort(key=lambda c: (self.registry.issuer_depth(c.fingerprint), not c.is_ca, c.display_name.lower()))
        return due

    async def renew_certificate(
        self,
        fingerprint: str,
        days: Optional[int] = None,
        deploy: bool = True,
        passphrase: Optional[str] = None,
    ) -> Certificate:
        """
        Re-issue a certificate in place and deploy it.

        Args:
            fingerprint: Certificate to renew
            days: New validity; defaults to the current validity span
            deploy: Run the certificate's deploy actions afterwards
            passphrase: Unlocks the signing key when none is stored

        Returns:
            The renewed certificate (new fingerprint)

        Raises:
            NotFoundError: Unknown certificate or unregistered issuer
            PassphraseRequiredError: Signing key is encrypted with no known passphrase
        """
        cert = self.registry.get(fingerprint)
        async with self._lock_for(cert.fingerprint):
            # Re-read under the lock; a concurrent renewal may have replaced it
            cert = self.registry.get(cert.fingerprint)
            try:
                renewed, backup = await self._renew_locked(cert, days, passphrase)
            except CertOpsError as e:
                logger.error("Certificate renewal failed", fingerprint=cert.fingerprint, error=str(e))
                await self.activity.record_certificate_activity("renew-failed", cert, {"error": str(e)})
                raise
            self._locks.pop(cert.fingerprint, None)

        await self.activity.record_certificate_activity(
            "renew",
            renewed,
            {
                "previousFingerprint": cert.fingerprint,
                "validTo": renewed.valid_to.isoformat(),
                "backup": backup,
            },
        )

        if deploy and renewed.deploy_actions:
            # A failed deployment does not undo the renewal; its outcome is in the activity log
            await self.deploy_service.deploy(renewed.fingerprint)
        return renewed

    async def _renew_locked(self, cert: Certificate, days: Optional[int], passphrase: Optional[str]):
        existing = await self.ca_service.load_certificate(cert)

        if cert.is_self_signed:
            issuer_cert = existing
            issuer_key = await self.ca_service.load_private_key(cert, passphrase)
            issuer = None
        else:
            if not cert.signed_by:
                raise NotFoundError(f"Issuer of {cert.display_name} is not registered ({cert.issuer})")
            issuer, issuer_cert, issuer_key = await self.ca_service.load_signing_pair(cert.signed_by, passphrase)

        new_cert, data = await asyncio.to_thread(
            self.crypto.renew, existing, issuer_cert, issuer_key, days, cert.original_encoding
        )

        defaults = await self.config_store.get_global_defaults()
        backup = await self.file_store.write(cert.cert_path, data, backup=defaults.enable_certificate_backups)
        if issuer is not None and cert.chain_path:
            chain = [issuer_cert] + await self.ca_service.chain_for(issuer)
            await self.file_store.write(
                cert.chain_path,
                b"".join(self.crypto.encode_certificate(c) for c in chain),
                backup=defaults.enable_certificate_backups,
            )

        info = self.crypto.certificate_info(new_cert, cert.original_encoding)
        renewed = await self.registry.replace_certificate(cert.fingerprint, info)
        logger.info(
            "Certificate renewed",
            previous_fingerprint=cert.fingerprint,
            fingerprint=renewed.fingerprint,
            valid_to=renewed.valid_to.isoformat(),
        )
        return renewed, backup

    async def run_check(self) -> RenewalReport:
        """
        Renew every certificate due for renewal.

        Failures are collected per certificate; the check carries on. When a
        stop is requested the certificate in progress completes and the rest
        are skipped.
        """
        async with self._check_lock:
            now = self.clock()
            due = await self.candidates(now)
            report = RenewalReport(checked_at=now, candidates=len(due))
            logger.info("Renewal check started", candidates=len(due))

            for cert in due:
                if self._stop.is_set():
                    report.canceled = True
                    logger.warning("Renewal check canceled", remaining=len(due) - len(report.renewed) - len(report.failed))
                    return report
                try:
                    renewed = await self.renew_certificate(cert.fingerprint)
                except CertOpsError as e:
                    report.failed[cert.fingerprint] = str(e)
                    continue
                report.renewed.append(
                    RenewedCertificate(
                        previous_fingerprint=cert.fingerprint,
                        fingerprint=renewed.fingerprint,
                        name=renewed.display_name,
                        valid_to=renewed.valid_to,
                    )
                )

            defaults = await self.config_store.update_global_defaults({"last_renewal_check": now})
            if defaults.enable_auto_renewal_job:
                report.next_run = self.next_run(defaults.renewal_schedule, now)

        await self.activity.record_system_activity(
            "renewal-check",
            {"candidates": report.candidates, "renewed": len(report.renewed), "failed": len(report.failed)},
        )
        logger.info(
            "Renewal check completed",
            candidates=report.candidates,
            renewed=len(report.renewed),
            failed=len(report.failed),
        )
        return report

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    def next_run(self, schedule: str, base: Optional[datetime] = None) -> datetime:
        return croniter(schedule, base or self.clock()).get_next(datetime)

    async def _run(self) -> None:
        while not self._stop.is_set():
            defaults = await self.config_store.get_global_defaults()
            now = self.clock()
            next_at = self.next_run(defaults.renewal_schedule, now)
            delay = max(0.0, (next_at - now).total_seconds())
            logger.info("Next renewal check scheduled", at=next_at.isoformat(), schedule=defaults.renewal_schedule)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass
            try:
                report = await self.run_check()
            except CertOpsError as e:
                logger.error("Renewal check failed", error=str(e))
                continue
            except Exception:
                # The scheduler outlives a broken tick; the next one retries
                logger.exception("Renewal check crashed")
                continue
            if report.canceled:
                raise CanceledError("Renewal check canceled")

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="certops-renewal-scheduler")
        logger.info("Renewal scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler; a renewal in progress completes first."""
        task, self._task = self._task, None
        if task is None:
            return
        self._stop.set()
        try:
            await task
        except CanceledError:
            pass
        logger.info("Renewal scheduler stopped")

    async def reschedule(self) -> None:
        """Apply a changed renewalSchedule / enableAutoRenewalJob."""
        defaults = await self.config_store.get_global_defaults()
        await self.stop()
        if defaults.enable_auto_renewal_job:
            await self.start()

    @property
    def running(self) -> bool:
        return self._task is not None
