"""
Certificate Registry - in-memory index of all certificates keyed by
normalized fingerprint, with the issuer -> children graph.

The registry merges what is on disk (parsed certificate files) with what is
stored in the config store (policy, names, deploy actions). Every mutation
runs under the registry lock; changes that must be persisted are written to
the config store before the in-memory view is touched.
"""

import asyncio
import os
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from certops.core.exceptions import ConflictError, NotFoundError, ParseError
from certops.core.fingerprints import normalize_fingerprint
from certops.core.storage import Clock, utc_now
from certops.models.certificate import Certificate, CertInfo
from certops.schemas.config import CertificateConfig, ConfigDocument, GlobalDefaults
from certops.schemas.deploy_action import DeployAction
from certops.services.config_store import ConfigStore, find_certificate_key
from certops.services.crypto_service import CryptoService
from certops.services.discovery import (
    find_chain_file,
    find_fullchain_file,
    find_key_file,
    find_p12_file,
    scan_certificate_files,
)
from certops.services.file_store import CertificateFileStore
from certops.services.passphrase_vault import PassphraseVault

logger = structlog.get_logger()

ActionsEdit = Callable[[List[DeployAction]], Tuple[List[DeployAction], Any]]

CERT_INFO_FIELDS = tuple(CertInfo.model_fields)

# Metadata a caller may change through update()
EDITABLE_FIELDS = (
    "name",
    "auto_renew",
    "renew_days_before_expiry",
    "deploy_actions",
    "key_path",
    "chain_path",
    "fullchain_path",
    "p12_path",
)

FILE_FIELDS = ("key_path", "chain_path", "fullchain_path", "p12_path")


class RegistryEventKind(str, Enum):
    READY = "ready"
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


@dataclass
class RegistryEvent:
    kind: RegistryEventKind
    fingerprint: Optional[str] = None
    previous_fingerprint: Optional[str] = None


RegistryListener = Callable[[RegistryEvent], None]


@dataclass
class _ScannedFile:
    path: str
    info: CertInfo
    key_path: Optional[str]
    chain_path: Optional[str]
    fullchain_path: Optional[str]
    p12_path: Optional[str]


class CertificateRegistry:
    """Authoritative live view of all known certificates."""

    def __init__(
        self,
        certs_dir: str,
        crypto: CryptoService,
        config_store: ConfigStore,
        vault: PassphraseVault,
        file_store: CertificateFileStore,
        clock: Optional[Clock] = None,
    ):
        self.certs_dir = os.path.abspath(certs_dir)
        self.crypto = crypto
        self.config_store = config_store
        self.vault = vault
        self.file_store = file_store
        self.clock = clock or utc_now
        self.lock = asyncio.Lock()
        self.ready = False
        self._certificates: Dict[str, Certificate] = {}
        self._paths: Dict[str, str] = {}
        self._listeners: List[RegistryListener] = []

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: RegistryEventKind, fingerprint: Optional[str] = None, previous: Optional[str] = None) -> None:
        event = RegistryEvent(kind=kind, fingerprint=fingerprint, previous_fingerprint=previous)
        for listener in list(self._listeners):
            listener(event)

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def _scan_file(self, path: str) -> Optional[_ScannedFile]:
        try:
            with open(path, "rb") as f:
                data = f.read()
        except FileNotFoundError:
            return None
        try:
            info = self.crypto.parse(data)
        except ParseError as e:
            logger.debug("Skipping file that is not a certificate", path=path, error=str(e))
            return None
        return _ScannedFile(
            path=os.path.abspath(path),
            info=info,
            key_path=find_key_file(path),
            chain_path=find_chain_file(path),
            fullchain_path=find_fullchain_file(path),
            p12_path=find_p12_file(path),
        )

    def _scan(self) -> List[_ScannedFile]:
        scanned = []
        for path in scan_certificate_files(self.certs_dir):
            entry = self._scan_file(path)
            if entry is not None:
                scanned.append(entry)
        return scanned

    @staticmethod
    def _merge(scanned: _ScannedFile, config: Optional[CertificateConfig], defaults: GlobalDefaults) -> Certificate:
        data: Dict[str, Any] = scanned.info.model_dump()
        data.update(
            cert_path=scanned.path,
            key_path=scanned.key_path,
            chain_path=scanned.chain_path,
            fullchain_path=scanned.fullchain_path,
            p12_path=scanned.p12_path,
            auto_renew=defaults.auto_renew_by_default,
        )
        if config is not None:
            for field in FILE_FIELDS:
                value = getattr(config, field)
                if value and os.path.exists(value):
                    data[field] = value
            if config.name:
                data["name"] = config.name
            if config.auto_renew is not None:
                data["auto_renew"] = config.auto_renew
            data["renew_days_before_expiry"] = config.renew_days_before_expiry
            data["deploy_actions"] = config.deploy_actions
            data["has_stored_passphrase"] = config.has_stored_passphrase
        return Certificate.model_validate(data)

    def _rebuild_graph(self) -> None:
        """Resolve signed_by / signs by AKI -> SKI, falling back to DN match."""
        certificates = self._certificates
        for cert in certificates.values():
            cert.signed_by = None
            cert.signs = []

        by_ski: Dict[str, List[Certificate]] = {}
        by_subject: Dict[str, List[Certificate]] = {}
        for cert in certificates.values():
            if not cert.is_ca:
                continue
            if cert.subject_key_identifier:
                by_ski.setdefault(cert.subject_key_identifier, []).append(cert)
            by_subject.setdefault(cert.subject, []).append(cert)

        for cert in certificates.values():
            if cert.is_self_signed:
                continue
            candidates = [
                ca for ca in by_ski.get(cert.authority_key_identifier or "", [])
                if ca.subject == cert.issuer and ca.fingerprint != cert.fingerprint
            ]
            if not candidates:
                candidates = [
                    ca for ca in by_subject.get(cert.issuer, [])
                    if ca.fingerprint != cert.fingerprint
                    and (not cert.authority_key_identifier or not ca.subject_key_identifier
                         or ca.subject_key_identifier == cert.authority_key_identifier)
                ]
            if not candidates:
                continue
            # Several generations of the same CA: link to the newest
            issuer = max(candidates, key=lambda ca: (ca.valid_to, ca.fingerprint))
            cert.signed_by = issuer.fingerprint
            issuer.signs.append(cert.fingerprint)

        for cert in certificates.values():
            cert.signs.sort()

    def _insert(self, cert: Certificate) -> None:
        self._certificates[cert.fingerprint] = cert
        self._paths[cert.cert_path] = cert.fingerprint

    def _drop(self, fingerprint: str) -> Optional[Certificate]:
        cert = self._certificates.pop(fingerprint, None)
        if cert is not None and self._paths.get(cert.cert_path) == fingerprint:
            del self._paths[cert.cert_path]
        return cert

    async def load(self) -> None:
        """Scan the certificate directory and merge with stored config."""
        async with self.lock:
            document = await self.config_store.snapshot()
            scanned = await asyncio.to_thread(self._scan)

            self._certificates = {}
            self._paths = {}
            for entry in scanned:
                fingerprint = entry.info.fingerprint
                if fingerprint in self._certificates:
                    logger.warning(
                        "Duplicate certificate on disk",
                        fingerprint=fingerprint,
                        path=entry.path,
                        registered_path=self._certificates[fingerprint].cert_path,
                    )
                    continue
                config = self._config_for(document, fingerprint)
                self._insert(self._merge(entry, config, document.global_defaults))

            self._rebuild_graph()
            self.ready = True

        logger.info("Certificate registry ready", certificates=len(self._certificates), path=self.certs_dir)
        self._emit(RegistryEventKind.READY)

    @staticmethod
    def _config_for(document: ConfigDocument, fingerprint: str) -> Optional[CertificateConfig]:
        key = find_certificate_key(document, fingerprint)
        return document.certificates.get(key) if key else None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find(self, fingerprint: str) -> Optional[Certificate]:
        cert = self._certificates.get(normalize_fingerprint(fingerprint))
        return cert.model_copy(deep=True) if cert else None

    def get(self, fingerprint: str) -> Certificate:
        """
        Raises:
            NotFoundError: Unknown fingerprint
        """
        cert = self.find(fingerprint)
        if cert is None:
            raise NotFoundError(f"Certificate not found: {fingerprint}")
        return cert

    def find_by_path(self, path: str) -> Optional[Certificate]:
        fingerprint = self._paths.get(os.path.abspath(path))
        return self.find(fingerprint) if fingerprint else None

    def list(self, ca_only: bool = False, expiring_within: Optional[int] = None) -> List[Certificate]:
        """
        Snapshot of registered certificates ordered by display name.

        Args:
            ca_only: Only certificates with basicConstraints cA
            expiring_within: Only certificates expiring within this many days
        """
        now = self.clock()
        result = []
        for cert in self._certificates.values():
            if ca_only and not cert.is_ca:
                continue
            if expiring_within is not None and cert.valid_to - now > timedelta(days=expiring_within):
                continue
            result.append(cert.model_copy(deep=True))
        return sorted(result, key=lambda c: (c.display_name.lower(), c.fingerprint))

    def issuer_depth(self, fingerprint: str) -> int:
        """Number of registered issuers above a certificate."""
        depth = 0
        seen = {fingerprint}
        cert = self._certificates.get(fingerprint)
        while cert is not None and cert.signed_by and cert.signed_by not in seen:
            seen.add(cert.signed_by)
            depth += 1
            cert = self._certificates.get(cert.signed_by)
        return depth

    def __len__(self) -> int:
        return len(self._certificates)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_from_file(self, path: str) -> Optional[Certificate]:
        """Register the certificate in path; idempotent on fingerprint."""
        async with self.lock:
            cert, added = await self._add_from_file_locked(path)
        if added:
            self._emit(RegistryEventKind.ADDED, cert.fingerprint)
        return cert.model_copy(deep=True) if cert else None

    async def _add_from_file_locked(self, path: str) -> Tuple[Optional[Certificate], bool]:
        scanned = await asyncio.to_thread(self._scan_file, path)
        if scanned is None:
            return None, False
        fingerprint = scanned.info.fingerprint
        existing = self._certificates.get(fingerprint)
        if existing is not None:
            return existing, False
        document = await self.config_store.snapshot()
        cert = self._merge(scanned, self._config_for(document, fingerprint), document.global_defaults)
        self._insert(cert)
        self._rebuild_graph()
        logger.info("Certificate added", fingerprint=fingerprint, path=cert.cert_path)
        return cert, True

    async def refresh_file(self, path: str) -> None:
        """
        Re-read one file and reconcile the registry with it.

        New fingerprint: insert. Same fingerprint with new content: update.
        File gone: remove, unless other certificates still reference it.
        """
        path = os.path.abspath(path)
        events: List[RegistryEvent] = []

        async with self.lock:
            old_fingerprint = self._paths.get(path)
            scanned = await asyncio.to_thread(self._scan_file, path) if os.path.exists(path) else None

            if scanned is None:
                if old_fingerprint and not os.path.exists(path):
                    old = self._certificates[old_fingerprint]
                    if old.signs:
                        logger.warning(
                            "Certificate file removed but it still signs registered certificates; keeping entry",
                            fingerprint=old_fingerprint,
                            path=path,
                            signs=len(old.signs),
                        )
                    else:
                        self._drop(old_fingerprint)
                        self._rebuild_graph()
                        events.append(RegistryEvent(RegistryEventKind.REMOVED, old_fingerprint))
                        logger.info("Certificate file removed", fingerprint=old_fingerprint, path=path)
            else:
                new_fingerprint = scanned.info.fingerprint
                if old_fingerprint == new_fingerprint:
                    cert = self._certificates[new_fingerprint]
                    changed = False
                    for field in ("key_path", "chain_path", "fullchain_path", "p12_path"):
                        if getattr(cert, field) is None and getattr(scanned, field):
                            setattr(cert, field, getattr(scanned, field))
                            changed = True
                    if cert.valid_to != scanned.info.valid_to:
                        for field in CERT_INFO_FIELDS:
                            setattr(cert, field, getattr(scanned.info, field))
                        changed = True
                    if changed:
                        events.append(RegistryEvent(RegistryEventKind.CHANGED, new_fingerprint))
                elif new_fingerprint in self._certificates:
                    logger.debug("File holds an already registered certificate", path=path, fingerprint=new_fingerprint)
                else:
                    document = await self.config_store.snapshot()
                    config = self._config_for(document, new_fingerprint)
                    if old_fingerprint:
                        # Replaced in place by an external tool: the stored policy follows the path
                        if config is None:
                            old_config = self._config_for(document, old_fingerprint)
                            if old_config is not None:
                                await self.config_store.move_certificate_config(old_fingerprint, new_fingerprint)
                                self.vault.rename(old_fingerprint, new_fingerprint)
                                config = old_config
                        self._drop(old_fingerprint)
                    cert = self._merge(scanned, config, document.global_defaults)
                    self._insert(cert)
                    self._rebuild_graph()
                    if old_fingerprint:
                        events.append(RegistryEvent(RegistryEventKind.CHANGED, new_fingerprint, old_fingerprint))
                    else:
                        events.append(RegistryEvent(RegistryEventKind.ADDED, new_fingerprint))
                    logger.info(
                        "Certificate file updated",
                        path=path,
                        fingerprint=new_fingerprint,
                        previous_fingerprint=old_fingerprint,
                    )

        for event in events:
            self._emit(event.kind, event.fingerprint, event.previous_fingerprint)

    async def register(self, cert_path: str, config_patch: Optional[Dict[str, Any]] = None) -> Certificate:
        """
        Register a certificate just written by an issuance or import flow.

        Stored config is updated with config_patch first; an already
        registered fingerprint only gets its config updated.
        """
        async with self.lock:
            scanned = await asyncio.to_thread(self._scan_file, cert_path)
            if scanned is None:
                raise ParseError(f"Not a certificate: {cert_path}")
            fingerprint = scanned.info.fingerprint
            if config_patch:
                await self.config_store.update_certificate_config(fingerprint, config_patch)
            document = await self.config_store.snapshot()
            config = self._config_for(document, fingerprint)
            existing = self._certificates.get(fingerprint)
            if existing is not None:
                scanned.path = existing.cert_path
            cert = self._merge(scanned, config, document.global_defaults)
            self._insert(cert)
            self._rebuild_graph()
            result = cert.model_copy(deep=True)

        self._emit(RegistryEventKind.CHANGED if existing else RegistryEventKind.ADDED, fingerprint)
        return result

    async def update(self, fingerprint: str, patch: Dict[str, Any]) -> Certificate:
        """
        Apply a metadata patch; persisted before the in-memory entity changes.

        Raises:
            NotFoundError: Unknown fingerprint
            ValueError: Field not editable or invalid value
        """
        fingerprint = normalize_fingerprint(fingerprint)
        async with self.lock:
            cert = self._certificates.get(fingerprint)
            if cert is None:
                raise NotFoundError(f"Certificate not found: {fingerprint}")

            patch = _snake_keys(patch)
            unknown = [k for k in patch if k not in EDITABLE_FIELDS]
            if unknown:
                raise ValueError(f"Fields are not editable: {', '.join(sorted(unknown))}")

            config = await self.config_store.update_certificate_config(fingerprint, patch)

            for field in EDITABLE_FIELDS:
                if field in patch:
                    value = getattr(config, field)
                    if field == "auto_renew" and value is None:
                        value = cert.auto_renew
                    setattr(cert, field, value)
            result = cert.model_copy(deep=True)

        logger.info("Certificate updated", fingerprint=fingerprint, fields=sorted(patch))
        self._emit(RegistryEventKind.CHANGED, fingerprint)
        return result

    async def edit_deploy_actions(self, fingerprint: str, edit: ActionsEdit) -> Tuple[List[DeployAction], Any]:
        """
        Read-modify-write a certificate's deploy actions under the writer lock.

        edit receives a copy of the current list and returns the new list plus
        a value handed back to the caller. Errors raised by edit leave the
        stored actions untouched.

        Raises:
            NotFoundError: Unknown fingerprint
        """
        fingerprint = normalize_fingerprint(fingerprint)
        async with self.lock:
            cert = self._certificates.get(fingerprint)
            if cert is None:
                raise NotFoundError(f"Certificate not found: {fingerprint}")

            actions, result = edit([a.model_copy(deep=True) for a in cert.deploy_actions])
            config = await self.config_store.update_certificate_config(fingerprint, {"deploy_actions": actions})
            cert.deploy_actions = config.deploy_actions
            saved = [a.model_copy(deep=True) for a in cert.deploy_actions]

        self._emit(RegistryEventKind.CHANGED, fingerprint)
        return saved, result

    def _descendants(self, fingerprint: str) -> List[str]:
        ordered: List[str] = []
        stack = [fingerprint]
        seen = set()
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            ordered.append(current)
            cert = self._certificates.get(current)
            if cert is not None:
                stack.extend(cert.signs)
        return ordered

    async def delete(self, fingerprint: str, cascade: bool = False, delete_files: bool = False) -> List[Certificate]:
        """
        Remove a certificate (and with cascade, everything it signed).

        Files stay on disk unless delete_files is set.

        Returns:
            Removed certificates

        Raises:
            NotFoundError: Unknown fingerprint
            ConflictError: It signs other certificates and cascade is False
        """
        fingerprint = normalize_fingerprint(fingerprint)
        async with self.lock:
            cert = self._certificates.get(fingerprint)
            if cert is None:
                raise NotFoundError(f"Certificate not found: {fingerprint}")
            if cert.signs and not cascade:
                raise ConflictError(
                    f"Certificate {cert.display_name} signs {len(cert.signs)} certificate(s); delete them first or cascade"
                )

            targets = [self._certificates[fp] for fp in self._descendants(fingerprint) if fp in self._certificates]
            target_fps = {c.fingerprint for c in targets}

            def apply(document: ConfigDocument) -> None:
                for key in list(document.certificates):
                    if normalize_fingerprint(key) in target_fps:
                        del document.certificates[key]

            await self.config_store.mutate(apply)

            for target in targets:
                self._drop(target.fingerprint)
                self.vault.forget(target.fingerprint)
            self._rebuild_graph()

            if delete_files:
                still_used = {
                    getattr(c, field)
                    for c in self._certificates.values()
                    for field in ("cert_path",) + FILE_FIELDS
                    if getattr(c, field)
                }
                paths = []
                for target in targets:
                    for field in ("cert_path",) + FILE_FIELDS:
                        path = getattr(target, field)
                        if path and path not in still_used:
                            paths.append(path)
                await self.file_store.delete(paths)

        for target in targets:
            logger.info("Certificate deleted", fingerprint=target.fingerprint, delete_files=delete_files)
            self._emit(RegistryEventKind.REMOVED, target.fingerprint)
        return targets

    async def replace_certificate(self, old_fingerprint: str, info: CertInfo) -> Certificate:
        """
        Swap in re-issued certificate material for an existing entity.

        Policy, file refs and stored passphrase move to the new fingerprint.
        """
        old_fingerprint = normalize_fingerprint(old_fingerprint)
        async with self.lock:
            cert = self._certificates.get(old_fingerprint)
            if cert is None:
                raise NotFoundError(f"Certificate not found: {old_fingerprint}")
            if info.fingerprint != old_fingerprint:
                await self.config_store.move_certificate_config(old_fingerprint, info.fingerprint)
                self.vault.rename(old_fingerprint, info.fingerprint)
            updated = cert.model_copy(update={field: getattr(info, field) for field in CERT_INFO_FIELDS}, deep=True)
            self._drop(old_fingerprint)
            self._insert(updated)
            self._rebuild_graph()
            result = updated.model_copy(deep=True)

        self._emit(RegistryEventKind.CHANGED, info.fingerprint, old_fingerprint)
        return result

    def set_passphrase_flag(self, fingerprint: str, stored: bool) -> None:
        cert = self._certificates.get(normalize_fingerprint(fingerprint))
        if cert is not None:
            cert.has_stored_passphrase = stored


def _snake_keys(patch: Dict[str, Any]) -> Dict[str, Any]:
    aliases = {
        (info.alias or name): name
        for name, info in Certificate.model_fields.items()
    }
    return {aliases.get(k, k): v for k, v in patch.items()}
