"""
Config Store - persists per-certificate metadata, global defaults and
encrypted passphrase material to a single JSON document.
"""

import asyncio
import json
import os
from typing import Any, Callable, Dict, Optional, TypeVar

import structlog
from pydantic import ValidationError

from certops.core.exceptions import StorageError
from certops.core.fingerprints import normalize_fingerprint
from certops.core.storage import atomic_write_json
from certops.schemas.base import merge_model
from certops.schemas.config import CertificateConfig, ConfigDocument, GlobalDefaults

logger = structlog.get_logger()

T = TypeVar("T")


def find_certificate_key(document: ConfigDocument, fingerprint: str) -> Optional[str]:
    """
    Key under which a fingerprint is stored.

    Tries the normalized form first and sweeps all keys on a miss, so entries
    written with separators or in lowercase are still found.
    """
    normalized = normalize_fingerprint(fingerprint)
    if normalized in document.certificates:
        return normalized
    for key in document.certificates:
        if normalize_fingerprint(key) == normalized:
            return key
    return None


class ConfigStore:
    """
    JSON-backed configuration document.

    The document is only read or replaced while holding the store lock.
    Mutations are applied to a deep copy which replaces the in-memory
    document only after it has been written to disk.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = asyncio.Lock()
        self._document = ConfigDocument()

    def _read(self) -> ConfigDocument:
        if not os.path.exists(self.path):
            logger.info("Config file not found, using defaults", path=self.path)
            return ConfigDocument()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise StorageError(f"Config file {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to read config file {self.path}: {e}") from e

        try:
            document = ConfigDocument.model_validate(raw)
        except ValidationError as e:
            raise StorageError(f"Config file {self.path} is invalid: {e}") from e

        # Re-key entries under their normalized fingerprint
        certificates: Dict[str, CertificateConfig] = {}
        for key, entry in document.certificates.items():
            normalized = normalize_fingerprint(key)
            if normalized in certificates:
                logger.warning("Duplicate config entry for fingerprint", fingerprint=normalized)
                continue
            certificates[normalized] = entry
        document.certificates = certificates
        return document

    def _write(self, document: ConfigDocument) -> None:
        atomic_write_json(self.path, document.to_json_dict(), mode=0o600)

    async def load(self) -> ConfigDocument:
        """
        Load the document from disk.

        Raises:
            StorageError: If the file exists but cannot be read or parsed
        """
        async with self._lock:
            self._document = await asyncio.to_thread(self._read)
            logger.info(
                "Loaded certificate config",
                path=self.path,
                certificates=len(self._document.certificates),
            )
            return self._document.model_copy(deep=True)

    async def save(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, self._document)

    async def snapshot(self) -> ConfigDocument:
        """Deep copy of the current document."""
        async with self._lock:
            return self._document.model_copy(deep=True)

    async def mutate(self, fn: Callable[[ConfigDocument], T]) -> T:
        """
        Apply fn to a copy of the document and persist it.

        If fn raises or the write fails, the in-memory document is left
        untouched and the error propagates.
        """
        async with self._lock:
            draft = self._document.model_copy(deep=True)
            result = fn(draft)
            await asyncio.to_thread(self._write, draft)
            self._document = draft
            return result

    # Per-certificate entries

    async def get_certificate_config(self, fingerprint: str) -> Optional[CertificateConfig]:
        async with self._lock:
            key = find_certificate_key(self._document, fingerprint)
            if key is None:
                return None
            return self._document.certificates[key].model_copy(deep=True)

    async def set_certificate_config(self, fingerprint: str, config: CertificateConfig) -> None:
        def apply(document: ConfigDocument) -> None:
            key = find_certificate_key(document, fingerprint)
            if key is not None and key != normalize_fingerprint(fingerprint):
                del document.certificates[key]
            document.certificates[normalize_fingerprint(fingerprint)] = config

        await self.mutate(apply)

    async def update_certificate_config(self, fingerprint: str, patch: Dict[str, Any]) -> CertificateConfig:
        """Merge patch (by field name or alias) into the entry, creating it if needed."""

        def apply(document: ConfigDocument) -> CertificateConfig:
            key = find_certificate_key(document, fingerprint) or normalize_fingerprint(fingerprint)
            current = document.certificates.get(key, CertificateConfig())
            updated = merge_model(current, patch)
            if key != normalize_fingerprint(fingerprint):
                document.certificates.pop(key, None)
            document.certificates[normalize_fingerprint(fingerprint)] = updated
            return updated.model_copy(deep=True)

        return await self.mutate(apply)

    async def remove_certificate_config(self, fingerprint: str) -> bool:
        """Remove every entry whose key normalizes to fingerprint."""
        normalized = normalize_fingerprint(fingerprint)

        def apply(document: ConfigDocument) -> bool:
            keys = [k for k in document.certificates if normalize_fingerprint(k) == normalized]
            for key in keys:
                del document.certificates[key]
            return bool(keys)

        return await self.mutate(apply)

    async def move_certificate_config(self, old_fingerprint: str, new_fingerprint: str) -> None:
        """Re-key an entry after the certificate's fingerprint changed."""

        def apply(document: ConfigDocument) -> None:
            key = find_certificate_key(document, old_fingerprint)
            if key is None:
                return
            document.certificates[normalize_fingerprint(new_fingerprint)] = document.certificates.pop(key)

        await self.mutate(apply)

    # Global defaults

    async def get_global_defaults(self) -> GlobalDefaults:
        async with self._lock:
            return self._document.global_defaults.model_copy(deep=True)

    async def update_global_defaults(self, patch: Dict[str, Any]) -> GlobalDefaults:
        """
        Merge a camelCase or snake_case patch into the global defaults.

        Raises:
            ValueError: If the merged defaults do not validate (e.g. bad cron)
        """

        def apply(document: ConfigDocument) -> GlobalDefaults:
            document.global_defaults = merge_model(document.global_defaults, patch)
            return document.global_defaults.model_copy(deep=True)

        return await self.mutate(apply)

