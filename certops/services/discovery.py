"""
Certificate file discovery: which files under the certificate directory are
certificates, and which siblings hold their key, chain and bundles.
"""

import os
from typing import Iterator, List, Optional

CERT_EXTENSIONS = (".pem", ".crt", ".cer", ".der")
SKIPPED_DIRECTORIES = ("backups", "archive")

KEY_SUFFIXES = ("-key.pem", "_key.pem", ".key.pem")
BUNDLE_NAMES = ("chain.pem", "fullchain.pem", "ca-bundle.pem")


def _base(path: str) -> str:
    return os.path.splitext(path)[0]


def is_key_file(path: str) -> bool:
    name = os.path.basename(path).lower()
    return (
        name.endswith(".key")
        or name.endswith(KEY_SUFFIXES)
        or name in ("privkey.pem", "private.pem", "private.key")
    )


def is_bundle_file(path: str) -> bool:
    """Chain and fullchain files are companions, not registered certificates."""
    name = os.path.basename(path).lower()
    if name in BUNDLE_NAMES:
        return True
    stem = _base(name)
    return (
        stem.endswith((".chain", "-chain", "_chain", ".fullchain", "-fullchain", "_fullchain"))
        or name.endswith((".chain", ".fullchain"))
    )


def is_certificate_candidate(path: str) -> bool:
    """True for files the registry should try to parse as certificates."""
    name = os.path.basename(path)
    if not name or name.startswith("."):
        return False
    if ".bak." in name:
        return False
    if not name.lower().endswith(CERT_EXTENSIONS):
        return False
    return not is_key_file(path) and not is_bundle_file(path)


def _first_existing(candidates: List[str]) -> Optional[str]:
    for candidate in candidates:
        if os.path.isfile(candidate):
            return candidate
    return None


def find_key_file(cert_path: str) -> Optional[str]:
    """<base>.key, <base>-key.pem, then privkey.pem / private.key in the same directory."""
    base = _base(cert_path)
    directory = os.path.dirname(cert_path)
    return _first_existing([
        f"{base}.key",
        f"{base}-key.pem",
        os.path.join(directory, "privkey.pem"),
        os.path.join(directory, "private.key"),
    ])


def find_chain_file(cert_path: str) -> Optional[str]:
    base = _base(cert_path)
    directory = os.path.dirname(cert_path)
    return _first_existing([
        f"{base}.chain",
        f"{base}.chain.pem",
        f"{base}-chain.pem",
        os.path.join(directory, "chain.pem"),
    ])


def find_fullchain_file(cert_path: str) -> Optional[str]:
    base = _base(cert_path)
    directory = os.path.dirname(cert_path)
    return _first_existing([
        f"{base}.fullchain.pem",
        f"{base}-fullchain.pem",
        os.path.join(directory, "fullchain.pem"),
    ])


def find_p12_file(cert_path: str) -> Optional[str]:
    base = _base(cert_path)
    return _first_existing([f"{base}.p12", f"{base}.pfx"])


def scan_certificate_files(root: str) -> Iterator[str]:
    """
    Walk root in sorted order yielding certificate candidates.

    Hidden entries and backup/archive directories are skipped.
    """
    for directory, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames
            if not d.startswith(".") and d.lower() not in SKIPPED_DIRECTORIES
        )
        for filename in sorted(filenames):
            path = os.path.join(directory, filename)
            if is_certificate_candidate(path):
                yield path
