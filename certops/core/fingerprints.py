"""
Fingerprint normalization.
"""

import re

_PREFIX = re.compile(r"^\s*sha-?256\s*fingerprint\s*=\s*", re.IGNORECASE)
_SEPARATORS = re.compile(r"[\s:]+")


def normalize_fingerprint(fingerprint: str) -> str:
    """
    Canonical form of a certificate fingerprint.

    Strips an optional "SHA256 Fingerprint=" prefix (as printed by openssl),
    removes colons and whitespace and uppercases the result. Applying it
    twice yields the same value.
    """
    if not fingerprint:
        return ""
    value = _PREFIX.sub("", str(fingerprint))
    return _SEPARATORS.sub("", value).upper()
