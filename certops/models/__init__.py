"""
Domain models for certops.
"""

from .certificate import Certificate, CertInfo, SubjectAltNames, KeyType, Encoding

__all__ = ["Certificate", "CertInfo", "SubjectAltNames", "KeyType", "Encoding"]
