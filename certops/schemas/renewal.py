"""
Pydantic schemas for renewal check outcomes.
"""

from typing import Dict, List, Optional
from datetime import datetime
from pydantic import Field

from certops.schemas.base import CamelModel


class RenewedCertificate(CamelModel):
    previous_fingerprint: str
    fingerprint: str
    name: str
    valid_to: datetime


class RenewalReport(CamelModel):
    """Outcome of one renewal check."""
    checked_at: datetime
    candidates: int = 0
    renewed: List[RenewedCertificate] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict, description="fingerprint -> error")
    canceled: bool = False
    next_run: Optional[datetime] = None
