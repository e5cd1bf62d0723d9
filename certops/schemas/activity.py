"""
Pydantic schemas for activity log records.
"""

from typing import Optional, Dict, Any, Literal
from datetime import datetime
from pydantic import Field

from certops.schemas.base import CamelModel

ActivityType = Literal["certificate", "user", "system"]


class Activity(CamelModel):
    """One activity log entry."""
    id: str
    timestamp: datetime
    type: ActivityType
    message: str
    data: Optional[Dict[str, Any]] = None
    user: Optional[str] = None
