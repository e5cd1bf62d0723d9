"""
Activity service for recording certificate, user and system events
"""

import asyncio
import json
import os
import secrets
import string
from typing import Optional, Dict, Any, List

import structlog
from pydantic import ValidationError

from certops.core.storage import Clock, atomic_write_json, utc_now
from certops.schemas.activity import Activity, ActivityType

logger = structlog.get_logger()

CERTIFICATE_MESSAGES = {
    "create": "Certificate created: {name}",
    "import": "Certificate imported: {name}",
    "export": "Certificate exported: {name}",
    "renew": "Certificate renewed: {name}",
    "renew-failed": "Certificate renewal failed: {name}",
    "deploy": "Certificate deployed: {name}",
    "deploy-failed": "Certificate deployment failed: {name}",
    "update": "Certificate updated: {name}",
    "delete": "Certificate deleted: {name}",
}

SYSTEM_MESSAGES = {
    "startup": "System started",
    "shutdown": "System shutdown",
    "config-update": "Configuration updated",
    "renewal-check": "Renewal check completed",
}

_ID_ALPHABET = string.ascii_lowercase + string.digits


class ActivityService:
    """Newest-first, capped activity log persisted as a JSON array."""

    def __init__(self, path: str, max_items: int = 1000, clock: Optional[Clock] = None):
        self.path = path
        self.max_items = max_items
        self.clock = clock or utc_now
        self._lock = asyncio.Lock()
        self._activities: List[Activity] = []

    def _read(self) -> List[Activity]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, list):
            raise ValueError("activities file does not hold a JSON array")
        return [Activity.model_validate(item) for item in raw]

    async def load(self) -> None:
        async with self._lock:
            try:
                self._activities = (await asyncio.to_thread(self._read))[: self.max_items]
            except (OSError, ValueError, ValidationError) as e:
                logger.error("Failed to load activities, starting empty", path=self.path, error=str(e))
                self._activities = []
            logger.info("Activity log loaded", count=len(self._activities))

    def _write(self, activities: List[Activity]) -> None:
        atomic_write_json(self.path, [a.to_json_dict() for a in activities])

    def generate_id(self) -> str:
        millis = int(self.clock().timestamp() * 1000)
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))
        return f"act_{millis}_{suffix}"

    async def record(
        self,
        activity_type: ActivityType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        user: Optional[str] = None,
    ) -> Activity:
        """
        Record an activity

        Args:
            activity_type: certificate, user or system
            message: Human readable message
            data: Additional event payload
            user: Acting user, if any

        Returns:
            The stored Activity
        """
        activity = Activity(
            id=self.generate_id(),
            timestamp=self.clock(),
            type=activity_type,
            message=message,
            data=data or {},
            user=user,
        )
        async with self._lock:
            activities = [activity] + self._activities
            del activities[self.max_items:]
            await asyncio.to_thread(self._write, activities)
            self._activities = activities
        logger.debug("Activity recorded", activity_type=activity_type, message=message)
        return activity

    async def record_certificate_activity(
        self,
        action: str,
        certificate: Any,
        data: Optional[Dict[str, Any]] = None,
        user: Optional[str] = None,
    ) -> Activity:
        """Record a certificate event; certificate needs display_name and fingerprint."""
        name = getattr(certificate, "display_name", None) or str(certificate)
        template = CERTIFICATE_MESSAGES.get(action, "Certificate {action}: {name}")
        payload = {
            "action": action,
            "fingerprint": getattr(certificate, "fingerprint", None),
            "name": name,
        }
        payload.update(data or {})
        return await self.record("certificate", template.format(name=name, action=action), payload, user)

    async def record_system_activity(self, action: str, data: Optional[Dict[str, Any]] = None) -> Activity:
        message = SYSTEM_MESSAGES.get(action, f"System {action}")
        payload = {"action": action}
        payload.update(data or {})
        return await self.record("system", message, payload)

    async def get_activities(
        self,
        limit: int = 50,
        activity_type: Optional[ActivityType] = None,
        search: Optional[str] = None,
    ) -> List[Activity]:
        """Newest-first activities filtered by type and free-text search."""
        async with self._lock:
            activities = list(self._activities)

        if activity_type:
            activities = [a for a in activities if a.type == activity_type]

        if search:
            needle = search.lower()
            activities = [
                a for a in activities
                if needle in a.message.lower()
                or needle in (a.user or "").lower()
                or needle in json.dumps(a.data or {}, default=str).lower()
            ]

        return activities[:limit]

    async def clear_activities(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, [])
            self._activities = []
        logger.info("Activity log cleared")
