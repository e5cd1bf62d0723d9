"""
Connection settings shared between global deployment defaults and actions.
"""

from typing import Optional
from pydantic import Field

from certops.schemas.base import CamelModel


class SmtpSettings(CamelModel):
    """SMTP relay used by email actions."""
    host: Optional[str] = None
    port: int = Field(default=587, ge=1, le=65535)
    secure: bool = False
    user: Optional[str] = None
    password: Optional[str] = None
    from_address: Optional[str] = Field(default=None, alias="from")
    reject_unauthorized: bool = True


class NginxProxyManagerSettings(CamelModel):
    """Nginx Proxy Manager API endpoint and cached credentials."""
    host: Optional[str] = None
    port: int = Field(default=81, ge=1, le=65535)
    use_https: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    access_token: Optional[str] = None
    token_expiry: Optional[str] = None
