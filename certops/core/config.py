"""
Configuration settings for the certops engine.
Uses pydantic-settings for environment variable management.
"""

from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings
from functools import lru_cache
import os


class Settings(BaseSettings):
    """Process-level configuration settings."""

    # Application
    app_name: str = "certops"
    app_version: str = "1.0.0"
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Storage locations
    config_dir: str = "/config"
    certs_dir: str = "/certs"

    # File watcher
    enable_file_watch: bool = True
    watcher_debounce_ms: int = 100
    ignore_window_ms: int = 5000

    # Activity log
    activity_max_items: int = 1000

    # Deployment action timeouts (seconds)
    deploy_action_timeout: float = 60.0
    http_action_timeout: float = 30.0
    transfer_action_timeout: float = 120.0

    # Docker defaults used by docker-restart actions without an explicit host
    docker_host: Optional[str] = None

    @field_validator('config_dir', 'certs_dir', mode='before')
    @classmethod
    def create_directory(cls, v: str) -> str:
        """Ensure the directory exists."""
        v = os.path.abspath(os.path.expanduser(str(v)))
        if not os.path.exists(v):
            os.makedirs(v, mode=0o700, exist_ok=True)
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return str(v).upper()

    @property
    def config_file(self) -> str:
        """Path of the certificate configuration document."""
        return os.path.join(self.config_dir, "cert-config.json")

    @property
    def encryption_key_file(self) -> str:
        """Path of the process-local passphrase encryption key."""
        return os.path.join(self.config_dir, ".encryption-key")

    @property
    def activities_file(self) -> str:
        """Path of the activity log."""
        return os.path.join(self.config_dir, "activities.json")

    model_config = {
        "env_prefix": "CERTOPS_",
        "env_file": ".env",
        "case_sensitive": False,
    }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
