"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncConfiguration


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Task service (Vikunja API)
    vikunja_url: str = Field(default="", description="Vikunja API base URL, e.g. https://tasks.example.com/api/v1")
    vikunja_token: str = Field(default="", description="Vikunja API token")
    vikunja_token_file: Optional[str] = Field(None, description="Path to file containing the Vikunja token")

    # Calendar store (CalDAV)
    caldav_url: str = Field(default="", description="CalDAV server URL")
    caldav_username: str = Field(default="", description="CalDAV username")
    caldav_password: str = Field(default="", description="CalDAV password")
    caldav_password_file: Optional[str] = Field(None, description="Path to file containing the CalDAV password")

    # Application Configuration
    app_name: str = Field(default="kuna-calsync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".kuna-calsync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Synchronization settings"
    )

    request_timeout_seconds: int = Field(
        default=30,
        ge=5,
        le=300,
        description="HTTP request timeout"
    )

    # Daemon
    server_host: str = Field(default="127.0.0.1")
    server_port: int = Field(default=8080, ge=1, le=65535)
    webhook_secret: Optional[str] = Field(
        default=None,
        description="Shared secret expected in the X-Webhook-Secret header"
    )

    @field_validator('data_dir', mode='before')
    @classmethod
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator('vikunja_url', 'caldav_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.strip().rstrip('/')

    @model_validator(mode='after')
    def set_default_database_url(self):
        """Set default SQLite database URL if not provided."""
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir}/kuna-calsync.db"
        return self

    def __init__(self, **kwargs):
        """Initialize settings with file-based credential support."""
        if kwargs.get('vikunja_token_file'):
            kwargs['vikunja_token'] = self._read_credential_file(kwargs['vikunja_token_file'])
        if kwargs.get('caldav_password_file'):
            kwargs['caldav_password'] = self._read_credential_file(kwargs['caldav_password_file'])

        super().__init__(**kwargs)

    @staticmethod
    def _read_credential_file(file_path: str) -> str:
        """Read credential from file.

        Raises:
            ValueError: If file cannot be read
        """
        try:
            with open(file_path, 'r') as f:
                credential = f.read().strip()
        except FileNotFoundError:
            raise ValueError(f"Credential file not found: {file_path}")
        except PermissionError:
            raise ValueError(f"Permission denied reading credential file: {file_path}")
        if not credential:
            raise ValueError(f"Credential file {file_path} is empty")
        return credential

    def ensure_directories(self):
        """Create the data directory, readable by the owner only."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.vikunja_url:
            missing.append('VIKUNJA_URL')
        if not self.vikunja_token:
            missing.append('VIKUNJA_TOKEN')
        if not self.caldav_url:
            missing.append('CALDAV_URL')
        if not self.caldav_username:
            missing.append('CALDAV_USERNAME')
        if not self.caldav_password:
            missing.append('CALDAV_PASSWORD')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env file used instead of ./.env

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# Kuna CalSync Configuration
# Copy this file to .env and fill in your actual credentials

# Task service (Vikunja API)
VIKUNJA_URL=https://tasks.example.com/api/v1
VIKUNJA_TOKEN=your_vikunja_api_token_here
# VIKUNJA_TOKEN_FILE=/run/secrets/vikunja_token

# Calendar store (CalDAV)
CALDAV_URL=https://caldav.example.com/
CALDAV_USERNAME=you@example.com
CALDAV_PASSWORD=your_caldav_password_here
# CALDAV_PASSWORD_FILE=/run/secrets/caldav_password

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO
REQUEST_TIMEOUT_SECONDS=30

# Sync Configuration
SYNC_CONFIG__CALENDAR_TITLE=Kuna
SYNC_CONFIG__PER_PROJECT_PREFIX="Kuna: "
SYNC_CONFIG__PER_PROJECT_SOFT_CAP=25
SYNC_CONFIG__PULL_WINDOW_BACK_DAYS=56
SYNC_CONFIG__PULL_WINDOW_FORWARD_DAYS=365
SYNC_CONFIG__PUSH_WINDOW_BACK_DAYS=183
SYNC_CONFIG__PUSH_WINDOW_FORWARD_DAYS=183
SYNC_CONFIG__DEBOUNCE_SECONDS=2.0
SYNC_CONFIG__MAX_ERRORS=50
SYNC_CONFIG__TWO_WAY=true
SYNC_CONFIG__EVENT_TIMEZONE=UTC
SYNC_CONFIG__POLL_INTERVAL_SECONDS=300
SYNC_CONFIG__RETRY_ATTEMPTS=3

# Storage Configuration (optional)
# DATA_DIR=~/.kuna-calsync
# DATABASE_URL=sqlite:////home/you/.kuna-calsync/kuna-calsync.db

# Daemon
# SERVER_HOST=127.0.0.1
# SERVER_PORT=8080
# WEBHOOK_SECRET=your_webhook_secret_here
'''

    with open(path, 'w') as f:
        f.write(example_content)
