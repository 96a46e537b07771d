# src/calmirror/config.py
"""Configuration management using Pydantic Settings."""

import getpass
import os
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .days import validate_days


def _default_principal() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "default"


class SyncPairConfig(BaseModel):
    """One source calendar mirrored into one target calendar."""

    name: Optional[str] = Field(None, description="Display name of the pair")
    source: str = Field(..., description="Source calendar display name")
    target: str = Field(..., description="Target calendar display name")
    past_days: Union[int, str] = Field(7, description="Days before today, or an expression like start_of_month")
    next_days: Union[int, str] = Field(28, description="Days after today, or an expression like end_of_quarter+1")
    transform: Optional[str] = Field(None, description="Transform as package.module:function")
    enabled: bool = Field(True)

    @validator('past_days', 'next_days')
    def check_days(cls, v):
        """Accept day counts and known day expressions only."""
        return validate_days(v)

    @validator('target')
    def target_differs_from_source(cls, v, values):
        if v == values.get('source'):
            raise ValueError("Source and target calendar must differ")
        return v

    @property
    def label(self) -> str:
        return self.name or f"{self.source} -> {self.target}"


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

    # Google Calendar API Configuration
    google_client_id: str = Field("", description="Google OAuth Client ID")
    google_client_secret: str = Field("", description="Google OAuth Client Secret")
    google_client_id_file: Optional[str] = Field(None, description="Path to file containing Google Client ID")
    google_client_secret_file: Optional[str] = Field(None, description="Path to file containing Google Client Secret")
    google_scopes: List[str] = Field(
        default=["https://www.googleapis.com/auth/calendar"],
        description="Google API scopes"
    )

    # Application Configuration
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )
    principal: str = Field(
        default_factory=_default_principal,
        description="Owner of the stored properties (one per user)"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".calmirror",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        validate_default=True,
        description="Database URL (defaults to SQLite in data_dir)"
    )
    credentials_dir: Optional[Path] = Field(
        default=None,
        validate_default=True,
        description="Credentials directory (defaults to data_dir/credentials)"
    )

    # Run loop Configuration
    sync_interval_minutes: int = Field(default=1, ge=1, description="Minutes between two passes")
    max_execution_minutes: int = Field(
        default=6,
        ge=1,
        description="Backstop delay; also the lease of the sync lock"
    )
    lock_timeout_minutes: int = Field(default=30, ge=0, description="How long a pass waits for the sync lock")
    retry_attempts: int = Field(default=3, ge=1, le=10, description="Attempts for idempotent reads")

    sync_pairs: List[SyncPairConfig] = Field(
        default_factory=list,
        description="Calendar pairs to mirror"
    )

    @validator('data_dir', 'credentials_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/calmirror.db"
        return v

    @validator('credentials_dir')
    def set_default_credentials_dir(cls, v, values):
        """Set default credentials directory if not provided."""
        if v is None and 'data_dir' in values:
            return values['data_dir'] / "credentials"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('google_client_id', 'google_client_secret')
    def validate_google_credential(cls, v):
        """Reject obviously truncated OAuth client credentials."""
        v = v.strip()
        if v and len(v) < 10:
            raise ValueError("Google OAuth credentials must be at least 10 characters")
        return v

    def __init__(self, **kwargs):
        """Initialize settings with file-based credential support."""
        if kwargs.get('google_client_id_file'):
            kwargs['google_client_id'] = self._read_credential_file(kwargs['google_client_id_file'])
        if kwargs.get('google_client_secret_file'):
            kwargs['google_client_secret'] = self._read_credential_file(kwargs['google_client_secret_file'])

        super().__init__(**kwargs)

    @staticmethod
    def _read_credential_file(file_path: str) -> str:
        """Read credential from file.

        Raises:
            ValueError: If file cannot be read or is empty
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
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        if self.credentials_dir:
            self.credentials_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    @property
    def google_credentials_path(self) -> Path:
        """Path to Google credentials file."""
        return self.credentials_dir / "google_credentials.json"

    @property
    def google_token_path(self) -> Path:
        """Path to Google OAuth token file."""
        return self.credentials_dir / "google_token.json"

    @property
    def enabled_pairs(self) -> List[SyncPairConfig]:
        return [pair for pair in self.sync_pairs if pair.enabled]

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.google_client_id:
            missing.append('GOOGLE_CLIENT_ID')
        if not self.google_client_secret:
            missing.append('GOOGLE_CLIENT_SECRET')
        if not self.sync_pairs:
            missing.append('SYNC_PAIRS')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

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
    example_content = '''# calmirror configuration
# Copy this file to .env and fill in your actual credentials

# Google Calendar API Configuration
GOOGLE_CLIENT_ID=your_google_client_id_here
GOOGLE_CLIENT_SECRET=your_google_client_secret_here

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Run loop
SYNC_INTERVAL_MINUTES=1
MAX_EXECUTION_MINUTES=6
LOCK_TIMEOUT_MINUTES=30

# Calendar pairs (JSON array). past_days / next_days accept numbers or
# expressions such as start_of_month, end_of_week, end_of_quarter+1.
# transform names a function "package.module:function" called as
# transform(target_event, source_event).
SYNC_PAIRS=[{"source": "Work", "target": "Private", "past_days": 7, "next_days": 28}]

# Storage Configuration (optional)
# DATA_DIR=~/.calmirror
# DATABASE_URL=sqlite:///~/.calmirror/calmirror.db
# PRINCIPAL=me
'''

    with open(path, 'w') as f:
        f.write(example_content)
