"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR")
    )

    # Google Calendar API Configuration
    google_scopes: List[str] = Field(
        default=["https://www.googleapis.com/auth/calendar.events"],
        description="Google API scopes (calendar read/write only)"
    )
    google_calendar_id: str = Field(
        default="primary",
        description="Google calendar that mirrors the family calendar"
    )

    # Application Configuration
    app_name: str = Field(default="famcal-sync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".famcal-sync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )
    credentials_dir: Optional[Path] = Field(
        default=None,
        description="Directory holding per-user Google token files (defaults to data_dir/credentials)"
    )

    # Remote call Configuration
    request_timeout_seconds: float = Field(
        default=15,
        gt=0,
        le=300,
        description="Timeout applied to every remote calendar call"
    )
    rate_limit_requests_per_minute: int = Field(
        default=300,
        ge=60,
        description="Rate limit for API requests"
    )
    sync_past_days: int = Field(default=90, ge=0, description="First-sync window into the past")
    sync_future_days: int = Field(default=180, ge=0, description="First-sync window into the future")

    # Scheduler Configuration
    poll_interval_seconds: float = Field(
        default=60,
        gt=0,
        description="How often the scheduler evaluates users"
    )
    min_attempt_spacing_seconds: float = Field(
        default=60,
        ge=0,
        description="Cooldown between sync attempts for one user"
    )
    default_sync_frequency_minutes: int = Field(
        default=15,
        ge=5,
        le=240,
        description="Frequency given to newly created preferences"
    )
    tombstone_retention_days: int = Field(
        default=30,
        ge=1,
        description="Age after which tombstoned events are purged"
    )

    @validator('data_dir', 'credentials_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url', always=True)
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/famcal_sync.db"
        return v

    @validator('credentials_dir', always=True)
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

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only
        if self.credentials_dir:
            self.credentials_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only

    def google_token_path(self, user_id: str) -> Path:
        """Path to a user's authorized Google token file."""
        safe_id = "".join(c if c.isalnum() or c in "-_." else "_" for c in user_id)
        return self.credentials_dir / f"google_token_{safe_id}.json"

    def validate_required_settings(self) -> List[str]:
        """Validate settings and return a list of problems."""
        problems = []

        if not self.google_scopes:
            problems.append('GOOGLE_SCOPES')
        if not self.google_calendar_id:
            problems.append('GOOGLE_CALENDAR_ID')
        if not self.database_url:
            problems.append('DATABASE_URL')

        return problems


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
    example_content = '''# famcal-sync configuration
# Copy this file to .env and adjust as needed

# Google Calendar
# Per-user authorized token files live in CREDENTIALS_DIR as google_token_<user>.json
GOOGLE_CALENDAR_ID=primary
# GOOGLE_SCOPES=["https://www.googleapis.com/auth/calendar.events"]

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Remote calls
REQUEST_TIMEOUT_SECONDS=15
RATE_LIMIT_REQUESTS_PER_MINUTE=300
SYNC_PAST_DAYS=90
SYNC_FUTURE_DAYS=180

# Scheduler
POLL_INTERVAL_SECONDS=60
MIN_ATTEMPT_SPACING_SECONDS=60
DEFAULT_SYNC_FREQUENCY_MINUTES=15
TOMBSTONE_RETENTION_DAYS=30

# Storage Configuration (optional)
# DATA_DIR=~/.famcal-sync
# DATABASE_URL=sqlite:///~/.famcal-sync/famcal_sync.db
# CREDENTIALS_DIR=~/.famcal-sync/credentials
'''

    with open(path, 'w') as f:
        f.write(example_content)
